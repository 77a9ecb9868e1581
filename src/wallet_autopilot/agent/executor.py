"""Transaction executor - submits proposed actions within delegation scope.

For every action the executor:

1. re-reads the delegation (a delegation revoked or paused after the
   approvals were fetched drops the action);
2. re-checks the action against the delegation's *current* scope;
3. atomically creates (or claims for retry) the single pending execution
   record for the action's idempotency key, so the intent is durable
   before anything is submitted;
4. submits through the authority provider with an explicit timeout and
   records the outcome.

Pending records are later reconciled against the chain (confirmed /
failed) and against fresh indexer data (superseded).
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from wallet_autopilot.agent.registry import APPROVE_SELECTOR, DelegationRegistry
from wallet_autopilot.agent.rules import ApprovalObservation, ProposedAction
from wallet_autopilot.chain.authority import BaseAuthorityProvider, TxStatus, build_intent
from wallet_autopilot.config import ExecutorConfig
from wallet_autopilot.errors import (
    FeeCeilingExceeded,
    InternalInvariantViolation,
    PermanentExternalError,
    ScopeViolation,
    TransientExternalError,
)
from wallet_autopilot.storage.database import Database
from wallet_autopilot.storage.models import (
    ActionKind,
    DelegationRecord,
    ExecutionRecord,
    ExecutionStatus,
    utcnow,
)

logger = logging.getLogger("wallet_autopilot.executor")


class OutcomeStatus(str, Enum):
    SUBMITTED = "submitted"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    SKIPPED_FAILED = "skipped_failed"
    SKIPPED_OUT_OF_SCOPE = "skipped_out_of_scope"
    DROPPED_REVOKED = "dropped_revoked"
    RETRY_SCHEDULED = "retry_scheduled"
    ABANDONED = "abandoned"
    FAILED = "failed"
    ERROR = "error"


@dataclass
class ExecutionOutcome:
    """Result of executing one proposed action."""

    action: ProposedAction
    idempotency_key: str
    status: OutcomeStatus
    tx_ref: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.action.kind.value,
            "token": self.action.token,
            "spender": self.action.spender,
            "reason": self.action.reason,
            "idempotency_key": self.idempotency_key,
            "status": self.status.value,
            "tx_ref": self.tx_ref,
            "error": self.error,
        }


class Claim(str, Enum):
    CREATED = "created"
    RETRY = "retry"
    DUPLICATE = "duplicate"


# ---------------------------------------------------------------------------
# Execution record store
# ---------------------------------------------------------------------------


class ExecutionStore:
    """Execution records with atomic check-then-create per idempotency key.

    In-process, the check and the insert happen under one ``asyncio.Lock``;
    across processes, the partial unique index on pending keys and the
    compare-and-set claim on retries keep it to one pending record and one
    submitter per key.
    """

    def __init__(self, db: Database) -> None:
        self.db = db
        self._lock = asyncio.Lock()
        self._inflight: set[str] = set()

    async def get_open(self, key: str) -> ExecutionRecord | None:
        row = await self.db.fetch_one(
            "SELECT * FROM execution_records WHERE idempotency_key = ? AND status = ?",
            (key, ExecutionStatus.PENDING.value),
        )
        return ExecutionRecord.from_row(row) if row else None

    async def recently_confirmed(self, key: str, since: datetime) -> bool:
        row = await self.db.fetch_one(
            "SELECT id FROM execution_records "
            "WHERE idempotency_key = ? AND status = ? AND updated_at >= ?",
            (key, ExecutionStatus.CONFIRMED.value, since.isoformat()),
        )
        return row is not None

    async def failed_since(self, key: str, since: datetime) -> ExecutionRecord | None:
        """Latest failed or abandoned record for *key* created after *since*.

        Fee ceiling failures are ignored: fees move, so a later cycle may
        try again.
        """
        row = await self.db.fetch_one(
            "SELECT * FROM execution_records "
            "WHERE idempotency_key = ? AND status IN (?, ?) AND created_at >= ? "
            "AND (last_error IS NULL OR last_error NOT LIKE ?) "
            "ORDER BY created_at DESC LIMIT 1",
            (
                key,
                ExecutionStatus.FAILED.value,
                ExecutionStatus.ABANDONED.value,
                since.isoformat(),
                f"{FeeCeilingExceeded.code}%",
            ),
        )
        return ExecutionRecord.from_row(row) if row else None

    async def begin(
        self,
        candidate: ExecutionRecord,
        now: datetime,
        lease: timedelta,
    ) -> tuple[Claim, ExecutionRecord]:
        """Create the pending record for ``candidate`` or claim the open one.

        Returns ``(Claim.DUPLICATE, existing)`` when the key already has an
        open record that is awaiting confirmation, waiting out its backoff,
        or being submitted right now.
        """
        key = candidate.idempotency_key
        async with self._lock:
            existing = await self.get_open(key)
            if existing is not None:
                self._check_payload(existing, candidate)
                if existing.tx_ref is not None or key in self._inflight:
                    return Claim.DUPLICATE, existing
                if existing.next_attempt_at is not None and existing.next_attempt_at > now:
                    return Claim.DUPLICATE, existing
                lease_until = (now + lease).isoformat()
                cursor = await self.db.execute(
                    "UPDATE execution_records SET next_attempt_at = ?, updated_at = ? "
                    "WHERE id = ? AND status = 'pending' AND tx_ref IS NULL "
                    "AND (next_attempt_at IS NULL OR next_attempt_at <= ?)",
                    (lease_until, now.isoformat(), existing.id, now.isoformat()),
                )
                if cursor.rowcount != 1:
                    # Another process claimed it between our read and write.
                    return Claim.DUPLICATE, existing
                self._inflight.add(key)
                return Claim.RETRY, existing

            record = candidate.model_copy(
                update={"created_at": now, "updated_at": now, "next_attempt_at": now + lease}
            )
            try:
                await self.db.execute(
                    "INSERT INTO execution_records "
                    "(id, idempotency_key, delegation_id, kind, token, spender, reason, status, "
                    "attempt_count, tx_ref, last_error, next_attempt_at, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.idempotency_key,
                        record.delegation_id,
                        record.kind.value,
                        record.token,
                        record.spender,
                        record.reason,
                        record.status.value,
                        record.attempt_count,
                        None,
                        None,
                        record.next_attempt_at.isoformat(),
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError:
                # Lost the race to another process; its record wins.
                existing = await self.get_open(key)
                if existing is None:
                    raise
                return Claim.DUPLICATE, existing
            self._inflight.add(key)
            return Claim.CREATED, record

    def release(self, key: str) -> None:
        self._inflight.discard(key)

    def is_inflight(self, key: str) -> bool:
        return key in self._inflight

    @staticmethod
    def _check_payload(existing: ExecutionRecord, candidate: ExecutionRecord) -> None:
        def comparable(record: ExecutionRecord, name: str):
            value = getattr(record, name)
            # Addresses may come back checksummed or lowercased.
            return value.lower() if name in ("token", "spender") else value

        fields = ("delegation_id", "kind", "token", "spender", "reason")
        diverging = {
            f: (getattr(existing, f), getattr(candidate, f))
            for f in fields
            if comparable(existing, f) != comparable(candidate, f)
        }
        if diverging:
            raise InternalInvariantViolation(
                f"Idempotency key {existing.idempotency_key} already used by record "
                f"{existing.id} with a different payload",
                details={
                    "record_id": existing.id,
                    "diverging": {k: {"existing": str(a), "new": str(b)} for k, (a, b) in diverging.items()},
                },
            )

    async def _update(self, record: ExecutionRecord, **changes) -> ExecutionRecord:
        changes["updated_at"] = utcnow()
        updated = record.model_copy(update=changes)
        await self.db.execute(
            "UPDATE execution_records SET status = ?, attempt_count = ?, tx_ref = ?, "
            "last_error = ?, next_attempt_at = ?, updated_at = ? WHERE id = ?",
            (
                updated.status.value,
                updated.attempt_count,
                updated.tx_ref,
                updated.last_error,
                updated.next_attempt_at.isoformat() if updated.next_attempt_at else None,
                updated.updated_at.isoformat(),
                updated.id,
            ),
        )
        return updated

    async def mark_submitted(self, record: ExecutionRecord, tx_ref: str) -> ExecutionRecord:
        return await self._update(
            record,
            tx_ref=tx_ref,
            attempt_count=record.attempt_count + 1,
            next_attempt_at=None,
            last_error=None,
        )

    async def mark_retry(
        self, record: ExecutionRecord, error: str, next_attempt_at: datetime
    ) -> ExecutionRecord:
        return await self._update(
            record,
            attempt_count=record.attempt_count + 1,
            last_error=error,
            next_attempt_at=next_attempt_at,
        )

    async def finish(
        self,
        record: ExecutionRecord,
        status: ExecutionStatus,
        error: str | None = None,
        count_attempt: bool = False,
    ) -> ExecutionRecord:
        changes: dict = {"status": status, "next_attempt_at": None}
        if error is not None:
            changes["last_error"] = error
        if count_attempt:
            changes["attempt_count"] = record.attempt_count + 1
        return await self._update(record, **changes)

    async def list_open(self, delegation_id: str) -> list[ExecutionRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM execution_records WHERE delegation_id = ? AND status = ? "
            "ORDER BY created_at",
            (delegation_id, ExecutionStatus.PENDING.value),
        )
        return [ExecutionRecord.from_row(r) for r in rows]

    async def list_records(
        self,
        delegation_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> list[ExecutionRecord]:
        clauses, params = [], []
        if delegation_id:
            clauses.append("delegation_id = ?")
            params.append(delegation_id)
        if status:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        rows = await self.db.fetch_all(
            f"SELECT * FROM execution_records {where}ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        return [ExecutionRecord.from_row(r) for r in rows]

    async def count_submissions(self, key: str) -> int:
        row = await self.db.fetch_one(
            "SELECT COALESCE(SUM(attempt_count), 0) AS n FROM execution_records "
            "WHERE idempotency_key = ?",
            (key,),
        )
        return int(row["n"]) if row else 0


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class TransactionExecutor:
    """Executes proposed actions for one delegation at a time.

    Actions of one delegation run sequentially in the order given (rule
    precedence); different delegations may run concurrently, bounded by
    the monitor's worker pool.
    """

    def __init__(
        self,
        config: ExecutorConfig,
        registry: DelegationRegistry,
        store: ExecutionStore,
        authority: BaseAuthorityProvider,
        confirmation_window: float = 600.0,
    ) -> None:
        self.config = config
        self.registry = registry
        self.store = store
        self.authority = authority
        # Indexer lag: a confirmed revoke may still show as active this long.
        self._confirmation_window = timedelta(seconds=confirmation_window)
        self._lease = timedelta(seconds=max(self.config.submit_timeout_seconds * 2, 1.0))
        self._fee_ceiling_wei = int(Decimal(str(self.config.max_fee_per_gas_gwei)) * 10**9)
        if self._fee_ceiling_wei <= 0:
            raise ValueError("executor.max_fee_per_gas_gwei must be positive")

    # ------------------------------------------------------------------
    # Scope
    # ------------------------------------------------------------------

    @staticmethod
    def check_scope(delegation: DelegationRecord, action: ProposedAction, used: int = 0) -> None:
        """Raise ``ScopeViolation`` unless *action* fits the delegation's scope."""
        scope = delegation.scope
        if not scope.allows_target(action.token):
            raise ScopeViolation(
                f"Token {action.token} is not a target of delegation {delegation.id}",
                details={"token": action.token},
            )
        if action.kind not in scope.action_kinds:
            raise ScopeViolation(
                f"Action '{action.kind.value}' not allowed by delegation {delegation.id}",
                details={"kind": action.kind.value},
            )
        if action.kind == ActionKind.REVOKE and scope.selectors and APPROVE_SELECTOR not in scope.selectors:
            raise ScopeViolation(
                f"Delegation {delegation.id} does not allow approve()",
                details={"selector": APPROVE_SELECTOR},
            )
        limit = scope.limits.max_actions_per_cycle
        if limit is not None and used >= limit:
            raise ScopeViolation(
                f"Delegation {delegation.id} allows {limit} actions per cycle",
                details={"limit": limit},
            )

    def backoff(self, attempt_count: int) -> timedelta:
        """Delay before the next attempt after *attempt_count* failures."""
        delay = self.config.backoff_base_seconds * (2 ** max(attempt_count - 1, 0))
        return timedelta(seconds=min(delay, self.config.backoff_max_seconds))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        actions: list[ProposedAction],
        delegation: DelegationRecord,
    ) -> list[ExecutionOutcome]:
        """Execute *actions* sequentially under *delegation*."""
        outcomes: list[ExecutionOutcome] = []
        used = 0
        for action in actions:
            outcome = await self._execute_one(action, delegation.id, used)
            if outcome.status in (
                OutcomeStatus.SUBMITTED,
                OutcomeStatus.RETRY_SCHEDULED,
                OutcomeStatus.ABANDONED,
                OutcomeStatus.FAILED,
            ):
                used += 1
            outcomes.append(outcome)
        return outcomes

    async def _execute_one(
        self, action: ProposedAction, delegation_id: str, used: int
    ) -> ExecutionOutcome:
        key = action.idempotency_key(delegation_id)

        # Fresh read: never trust the delegation captured at proposal time.
        current = await self.registry.get(delegation_id)
        if current is None or not current.is_active:
            status = current.status.value if current else "missing"
            logger.info(
                f"Dropping {action.reason} revoke of {action.token} for delegation "
                f"{delegation_id}: delegation is {status}"
            )
            return ExecutionOutcome(action, key, OutcomeStatus.DROPPED_REVOKED, error=f"delegation {status}")

        try:
            self.check_scope(current, action, used)
        except ScopeViolation as exc:
            logger.warning(f"Out of scope, not submitting: {exc}")
            return ExecutionOutcome(action, key, OutcomeStatus.SKIPPED_OUT_OF_SCOPE, error=exc.message)

        now = utcnow()
        if await self.store.recently_confirmed(key, now - self._confirmation_window):
            return ExecutionOutcome(action, key, OutcomeStatus.SKIPPED_DUPLICATE)

        # Terminal failures stay terminal until the delegation is changed
        # (re-registered or resumed).
        previous = await self.store.failed_since(key, current.updated_at)
        if previous is not None:
            logger.debug(f"Key {key[:12]} already {previous.status.value} in execution {previous.id}")
            return ExecutionOutcome(
                action, key, OutcomeStatus.SKIPPED_FAILED,
                error=f"execution {previous.id} {previous.status.value}: {previous.last_error}",
            )

        candidate = ExecutionRecord(
            idempotency_key=key,
            delegation_id=delegation_id,
            kind=action.kind,
            token=action.token,
            spender=action.spender,
            reason=action.reason,
        )
        try:
            claim, record = await self.store.begin(candidate, now, self._lease)
        except InternalInvariantViolation as exc:
            logger.error(f"{exc} | action={action} details={exc.details}")
            return ExecutionOutcome(action, key, OutcomeStatus.ERROR, error=str(exc))

        if claim == Claim.DUPLICATE:
            logger.debug(f"Execution {record.id} already open for key {key[:12]}, skipping")
            return ExecutionOutcome(action, key, OutcomeStatus.SKIPPED_DUPLICATE, tx_ref=record.tx_ref)

        try:
            return await self._submit(current, action, record)
        finally:
            self.store.release(key)

    async def _submit(
        self,
        delegation: DelegationRecord,
        action: ProposedAction,
        record: ExecutionRecord,
    ) -> ExecutionOutcome:
        key = record.idempotency_key
        try:
            intent = build_intent(key, record.kind, record.token, record.spender, self._fee_ceiling_wei)
            tx_ref = await asyncio.wait_for(
                self.authority.submit(delegation, intent),
                timeout=self.config.submit_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return await self._schedule_retry(
                action, record, f"submission timed out after {self.config.submit_timeout_seconds}s"
            )
        except TransientExternalError as exc:
            return await self._schedule_retry(action, record, str(exc))
        except PermanentExternalError as exc:
            await self.store.finish(record, ExecutionStatus.FAILED, str(exc), count_attempt=True)
            logger.error(f"Execution {record.id} failed permanently: {exc}")
            return ExecutionOutcome(action, key, OutcomeStatus.FAILED, error=str(exc))
        except Exception as exc:
            # Unknown outcome: retry; the relay dedups on the idempotency key.
            logger.exception(f"Unexpected error submitting execution {record.id}")
            return await self._schedule_retry(action, record, f"{type(exc).__name__}: {exc}")

        await self.store.mark_submitted(record, tx_ref)
        logger.info(
            f"Submitted {record.kind.value} of {record.token} / {record.spender} "
            f"({record.reason}) for delegation {record.delegation_id}: {tx_ref}"
        )
        return ExecutionOutcome(action, key, OutcomeStatus.SUBMITTED, tx_ref=tx_ref)

    async def _schedule_retry(
        self, action: ProposedAction, record: ExecutionRecord, error: str
    ) -> ExecutionOutcome:
        attempts = record.attempt_count + 1
        if attempts >= self.config.max_attempts:
            await self.store.finish(record, ExecutionStatus.ABANDONED, error, count_attempt=True)
            logger.error(
                f"Execution {record.id} abandoned after {attempts} attempts, needs review: {error}"
            )
            return ExecutionOutcome(action, record.idempotency_key, OutcomeStatus.ABANDONED, error=error)

        next_at = utcnow() + self.backoff(attempts)
        await self.store.mark_retry(record, error, next_at)
        logger.warning(
            f"Execution {record.id} attempt {attempts}/{self.config.max_attempts} failed "
            f"({error}); retrying after {next_at.isoformat()}"
        )
        return ExecutionOutcome(action, record.idempotency_key, OutcomeStatus.RETRY_SCHEDULED, error=error)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _check_receipt(self, record: ExecutionRecord) -> ExecutionRecord | None:
        try:
            status = await asyncio.wait_for(
                self.authority.transaction_status(record.tx_ref),
                timeout=self.config.submit_timeout_seconds,
            )
        except (asyncio.TimeoutError, TransientExternalError) as exc:
            logger.warning(f"Could not check {record.tx_ref} for execution {record.id}: {exc}")
            return None
        if status == TxStatus.CONFIRMED:
            logger.info(f"Execution {record.id} confirmed: {record.tx_ref}")
            return await self.store.finish(record, ExecutionStatus.CONFIRMED)
        if status == TxStatus.REVERTED:
            logger.error(f"Execution {record.id} reverted on-chain: {record.tx_ref}")
            return await self.store.finish(record, ExecutionStatus.FAILED, "reverted on-chain")
        return None

    async def reconcile(
        self,
        delegation: DelegationRecord,
        approvals: list[ApprovalObservation],
        proposed: list[ProposedAction] | None = None,
    ) -> list[ExecutionRecord]:
        """Settle pending records of *delegation* against chain and indexer state.

        Unsubmitted records are superseded when their approval is no longer
        active, or, when *proposed* is given, once they are due for retry and
        this cycle's rules no longer propose them.

        Returns the records whose status changed.
        """
        still_open = {(a.token.lower(), a.spender.lower()) for a in approvals if a.is_active}
        wanted = None
        if proposed is not None:
            wanted = {a.idempotency_key(delegation.id) for a in proposed}
        now = utcnow()
        changed: list[ExecutionRecord] = []
        for record in await self.store.list_open(delegation.id):
            if record.tx_ref is not None:
                updated = await self._check_receipt(record)
                if updated is not None:
                    changed.append(updated)
                continue
            if self.store.is_inflight(record.idempotency_key):
                continue
            if (record.token.lower(), record.spender.lower()) not in still_open:
                # Resolved by another path, e.g. the user revoked it manually.
                logger.info(
                    f"Execution {record.id} superseded: approval of {record.token} to "
                    f"{record.spender} is no longer active"
                )
                changed.append(await self.store.finish(record, ExecutionStatus.SUPERSEDED))
            elif wanted is not None and record.idempotency_key not in wanted and (
                record.next_attempt_at is None or record.next_attempt_at <= now
            ):
                logger.info(
                    f"Execution {record.id} superseded: '{record.reason}' no longer applies to "
                    f"{record.token} / {record.spender}"
                )
                changed.append(
                    await self.store.finish(
                        record, ExecutionStatus.SUPERSEDED, f"{record.reason} no longer proposed"
                    )
                )
        return changed

    async def settle(self, delegation: DelegationRecord) -> list[ExecutionRecord]:
        """Close out pending records of a paused or revoked delegation.

        Submitted transactions are still followed to confirmation; nothing
        new is submitted.
        """
        changed: list[ExecutionRecord] = []
        for record in await self.store.list_open(delegation.id):
            if record.tx_ref is not None:
                updated = await self._check_receipt(record)
                if updated is not None:
                    changed.append(updated)
            elif not self.store.is_inflight(record.idempotency_key):
                changed.append(
                    await self.store.finish(
                        record,
                        ExecutionStatus.FAILED,
                        f"delegation {delegation.status.value} before submission",
                    )
                )
        return changed
