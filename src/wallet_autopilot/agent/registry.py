"""Delegation registry - the authoritative store of scoped grants.

The ``delegations`` table is the source of truth. Writes are serialised
with an ``asyncio.Lock`` and committed before the lock is released; every
read is a single SELECT, so readers get a consistent snapshot and a
revoke committed before a read is always visible to it (also from another
process sharing the database file, e.g. the CLI).
"""

from __future__ import annotations

import asyncio
import logging
import re

from wallet_autopilot.errors import DelegationNotFound, ValidationError
from wallet_autopilot.storage.database import Database
from wallet_autopilot.storage.models import (
    ActionKind,
    DelegationRecord,
    DelegationRequest,
    DelegationScope,
    DelegationStatus,
    utcnow,
)

logger = logging.getLogger("wallet_autopilot.registry")

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_SELECTOR_RE = re.compile(r"^0x[0-9a-fA-F]{8}$")

# approve(address,uint256)
APPROVE_SELECTOR = "0x095ea7b3"


def normalize_address(value: str, field_name: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"'{field_name}' must not be empty.")
    if not _ADDRESS_RE.match(value):
        raise ValidationError(
            f"'{field_name}' is not a valid address: {value!r}",
            details={"field": field_name},
        )
    return value.lower()


def validate_scope(scope: DelegationScope) -> DelegationScope:
    """Return a normalised copy of *scope* or raise ``ValidationError``."""
    if not scope.targets:
        raise ValidationError("Scope must list at least one target contract.")
    targets = [normalize_address(t, "scope.targets") for t in scope.targets]

    selectors = []
    for selector in scope.selectors:
        if not _SELECTOR_RE.match(selector or ""):
            raise ValidationError(
                f"Malformed selector {selector!r}; expected 0x followed by 8 hex digits.",
                details={"field": "scope.selectors"},
            )
        selectors.append(selector.lower())

    if not scope.action_kinds:
        raise ValidationError("Scope must allow at least one action kind.")
    if ActionKind.REVOKE in scope.action_kinds and selectors and APPROVE_SELECTOR not in selectors:
        raise ValidationError(
            "Scope allows revocations but not the approve(address,uint256) selector.",
            details={"field": "scope.selectors"},
        )

    limit = scope.limits.max_actions_per_cycle
    if limit is not None and limit < 0:
        raise ValidationError("limits.max_actions_per_cycle must not be negative.")

    return scope.model_copy(
        update={
            "targets": list(dict.fromkeys(targets)),
            "selectors": list(dict.fromkeys(selectors)),
        }
    )


class DelegationRegistry:
    """Stores delegations from wallets (delegators) to the agent (delegate)."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def register(self, request: DelegationRequest) -> DelegationRecord:
        """Validate and store a delegation, keyed by (delegator, delegate).

        Registering a pair that already exists replaces its scope and
        re-activates it under the same id.
        """
        delegator = normalize_address(request.delegator, "delegator")
        delegate = normalize_address(request.delegate, "delegate")
        if delegator == delegate:
            raise ValidationError("A wallet cannot delegate to itself.")
        if not request.proof_of_grant.strip():
            raise ValidationError("'proof_of_grant' must not be empty.")
        scope = validate_scope(request.scope)

        async with self._write_lock:
            existing = await self._fetch_by_pair(delegator, delegate)
            now = utcnow()
            if existing is not None:
                record = existing.model_copy(
                    update={
                        "scope": scope,
                        "status": DelegationStatus.ACTIVE,
                        "proof_of_grant": request.proof_of_grant,
                        "updated_at": now,
                    }
                )
                await self.db.execute(
                    "UPDATE delegations SET scope_json = ?, status = ?, proof_of_grant = ?, "
                    "updated_at = ? WHERE id = ?",
                    (
                        scope.model_dump_json(),
                        record.status.value,
                        record.proof_of_grant,
                        now.isoformat(),
                        record.id,
                    ),
                )
                logger.info(f"Delegation re-registered: {record.id} ({delegator} -> {delegate})")
                return record

            record = DelegationRecord(
                delegator=delegator,
                delegate=delegate,
                scope=scope,
                proof_of_grant=request.proof_of_grant,
                created_at=now,
                updated_at=now,
            )
            await self.db.execute(
                "INSERT INTO delegations "
                "(id, delegator, delegate, scope_json, status, proof_of_grant, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.delegator,
                    record.delegate,
                    scope.model_dump_json(),
                    record.status.value,
                    record.proof_of_grant,
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
        logger.info(f"Delegation registered: {record.id} ({delegator} -> {delegate})")
        return record

    async def revoke(self, delegation_id: str) -> DelegationRecord:
        """Revoke a delegation. Revoking twice is not an error."""
        return await self._transition(delegation_id, DelegationStatus.REVOKED)

    async def pause(self, delegation_id: str) -> DelegationRecord:
        return await self._transition(delegation_id, DelegationStatus.PAUSED)

    async def resume(self, delegation_id: str) -> DelegationRecord:
        return await self._transition(delegation_id, DelegationStatus.ACTIVE)

    async def _transition(self, delegation_id: str, target: DelegationStatus) -> DelegationRecord:
        async with self._write_lock:
            record = await self.get(delegation_id)
            if record is None:
                raise DelegationNotFound(f"No delegation with id '{delegation_id}'.")
            if record.status == target:
                return record
            if record.status == DelegationStatus.REVOKED:
                # Revoked is final; only re-registration re-activates a pair.
                if target == DelegationStatus.PAUSED:
                    return record
                raise ValidationError(
                    f"Delegation {delegation_id} is revoked; register it again instead."
                )
            now = utcnow()
            await self.db.execute(
                "UPDATE delegations SET status = ?, updated_at = ? WHERE id = ?",
                (target.value, now.isoformat(), delegation_id),
            )
        logger.info(f"Delegation {delegation_id}: {record.status.value} -> {target.value}")
        return record.model_copy(update={"status": target, "updated_at": now})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, delegation_id: str) -> DelegationRecord | None:
        row = await self.db.fetch_one(
            "SELECT * FROM delegations WHERE id = ?", (delegation_id,)
        )
        return DelegationRecord.from_row(row) if row else None

    async def list_active(self, delegate: str) -> list[DelegationRecord]:
        """Snapshot of the active delegations granted to *delegate*."""
        rows = await self.db.fetch_all(
            "SELECT * FROM delegations WHERE delegate = ? AND status = ? ORDER BY created_at",
            (delegate.lower(), DelegationStatus.ACTIVE.value),
        )
        return [DelegationRecord.from_row(r) for r in rows]

    async def list_settling(self, delegate: str) -> list[DelegationRecord]:
        """Paused or revoked delegations that still have pending executions."""
        rows = await self.db.fetch_all(
            "SELECT DISTINCT d.* FROM delegations d "
            "JOIN execution_records e ON e.delegation_id = d.id "
            "WHERE d.delegate = ? AND d.status != ? AND e.status = 'pending' "
            "ORDER BY d.created_at",
            (delegate.lower(), DelegationStatus.ACTIVE.value),
        )
        return [DelegationRecord.from_row(r) for r in rows]

    async def list_for_wallet(self, delegator: str) -> list[DelegationRecord]:
        rows = await self.db.fetch_all(
            "SELECT * FROM delegations WHERE delegator = ? ORDER BY created_at",
            (delegator.lower(),),
        )
        return [DelegationRecord.from_row(r) for r in rows]

    async def list_all(self) -> list[DelegationRecord]:
        rows = await self.db.fetch_all("SELECT * FROM delegations ORDER BY created_at")
        return [DelegationRecord.from_row(r) for r in rows]

    async def has_delegation(self, delegator: str, delegate: str) -> bool:
        record = await self._fetch_by_pair(delegator.lower(), delegate.lower())
        return record is not None and record.is_active

    async def _fetch_by_pair(self, delegator: str, delegate: str) -> DelegationRecord | None:
        row = await self.db.fetch_one(
            "SELECT * FROM delegations WHERE delegator = ? AND delegate = ?",
            (delegator, delegate),
        )
        return DelegationRecord.from_row(row) if row else None
