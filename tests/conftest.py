"""Shared fixtures: a temporary database and fakes for the two external collaborators."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from wallet_autopilot.agent.executor import ExecutionStore, TransactionExecutor
from wallet_autopilot.agent.registry import APPROVE_SELECTOR, DelegationRegistry
from wallet_autopilot.agent.rules import ApprovalObservation, ApprovalStatus, ProposedAction
from wallet_autopilot.chain.authority import BaseAuthorityProvider, TxStatus
from wallet_autopilot.chain.indexer import summarize_health
from wallet_autopilot.config import MAX_UINT256, ExecutorConfig
from wallet_autopilot.storage.database import Database
from wallet_autopilot.storage.models import (
    ActionKind,
    DelegationRequest,
    DelegationScope,
    ScopeLimits,
    WalletHealth,
)

WALLET = "0x" + "a1" * 20
AGENT = "0x" + "b2" * 20
TOKEN = "0x" + "c3" * 20
OTHER_TOKEN = "0x" + "c4" * 20
SPENDER = "0x" + "d5" * 20
OTHER_SPENDER = "0x" + "d6" * 20

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def wallet(i: int) -> str:
    return f"0x{i + 1:040x}"


def make_approval(
    token: str = TOKEN,
    spender: str = SPENDER,
    amount: int = 1000,
    is_risky: bool = False,
    age_days: float = 1,
    last_used_days: float | None = None,
    owner: str = WALLET,
    status: ApprovalStatus = ApprovalStatus.ACTIVE,
    now: datetime = NOW,
) -> ApprovalObservation:
    return ApprovalObservation(
        owner=owner,
        spender=spender,
        token=token,
        amount=amount,
        is_unlimited=amount == MAX_UINT256,
        is_risky=is_risky,
        approved_at=now - timedelta(days=age_days),
        last_used_at=now - timedelta(days=last_used_days) if last_used_days is not None else None,
        observed_at=now,
        status=status,
    )


def revoke_action(token: str = TOKEN, spender: str = SPENDER, reason: str = "unlimited approval") -> ProposedAction:
    return ProposedAction(
        kind=ActionKind.REVOKE, token=token, spender=spender, rule="unlimited", reason=reason
    )


def delegation_request(
    delegator: str = WALLET,
    targets: list[str] | None = None,
    max_actions: int | None = None,
    action_kinds: list[ActionKind] | None = None,
) -> DelegationRequest:
    return DelegationRequest(
        delegator=delegator,
        delegate=AGENT,
        scope=DelegationScope(
            targets=targets or [TOKEN],
            selectors=[APPROVE_SELECTOR],
            action_kinds=action_kinds or [ActionKind.REVOKE],
            limits=ScopeLimits(max_actions_per_cycle=max_actions),
        ),
        proof_of_grant="0xsigned-delegation",
    )


class FakeIndexer:
    """In-memory indexer keyed by owner address."""

    def __init__(self) -> None:
        self.approvals: dict[str, list[ApprovalObservation]] = {}
        self.health_rows: dict[str, dict] = {}
        self.errors: dict[str, Exception] = {}
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.delay = 0.0
        self.active = 0
        self.max_active = 0
        self.calls = 0

    async def get_approvals(self, owner: str, risky_only: bool = False) -> list[ApprovalObservation]:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.entered.set()
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if owner in self.errors:
                raise self.errors[owner]
            rows = self.approvals.get(owner, [])
            return [a for a in rows if a.is_risky] if risky_only else list(rows)
        finally:
            self.active -= 1

    async def get_wallet_health(self, address: str, unlimited_threshold: int) -> WalletHealth:
        row = self.health_rows.get(address)
        approvals = self.approvals.get(address, [])
        if row is None and not approvals:
            return WalletHealth(wallet=address, indexed=False)
        return summarize_health(address, approvals, row, unlimited_threshold)

    async def close(self) -> None:
        return None


class FakeAuthority(BaseAuthorityProvider):
    """Records submissions; raises queued errors first, then accepts."""

    def __init__(self) -> None:
        self.submissions: list = []
        self.errors: list[Exception] = []
        self.always_fail: Exception | None = None
        self.statuses: dict[str, TxStatus] = {}
        self.delay = 0.0
        self.closed = False

    async def submit(self, delegation, intent) -> str:
        self.submissions.append(intent)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        return f"0x{len(self.submissions):064x}"

    async def transaction_status(self, tx_ref: str) -> TxStatus:
        return self.statuses.get(tx_ref, TxStatus.PENDING)

    async def close(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "autopilot.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def registry(db):
    return DelegationRegistry(db)


@pytest.fixture
def store(db):
    return ExecutionStore(db)


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def indexer():
    return FakeIndexer()


@pytest.fixture
def executor_config():
    return ExecutorConfig(
        max_attempts=3,
        backoff_base_seconds=60.0,
        backoff_max_seconds=600.0,
        submit_timeout_seconds=1.0,
    )


@pytest.fixture
def executor(executor_config, registry, store, authority):
    return TransactionExecutor(executor_config, registry, store, authority, confirmation_window=600.0)


@pytest_asyncio.fixture
async def delegation(registry):
    return await registry.register(delegation_request())
