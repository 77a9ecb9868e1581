"""Pydantic models mapping to the Wallet Autopilot database tables."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DelegationStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    REVOKED = "revoked"


class ScopeType(str, Enum):
    FUNCTION_CALL = "functionCall"
    SPENDING_LIMIT = "spendingLimit"
    TRANSFER = "transfer"


class ActionKind(str, Enum):
    REVOKE = "revoke"
    CONSOLIDATE = "consolidate"
    CLEANUP = "cleanup"


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ABANDONED = "abandoned"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.PENDING


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    """Generate a short hex ID (12 characters)."""
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime | None) -> Optional[datetime]:
    """Parse a stored ISO timestamp back into an aware ``datetime``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Delegations
# ---------------------------------------------------------------------------

class ScopeLimits(BaseModel):
    """Quantitative bounds on a delegation."""

    max_actions_per_cycle: Optional[int] = None


class DelegationScope(BaseModel):
    """What a delegation authorizes the agent to do."""

    type: ScopeType = ScopeType.FUNCTION_CALL
    targets: list[str] = Field(default_factory=list)     # token contracts
    selectors: list[str] = Field(default_factory=list)   # 4-byte function selectors
    action_kinds: list[ActionKind] = Field(default_factory=lambda: [ActionKind.REVOKE])
    limits: ScopeLimits = Field(default_factory=ScopeLimits)

    def allows_target(self, target: str) -> bool:
        return target.lower() in {t.lower() for t in self.targets}


class DelegationRequest(BaseModel):
    """Registration input, as received from the API or CLI."""

    delegator: str
    delegate: str
    scope: DelegationScope = Field(default_factory=DelegationScope)
    proof_of_grant: str = ""


class DelegationRecord(BaseModel):
    """Maps to the ``delegations`` table."""

    id: str = Field(default_factory=_new_id)
    delegator: str
    delegate: str
    scope: DelegationScope
    status: DelegationStatus = DelegationStatus.ACTIVE
    proof_of_grant: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == DelegationStatus.ACTIVE

    @classmethod
    def from_row(cls, row: dict) -> DelegationRecord:
        return cls(
            id=row["id"],
            delegator=row["delegator"],
            delegate=row["delegate"],
            scope=DelegationScope.model_validate(json.loads(row["scope_json"])),
            status=DelegationStatus(row["status"]),
            proof_of_grant=row["proof_of_grant"] or "",
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


# ---------------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------------

class ExecutionRecord(BaseModel):
    """Maps to the ``execution_records`` table.

    Written in ``pending`` state before anything is submitted, so every
    submitted transaction has a durable record. ``tx_ref`` is set once the
    authority provider accepts the submission.
    """

    id: str = Field(default_factory=_new_id)
    idempotency_key: str
    delegation_id: str
    kind: ActionKind = ActionKind.REVOKE
    token: str
    spender: str
    reason: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    attempt_count: int = 0
    tx_ref: Optional[str] = None
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def awaiting_confirmation(self) -> bool:
        return self.status == ExecutionStatus.PENDING and self.tx_ref is not None

    @classmethod
    def from_row(cls, row: dict) -> ExecutionRecord:
        return cls(
            id=row["id"],
            idempotency_key=row["idempotency_key"],
            delegation_id=row["delegation_id"],
            kind=ActionKind(row["kind"]),
            token=row["token"],
            spender=row["spender"],
            reason=row["reason"],
            status=ExecutionStatus(row["status"]),
            attempt_count=row["attempt_count"],
            tx_ref=row["tx_ref"],
            last_error=row["last_error"],
            next_attempt_at=parse_timestamp(row["next_attempt_at"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Wallet health
# ---------------------------------------------------------------------------

class WalletHealth(BaseModel):
    """Aggregate approval health for one wallet.

    ``indexed`` is *False* when the indexer has never seen the wallet, which
    is different from an indexed wallet with zero risky approvals.
    """

    wallet: str
    indexed: bool = True
    score: Optional[int] = None
    total_approvals: int = 0
    risky_approvals: int = 0
    unlimited_approvals: int = 0
    spam_tokens: int = 0
    dust_token_count: int = 0
    last_updated: Optional[datetime] = None
