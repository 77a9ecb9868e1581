"""Rule engine - maps observed approvals to proposed actions.

Pure and side-effect free: no I/O, no clock reads (``now`` is passed in),
so the same input always produces the same output in the same order.

Rules run in precedence order and the first match wins:

1. ``unlimited`` - amount at or above the configured near-max threshold.
2. ``risky``     - spender flagged risky by the risk predicate.
3. ``stale``     - approval older than the staleness threshold with no
   recent usage signal.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from wallet_autopilot.config import RulesConfig
from wallet_autopilot.storage.models import ActionKind

REASON_UNLIMITED = "unlimited approval"
REASON_RISKY = "risky spender"
REASON_STALE = "stale/unused"


class ApprovalStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass(frozen=True)
class ApprovalObservation:
    """One token approval as currently reported by the indexer."""

    owner: str
    spender: str
    token: str
    amount: int
    is_unlimited: bool = False
    is_risky: bool = False
    approved_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: ApprovalStatus = ApprovalStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == ApprovalStatus.ACTIVE and self.amount > 0

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "spender": self.spender,
            "token": self.token,
            "amount": str(self.amount),
            "isUnlimited": self.is_unlimited,
            "isRisky": self.is_risky,
            "approvedAt": self.approved_at.isoformat() if self.approved_at else None,
            "lastUsedAt": self.last_used_at.isoformat() if self.last_used_at else None,
            "observedAt": self.observed_at.isoformat(),
            "status": self.status.value,
        }


@dataclass(frozen=True)
class ProposedAction:
    """An action the rule engine wants the executor to carry out."""

    kind: ActionKind
    token: str
    spender: str
    rule: str
    reason: str

    def idempotency_key(self, delegation_id: str) -> str:
        """Deterministic key for submitting this action at most once."""
        payload = "|".join(
            (delegation_id, self.token.lower(), self.spender.lower(), self.reason)
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


RiskPredicate = Callable[[ApprovalObservation], bool]
UsagePredicate = Callable[[ApprovalObservation, datetime], bool]


def flagged_or_listed(risky_spenders: list[str]) -> RiskPredicate:
    """Default risk policy: the indexer flag or a configured spender denylist."""
    denylist = frozenset(s.lower() for s in risky_spenders)

    def _is_risky(approval: ApprovalObservation) -> bool:
        return approval.is_risky or approval.spender.lower() in denylist

    return _is_risky


def used_within(days: int) -> UsagePredicate:
    """Default usage policy: the spender moved tokens within ``days``."""
    window = timedelta(days=days)

    def _recently_used(approval: ApprovalObservation, now: datetime) -> bool:
        return approval.last_used_at is not None and now - approval.last_used_at <= window

    return _recently_used


class RuleEngine:
    """Evaluates approvals against the configured rules.

    The risk and usage heuristics are pluggable predicates; the defaults
    are built from :class:`RulesConfig`.
    """

    def __init__(
        self,
        config: RulesConfig | None = None,
        risk_predicate: RiskPredicate | None = None,
        usage_predicate: UsagePredicate | None = None,
    ) -> None:
        self.config = config or RulesConfig()
        self._is_risky = risk_predicate or flagged_or_listed(self.config.risky_spenders)
        self._recently_used = usage_predicate or used_within(self.config.usage_window_days)
        self._staleness = timedelta(days=self.config.staleness_days)
        self._rules: list[tuple[str, Callable[[ApprovalObservation, datetime], Optional[str]]]] = [
            ("unlimited", self._check_unlimited),
            ("risky", self._check_risky),
            ("stale", self._check_stale),
        ]

    # ------------------------------------------------------------------
    # Individual rules
    # ------------------------------------------------------------------

    def _check_unlimited(self, approval: ApprovalObservation, now: datetime) -> Optional[str]:
        if approval.is_unlimited or approval.amount >= self.config.unlimited_threshold:
            return REASON_UNLIMITED
        return None

    def _check_risky(self, approval: ApprovalObservation, now: datetime) -> Optional[str]:
        return REASON_RISKY if self._is_risky(approval) else None

    def _check_stale(self, approval: ApprovalObservation, now: datetime) -> Optional[str]:
        if approval.approved_at is None:
            return None
        if now - approval.approved_at <= self._staleness:
            return None
        if self._recently_used(approval, now):
            return None
        return REASON_STALE

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, approval: ApprovalObservation, now: datetime) -> Optional[ProposedAction]:
        """Return the first matching action for *approval*, or ``None``."""
        if not approval.is_active:
            return None
        for name, check in self._rules:
            if name not in self.config.enabled:
                continue
            reason = check(approval, now)
            if reason is not None:
                return ProposedAction(
                    kind=ActionKind.REVOKE,
                    token=approval.token,
                    spender=approval.spender,
                    rule=name,
                    reason=reason,
                )
        return None

    def evaluate_all(
        self,
        approvals: list[ApprovalObservation],
        now: datetime | None = None,
    ) -> list[ProposedAction]:
        """Evaluate every approval, dropping non-matches, keeping input order."""
        now = now or datetime.now(timezone.utc)
        actions = (self.evaluate(a, now) for a in approvals)
        return [a for a in actions if a is not None]
