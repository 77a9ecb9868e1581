"""Wallet Autopilot storage layer -- async SQLite database and Pydantic models."""

from wallet_autopilot.storage.database import Database, get_database
from wallet_autopilot.storage.models import (
    ActionKind,
    DelegationRecord,
    DelegationRequest,
    DelegationScope,
    DelegationStatus,
    ExecutionRecord,
    ExecutionStatus,
    ScopeLimits,
    ScopeType,
    WalletHealth,
)

__all__ = [
    "Database",
    "get_database",
    "ActionKind",
    "DelegationRecord",
    "DelegationRequest",
    "DelegationScope",
    "DelegationStatus",
    "ExecutionRecord",
    "ExecutionStatus",
    "ScopeLimits",
    "ScopeType",
    "WalletHealth",
]
