"""Error taxonomy for Wallet Autopilot.

Every error carries a stable ``code`` and a ``retryable`` flag so the
executor and the HTTP layer can decide what to do without parsing
messages:

- ``ValidationError``: malformed registration input, rejected synchronously.
- ``ScopeViolation``: action outside delegation bounds, dropped, never retried.
- ``TransientExternalError``: timeout/network on a collaborator, retried.
- ``PermanentExternalError``: explicit rejection, terminal.
- ``InternalInvariantViolation``: a bug-class condition, fails loudly.
"""

from __future__ import annotations

from typing import Any


class AutopilotError(Exception):
    """Base exception with a stable error code."""

    code = "AUTOPILOT_E_INTERNAL"
    retryable = False
    http_status = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def as_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(AutopilotError):
    code = "AUTOPILOT_E_VALIDATION"
    http_status = 400


class DelegationNotFound(AutopilotError):
    code = "AUTOPILOT_E_DELEGATION_NOT_FOUND"
    http_status = 404


class ScopeViolation(AutopilotError):
    code = "AUTOPILOT_E_SCOPE"
    http_status = 403


class TransientExternalError(AutopilotError):
    code = "AUTOPILOT_E_EXTERNAL_TRANSIENT"
    retryable = True
    http_status = 504


class PermanentExternalError(AutopilotError):
    code = "AUTOPILOT_E_EXTERNAL_PERMANENT"
    http_status = 502


class AuthorityRejected(PermanentExternalError):
    """Structured rejection from the authority provider."""

    code = "AUTOPILOT_E_AUTHORITY_REJECTED"

    # Reasons the relay may return
    INSUFFICIENT_SCOPE = "insufficient_scope"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    REJECTED_ON_CHAIN = "rejected_on_chain"

    def __init__(self, reason: str, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or f"Authority provider rejected submission: {reason}", details=details)
        self.reason = reason
        self.details.setdefault("reason", reason)


class FeeCeilingExceeded(PermanentExternalError):
    code = "AUTOPILOT_E_FEE_CEILING"


class InternalInvariantViolation(AutopilotError):
    code = "AUTOPILOT_E_INVARIANT"
