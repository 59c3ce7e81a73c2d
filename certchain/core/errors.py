"""
Error Taxonomy

Every failure the core can surface carries a stable ``kind`` and a
human-readable message, so callers can render something specific instead
of a generic failure.

    CertChainError
    ├── NotFound
    ├── Conflict
    ├── InvalidTransition
    ├── Forbidden
    ├── RateLimited
    ├── ValidationError
    └── LedgerError
        ├── LedgerUnavailable   (transport / timeout, the only retryable kind)
        └── RejectedByLedger    (definitive contract-level refusal)

Guard-condition failures are never retried by the core.
"""

from datetime import datetime
from typing import Any, Optional


class CertChainError(Exception):
    """Base exception for all core errors."""

    kind: str = "error"
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Structured form for API responses and logs."""
        return {"error": self.kind, "message": self.message}


class NotFound(CertChainError):
    """Raised when a certificate, student or request does not exist."""
    kind = "not_found"


class Conflict(CertChainError):
    """Raised on a duplicate open request or a lost version race."""
    kind = "conflict"


class InvalidTransition(CertChainError):
    """Raised when a state-machine guard fails."""
    kind = "invalid_transition"


class Forbidden(CertChainError):
    """Raised when the actor is not allowed to perform a transition."""
    kind = "forbidden"


class ValidationError(CertChainError):
    """Raised when input is malformed."""
    kind = "validation"


class RateLimited(CertChainError):
    """Raised when a client is blocked or over its attempt budget."""

    kind = "rate_limited"

    def __init__(self, message: str, blocked_until: Optional[datetime] = None):
        super().__init__(message)
        self.blocked_until = blocked_until

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.blocked_until is not None:
            data["blocked_until"] = self.blocked_until.isoformat()
        return data


class LedgerError(CertChainError):
    """Base exception for failures talking to the ledger."""
    kind = "ledger_error"


class LedgerUnavailable(LedgerError):
    """
    Raised on transport failures and timeouts.

    Idempotent reads and revoke/reactivate may be retried by the caller;
    issue may be retried only after re-reading the version head.
    """
    kind = "ledger_unavailable"
    retryable = True


class RejectedByLedger(LedgerError):
    """Raised when the contract reverts a transaction."""

    kind = "rejected_by_ledger"

    def __init__(self, reason: str):
        super().__init__(f"Ledger rejected transaction: {reason}")
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data
