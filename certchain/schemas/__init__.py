# Canonical schemas for the certificate ledger and its governance records.

from .actor import Actor, ActorRole
from .certificate import (
    CertificateRecord,
    IssueResult,
    Receipt,
    SearchResult,
    StateChange,
    TransactionDescriptor,
    TransactionKind,
)
from .events import (
    AuditAction,
    AuditEvent,
    IssuedEvent,
    Page,
    PageMeta,
    RawLedgerEvent,
    ReactivatedEvent,
    RevokedEvent,
)
from .action_request import (
    ActionRequest,
    ActionType,
    ExecutionResult,
    NewActionRequest,
    RequestStatus,
)
from .verification import (
    SYSTEM_ACTOR,
    BlockedClient,
    RateLimitDecision,
    VerificationDecision,
    VerificationLog,
    VerifierInfo,
)

__all__ = [
    # Actor
    "Actor",
    "ActorRole",
    # Certificate
    "CertificateRecord",
    "IssueResult",
    "Receipt",
    "SearchResult",
    "StateChange",
    "TransactionDescriptor",
    "TransactionKind",
    # Events
    "AuditAction",
    "AuditEvent",
    "IssuedEvent",
    "Page",
    "PageMeta",
    "RawLedgerEvent",
    "ReactivatedEvent",
    "RevokedEvent",
    # Action requests
    "ActionRequest",
    "ActionType",
    "ExecutionResult",
    "NewActionRequest",
    "RequestStatus",
    # Verification
    "SYSTEM_ACTOR",
    "BlockedClient",
    "RateLimitDecision",
    "VerificationDecision",
    "VerificationLog",
    "VerifierInfo",
]
