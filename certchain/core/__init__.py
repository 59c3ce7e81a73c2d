# Core certificate services
from .errors import (
    CertChainError,
    Conflict,
    Forbidden,
    InvalidTransition,
    LedgerError,
    LedgerUnavailable,
    NotFound,
    RateLimited,
    RejectedByLedger,
    ValidationError,
)
from .hasher import Hasher, CanonicalSerializationError, normalize_hash, is_valid_hash
from .signer import Signer
from .signing_service import KeyPair, SigningService, get_signing_service
from .ledger_client import (
    LedgerClient,
    LedgerConfig,
    InMemoryLedgerClient,
    JsonRpcLedgerClient,
    create_ledger_client,
)
from .certificates import CertificateVersionChain
from .audit import AuditTrailAggregator, paginate
from .workflow import ActionRequestWorkflow, RequestEvent, TRANSITIONS
from .rate_limiter import (
    AbuseRateLimiter,
    AttemptCounter,
    InMemoryAttemptCounter,
    RateLimitConfig,
)
from .verification import VerificationService

__all__ = [
    "CertChainError",
    "Conflict",
    "Forbidden",
    "InvalidTransition",
    "LedgerError",
    "LedgerUnavailable",
    "NotFound",
    "RateLimited",
    "RejectedByLedger",
    "ValidationError",
    "Hasher",
    "CanonicalSerializationError",
    "normalize_hash",
    "is_valid_hash",
    "Signer",
    "KeyPair",
    "SigningService",
    "get_signing_service",
    "LedgerClient",
    "LedgerConfig",
    "InMemoryLedgerClient",
    "JsonRpcLedgerClient",
    "create_ledger_client",
    "CertificateVersionChain",
    "AuditTrailAggregator",
    "paginate",
    "ActionRequestWorkflow",
    "RequestEvent",
    "TRANSITIONS",
    "AbuseRateLimiter",
    "AttemptCounter",
    "InMemoryAttemptCounter",
    "RateLimitConfig",
    "VerificationService",
]
