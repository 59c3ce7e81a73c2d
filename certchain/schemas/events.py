"""
Audit Event Schema

The ledger emits three kinds of certificate events. Audit views are
reconstructed from them on every read; nothing here is stored.

Each audit event:
- Shares a base shape (hash, actor, block, tx, timestamp)
- Is tagged by `action`
- Carries kind-specific fields only where they exist (ISSUED)
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Generic, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field


class AuditAction(str, Enum):
    """
    Ledger event kinds.
    You can add more later, never remove.
    """
    ISSUED = "ISSUED"
    REVOKED = "REVOKED"
    REACTIVATED = "REACTIVATED"


class RawLedgerEvent(BaseModel):
    """An event exactly as LedgerClient.query_events returns it."""

    model_config = ConfigDict(frozen=True)

    kind: AuditAction
    cert_hash: str
    actor: str
    block_ordinal: int = Field(..., ge=1)
    tx_id: str
    student_id: Optional[str] = None
    version: Optional[int] = None


class _AuditEventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    cert_hash: str
    actor: str = Field(..., description="Issuer, revoker or reactivator address")
    block_ordinal: int
    tx_id: str
    timestamp: Optional[datetime] = Field(
        default=None,
        description="Block wall-clock time; None when the lookup failed",
    )


class IssuedEvent(_AuditEventBase):
    action: Literal[AuditAction.ISSUED] = AuditAction.ISSUED
    student_id: Optional[str] = None
    version: Optional[int] = None


class RevokedEvent(_AuditEventBase):
    action: Literal[AuditAction.REVOKED] = AuditAction.REVOKED


class ReactivatedEvent(_AuditEventBase):
    action: Literal[AuditAction.REACTIVATED] = AuditAction.REACTIVATED


AuditEvent = Annotated[
    Union[IssuedEvent, RevokedEvent, ReactivatedEvent],
    Field(discriminator="action"),
]


# ============================================================
# Pagination
# Shared by audit trails, action request listings and verification logs
# ============================================================

T = TypeVar("T")


class PageMeta(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    has_more: bool


class Page(BaseModel, Generic[T]):
    data: list[T]
    meta: PageMeta
