"""
Verification Schemas

Public verification traffic is unauthenticated. These records back the
abuse protection in front of it: durable blocks, the per-submission log,
and the decisions returned to callers.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .certificate import CertificateRecord

SYSTEM_ACTOR = "system"


class BlockedClient(BaseModel):
    """A durable block on a client IP. Outlives the volatile attempt counters."""

    model_config = ConfigDict(frozen=True)

    ip: str
    blocked_until: datetime
    reason: str
    blocked_by: str = Field(
        default=SYSTEM_ACTOR,
        description="'system' for automatic blocks, an admin address otherwise",
    )
    created_at: datetime

    def is_active(self, now: datetime) -> bool:
        return self.blocked_until > now


class VerifierInfo(BaseModel):
    """Self-declared identity of a third party verifying a certificate."""

    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    institution: str = ""
    website: str = ""


class VerificationLog(BaseModel):
    """One accepted verification submission."""

    model_config = ConfigDict(frozen=True)

    id: int
    cert_hash: str
    ip: str
    user_agent: Optional[str] = None
    verifier_name: str
    verifier_email: str
    verifier_institution: str = ""
    verifier_website: str = ""
    verified_at: datetime


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining_attempts: int
    blocked_until: Optional[datetime] = None
    reason: Optional[str] = None


class VerificationDecision(BaseModel):
    accepted: bool
    remaining_attempts: int
    log_id: Optional[int] = None
    certificate: Optional[CertificateRecord] = None
