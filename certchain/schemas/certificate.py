"""
Certificate Schema

A certificate is a ledger-resident, content-addressed record.
Once written it never changes, except for the is_revoked flag,
which only flips through ledger transactions.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CertificateRecord(BaseModel):
    """
    One version of one student's certificate.

    INVARIANT:
        cert_hash == Hasher.certificate_hash(student_id, student_name,
                                             degree_program, cgpa, version,
                                             issuance_timestamp)
    """

    model_config = ConfigDict(frozen=True)

    cert_hash: str = Field(..., description="Content-derived SHA-256 hash (64 hex chars)")
    student_id: str = Field(..., min_length=1)
    student_name: str = Field(..., min_length=1)
    degree: str
    program: str
    cgpa: Decimal = Field(
        ...,
        ge=Decimal("0"),
        le=Decimal("4"),
        decimal_places=2,
        description="Fixed-point, two decimals. Carried on the ledger as cgpa * 100.",
    )
    issuing_authority: str
    version: int = Field(..., ge=1, description="Position in the student's version chain")
    issuer: str = Field(..., description="Address of the actor who issued this version")
    signature: str = Field(..., description="Ed25519 signature over cert_hash (base64)")
    issuance_timestamp: int = Field(..., ge=0, description="Unix seconds, UTC")
    is_revoked: bool = False

    @property
    def degree_program(self) -> str:
        return f"{self.degree} - {self.program}"

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.issuance_timestamp, tz=timezone.utc)

    @property
    def cgpa_scaled(self) -> int:
        """CGPA as the integer the ledger stores."""
        return int(self.cgpa * 100)


class TransactionKind(str, Enum):
    """Write transactions the certificate registry accepts."""
    ISSUE = "issue"
    REVOKE = "revoke"
    REACTIVATE = "reactivate"


class TransactionDescriptor(BaseModel):
    """
    A write submitted to the ledger.

    For ISSUE the full record travels with the transaction; for
    REVOKE/REACTIVATE only the hash and the acting address.
    """

    model_config = ConfigDict(frozen=True)

    kind: TransactionKind
    cert_hash: str
    actor: str
    record: Optional[CertificateRecord] = None


class Receipt(BaseModel):
    """Confirmation that a transaction was mined."""

    model_config = ConfigDict(frozen=True)

    tx_id: str
    block_ordinal: int = Field(..., ge=1)


class IssueResult(BaseModel):
    record: CertificateRecord
    receipt: Receipt


class StateChange(BaseModel):
    """
    Outcome of revoke/reactivate.

    changed=False means the certificate was already in the requested state
    and no transaction was submitted; receipt is None in that case.
    """

    cert_hash: str
    is_revoked: bool
    changed: bool
    receipt: Optional[Receipt] = None
    message: str = ""


class SearchResult(BaseModel):
    """Matches for a free-text certificate search."""

    student_ids: list[str] = Field(default_factory=list)
    certificates: list[CertificateRecord] = Field(default_factory=list)
