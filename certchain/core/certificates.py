"""
Certificate Version Chain

Per-student ordered sequence of certificate versions on the ledger.

Rules (enforced here or by the ledger):
- Versions per student are contiguous from 1
- A certificate's hash is derived from its own content
- Only is_revoked ever changes after issuance, and only via the ledger
- Revoke/reactivate are idempotent: the target state is success

CONCURRENCY:
Issuing is read-then-write: the next version is read from the ledger, then
the transaction is submitted. Two concurrent issues for one student can both
read the same head; the ledger rejects the loser and that rejection surfaces
as Conflict. issue_with_retry() re-reads the head and tries again.

An optional per-student asyncio.Lock avoids wasting ledger writes inside one
process. The ledger remains the ground truth across processes.
"""

import asyncio
import contextlib
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, Union

from ..observability import get_logger, get_metrics
from ..schemas import (
    Actor,
    AuditAction,
    CertificateRecord,
    IssueResult,
    SearchResult,
    StateChange,
    TransactionDescriptor,
    TransactionKind,
)
from .errors import CertChainError, Conflict, NotFound, RejectedByLedger, ValidationError
from .hasher import CanonicalSerializationError, Hasher, is_valid_hash, normalize_hash, quantize_cgpa
from .ledger_client import LedgerClient
from .signing_service import SigningService, get_signing_service

logger = get_logger(__name__)

CGPA_MIN = Decimal("0.00")
CGPA_MAX = Decimal("4.00")
SEARCH_LIMIT = 5


class CertificateVersionChain:
    """
    Issues, versions, revokes, reactivates and verifies certificates.

    Usage:
        chain = CertificateVersionChain(ledger)
        result = await chain.issue("S1", "Ada", "BSc", "CS", "3.85", "Uni", actor)
        await chain.revoke(result.record.cert_hash, admin)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        signing_service: Optional[SigningService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        serialize_per_student: bool = True,
    ):
        self._ledger = ledger
        self._signing = signing_service or get_signing_service()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._serialize = serialize_per_student
        self._student_locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per student; the lock is dropped at zero
        self._lock_users: dict[str, int] = {}

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    @contextlib.asynccontextmanager
    async def _student_lock(self, student_id: str):
        if not self._serialize:
            yield
            return

        lock = self._student_locks.setdefault(student_id, asyncio.Lock())
        self._lock_users[student_id] = self._lock_users.get(student_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[student_id] -= 1
            if not self._lock_users[student_id]:
                del self._lock_users[student_id]
                del self._student_locks[student_id]

    # ============================================================
    # ISSUANCE
    # ============================================================

    async def next_version(self, student_id: str) -> int:
        """Version the next issue for this student should carry."""
        latest = await self._ledger.get_latest_version(student_id)
        return latest + 1

    @staticmethod
    def _validate_issue_fields(
        student_id: str,
        student_name: str,
        degree: str,
        program: str,
        cgpa: Union[Decimal, int, str],
        issuing_authority: str,
    ) -> Decimal:
        for field_name, value in (
            ("student_id", student_id),
            ("student_name", student_name),
            ("degree", degree),
            ("program", program),
            ("issuing_authority", issuing_authority),
        ):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{field_name} is required")

        try:
            quantized = quantize_cgpa(cgpa)
        except CanonicalSerializationError as e:
            raise ValidationError(str(e)) from e
        if not CGPA_MIN <= quantized <= CGPA_MAX:
            raise ValidationError(f"CGPA must be between {CGPA_MIN} and {CGPA_MAX}, got {quantized}")
        return quantized

    def prepare_issue(
        self,
        student_id: str,
        student_name: str,
        degree: str,
        program: str,
        cgpa: Union[Decimal, int, str],
        issuing_authority: str,
        version: int,
        issuer: str,
    ) -> tuple[CertificateRecord, TransactionDescriptor]:
        """
        Derive timestamp, hash and signature for a version without submitting.

        Raises:
            ValidationError: If any field is missing or cgpa is out of range
        """
        quantized = self._validate_issue_fields(
            student_id, student_name, degree, program, cgpa, issuing_authority
        )
        issuance_timestamp = int(self._clock().timestamp())
        degree_program = f"{degree} - {program}"

        cert_hash = Hasher.certificate_hash(
            student_id=student_id,
            student_name=student_name,
            degree_program=degree_program,
            cgpa=quantized,
            version=version,
            issuance_timestamp=issuance_timestamp,
        )
        signature = self._signing.sign_certificate(cert_hash)

        record = CertificateRecord(
            cert_hash=cert_hash,
            student_id=student_id,
            student_name=student_name,
            degree=degree,
            program=program,
            cgpa=quantized,
            issuing_authority=issuing_authority,
            version=version,
            issuer=issuer,
            signature=signature,
            issuance_timestamp=issuance_timestamp,
        )
        txn = TransactionDescriptor(
            kind=TransactionKind.ISSUE,
            cert_hash=cert_hash,
            actor=issuer,
            record=record,
        )
        return record, txn

    async def issue(
        self,
        student_id: str,
        student_name: str,
        degree: str,
        program: str,
        cgpa: Union[Decimal, int, str],
        issuing_authority: str,
        actor: Actor,
    ) -> IssueResult:
        """
        Issue the next version of a student's certificate.

        Raises:
            ValidationError: Bad input
            Conflict: The ledger rejected the write (lost version race or duplicate hash)
            LedgerUnavailable: Transport failure; re-read the head before retrying
        """
        async with self._student_lock(student_id):
            version = await self.next_version(student_id)
            record, txn = self.prepare_issue(
                student_id, student_name, degree, program, cgpa,
                issuing_authority, version, actor.address,
            )

            try:
                receipt = await self._ledger.submit(txn)
            except RejectedByLedger as e:
                get_metrics().issue_conflicts += 1
                logger.warning(
                    "Issue rejected by ledger",
                    student_id=student_id,
                    version=version,
                    reason=e.reason,
                )
                raise Conflict(
                    f"Could not issue version {version} for student {student_id}: {e.reason}"
                ) from e

        get_metrics().certificates_issued += 1
        logger.info(
            "Certificate issued",
            cert_hash=record.cert_hash,
            student_id=student_id,
            version=version,
            block=receipt.block_ordinal,
        )
        return IssueResult(record=record, receipt=receipt)

    async def issue_with_retry(
        self,
        student_id: str,
        student_name: str,
        degree: str,
        program: str,
        cgpa: Union[Decimal, int, str],
        issuing_authority: str,
        actor: Actor,
        attempts: int = 3,
    ) -> IssueResult:
        """issue(), retried on Conflict only. Each retry re-reads the version head."""
        if attempts < 1:
            raise ValidationError("attempts must be at least 1")

        for attempt in range(1, attempts + 1):
            try:
                return await self.issue(
                    student_id, student_name, degree, program, cgpa,
                    issuing_authority, actor,
                )
            except Conflict:
                if attempt == attempts:
                    raise
                logger.info("Retrying issue after conflict", student_id=student_id, attempt=attempt)
        # unreachable: the loop either returns or raises
        raise Conflict(f"Could not issue certificate for student {student_id}")

    # ============================================================
    # READS
    # ============================================================

    async def verify(self, cert_hash: str) -> CertificateRecord:
        """
        Fetch a certificate by hash.

        Raises:
            ValidationError: Malformed hash
            NotFound: No such certificate
        """
        if not isinstance(cert_hash, str) or not is_valid_hash(cert_hash):
            raise ValidationError("Certificate hash must be 64 hex characters")
        return await self._ledger.get_record(normalize_hash(cert_hash))

    async def all_versions(self, student_id: str) -> list[CertificateRecord]:
        """Every version for the student, ascending by version."""
        hashes = await self._ledger.get_version_hashes(student_id)
        if not hashes:
            raise NotFound(f"No certificates found for student {student_id}")
        records = await self._fetch_records(hashes)
        return sorted(records, key=lambda r: r.version)

    async def active_version(self, student_id: str) -> CertificateRecord:
        """The highest version for the student, revoked or not."""
        hashes = await self._ledger.get_version_hashes(student_id)
        if not hashes:
            raise NotFound(f"No certificates found for student {student_id}")
        return await self._ledger.get_record(hashes[-1])

    async def list_certificates(self) -> list[CertificateRecord]:
        """Every issued certificate, newest first."""
        issued = await self._ledger.query_events(AuditAction.ISSUED)
        issued.sort(key=lambda e: e.block_ordinal, reverse=True)
        return await self._fetch_records([e.cert_hash for e in issued])

    async def _fetch_records(self, hashes: list[str]) -> list[CertificateRecord]:
        """Fetch records concurrently, keeping order. Records that fail to load are skipped."""
        results = await asyncio.gather(
            *(self._ledger.get_record(h) for h in hashes),
            return_exceptions=True,
        )
        records = []
        for cert_hash, result in zip(hashes, results):
            if isinstance(result, CertChainError):
                logger.warning("Skipping unreadable certificate", cert_hash=cert_hash, error=str(result))
                continue
            if isinstance(result, BaseException):
                raise result
            records.append(result)
        return records

    async def search(self, query: str) -> SearchResult:
        """
        Match student ids by substring and certificates by exact hash.

        At most SEARCH_LIMIT of each.
        """
        query = (query or "").strip()
        if not query:
            return SearchResult()

        issued = await self._ledger.query_events(AuditAction.ISSUED)

        needle = query.lower()
        student_ids: list[str] = []
        for event in issued:
            sid = event.student_id
            if sid and needle in sid.lower() and sid not in student_ids:
                student_ids.append(sid)
                if len(student_ids) >= SEARCH_LIMIT:
                    break

        certificates: list[CertificateRecord] = []
        if is_valid_hash(query):
            try:
                certificates.append(await self._ledger.get_record(normalize_hash(query)))
            except NotFound:
                pass

        return SearchResult(student_ids=student_ids, certificates=certificates[:SEARCH_LIMIT])

    # ============================================================
    # STATUS CHANGES
    # ============================================================

    async def revoke(self, cert_hash: str, actor: Actor) -> StateChange:
        return await self._set_revoked(cert_hash, actor, revoked=True)

    async def reactivate(self, cert_hash: str, actor: Actor) -> StateChange:
        return await self._set_revoked(cert_hash, actor, revoked=False)

    async def _set_revoked(self, cert_hash: str, actor: Actor, revoked: bool) -> StateChange:
        record = await self.verify(cert_hash)
        already = "Certificate already revoked" if revoked else "Certificate already active"

        if record.is_revoked == revoked:
            return StateChange(
                cert_hash=record.cert_hash,
                is_revoked=revoked,
                changed=False,
                message=already,
            )

        txn = TransactionDescriptor(
            kind=TransactionKind.REVOKE if revoked else TransactionKind.REACTIVATE,
            cert_hash=record.cert_hash,
            actor=actor.address,
        )
        try:
            receipt = await self._ledger.submit(txn)
        except RejectedByLedger:
            # Someone else may have flipped it between our read and write
            current = await self._ledger.get_record(record.cert_hash)
            if current.is_revoked == revoked:
                return StateChange(
                    cert_hash=record.cert_hash,
                    is_revoked=revoked,
                    changed=False,
                    message=already,
                )
            raise

        metrics = get_metrics()
        if revoked:
            metrics.certificates_revoked += 1
        else:
            metrics.certificates_reactivated += 1
        logger.info(
            "Certificate revoked" if revoked else "Certificate reactivated",
            cert_hash=record.cert_hash,
            block=receipt.block_ordinal,
        )
        return StateChange(
            cert_hash=record.cert_hash,
            is_revoked=revoked,
            changed=True,
            receipt=receipt,
            message="Certificate revoked" if revoked else "Certificate reactivated",
        )

    # ============================================================
    # INTEGRITY
    # ============================================================

    @staticmethod
    def recompute_hash(record: CertificateRecord) -> str:
        """Re-derive a record's content hash."""
        return Hasher.certificate_hash(
            student_id=record.student_id,
            student_name=record.student_name,
            degree_program=record.degree_program,
            cgpa=record.cgpa,
            version=record.version,
            issuance_timestamp=record.issuance_timestamp,
        )

    def verify_integrity(self, record: CertificateRecord) -> bool:
        """True if the record's content matches its hash and the issuing key signed it."""
        if not Hasher.hashes_equal(self.recompute_hash(record), record.cert_hash):
            return False
        return self._signing.verify_certificate(record.cert_hash, record.signature)
