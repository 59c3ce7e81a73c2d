"""
Public Verification

Third parties (employers, other institutions) submit their details to see a
certificate. Every submission passes through the AbuseRateLimiter first;
accepted submissions are logged for the institution's records.
"""

import math
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from ..observability import get_logger
from ..schemas import (
    Actor,
    BlockedClient,
    Page,
    PageMeta,
    CertificateRecord,
    VerificationDecision,
    VerifierInfo,
)
from .errors import RateLimited, ValidationError
from .hasher import is_valid_hash, normalize_hash
from .rate_limiter import AbuseRateLimiter

if TYPE_CHECKING:
    from ..db.store import GovernanceStore

logger = get_logger(__name__)


class VerificationService:
    """Rate-limited verification submissions plus the admin views over them."""

    def __init__(
        self,
        store: "GovernanceStore",
        limiter: AbuseRateLimiter,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._limiter = limiter
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def limiter(self) -> AbuseRateLimiter:
        return self._limiter

    async def submit(
        self,
        ip: str,
        cert_hash: str,
        verifier: Union[VerifierInfo, dict[str, Any]],
        user_agent: Optional[str] = None,
        lookup: Optional[Callable[[str], Awaitable[CertificateRecord]]] = None,
    ) -> VerificationDecision:
        """
        Record a verification submission.

        The attempt counts against the client before lookup runs, so guessing
        unknown hashes still spends budget. Only submissions whose lookup
        succeeds are logged.

        Raises:
            ValidationError: Malformed hash or verifier details
            RateLimited: The client is blocked or just tripped the limit
            NotFound: lookup found no such certificate; nothing is logged
        """
        if not is_valid_hash(cert_hash):
            raise ValidationError("Certificate hash must be 64 hex characters")
        if not isinstance(verifier, VerifierInfo):
            try:
                verifier = VerifierInfo.model_validate(verifier)
            except ValueError as e:
                raise ValidationError(f"Invalid verifier details: {e}") from e

        cert_hash = normalize_hash(cert_hash)
        decision = await self._limiter.record_attempt(ip, cert_hash)
        if not decision.allowed:
            raise RateLimited(
                decision.reason or "Too many verification attempts",
                blocked_until=decision.blocked_until,
            )

        record = await lookup(cert_hash) if lookup is not None else None

        log = await self._store.insert_verification_log(
            cert_hash=cert_hash,
            ip=ip,
            user_agent=user_agent,
            verifier=verifier,
            now=self._clock(),
        )
        logger.info("Verification logged", cert_hash=cert_hash, log_id=log.id)
        return VerificationDecision(
            accepted=True,
            remaining_attempts=decision.remaining_attempts,
            log_id=log.id,
            certificate=record,
        )

    async def list_logs(
        self,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "verified_at",
        order: str = "desc",
    ) -> Page:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be at least 1")
        order = order.lower()
        if order not in ("asc", "desc"):
            raise ValidationError("order must be 'asc' or 'desc'")

        total = await self._store.count_verification_logs()
        logs = await self._store.list_verification_logs(
            offset=(page - 1) * limit,
            limit=limit,
            sort_by=sort_by,
            descending=order == "desc",
        )
        total_pages = math.ceil(total / limit) if total else 0
        return Page(
            data=logs,
            meta=PageMeta(
                current_page=page,
                total_pages=total_pages,
                total_count=total,
                has_more=page < total_pages,
            ),
        )

    async def block(self, ip: str, minutes: int, reason: str, actor: Actor) -> BlockedClient:
        return await self._limiter.block(ip, minutes, reason, actor)

    async def unblock(self, ip: str) -> bool:
        return await self._limiter.unblock(ip)

    async def list_blocked(self) -> list[BlockedClient]:
        return await self._limiter.list_blocked()
