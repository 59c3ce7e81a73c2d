"""
Audit Trail Aggregation

Audit views are never stored. Each read queries the ledger's three event
streams (ISSUED, REVOKED, REACTIVATED) concurrently, resolves block
timestamps, merges and sorts by block ordinal (newest first), and only
then paginates.

The aggregator holds no state between calls; block timestamps are
memoized within a single call.
"""

import asyncio
import math
from datetime import datetime
from typing import Optional, Sequence, TypeVar, Union

from ..observability import get_logger
from ..schemas import (
    AuditAction,
    AuditEvent,
    IssuedEvent,
    Page,
    PageMeta,
    RawLedgerEvent,
    ReactivatedEvent,
    RevokedEvent,
)
from .errors import ValidationError
from .hasher import normalize_hash
from .ledger_client import LedgerClient

logger = get_logger(__name__)

T = TypeVar("T")


def paginate(
    items: Sequence[T],
    page: Optional[int] = None,
    limit: Optional[int] = None,
) -> Union[list[T], Page[T]]:
    """
    Slice an already ordered list.

    Returns the full list when page or limit is missing, otherwise a Page
    with {current_page, total_pages, total_count, has_more}.

    Raises:
        ValidationError: page or limit below 1
    """
    if page is None or limit is None:
        return list(items)
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be at least 1")

    total_count = len(items)
    total_pages = math.ceil(total_count / limit) if total_count else 0
    start = (page - 1) * limit
    return Page(
        data=list(items[start:start + limit]),
        meta=PageMeta(
            current_page=page,
            total_pages=total_pages,
            total_count=total_count,
            has_more=page < total_pages,
        ),
    )


_EVENT_TYPES = {
    AuditAction.ISSUED: IssuedEvent,
    AuditAction.REVOKED: RevokedEvent,
    AuditAction.REACTIVATED: ReactivatedEvent,
}


def to_audit_event(raw: RawLedgerEvent, timestamp: Optional[datetime]) -> AuditEvent:
    """Normalize a raw ledger event into its tagged audit variant."""
    common = {
        "cert_hash": raw.cert_hash,
        "actor": raw.actor,
        "block_ordinal": raw.block_ordinal,
        "tx_id": raw.tx_id,
        "timestamp": timestamp,
    }
    if raw.kind == AuditAction.ISSUED:
        return IssuedEvent(student_id=raw.student_id, version=raw.version, **common)
    return _EVENT_TYPES[raw.kind](**common)


class AuditTrailAggregator:
    """
    Merged, time-ordered audit history built from ledger events.

    Usage:
        audit = AuditTrailAggregator(ledger)
        events = await audit.for_certificate(cert_hash)
        page = await audit.global_trail(page=1, limit=20)
    """

    def __init__(self, ledger: LedgerClient):
        self._ledger = ledger

    async def for_certificate(
        self,
        cert_hash: str,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ):
        events = await self._collect(cert_hash=normalize_hash(cert_hash))
        return paginate(events, page, limit)

    async def for_actor(
        self,
        actor: str,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ):
        events = await self._collect(actor=actor)
        return paginate(events, page, limit)

    async def global_trail(
        self,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ):
        events = await self._collect()
        return paginate(events, page, limit)

    async def _collect(
        self,
        cert_hash: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> list[AuditEvent]:
        streams = await asyncio.gather(*(
            self._ledger.query_events(kind, cert_hash=cert_hash, actor=actor)
            for kind in (AuditAction.ISSUED, AuditAction.REVOKED, AuditAction.REACTIVATED)
        ))
        raw_events = [event for stream in streams for event in stream]

        ordinals = sorted({e.block_ordinal for e in raw_events})
        resolved = await asyncio.gather(*(self._block_time(o) for o in ordinals))
        timestamps = dict(zip(ordinals, resolved))

        events = [to_audit_event(e, timestamps.get(e.block_ordinal)) for e in raw_events]
        events.sort(key=lambda e: e.block_ordinal, reverse=True)
        return events

    async def _block_time(self, block_ordinal: int) -> Optional[datetime]:
        try:
            timestamp = await self._ledger.get_block_timestamp(block_ordinal)
        except Exception as e:
            logger.warning("Block timestamp lookup failed", block=block_ordinal, error=str(e))
            return None
        if timestamp is None:
            logger.warning("Block timestamp unavailable", block=block_ordinal)
        return timestamp
