"""
Abuse Rate Limiting for Public Verification

Two stores with two lifetimes:

- AttemptCounter: volatile sliding windows of attempt timestamps, keyed
  by (client_ip, cert_hash), each entry expiring after the window length.
  Losing it can only undercount.
- GovernanceStore blocked_clients: durable blocks that survive restarts.

Policy (defaults: 5 attempts / 15 minutes, 60 minute block):
1. An active durable block rejects immediately; counters are untouched.
2. Otherwise record the attempt and prune the window.
3. count <= max_attempts: allowed, remaining = max_attempts - count
4. count >  max_attempts: block the IP, clear all its counters, reject

So the 5th attempt succeeds with remaining=0 and the 6th blocks.
"""

import asyncio
import heapq
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional, Union

from ..observability import get_logger, get_metrics
from ..schemas import SYSTEM_ACTOR, Actor, BlockedClient, RateLimitDecision
from .errors import ValidationError
from .hasher import normalize_hash

if TYPE_CHECKING:
    from ..db.store import GovernanceStore

logger = get_logger(__name__)

AttemptKey = tuple[str, str]


@dataclass
class RateLimitConfig:
    """Abuse-protection thresholds."""

    max_attempts: int = 5
    window_seconds: int = 15 * 60
    block_seconds: int = 60 * 60

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """
        Environment variables:
            CERTCHAIN_RATE_LIMIT_MAX_ATTEMPTS (default 5)
            CERTCHAIN_RATE_LIMIT_WINDOW_SECONDS (default 900)
            CERTCHAIN_RATE_LIMIT_BLOCK_SECONDS (default 3600)
        """
        return cls(
            max_attempts=int(os.getenv("CERTCHAIN_RATE_LIMIT_MAX_ATTEMPTS", "5")),
            window_seconds=int(os.getenv("CERTCHAIN_RATE_LIMIT_WINDOW_SECONDS", "900")),
            block_seconds=int(os.getenv("CERTCHAIN_RATE_LIMIT_BLOCK_SECONDS", "3600")),
        )

    @property
    def window_minutes(self) -> int:
        return self.window_seconds // 60


# ============================================================
# ATTEMPT COUNTERS
# ============================================================

class AttemptCounter(ABC):
    """Key-value store of attempt timestamps with TTL semantics."""

    @abstractmethod
    async def append(self, key: AttemptKey, ts: float, window: float) -> list[float]:
        """Record an attempt at ts; return the attempts still inside the window."""
        pass

    @abstractmethod
    async def get(self, key: AttemptKey, now: float) -> list[float]:
        """Attempts inside the window as of now (empty once expired)."""
        pass

    @abstractmethod
    async def clear_prefix(self, ip: str) -> int:
        """Drop every counter for ip. Returns how many keys were removed."""
        pass


@dataclass
class _Window:
    attempts: list[float] = field(default_factory=list)
    window: float = 0.0
    expires_at: float = 0.0


class InMemoryAttemptCounter(AttemptCounter):
    """
    Process-local attempt counter.

    Not shared across workers; each worker enforces its own windows.
    Expired entries are found through a heap ordered by expiry, so a sweep
    only touches entries that are actually due.
    """

    def __init__(self):
        self._entries: dict[AttemptKey, _Window] = {}
        # (expires_at, key); stale pairs are skipped when popped
        self._expiry: list[tuple[float, AttemptKey]] = []
        self._lock = asyncio.Lock()

    def _sweep(self, now: float) -> int:
        removed = 0
        while self._expiry and self._expiry[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiry)
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at == expires_at:
                del self._entries[key]
                removed += 1
        return removed

    async def append(self, key: AttemptKey, ts: float, window: float) -> list[float]:
        async with self._lock:
            self._sweep(ts)
            entry = self._entries.setdefault(key, _Window())
            entry.window = window
            entry.attempts = [t for t in entry.attempts if t > ts - window]
            entry.attempts.append(ts)
            entry.expires_at = ts + window
            heapq.heappush(self._expiry, (entry.expires_at, key))
            return list(entry.attempts)

    async def get(self, key: AttemptKey, now: float) -> list[float]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return []
            if entry.expires_at <= now:
                del self._entries[key]
                return []
            return [t for t in entry.attempts if t > now - entry.window]

    async def clear_prefix(self, ip: str) -> int:
        async with self._lock:
            keys = [k for k in self._entries if k[0] == ip]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================
# LIMITER
# ============================================================

class AbuseRateLimiter:
    """
    Sliding-window limiter with durable auto-blocking.

    Usage:
        limiter = AbuseRateLimiter(store)
        decision = await limiter.record_attempt(ip, cert_hash)
        if not decision.allowed:
            ...
    """

    def __init__(
        self,
        store: "GovernanceStore",
        counter: Optional[AttemptCounter] = None,
        config: Optional[RateLimitConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._counter = counter or InMemoryAttemptCounter()
        self._config = config or RateLimitConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    async def _active_block(self, ip: str, now: datetime) -> Optional[BlockedClient]:
        block = await self._store.get_block(ip)
        if block is None:
            return None
        if block.is_active(now):
            return block
        await self._store.delete_expired_blocks(now)
        return None

    async def record_attempt(self, ip: str, cert_hash: str) -> RateLimitDecision:
        now = self._clock()

        block = await self._active_block(ip, now)
        if block is not None:
            return RateLimitDecision(
                allowed=False,
                remaining_attempts=0,
                blocked_until=block.blocked_until,
                reason=block.reason,
            )

        cert_hash = normalize_hash(cert_hash)
        attempts = await self._counter.append(
            (ip, cert_hash), now.timestamp(), self._config.window_seconds
        )
        count = len(attempts)

        if count <= self._config.max_attempts:
            return RateLimitDecision(
                allowed=True,
                remaining_attempts=self._config.max_attempts - count,
            )

        reason = (
            f"Rate limit exceeded: {count} attempts on certificate {cert_hash} "
            f"within {self._config.window_minutes} minutes"
        )
        block = await self._store.upsert_block(BlockedClient(
            ip=ip,
            blocked_until=now + timedelta(seconds=self._config.block_seconds),
            reason=reason,
            blocked_by=SYSTEM_ACTOR,
            created_at=now,
        ))
        await self._counter.clear_prefix(ip)

        get_metrics().clients_blocked += 1
        logger.warning(
            "Client blocked",
            ip=ip,
            cert_hash=cert_hash,
            attempts=count,
            blocked_until=block.blocked_until.isoformat(),
        )
        return RateLimitDecision(
            allowed=False,
            remaining_attempts=0,
            blocked_until=block.blocked_until,
            reason=reason,
        )

    async def remaining_attempts(self, ip: str, cert_hash: str) -> int:
        now = self._clock()
        if await self._active_block(ip, now) is not None:
            return 0
        attempts = await self._counter.get((ip, normalize_hash(cert_hash)), now.timestamp())
        return max(self._config.max_attempts - len(attempts), 0)

    async def is_blocked(self, ip: str) -> bool:
        return await self._active_block(ip, self._clock()) is not None

    async def block(
        self,
        ip: str,
        minutes: int,
        reason: str,
        actor: Union[Actor, str],
    ) -> BlockedClient:
        """Manually block an IP."""
        if minutes < 1:
            raise ValidationError("Block duration must be at least one minute")
        if not ip:
            raise ValidationError("IP address is required")

        now = self._clock()
        blocked_by = actor.address if isinstance(actor, Actor) else actor
        block = await self._store.upsert_block(BlockedClient(
            ip=ip,
            blocked_until=now + timedelta(minutes=minutes),
            reason=reason or "Blocked by administrator",
            blocked_by=blocked_by,
            created_at=now,
        ))
        logger.info("Client blocked manually", ip=ip, minutes=minutes, blocked_by=blocked_by)
        return block

    async def unblock(self, ip: str) -> bool:
        """Remove the durable block and reset every counter for ip."""
        removed = await self._store.delete_block(ip)
        await self._counter.clear_prefix(ip)
        logger.info("Client unblocked", ip=ip, had_block=removed)
        return removed

    async def list_blocked(self) -> list[BlockedClient]:
        return await self._store.list_blocks(self._clock())
