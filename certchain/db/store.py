"""
Governance Store Abstraction

This module defines the GovernanceStore interface and provides two implementations:
- InMemoryGovernanceStore: For development and testing
- PostgresGovernanceStore: asyncpg-backed, for production

The store holds everything that is NOT on the ledger:
- Action requests (revoke/reactivate governance)
- Blocked clients (durable abuse-protection state)
- Verification logs

ATOMICITY CONTRACT:
The store, not its callers, enforces the two race-sensitive rules:

1. At most one open (pending/processing) request per certificate.
   Postgres: partial unique index. Memory: lock-guarded check-and-insert.

2. State changes are compare-and-set. transition_request() only succeeds
   if the row is still in the expected status (and, where given, still
   held by the expected claimant):

       UPDATE action_requests SET ...
       WHERE id = $1 AND status = $2 [AND taken_by = $n]
       RETURNING *

   A None result means the caller lost a race and must re-read.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg

from ..core.errors import Conflict
from ..observability import get_logger
from ..schemas import (
    ActionRequest,
    ActionType,
    BlockedClient,
    NewActionRequest,
    RequestStatus,
    VerificationLog,
    VerifierInfo,
)
from .config import DatabaseConfig, StoreDriver, get_store_driver

logger = get_logger(__name__)


class _Keep:
    def __repr__(self) -> str:
        return "KEEP"


# Marker for "leave this column unchanged" in transition_request()
KEEP: Any = _Keep()

OPEN_STATUSES = (RequestStatus.PENDING, RequestStatus.PROCESSING)

LOG_SORT_FIELDS = ("verified_at", "cert_hash", "verifier_name", "ip")


# ============================================================
# SCHEMA
# ============================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS action_requests (
    id                 BIGSERIAL PRIMARY KEY,
    cert_hash          CHAR(64)     NOT NULL,
    student_id         TEXT         NOT NULL,
    action_type        TEXT         NOT NULL CHECK (action_type IN ('revoke', 'reactivate')),
    reason             TEXT         NOT NULL,
    status             TEXT         NOT NULL DEFAULT 'pending'
                       CHECK (status IN ('pending', 'processing', 'completed', 'rejected')),
    requested_by       TEXT         NOT NULL,
    requested_by_name  TEXT         NOT NULL DEFAULT '',
    taken_by           TEXT,
    rejection_reason   TEXT,
    requested_at       TIMESTAMPTZ  NOT NULL,
    updated_at         TIMESTAMPTZ  NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS action_requests_one_open_per_cert
    ON action_requests (cert_hash)
    WHERE status IN ('pending', 'processing');

CREATE INDEX IF NOT EXISTS action_requests_requested_at
    ON action_requests (requested_at DESC);

CREATE TABLE IF NOT EXISTS blocked_clients (
    ip             TEXT         PRIMARY KEY,
    blocked_until  TIMESTAMPTZ  NOT NULL,
    reason         TEXT         NOT NULL,
    blocked_by     TEXT         NOT NULL DEFAULT 'system',
    created_at     TIMESTAMPTZ  NOT NULL
);

CREATE TABLE IF NOT EXISTS verification_logs (
    id                    BIGSERIAL PRIMARY KEY,
    cert_hash             CHAR(64)     NOT NULL,
    ip                    TEXT         NOT NULL,
    user_agent            TEXT,
    verifier_name         TEXT         NOT NULL,
    verifier_email        TEXT         NOT NULL,
    verifier_institution  TEXT         NOT NULL DEFAULT '',
    verifier_website      TEXT         NOT NULL DEFAULT '',
    verified_at           TIMESTAMPTZ  NOT NULL
);

CREATE INDEX IF NOT EXISTS verification_logs_verified_at
    ON verification_logs (verified_at DESC);
"""


# ============================================================
# INTERFACE
# ============================================================

class GovernanceStore(ABC):
    """
    Abstract base class for off-ledger governance storage.

    Listing methods return newest first (requested_at / verified_at DESC).
    """

    # ---- action requests ----

    @abstractmethod
    async def insert_request(self, new: NewActionRequest, now: datetime) -> ActionRequest:
        """
        Insert a pending request.

        Raises:
            Conflict: An open request already exists for the certificate
        """
        pass

    @abstractmethod
    async def get_request(self, request_id: int) -> Optional[ActionRequest]:
        pass

    @abstractmethod
    async def list_requests(
        self,
        statuses: Optional[Sequence[RequestStatus]] = None,
        requested_by: Optional[str] = None,
        taken_by: Optional[str] = None,
        cert_hash: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ActionRequest]:
        pass

    @abstractmethod
    async def count_requests(
        self,
        statuses: Optional[Sequence[RequestStatus]] = None,
        requested_by: Optional[str] = None,
    ) -> int:
        pass

    @abstractmethod
    async def transition_request(
        self,
        request_id: int,
        from_status: RequestStatus,
        to_status: RequestStatus,
        now: datetime,
        claimant: Optional[str] = None,
        taken_by: Any = KEEP,
        rejection_reason: Optional[str] = None,
    ) -> Optional[ActionRequest]:
        """
        Compare-and-set a request's status.

        Args:
            claimant: If given, the row's taken_by must equal it
            taken_by: New taken_by value, or KEEP to leave it unchanged

        Returns:
            The updated request, or None if the row no longer matched
        """
        pass

    @abstractmethod
    async def delete_request(
        self,
        request_id: int,
        expected_status: RequestStatus,
        requested_by: str,
    ) -> bool:
        """Delete only if still in expected_status and owned by requested_by."""
        pass

    # ---- blocked clients ----

    @abstractmethod
    async def get_block(self, ip: str) -> Optional[BlockedClient]:
        pass

    @abstractmethod
    async def upsert_block(self, block: BlockedClient) -> BlockedClient:
        """Create or replace the block for block.ip."""
        pass

    @abstractmethod
    async def delete_block(self, ip: str) -> bool:
        pass

    @abstractmethod
    async def list_blocks(self, now: datetime) -> list[BlockedClient]:
        """Active blocks only, newest first."""
        pass

    @abstractmethod
    async def delete_expired_blocks(self, now: datetime) -> int:
        pass

    # ---- verification logs ----

    @abstractmethod
    async def insert_verification_log(
        self,
        cert_hash: str,
        ip: str,
        user_agent: Optional[str],
        verifier: VerifierInfo,
        now: datetime,
    ) -> VerificationLog:
        pass

    @abstractmethod
    async def list_verification_logs(
        self,
        offset: int,
        limit: int,
        sort_by: str = "verified_at",
        descending: bool = True,
    ) -> list[VerificationLog]:
        pass

    @abstractmethod
    async def count_verification_logs(self) -> int:
        pass

    # ---- lifecycle ----

    @abstractmethod
    async def health(self) -> dict[str, Any]:
        pass

    async def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryGovernanceStore(GovernanceStore):
    """
    In-memory implementation of GovernanceStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments without persistence requirements

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        self._requests: dict[int, ActionRequest] = {}
        self._blocks: dict[str, BlockedClient] = {}
        self._logs: list[VerificationLog] = []
        self._next_request_id = 1
        self._next_log_id = 1
        self._lock = asyncio.Lock()

    @staticmethod
    def _newest_first(requests: list[ActionRequest]) -> list[ActionRequest]:
        return sorted(requests, key=lambda r: (r.requested_at, r.id), reverse=True)

    async def insert_request(self, new: NewActionRequest, now: datetime) -> ActionRequest:
        async with self._lock:
            for existing in self._requests.values():
                if existing.cert_hash == new.cert_hash and existing.status.is_open:
                    raise Conflict(
                        "An open request already exists for this certificate"
                    )
            request = ActionRequest(
                id=self._next_request_id,
                requested_at=now,
                updated_at=now,
                **new.model_dump(),
            )
            self._requests[request.id] = request
            self._next_request_id += 1
            return request

    async def get_request(self, request_id: int) -> Optional[ActionRequest]:
        return self._requests.get(request_id)

    async def list_requests(
        self,
        statuses: Optional[Sequence[RequestStatus]] = None,
        requested_by: Optional[str] = None,
        taken_by: Optional[str] = None,
        cert_hash: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ActionRequest]:
        matches = [
            r for r in self._requests.values()
            if (statuses is None or r.status in statuses)
            and (requested_by is None or r.requested_by == requested_by)
            and (taken_by is None or r.taken_by == taken_by)
            and (cert_hash is None or r.cert_hash == cert_hash)
        ]
        ordered = self._newest_first(matches)
        return ordered[:limit] if limit is not None else ordered

    async def count_requests(
        self,
        statuses: Optional[Sequence[RequestStatus]] = None,
        requested_by: Optional[str] = None,
    ) -> int:
        return len(await self.list_requests(statuses=statuses, requested_by=requested_by))

    async def transition_request(
        self,
        request_id: int,
        from_status: RequestStatus,
        to_status: RequestStatus,
        now: datetime,
        claimant: Optional[str] = None,
        taken_by: Any = KEEP,
        rejection_reason: Optional[str] = None,
    ) -> Optional[ActionRequest]:
        async with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status != from_status:
                return None
            if claimant is not None and current.taken_by != claimant:
                return None

            update: dict[str, Any] = {"status": to_status, "updated_at": now}
            if taken_by is not KEEP:
                update["taken_by"] = taken_by
            if rejection_reason is not None:
                update["rejection_reason"] = rejection_reason

            updated = current.model_copy(update=update)
            self._requests[request_id] = updated
            return updated

    async def delete_request(
        self,
        request_id: int,
        expected_status: RequestStatus,
        requested_by: str,
    ) -> bool:
        async with self._lock:
            current = self._requests.get(request_id)
            if current is None:
                return False
            if current.status != expected_status or current.requested_by != requested_by:
                return False
            del self._requests[request_id]
            return True

    async def get_block(self, ip: str) -> Optional[BlockedClient]:
        return self._blocks.get(ip)

    async def upsert_block(self, block: BlockedClient) -> BlockedClient:
        self._blocks[block.ip] = block
        return block

    async def delete_block(self, ip: str) -> bool:
        return self._blocks.pop(ip, None) is not None

    async def list_blocks(self, now: datetime) -> list[BlockedClient]:
        active = [b for b in self._blocks.values() if b.is_active(now)]
        return sorted(active, key=lambda b: b.created_at, reverse=True)

    async def delete_expired_blocks(self, now: datetime) -> int:
        expired = [ip for ip, b in self._blocks.items() if not b.is_active(now)]
        for ip in expired:
            del self._blocks[ip]
        return len(expired)

    async def insert_verification_log(
        self,
        cert_hash: str,
        ip: str,
        user_agent: Optional[str],
        verifier: VerifierInfo,
        now: datetime,
    ) -> VerificationLog:
        async with self._lock:
            log = VerificationLog(
                id=self._next_log_id,
                cert_hash=cert_hash,
                ip=ip,
                user_agent=user_agent,
                verifier_name=verifier.name,
                verifier_email=verifier.email,
                verifier_institution=verifier.institution,
                verifier_website=verifier.website,
                verified_at=now,
            )
            self._logs.append(log)
            self._next_log_id += 1
            return log

    async def list_verification_logs(
        self,
        offset: int,
        limit: int,
        sort_by: str = "verified_at",
        descending: bool = True,
    ) -> list[VerificationLog]:
        if sort_by not in LOG_SORT_FIELDS:
            sort_by = "verified_at"
        ordered = sorted(
            self._logs,
            key=lambda log: (getattr(log, sort_by), log.id),
            reverse=descending,
        )
        return ordered[offset:offset + limit]

    async def count_verification_logs(self) -> int:
        return len(self._logs)

    async def health(self) -> dict[str, Any]:
        return {"driver": "memory", "requests": len(self._requests)}

    def clear(self) -> None:
        """Clear all state (for testing only)."""
        self._requests.clear()
        self._blocks.clear()
        self._logs.clear()
        self._next_request_id = 1
        self._next_log_id = 1


# ============================================================
# POSTGRESQL IMPLEMENTATION (asyncpg)
# ============================================================

class PostgresGovernanceStore(GovernanceStore):
    """
    Async PostgreSQL implementation using asyncpg.

    Usage:
        store = await PostgresGovernanceStore.connect(DatabaseConfig.from_env())
        await store.init_schema()
        ...
        await store.close()
    """

    STATEMENT_TIMEOUT_MS = 10000

    def __init__(self, pool):
        """
        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @classmethod
    async def connect(cls, config: DatabaseConfig) -> "PostgresGovernanceStore":
        pool = await asyncpg.create_pool(
            dsn=config.to_url(),
            min_size=config.pool_min_size,
            max_size=config.pool_max_size,
            timeout=config.pool_timeout,
            server_settings={"statement_timeout": str(cls.STATEMENT_TIMEOUT_MS)},
        )
        logger.info("Connected to PostgreSQL", url=config.to_url(include_password=False))
        return cls(pool)

    async def init_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Governance schema ensured")

    async def close(self) -> None:
        await self._pool.close()

    # ---- row mapping ----

    @staticmethod
    def _row_to_request(row) -> ActionRequest:
        return ActionRequest(
            id=row["id"],
            cert_hash=row["cert_hash"],
            student_id=row["student_id"],
            action_type=ActionType(row["action_type"]),
            reason=row["reason"],
            status=RequestStatus(row["status"]),
            requested_by=row["requested_by"],
            requested_by_name=row["requested_by_name"],
            taken_by=row["taken_by"],
            rejection_reason=row["rejection_reason"],
            requested_at=row["requested_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_block(row) -> BlockedClient:
        return BlockedClient(
            ip=row["ip"],
            blocked_until=row["blocked_until"],
            reason=row["reason"],
            blocked_by=row["blocked_by"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_log(row) -> VerificationLog:
        return VerificationLog(**dict(row))

    @staticmethod
    def _request_filters(
        statuses: Optional[Sequence[RequestStatus]] = None,
        requested_by: Optional[str] = None,
        taken_by: Optional[str] = None,
        cert_hash: Optional[str] = None,
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        args: list[Any] = []
        if statuses is not None:
            args.append([s.value for s in statuses])
            clauses.append(f"status = ANY(${len(args)}::text[])")
        if requested_by is not None:
            args.append(requested_by)
            clauses.append(f"requested_by = ${len(args)}")
        if taken_by is not None:
            args.append(taken_by)
            clauses.append(f"taken_by = ${len(args)}")
        if cert_hash is not None:
            args.append(cert_hash)
            clauses.append(f"cert_hash = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, args

    # ---- action requests ----

    async def insert_request(self, new: NewActionRequest, now: datetime) -> ActionRequest:
        async with self._pool.acquire() as conn:
            try:
                row = await conn.fetchrow("""
                    INSERT INTO action_requests (
                        cert_hash, student_id, action_type, reason, status,
                        requested_by, requested_by_name, requested_at, updated_at
                    )
                    VALUES ($1, $2, $3, $4, 'pending', $5, $6, $7, $7)
                    RETURNING *
                """,
                    new.cert_hash, new.student_id, new.action_type.value, new.reason,
                    new.requested_by, new.requested_by_name, now,
                )
            except asyncpg.UniqueViolationError as e:
                raise Conflict(
                    "An open request already exists for this certificate"
                ) from e
        return self._row_to_request(row)

    async def get_request(self, request_id: int) -> Optional[ActionRequest]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM action_requests WHERE id = $1", request_id
            )
        return self._row_to_request(row) if row else None

    async def list_requests(
        self,
        statuses: Optional[Sequence[RequestStatus]] = None,
        requested_by: Optional[str] = None,
        taken_by: Optional[str] = None,
        cert_hash: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ActionRequest]:
        where, args = self._request_filters(statuses, requested_by, taken_by, cert_hash)
        sql = f"SELECT * FROM action_requests {where} ORDER BY requested_at DESC, id DESC"
        if limit is not None:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [self._row_to_request(row) for row in rows]

    async def count_requests(
        self,
        statuses: Optional[Sequence[RequestStatus]] = None,
        requested_by: Optional[str] = None,
    ) -> int:
        where, args = self._request_filters(statuses, requested_by)
        async with self._pool.acquire() as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM action_requests {where}", *args)

    async def transition_request(
        self,
        request_id: int,
        from_status: RequestStatus,
        to_status: RequestStatus,
        now: datetime,
        claimant: Optional[str] = None,
        taken_by: Any = KEEP,
        rejection_reason: Optional[str] = None,
    ) -> Optional[ActionRequest]:
        args: list[Any] = [request_id, from_status.value, to_status.value, now]
        sets = ["status = $3", "updated_at = $4"]
        if taken_by is not KEEP:
            args.append(taken_by)
            sets.append(f"taken_by = ${len(args)}")
        if rejection_reason is not None:
            args.append(rejection_reason)
            sets.append(f"rejection_reason = ${len(args)}")

        where = "id = $1 AND status = $2"
        if claimant is not None:
            args.append(claimant)
            where += f" AND taken_by = ${len(args)}"

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"UPDATE action_requests SET {', '.join(sets)} WHERE {where} RETURNING *",
                *args,
            )
        return self._row_to_request(row) if row else None

    async def delete_request(
        self,
        request_id: int,
        expected_status: RequestStatus,
        requested_by: str,
    ) -> bool:
        async with self._pool.acquire() as conn:
            deleted = await conn.fetchval("""
                DELETE FROM action_requests
                WHERE id = $1 AND status = $2 AND requested_by = $3
                RETURNING id
            """, request_id, expected_status.value, requested_by)
        return deleted is not None

    # ---- blocked clients ----

    async def get_block(self, ip: str) -> Optional[BlockedClient]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM blocked_clients WHERE ip = $1", ip)
        return self._row_to_block(row) if row else None

    async def upsert_block(self, block: BlockedClient) -> BlockedClient:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO blocked_clients (ip, blocked_until, reason, blocked_by, created_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (ip) DO UPDATE SET
                    blocked_until = EXCLUDED.blocked_until,
                    reason = EXCLUDED.reason,
                    blocked_by = EXCLUDED.blocked_by,
                    created_at = EXCLUDED.created_at
                RETURNING *
            """, block.ip, block.blocked_until, block.reason, block.blocked_by, block.created_at)
        return self._row_to_block(row)

    async def delete_block(self, ip: str) -> bool:
        async with self._pool.acquire() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM blocked_clients WHERE ip = $1 RETURNING ip", ip
            )
        return deleted is not None

    async def list_blocks(self, now: datetime) -> list[BlockedClient]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT * FROM blocked_clients
                WHERE blocked_until > $1
                ORDER BY created_at DESC
            """, now)
        return [self._row_to_block(row) for row in rows]

    async def delete_expired_blocks(self, now: datetime) -> int:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "DELETE FROM blocked_clients WHERE blocked_until <= $1 RETURNING ip", now
            )
        return len(rows)

    # ---- verification logs ----

    async def insert_verification_log(
        self,
        cert_hash: str,
        ip: str,
        user_agent: Optional[str],
        verifier: VerifierInfo,
        now: datetime,
    ) -> VerificationLog:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("""
                INSERT INTO verification_logs (
                    cert_hash, ip, user_agent, verifier_name, verifier_email,
                    verifier_institution, verifier_website, verified_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                RETURNING *
            """,
                cert_hash, ip, user_agent, verifier.name, verifier.email,
                verifier.institution, verifier.website, now,
            )
        return self._row_to_log(row)

    async def list_verification_logs(
        self,
        offset: int,
        limit: int,
        sort_by: str = "verified_at",
        descending: bool = True,
    ) -> list[VerificationLog]:
        # sort_by is interpolated, so it must come from the whitelist
        if sort_by not in LOG_SORT_FIELDS:
            sort_by = "verified_at"
        direction = "DESC" if descending else "ASC"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(f"""
                SELECT * FROM verification_logs
                ORDER BY {sort_by} {direction}, id {direction}
                OFFSET $1 LIMIT $2
            """, offset, limit)
        return [self._row_to_log(row) for row in rows]

    async def count_verification_logs(self) -> int:
        async with self._pool.acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM verification_logs")

    async def health(self) -> dict[str, Any]:
        async with self._pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return {"driver": "asyncpg", "pool_size": self._pool.get_size()}


async def create_store(config: Optional[DatabaseConfig] = None) -> GovernanceStore:
    """Build the governance store selected by CERTCHAIN_STORE_DRIVER."""
    driver = get_store_driver()
    if driver == StoreDriver.MEMORY:
        logger.warning("Using in-memory governance store; requests will not persist")
        return InMemoryGovernanceStore()

    store = await PostgresGovernanceStore.connect(config or DatabaseConfig.from_env())
    await store.init_schema()
    return store
