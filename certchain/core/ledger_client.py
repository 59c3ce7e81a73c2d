"""
Ledger Client Abstraction

The authoritative certificate state lives on an external append-only
ledger (a smart-contract registry). This module defines the contract the
rest of the system consumes and two implementations:

- InMemoryLedgerClient: a local model of the registry contract, for
  development and testing
- JsonRpcLedgerClient: JSON-RPC 2.0 over HTTP to a ledger gateway

The LedgerClient is responsible for:
- Submitting issue / revoke / reactivate transactions
- Reading records, version heads and version chains
- Querying the three certificate event streams
- Resolving block ordinals to wall-clock time

Business rules (version derivation, idempotency, signing) live in
CertificateVersionChain. The ledger only enforces what the contract
enforces: unique hashes, contiguous versions, no double revoke.
"""

import asyncio
import itertools
import os
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx

from ..observability import get_logger, get_metrics
from ..schemas import (
    AuditAction,
    CertificateRecord,
    RawLedgerEvent,
    Receipt,
    TransactionDescriptor,
    TransactionKind,
)
from .errors import CertChainError, LedgerError, LedgerUnavailable, NotFound, RejectedByLedger
from .hasher import normalize_hash

logger = get_logger(__name__)


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class LedgerConfig:
    """Ledger connection configuration."""

    driver: str = "memory"  # memory | jsonrpc
    rpc_url: str = "http://localhost:8545"
    timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """
        Environment variables:
            CERTCHAIN_LEDGER_DRIVER: memory or jsonrpc (default: memory)
            CERTCHAIN_LEDGER_RPC_URL: gateway endpoint
            CERTCHAIN_LEDGER_TIMEOUT: request timeout in seconds
        """
        return cls(
            driver=os.environ.get("CERTCHAIN_LEDGER_DRIVER", "memory").lower(),
            rpc_url=os.environ.get("CERTCHAIN_LEDGER_RPC_URL", "http://localhost:8545"),
            timeout=float(os.environ.get("CERTCHAIN_LEDGER_TIMEOUT", "10")),
        )


# ============================================================
# INTERFACE
# ============================================================

class LedgerClient(ABC):
    """
    Abstract ledger contract.

    Every call is a suspension point. Hashes are accepted with or without
    a 0x prefix and returned normalized (64 lowercase hex chars).
    """

    @abstractmethod
    async def submit(self, txn: TransactionDescriptor) -> Receipt:
        """
        Submit a write transaction and wait for it to be mined.

        Raises:
            RejectedByLedger: The contract reverted
            LedgerUnavailable: Transport failure or timeout
        """
        pass

    @abstractmethod
    async def get_record(self, cert_hash: str) -> CertificateRecord:
        """Raises NotFound if no certificate has this hash."""
        pass

    @abstractmethod
    async def get_latest_version(self, student_id: str) -> int:
        """Highest version issued for the student, 0 if none."""
        pass

    @abstractmethod
    async def get_version_hashes(self, student_id: str) -> list[str]:
        """Hashes of every version for the student, ascending by version."""
        pass

    @abstractmethod
    async def query_events(
        self,
        kind: AuditAction,
        cert_hash: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> list[RawLedgerEvent]:
        pass

    @abstractmethod
    async def get_block_timestamp(self, block_ordinal: int) -> Optional[datetime]:
        pass

    @abstractmethod
    async def health(self) -> dict[str, Any]:
        pass

    async def close(self) -> None:
        """Release any held resources."""
        pass


def _same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerClient(LedgerClient):
    """
    Local model of the certificate registry contract.

    Each accepted transaction is mined into its own block; block ordinals
    start at 1. Rejections mirror the contract's reverts.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (nothing is durable or shared)
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._records: dict[str, CertificateRecord] = {}
        self._chains: dict[str, list[str]] = {}
        self._events: list[RawLedgerEvent] = []
        self._blocks: list[datetime] = []
        self._lock = asyncio.Lock()

    @property
    def block_height(self) -> int:
        return len(self._blocks)

    async def submit(self, txn: TransactionDescriptor) -> Receipt:
        async with self._lock:
            cert_hash = normalize_hash(txn.cert_hash)

            if txn.kind == TransactionKind.ISSUE:
                self._check_issue(cert_hash, txn)
            else:
                self._check_status_change(cert_hash, txn.kind)

            block_ordinal = len(self._blocks) + 1
            tx_id = "0x" + secrets.token_hex(32)
            self._blocks.append(self._clock())

            if txn.kind == TransactionKind.ISSUE:
                record = txn.record.model_copy(update={"cert_hash": cert_hash, "is_revoked": False})
                self._records[cert_hash] = record
                self._chains.setdefault(record.student_id, []).append(cert_hash)
                event = RawLedgerEvent(
                    kind=AuditAction.ISSUED,
                    cert_hash=cert_hash,
                    actor=txn.actor,
                    block_ordinal=block_ordinal,
                    tx_id=tx_id,
                    student_id=record.student_id,
                    version=record.version,
                )
            else:
                revoked = txn.kind == TransactionKind.REVOKE
                self._records[cert_hash] = self._records[cert_hash].model_copy(
                    update={"is_revoked": revoked}
                )
                event = RawLedgerEvent(
                    kind=AuditAction.REVOKED if revoked else AuditAction.REACTIVATED,
                    cert_hash=cert_hash,
                    actor=txn.actor,
                    block_ordinal=block_ordinal,
                    tx_id=tx_id,
                )

            self._events.append(event)
            return Receipt(tx_id=tx_id, block_ordinal=block_ordinal)

    def _check_issue(self, cert_hash: str, txn: TransactionDescriptor) -> None:
        record = txn.record
        if record is None:
            raise RejectedByLedger("Issue transaction carries no record")
        if cert_hash in self._records:
            raise RejectedByLedger("Certificate already exists")
        expected = len(self._chains.get(record.student_id, [])) + 1
        if record.version != expected:
            raise RejectedByLedger(
                f"Invalid version: expected {expected}, got {record.version}"
            )

    def _check_status_change(self, cert_hash: str, kind: TransactionKind) -> None:
        record = self._records.get(cert_hash)
        if record is None:
            raise RejectedByLedger("Certificate does not exist")
        if kind == TransactionKind.REVOKE and record.is_revoked:
            raise RejectedByLedger("Certificate already revoked")
        if kind == TransactionKind.REACTIVATE and not record.is_revoked:
            raise RejectedByLedger("Certificate is not revoked")

    async def get_record(self, cert_hash: str) -> CertificateRecord:
        record = self._records.get(normalize_hash(cert_hash))
        if record is None:
            raise NotFound("Certificate not found")
        return record

    async def get_latest_version(self, student_id: str) -> int:
        return len(self._chains.get(student_id, []))

    async def get_version_hashes(self, student_id: str) -> list[str]:
        return list(self._chains.get(student_id, []))

    async def query_events(
        self,
        kind: AuditAction,
        cert_hash: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> list[RawLedgerEvent]:
        wanted_hash = normalize_hash(cert_hash) if cert_hash else None
        return [
            e for e in self._events
            if e.kind == kind
            and (wanted_hash is None or e.cert_hash == wanted_hash)
            and (actor is None or _same_address(e.actor, actor))
        ]

    async def get_block_timestamp(self, block_ordinal: int) -> Optional[datetime]:
        if 1 <= block_ordinal <= len(self._blocks):
            return self._blocks[block_ordinal - 1]
        return None

    async def health(self) -> dict[str, Any]:
        return {"driver": "memory", "block_height": len(self._blocks)}

    def clear(self) -> None:
        """Clear all state (for testing only)."""
        self._records.clear()
        self._chains.clear()
        self._events.clear()
        self._blocks.clear()


# ============================================================
# JSON-RPC IMPLEMENTATION
# ============================================================

class JsonRpcLedgerClient(LedgerClient):
    """
    JSON-RPC 2.0 client for a ledger gateway.

    Wire conventions:
    - Hashes travel as 0x-prefixed hex
    - cgpa travels as an integer scaled by 100
    - Timestamps travel as integer Unix seconds

    Error mapping:
    - httpx transport errors, timeouts, 5xx  -> LedgerUnavailable
    - JSON-RPC error mentioning a revert     -> RejectedByLedger
    - JSON-RPC error "does not exist"        -> NotFound
    - anything else                          -> LedgerError
    """

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._rpc_url = rpc_url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, config: LedgerConfig) -> "JsonRpcLedgerClient":
        return cls(config.rpc_url, timeout=config.timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        metrics = get_metrics()
        start = time.perf_counter()
        try:
            response = await self._client.post(self._rpc_url, json=payload)
        except httpx.TimeoutException as e:
            metrics.record_ledger_call((time.perf_counter() - start) * 1000, success=False)
            logger.warning("Ledger call timed out", method=method)
            raise LedgerUnavailable(f"Ledger call {method} timed out") from e
        except httpx.TransportError as e:
            metrics.record_ledger_call((time.perf_counter() - start) * 1000, success=False)
            logger.warning("Ledger unreachable", method=method, error=str(e))
            raise LedgerUnavailable(f"Ledger unreachable: {e}") from e

        latency_ms = (time.perf_counter() - start) * 1000

        if response.status_code >= 500:
            metrics.record_ledger_call(latency_ms, success=False)
            logger.warning("Ledger gateway error", method=method, status=response.status_code)
            raise LedgerUnavailable(f"Ledger gateway returned {response.status_code}")
        if response.status_code >= 400:
            metrics.record_ledger_call(latency_ms, success=False)
            raise LedgerError(f"Ledger gateway returned {response.status_code}")

        metrics.record_ledger_call(latency_ms, success=True)

        try:
            body = response.json()
        except ValueError as e:
            raise LedgerError("Ledger gateway returned invalid JSON") from e

        error = body.get("error")
        if error:
            raise self._map_error(error)
        return body.get("result")

    @staticmethod
    def _map_error(error: dict[str, Any]) -> CertChainError:
        message = str(error.get("message", "unknown error"))
        lowered = message.lower()
        if "does not exist" in lowered or "not found" in lowered:
            return NotFound(message)
        if "revert" in lowered:
            reason = error.get("data") or message
            if isinstance(reason, dict):
                reason = reason.get("reason", message)
            return RejectedByLedger(str(reason))
        return LedgerError(message)

    # ---- wire codecs ----

    @staticmethod
    def _hash_to_wire(cert_hash: str) -> str:
        return "0x" + normalize_hash(cert_hash)

    @classmethod
    def _record_to_wire(cls, record: CertificateRecord) -> dict[str, Any]:
        return {
            "certHash": cls._hash_to_wire(record.cert_hash),
            "studentId": record.student_id,
            "studentName": record.student_name,
            "degree": record.degree,
            "program": record.program,
            "cgpa": record.cgpa_scaled,
            "issuingAuthority": record.issuing_authority,
            "version": record.version,
            "issuer": record.issuer,
            "signature": record.signature,
            "issuanceTimestamp": record.issuance_timestamp,
        }

    @staticmethod
    def _record_from_wire(data: dict[str, Any]) -> CertificateRecord:
        return CertificateRecord(
            cert_hash=normalize_hash(data["certHash"]),
            student_id=data["studentId"],
            student_name=data["studentName"],
            degree=data["degree"],
            program=data["program"],
            cgpa=(Decimal(int(data["cgpa"])) / 100).quantize(Decimal("0.01")),
            issuing_authority=data["issuingAuthority"],
            version=int(data["version"]),
            issuer=data["issuer"],
            signature=data.get("signature", ""),
            issuance_timestamp=int(data["issuanceTimestamp"]),
            is_revoked=bool(data.get("isRevoked", False)),
        )

    @staticmethod
    def _event_from_wire(data: dict[str, Any]) -> RawLedgerEvent:
        version = data.get("version")
        return RawLedgerEvent(
            kind=AuditAction(data["kind"]),
            cert_hash=normalize_hash(data["certHash"]),
            actor=data["actor"],
            block_ordinal=int(data["blockNumber"]),
            tx_id=data["txHash"],
            student_id=data.get("studentId"),
            version=int(version) if version is not None else None,
        )

    # ---- contract ----

    async def submit(self, txn: TransactionDescriptor) -> Receipt:
        params: dict[str, Any] = {
            "kind": txn.kind.value,
            "certHash": self._hash_to_wire(txn.cert_hash),
            "from": txn.actor,
        }
        if txn.record is not None:
            params["record"] = self._record_to_wire(txn.record)
        result = await self._call("cert_submit", [params])
        return Receipt(tx_id=result["txHash"], block_ordinal=int(result["blockNumber"]))

    async def get_record(self, cert_hash: str) -> CertificateRecord:
        result = await self._call("cert_getRecord", [self._hash_to_wire(cert_hash)])
        if result is None:
            raise NotFound("Certificate not found")
        return self._record_from_wire(result)

    async def get_latest_version(self, student_id: str) -> int:
        result = await self._call("cert_getLatestVersion", [student_id])
        return int(result or 0)

    async def get_version_hashes(self, student_id: str) -> list[str]:
        result = await self._call("cert_getVersions", [student_id])
        return [normalize_hash(h) for h in (result or [])]

    async def query_events(
        self,
        kind: AuditAction,
        cert_hash: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> list[RawLedgerEvent]:
        event_filter: dict[str, Any] = {"kind": kind.value}
        if cert_hash:
            event_filter["certHash"] = self._hash_to_wire(cert_hash)
        if actor:
            event_filter["actor"] = actor
        result = await self._call("cert_queryEvents", [event_filter])
        return [self._event_from_wire(e) for e in (result or [])]

    async def get_block_timestamp(self, block_ordinal: int) -> Optional[datetime]:
        result = await self._call("chain_getBlockTimestamp", [block_ordinal])
        if result is None:
            return None
        return datetime.fromtimestamp(int(result), tz=timezone.utc)

    async def health(self) -> dict[str, Any]:
        block = await self._call("chain_getBlockNumber", [])
        return {"driver": "jsonrpc", "block_height": int(block or 0)}


def create_ledger_client(config: Optional[LedgerConfig] = None) -> LedgerClient:
    """Build the ledger client selected by configuration."""
    config = config or LedgerConfig.from_env()
    if config.driver == "jsonrpc":
        logger.info("Using JSON-RPC ledger", rpc_url=config.rpc_url)
        return JsonRpcLedgerClient.from_config(config)
    if config.driver != "memory":
        raise ValueError(f"Unknown ledger driver: {config.driver}")
    logger.warning("Using in-memory ledger; certificates will not persist")
    return InMemoryLedgerClient()
