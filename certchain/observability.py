"""
Logging, metrics and health for CertChain.

Log records carry the request id and the acting address from context
variables, plus whatever keyword fields the caller passed:

    logger = get_logger(__name__)
    logger.info("Certificate issued", cert_hash=cert_hash, version=2)

Environment:
- CERTCHAIN_LOG_LEVEL   DEBUG | INFO | WARNING | ERROR (default INFO)
- CERTCHAIN_LOG_FORMAT  json | text (default json in production, text otherwise)
- CERTCHAIN_PRODUCTION  1/true/yes switches production defaults on
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_var: ContextVar[str] = ContextVar("actor", default="")

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Keyword names the stdlib logging methods consume themselves
_LOGGING_KWARGS = ("exc_info", "stack_info", "stacklevel", "extra")


def is_production() -> bool:
    return os.environ.get("CERTCHAIN_PRODUCTION", "").lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class LogSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        name = os.environ.get("CERTCHAIN_LOG_LEVEL", "INFO").upper()
        fmt = os.environ.get("CERTCHAIN_LOG_FORMAT", "").lower()
        return cls(
            level=getattr(logging, name) if name in _LEVELS else logging.INFO,
            json_output=is_production() if fmt not in ("json", "text") else fmt == "json",
        )


# ============================================================
# FORMATTERS
# ============================================================

# Attributes every LogRecord carries; anything else came from `extra`
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, context, extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name, var in (("request_id", request_id_var), ("actor", actor_var)):
            if var.get():
                entry[name] = var.get()
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update({k: _jsonable(v) for k, v in _extra_fields(record).items()})
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Single-line output for local development."""

    def format(self, record: logging.LogRecord) -> str:
        request_id = request_id_var.get()
        parts = [
            datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            f"{record.levelname:8}",
        ]
        if request_id:
            parts.append(f"[{request_id[:8]}]")
        parts.append(f"{record.name}: {record.getMessage()}")
        parts.extend(f"{k}={v}" for k, v in _extra_fields(record).items())

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Adapter that files arbitrary keyword arguments under `extra`."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in _LOGGING_KWARGS}
        kwargs["extra"] = {**kwargs.get("extra", {}), **fields}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LogSettings] = None) -> None:
    """Replace the root handlers with one stdout handler. Call once at startup."""
    settings = settings or LogSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(settings.level)
    handler.setFormatter(StructuredFormatter() if settings.json_output else TextFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(settings.level)
    root.addHandler(handler)

    # Per-request access lines come from the middleware below
    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds request id and actor for the duration of a request.

    The id comes from X-Request-ID when the caller sent one and is echoed
    back on the response. Every request is logged once with its duration.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        from certchain.api.auth import actor_from_request

        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        actor = actor_from_request(request)
        id_token = request_id_var.set(request_id)
        actor_token = actor_var.set(actor.address if actor else "")

        logger = get_logger("certchain.request")
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            logger.exception("Unhandled error", method=request.method, path=request.url.path)
            raise
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            _metrics.record_request(elapsed_ms, success=status_code < 500)
            logger.log(
                logging.INFO if status_code < 400 else logging.WARNING,
                f"{request.method} {request.url.path} -> {status_code}",
                status_code=status_code,
                duration_ms=round(elapsed_ms, 2),
            )
            request_id_var.reset(id_token)
            actor_var.reset(actor_token)


# ============================================================
# METRICS
# ============================================================

def _percentile(samples, p: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * p), len(ordered) - 1)]


def _samples() -> deque:
    return deque(maxlen=MetricsCollector.MAX_SAMPLES)


@dataclass
class MetricsCollector:
    """Process-local counters and bounded latency samples."""

    MAX_SAMPLES = 1000

    certificates_issued: int = 0
    certificates_revoked: int = 0
    certificates_reactivated: int = 0
    issue_conflicts: int = 0
    ledger_failures: int = 0
    clients_blocked: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    ledger_latencies_ms: deque = field(default_factory=_samples)
    request_latencies_ms: deque = field(default_factory=_samples)

    def record_ledger_call(self, latency_ms: float, success: bool) -> None:
        self.ledger_latencies_ms.append(latency_ms)
        if not success:
            self.ledger_failures += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        self.request_latencies_ms.append(latency_ms)
        self.requests_total += 1
        if not success:
            self.requests_failed += 1

    def get_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            name: value for name, value in vars(self).items() if isinstance(value, int)
        }
        for label, samples in (("ledger", self.ledger_latencies_ms), ("request", self.request_latencies_ms)):
            summary[f"{label}_latency_p50_ms"] = _percentile(samples, 0.5)
            summary[f"{label}_latency_p95_ms"] = _percentile(samples, 0.95)
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


# ============================================================
# HEALTH
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


async def check_health(ledger=None, store=None) -> HealthStatus:
    """
    Check the ledger and the governance store, whichever are given.

    A component that raises is reported unhealthy with the error text;
    the check itself never raises.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    for name, component in (("ledger", ledger), ("store", store)):
        if component is None:
            continue
        try:
            details = await component.health()
        except Exception as e:
            checks[name] = {"status": "unhealthy", "error": str(e)}
        else:
            checks[name] = {"status": "healthy", **details}

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
