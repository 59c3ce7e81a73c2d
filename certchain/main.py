"""
CertChain - Ledger-Backed Academic Certificates

Main application entry point.

Run with:
    uvicorn certchain.main:app
"""

import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import certchain_error_handler, router
from .core import (
    AbuseRateLimiter,
    ActionRequestWorkflow,
    AuditTrailAggregator,
    CertChainError,
    CertificateVersionChain,
    LedgerClient,
    RateLimitConfig,
    VerificationService,
    create_ledger_client,
    get_signing_service,
)
from .db import GovernanceStore, create_store
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

setup_logging()
logger = get_logger(__name__)

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"


@dataclass
class Services:
    """Everything the routes need, wired once per process."""
    ledger: LedgerClient
    store: GovernanceStore
    chain: CertificateVersionChain
    audit: AuditTrailAggregator
    workflow: ActionRequestWorkflow
    limiter: AbuseRateLimiter
    verification: VerificationService

    @classmethod
    def wire(
        cls,
        ledger: LedgerClient,
        store: GovernanceStore,
        rate_limit: Optional[RateLimitConfig] = None,
    ) -> "Services":
        limiter = AbuseRateLimiter(store, config=rate_limit or RateLimitConfig.from_env())
        return cls(
            ledger=ledger,
            store=store,
            chain=CertificateVersionChain(ledger, get_signing_service()),
            audit=AuditTrailAggregator(ledger),
            workflow=ActionRequestWorkflow(store, ledger),
            limiter=limiter,
            verification=VerificationService(store, limiter),
        )

    async def close(self) -> None:
        await self.ledger.close()
        await self.store.close()


def cors_origins() -> list[str]:
    """Comma-separated CERTCHAIN_CORS_ORIGINS, defaulting to local frontends."""
    raw = os.environ.get("CERTCHAIN_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


async def build_services() -> Services:
    """Build services from environment configuration."""
    return Services.wire(create_ledger_client(), await create_store())


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-wired services (tests). Built from the environment when None.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services if services is not None else await build_services()

        signing = get_signing_service()
        logger.info(
            "Application startup complete",
            ledger=type(app.state.services.ledger).__name__,
            store=type(app.state.services.store).__name__,
            ephemeral_key=signing.is_ephemeral,
        )

        yield

        if owned:
            await app.state.services.close()
            logger.info("Ledger and store connections closed")
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="CertChain",
        description="""
## Ledger-Backed Academic Certificates

Certificates are content-addressed records on an append-only ledger.

### Certificate Lifecycle

```
Issued (v1) → Revoked ⇄ Reactivated
Issued (v2) supersedes v1 as the active version
```

### Governance

Revocation and reactivation go through action requests:

```
pending → processing → completed | rejected
```

### Verification

Public verification is rate limited per client IP; repeat offenders are
blocked for an hour.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CertChainError, certchain_error_handler)
    app.include_router(router, prefix="/api")

    @app.get("/health", tags=["System"])
    async def health():
        """Liveness only; /health/detailed checks the ledger and store."""
        return {"status": "healthy", "service": "certchain"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """Ledger and store checks; 503 when either is down."""
        svc = request.app.state.services
        status = await check_health(ledger=svc.ledger, store=svc.store)
        return JSONResponse(
            status_code=200 if status.healthy else 503,
            content={
                "status": "healthy" if status.healthy else "unhealthy",
                "checks": status.checks,
                "duration_ms": status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters and latency percentiles."""
        return get_metrics().get_summary()

    return app


app = create_app()
