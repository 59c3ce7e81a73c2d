"""Shared fixtures: in-memory ledger and store, a controllable clock, actors."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from certchain.core import (
    AbuseRateLimiter,
    ActionRequestWorkflow,
    AuditTrailAggregator,
    CertificateVersionChain,
    InMemoryAttemptCounter,
    InMemoryLedgerClient,
    KeyPair,
    RateLimitConfig,
    Signer,
    SigningService,
    VerificationService,
)
from certchain.db import InMemoryGovernanceStore
from certchain.schemas import Actor, ActorRole


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def token_secret(monkeypatch):
    monkeypatch.setenv("CERTCHAIN_TOKEN_SECRET", "test-secret-0123456789abcdef")


@pytest.fixture
def keypair():
    private, public = Signer.generate_keypair()
    return KeyPair(private_key=private, public_key=public)


@pytest.fixture
def signing_service(keypair):
    SigningService.reset()
    service = SigningService(keypair)
    yield service
    SigningService.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return InMemoryLedgerClient(clock=clock)


@pytest.fixture
def store():
    return InMemoryGovernanceStore()


@pytest.fixture
def chain(ledger, signing_service, clock):
    return CertificateVersionChain(ledger, signing_service, clock=clock)


@pytest.fixture
def audit(ledger):
    return AuditTrailAggregator(ledger)


@pytest.fixture
def workflow(store, ledger, clock):
    return ActionRequestWorkflow(store, ledger, clock=clock)


@pytest.fixture
def rate_config():
    return RateLimitConfig(max_attempts=5, window_seconds=15 * 60, block_seconds=60 * 60)


@pytest.fixture
def counter():
    return InMemoryAttemptCounter()


@pytest.fixture
def limiter(store, counter, rate_config, clock):
    return AbuseRateLimiter(store, counter=counter, config=rate_config, clock=clock)


@pytest.fixture
def verification(store, limiter, clock):
    return VerificationService(store, limiter, clock=clock)


@pytest.fixture
def admin():
    return Actor(address="0xadmin000000000000000000000000000000000001", name="Registrar", role=ActorRole.ADMIN)


@pytest.fixture
def other_admin():
    return Actor(address="0xadmin000000000000000000000000000000000002", name="Deputy", role=ActorRole.ADMIN)


@pytest.fixture
def staff():
    return Actor(address="0xstaff000000000000000000000000000000000001", name="Clerk", role=ActorRole.STAFF)


@pytest.fixture
def other_staff():
    return Actor(address="0xstaff000000000000000000000000000000000002", name="Clerk Two", role=ActorRole.STAFF)


@pytest.fixture
def issue_cert(chain, staff):
    """Issue a certificate with sensible defaults; override any field by keyword."""

    async def _issue(student_id: str = "S1", actor: Actor = None, **overrides):
        fields = {
            "student_name": "Ada Lovelace",
            "degree": "BSc",
            "program": "Computer Science",
            "cgpa": Decimal("3.85"),
            "issuing_authority": "University of Example",
        }
        fields.update(overrides)
        return await chain.issue(student_id=student_id, actor=actor or staff, **fields)

    return _issue
