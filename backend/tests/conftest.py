from __future__ import annotations

import os
import re
from datetime import datetime, timedelta

from argon2 import PasswordHasher

# Cheap Argon2 parameters keep the suite fast; verification reads the
# parameters from the stored hash, so production hashers accept these too.
TEST_HASHER = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)
ADMIN_PASSWORD = "correct-horse-battery-staple"

# Set test environment BEFORE importing carelink modules.
# carelink.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any carelink imports.
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("KEY_SERVICE_URL", "")
os.environ.setdefault("DEV_ENCRYPTION_KEY", "test-dev-encryption-key-not-for-production")
os.environ.setdefault("ALLOW_LOCAL_ENCRYPTION", "1")
os.environ.setdefault("ADMIN_COOKIE_SECURE", "0")
os.environ.setdefault("SMTP_HOST", "")
os.environ["ADMIN_PASSWORD_HASH"] = TEST_HASHER.hash(ADMIN_PASSWORD)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from carelink.config import get_settings
from carelink.db import get_session
from carelink.errors import DeliveryError
from carelink.main import app as fastapi_app, init_services
from carelink.models.referral import CandidateIn, CreateReferralRequest
from carelink.services.audit import AuditLog
from carelink.services.disclosure import DisclosureService
from carelink.services.envelope import EnvelopeService
from carelink.services.key_service import LocalKeyService
from carelink.services.rate_limit import LoginRateLimiter
from carelink.services.referrals import ReferralClaimCoordinator
from carelink.services.sessions import AdminSessionStore, ProviderSessionStore
from carelink.services.tokens import TokenStore
from carelink.services.verification import VerificationCodeStore
from carelink.store import utcnow


# ── Test doubles ──────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeNotifier:
    """Records outgoing messages; addresses in ``fail_for`` raise DeliveryError."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail_for: set[str] = set()
        self.closed = False

    def send(self, to: str, subject: str, body: str) -> None:
        if to in self.fail_for:
            raise DeliveryError(f"delivery to {to} failed")
        self.sent.append((to, subject, body))

    def close(self) -> None:
        self.closed = True

    def last_code(self, to: str) -> str:
        for recipient, _, body in reversed(self.sent):
            if recipient == to:
                match = re.search(r"\b(\d{6})\b", body)
                if match:
                    return match.group(1)
        raise AssertionError(f"no code sent to {to}")

    def last_link_secret(self, to: str) -> str:
        for recipient, _, body in reversed(self.sent):
            if recipient == to:
                match = re.search(r"/(?:access|referral)/([A-Za-z0-9_\-]+)", body)
                if match:
                    return match.group(1)
        raise AssertionError(f"no link sent to {to}")


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="file_engine")
def file_engine_fixture(tmp_path):
    """File-backed SQLite engine for tests where threads need separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'carelink-test.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


# ── Service fixtures ──────────────────────────────────────────────────


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="notifier")
def notifier_fixture() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture(name="key_service")
def key_service_fixture() -> LocalKeyService:
    return LocalKeyService("unit-test-kek-secret")


@pytest.fixture(name="envelope")
def envelope_fixture(key_service) -> EnvelopeService:
    return EnvelopeService(key_service)


@pytest.fixture(name="audit")
def audit_fixture() -> AuditLog:
    return AuditLog()


@pytest.fixture(name="tokens")
def tokens_fixture(clock) -> TokenStore:
    return TokenStore(clock=clock)


@pytest.fixture(name="codes")
def codes_fixture(notifier, tokens, clock) -> VerificationCodeStore:
    return VerificationCodeStore(notifier, tokens, clock=clock)


@pytest.fixture(name="provider_sessions")
def provider_sessions_fixture(audit, clock) -> ProviderSessionStore:
    return ProviderSessionStore(audit, clock=clock)


@pytest.fixture(name="admin_sessions")
def admin_sessions_fixture(audit, clock) -> AdminSessionStore:
    return AdminSessionStore(audit, TEST_HASHER, clock=clock)


@pytest.fixture(name="rate_limiter")
def rate_limiter_fixture(clock) -> LoginRateLimiter:
    return LoginRateLimiter(clock=clock)


@pytest.fixture(name="disclosure")
def disclosure_fixture(envelope, tokens, codes, provider_sessions, notifier, audit) -> DisclosureService:
    return DisclosureService(envelope, tokens, codes, provider_sessions, notifier, audit)


@pytest.fixture(name="coordinator")
def coordinator_fixture(envelope, tokens, notifier, audit, clock) -> ReferralClaimCoordinator:
    return ReferralClaimCoordinator(envelope, tokens, notifier, audit, clock=clock)


@pytest.fixture(name="referral_request")
def referral_request_fixture() -> CreateReferralRequest:
    return CreateReferralRequest(
        subject_ref="patient-001",
        subject_initials="J.D.",
        subject_city="Utrecht",
        pathways=["physio", "diet"],
        urgency="normal",
        notes="Mobility after hip surgery",
        created_by="coordinator-7",
        intake={"diagnosis": "hip replacement", "phone": "+31 6 0000 0000"},
        candidates=[
            CandidateIn(candidate_id="cand-a", email="a@practice.example", name="Practice A", candidate_type="fysio"),
            CandidateIn(candidate_id="cand-b", email="b@practice.example", name="Practice B", candidate_type="fysio"),
            CandidateIn(candidate_id="cand-c", email="c@practice.example", name="Practice C", candidate_type="diet"),
        ],
    )


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(session, notifier, key_service):
    """FastAPI TestClient with overridden DB session and fake notifier."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as client:
        init_services(
            fastapi_app,
            get_settings(),
            key_services=[key_service],
            notifier=notifier,
            hasher=TEST_HASHER,
        )
        yield client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture(name="admin_client")
def admin_client_fixture(client):
    """TestClient logged in as admin; ``client.csrf`` holds the CSRF token."""
    resp = client.post("/api/admin/auth/login", json={"password": ADMIN_PASSWORD})
    assert resp.status_code == 200, resp.text
    client.csrf = resp.json()["csrf_token"]
    return client
