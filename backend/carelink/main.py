from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from argon2 import PasswordHasher
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

import carelink.models  # noqa: F401  registers SQLModel tables

from carelink.config import Settings, get_settings
from carelink.db import create_db_and_tables, engine
from carelink.errors import CareLinkError, InvalidInputError, RateLimitedError
from carelink.routers import admin, health, provider, referral
from carelink.services.audit import AuditLog
from carelink.services.disclosure import DisclosureService
from carelink.services.envelope import EnvelopeService
from carelink.services.key_service import KeyService, LocalKeyService, RemoteKeyService
from carelink.services.notifier import Notifier, SmtpNotifier
from carelink.services.rate_limit import LoginRateLimiter
from carelink.services.referrals import ReferralClaimCoordinator
from carelink.services.sessions import AdminSessionStore, ProviderSessionStore
from carelink.services.tokens import TokenStore
from carelink.services.verification import VerificationCodeStore

logger = logging.getLogger(__name__)


def build_key_services(settings: Settings) -> list[KeyService]:
    """Primary key service first, then any fallback able to read older blobs."""
    services: list[KeyService] = []
    if settings.key_service_url:
        services.append(
            RemoteKeyService(
                settings.key_service_url,
                token=settings.key_service_token,
                timeout=settings.key_service_timeout_seconds,
            )
        )
    if settings.dev_encryption_key:
        services.append(LocalKeyService(settings.dev_encryption_key))
    return services


def init_services(
    app: FastAPI,
    settings: Settings,
    *,
    key_services: list[KeyService] | None = None,
    notifier: Notifier | None = None,
    hasher: PasswordHasher | None = None,
) -> None:
    """Construct every service handle and attach it to ``app.state``."""
    key_services = key_services if key_services is not None else build_key_services(settings)
    notifier = notifier if notifier is not None else SmtpNotifier.from_settings(settings)
    hasher = hasher or PasswordHasher()

    envelope = EnvelopeService(*key_services)
    audit = AuditLog()
    tokens = TokenStore(default_ttl=timedelta(hours=settings.token_expiry_hours))
    codes = VerificationCodeStore(
        notifier,
        tokens,
        ttl=timedelta(minutes=settings.code_expiry_minutes),
        max_attempts=settings.code_max_attempts,
    )
    provider_sessions = ProviderSessionStore(
        audit,
        ttl=timedelta(minutes=settings.provider_session_ttl_minutes),
        idle_timeout=timedelta(minutes=settings.provider_idle_timeout_minutes),
    )

    app.state.key_services = key_services
    app.state.notifier = notifier
    app.state.envelope_service = envelope
    app.state.audit_log = audit
    app.state.token_store = tokens
    app.state.provider_sessions = provider_sessions
    app.state.admin_sessions = AdminSessionStore(
        audit,
        hasher,
        ttl=timedelta(hours=settings.admin_session_ttl_hours),
        idle_timeout=timedelta(minutes=settings.admin_idle_timeout_minutes),
    )
    app.state.rate_limiter = LoginRateLimiter(
        max_attempts=settings.login_max_attempts,
        window=timedelta(minutes=settings.login_window_minutes),
        block_duration=timedelta(minutes=settings.login_block_minutes),
    )
    app.state.disclosure_service = DisclosureService(
        envelope,
        tokens,
        codes,
        provider_sessions,
        notifier,
        audit,
        portal_base_url=settings.portal_base_url,
        token_ttl=timedelta(hours=settings.token_expiry_hours),
    )
    app.state.referral_coordinator = ReferralClaimCoordinator(
        envelope,
        tokens,
        notifier,
        audit,
        portal_base_url=settings.portal_base_url,
        max_candidates=settings.referral_max_candidates,
        expiry_normal=timedelta(hours=settings.referral_expiry_hours_normal),
        expiry_urgent=timedelta(hours=settings.referral_expiry_hours_urgent),
    )


def close_services(app: FastAPI) -> None:
    for svc in getattr(app.state, "key_services", []):
        svc.close()
    notifier = getattr(app.state, "notifier", None)
    if notifier is not None:
        notifier.close()


def run_sweep(app: FastAPI) -> int:
    """One pass over everything that expires without being touched."""
    with Session(engine) as db:
        return (
            app.state.provider_sessions.sweep_expired(db)
            + app.state.admin_sessions.sweep_expired(db)
            + app.state.rate_limiter.cleanup(db)
            + app.state.referral_coordinator.sweep_expired(db)
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    create_db_and_tables()
    init_services(app, settings)
    logger.info("CareLink started (key mode: %s)", app.state.envelope_service.mode.value)

    # Start periodic sweep of expired sessions, invites and rate limits
    async def _sweep_loop() -> None:
        while True:
            await asyncio.sleep(settings.sweep_interval_seconds)
            try:
                swept = await asyncio.to_thread(run_sweep, app)
                if swept:
                    logger.info("Sweep: %d record(s) expired or removed", swept)
            except Exception:
                logger.exception("Sweep error")

    sweep_task = asyncio.create_task(_sweep_loop())

    yield

    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    close_services(app)


app = FastAPI(
    title="CareLink",
    description="Secure patient disclosure and referral claims",
    version="0.1.0",
    lifespan=lifespan,
)


async def _carelink_error_handler(request: Request, exc: CareLinkError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.public_message, **exc.public_payload()},
        headers=headers,
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=InvalidInputError.status_code,
        content={"success": False, "error": InvalidInputError.public_message},
    )


app.add_exception_handler(CareLinkError, _carelink_error_handler)
app.add_exception_handler(RequestValidationError, _validation_error_handler)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        f"https://{settings.domain}",
        settings.portal_base_url,
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "X-CSRF-Token"],
)

app.include_router(health.router)
app.include_router(provider.router)
app.include_router(referral.router)
app.include_router(admin.router)
