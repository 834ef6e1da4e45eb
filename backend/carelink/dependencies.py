"""FastAPI dependency injection for services, client context and admin auth."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from sqlmodel import Session

from carelink.db import get_session
from carelink.errors import UnauthorizedError
from carelink.models.audit import ActorType, AuditAction, Outcome
from carelink.models.session import AdminSession
from carelink.services.audit import AuditLog
from carelink.services.disclosure import DisclosureService
from carelink.services.rate_limit import LoginRateLimiter
from carelink.services.referrals import ReferralClaimCoordinator
from carelink.services.sessions import AdminSessionStore

ADMIN_COOKIE = "carelink_admin"
CSRF_HEADER = "x-csrf-token"


def client_ip(request: Request) -> str | None:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


def _from_state(request: Request, name: str):
    svc = getattr(request.app.state, name, None)
    if svc is None:
        raise HTTPException(status_code=503, detail="Service unavailable")
    return svc


def get_audit_log(request: Request) -> AuditLog:
    return _from_state(request, "audit_log")


def get_disclosure_service(request: Request) -> DisclosureService:
    return _from_state(request, "disclosure_service")


def get_referral_coordinator(request: Request) -> ReferralClaimCoordinator:
    return _from_state(request, "referral_coordinator")


def get_admin_sessions(request: Request) -> AdminSessionStore:
    return _from_state(request, "admin_sessions")


def get_rate_limiter(request: Request) -> LoginRateLimiter:
    return _from_state(request, "rate_limiter")


def require_admin(
    request: Request,
    db: Session = Depends(get_session),
    sessions: AdminSessionStore = Depends(get_admin_sessions),
    audit: AuditLog = Depends(get_audit_log),
) -> AdminSession:
    """Validate the admin cookie against its bound context.

    Raises UnauthorizedError (401) and records ADMIN_API_UNAUTHORIZED when
    the cookie is missing or no longer valid.
    """
    ip = client_ip(request)
    try:
        return sessions.validate(db, request.cookies.get(ADMIN_COOKIE), ip, user_agent(request))
    except UnauthorizedError:
        audit.append(
            db,
            action=AuditAction.ADMIN_API_UNAUTHORIZED,
            resource="admin_api",
            resource_id=request.url.path,
            actor_type=ActorType.ADMIN,
            actor_id="unknown",
            outcome=Outcome.FAILURE,
            ip=ip,
        )
        raise


def require_admin_csrf(
    request: Request,
    admin: AdminSession = Depends(require_admin),
    sessions: AdminSessionStore = Depends(get_admin_sessions),
) -> AdminSession:
    """Admin auth plus a matching X-CSRF-Token header, for state changes."""
    if not sessions.verify_csrf(admin, request.headers.get(CSRF_HEADER)):
        raise HTTPException(status_code=403, detail="Invalid CSRF token")
    return admin
