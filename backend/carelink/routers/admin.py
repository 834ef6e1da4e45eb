"""Admin endpoints: password login, cookie session, audit log access.

The admin session lives in an HttpOnly cookie. State-changing requests
also need the CSRF token returned at login in the ``X-CSRF-Token`` header.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlmodel import Session

from carelink.config import get_settings
from carelink.db import get_session
from carelink.dependencies import (
    ADMIN_COOKIE,
    client_ip,
    get_admin_sessions,
    get_audit_log,
    get_rate_limiter,
    require_admin,
    require_admin_csrf,
    user_agent,
)
from carelink.errors import InvalidCredentialsError, RateLimitedError, UnauthorizedError
from carelink.models.audit import (
    ActorType,
    AuditAction,
    AuditLogRead,
    ChainVerificationResponse,
    Outcome,
)
from carelink.models.session import AdminLoginRequest, AdminSession, AdminSessionResponse
from carelink.services.audit import AuditLog
from carelink.services.rate_limit import LoginRateLimiter
from carelink.services.sessions import AdminSessionStore, session_ref

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/auth/login", response_model=AdminSessionResponse)
def login(
    request: Request,
    response: Response,
    body: AdminLoginRequest,
    db: Session = Depends(get_session),
    sessions: AdminSessionStore = Depends(get_admin_sessions),
    limiter: LoginRateLimiter = Depends(get_rate_limiter),
    audit: AuditLog = Depends(get_audit_log),
) -> AdminSessionResponse:
    settings = get_settings()
    ip = client_ip(request)
    key = ip or "unknown"

    status = limiter.check(db, key)
    if not status.allowed:
        audit.append(
            db,
            action=AuditAction.ADMIN_LOGIN_BLOCKED,
            resource="admin_auth",
            actor_type=ActorType.ADMIN,
            actor_id="unknown",
            details={"blocked_until": status.blocked_until},
            outcome=Outcome.FAILURE,
            ip=ip,
        )
        raise RateLimitedError(status.blocked_until, status.retry_after_seconds)

    if not sessions.verify_password(settings.admin_password_hash, body.password):
        status = limiter.record_attempt(db, key, success=False)
        audit.append(
            db,
            action=AuditAction.ADMIN_LOGIN_FAILED,
            resource="admin_auth",
            actor_type=ActorType.ADMIN,
            actor_id="unknown",
            details={"remaining_attempts": status.remaining_attempts},
            outcome=Outcome.FAILURE,
            ip=ip,
        )
        if not status.allowed:
            raise RateLimitedError(status.blocked_until, status.retry_after_seconds)
        raise InvalidCredentialsError(status.remaining_attempts)

    limiter.record_attempt(db, key, success=True)
    issued = sessions.create(db, ip, user_agent(request))
    response.set_cookie(
        key=ADMIN_COOKIE,
        value=issued.cookie,
        max_age=settings.admin_session_ttl_hours * 3600,
        httponly=True,
        secure=settings.admin_cookie_secure,
        samesite="strict",
        path="/api/admin",
    )
    audit.append(
        db,
        action=AuditAction.ADMIN_LOGIN_SUCCESS,
        resource="admin_session",
        resource_id=session_ref(issued.cookie.partition(":")[0]),
        actor_type=ActorType.ADMIN,
        actor_id="admin",
        ip=ip,
    )
    logger.info("Admin login from %s", ip)
    return AdminSessionResponse(authenticated=True, expires_at=issued.expires_at, csrf_token=issued.csrf_token)


@router.get("/auth/session", response_model=AdminSessionResponse)
def session_status(
    request: Request,
    db: Session = Depends(get_session),
    sessions: AdminSessionStore = Depends(get_admin_sessions),
) -> AdminSessionResponse:
    try:
        admin = sessions.validate(db, request.cookies.get(ADMIN_COOKIE), client_ip(request), user_agent(request))
    except UnauthorizedError:
        return AdminSessionResponse(authenticated=False)
    return AdminSessionResponse(authenticated=True, expires_at=admin.expires_at, csrf_token=admin.csrf_token)


@router.post("/auth/logout")
def logout(
    request: Request,
    response: Response,
    admin: AdminSession = Depends(require_admin_csrf),
    db: Session = Depends(get_session),
    sessions: AdminSessionStore = Depends(get_admin_sessions),
    audit: AuditLog = Depends(get_audit_log),
) -> dict:
    sessions.terminate(db, request.cookies.get(ADMIN_COOKIE))
    response.delete_cookie(ADMIN_COOKIE, path="/api/admin")
    audit.append(
        db,
        action=AuditAction.ADMIN_LOGOUT,
        resource="admin_session",
        resource_id=session_ref(admin.id),
        actor_type=ActorType.ADMIN,
        actor_id="admin",
        ip=client_ip(request),
    )
    return {"success": True}


@router.post("/audit/verify", response_model=ChainVerificationResponse)
def verify_audit_chain(
    request: Request,
    from_id: str | None = None,
    limit: int = Query(default=1000, ge=1, le=10000),
    _admin: AdminSession = Depends(require_admin_csrf),
    db: Session = Depends(get_session),
    audit: AuditLog = Depends(get_audit_log),
) -> ChainVerificationResponse:
    result = audit.verify_chain(db, from_id=from_id, limit=limit)
    audit.append(
        db,
        action=AuditAction.AUDIT_CHAIN_VERIFIED,
        resource="audit_log",
        actor_type=ActorType.ADMIN,
        actor_id="admin",
        details={"checked": result.checked, "errors": len(result.errors)},
        outcome=Outcome.SUCCESS if result.valid else Outcome.FAILURE,
        ip=client_ip(request),
    )
    return ChainVerificationResponse(valid=result.valid, checked=result.checked, errors=result.errors)


@router.get("/audit/logs", response_model=list[AuditLogRead])
def list_audit_logs(
    resource: str | None = None,
    resource_id: str | None = None,
    actor_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    _admin: AdminSession = Depends(require_admin),
    db: Session = Depends(get_session),
    audit: AuditLog = Depends(get_audit_log),
) -> list[AuditLogRead]:
    if resource and resource_id:
        entries = audit.for_resource(db, resource, resource_id, limit=limit)
    elif actor_id:
        entries = audit.for_actor(db, actor_id, limit=limit)
    else:
        entries = audit.recent(db, limit=limit)
    return [AuditLogRead.model_validate(e) for e in entries]
