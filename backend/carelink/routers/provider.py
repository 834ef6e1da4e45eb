"""Provider-facing disclosure endpoints: link, code, session, content."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from carelink.db import get_session
from carelink.dependencies import client_ip, get_disclosure_service, user_agent
from carelink.models.message import CreateMessageRequest, CreateMessageResponse
from carelink.models.session import ContentResponse, TerminateSessionRequest
from carelink.models.verification import (
    RedeemTokenRequest,
    RedeemTokenResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from carelink.services.disclosure import DisclosureService

router = APIRouter(prefix="/api/provider", tags=["provider"])


@router.post("/message", response_model=CreateMessageResponse, status_code=201)
def create_message(
    request: Request,
    body: CreateMessageRequest,
    db: Session = Depends(get_session),
    service: DisclosureService = Depends(get_disclosure_service),
) -> CreateMessageResponse:
    message, _ = service.create_disclosure(db, body, ip=client_ip(request))
    return CreateMessageResponse(message_id=message.id)


@router.post("/token/validate", response_model=RedeemTokenResponse)
def redeem_token(
    request: Request,
    body: RedeemTokenRequest,
    db: Session = Depends(get_session),
    service: DisclosureService = Depends(get_disclosure_service),
) -> RedeemTokenResponse:
    """Redeem an access link and send the verification code."""
    challenge = service.redeem_access_token(db, body.token, ip=client_ip(request))
    return RedeemTokenResponse(
        code_id=challenge.code_id,
        expires_at=challenge.expires_at,
        masked_recipient=challenge.masked_recipient,
    )


@router.post("/code/verify", response_model=VerifyCodeResponse)
def verify_code(
    request: Request,
    body: VerifyCodeRequest,
    db: Session = Depends(get_session),
    service: DisclosureService = Depends(get_disclosure_service),
) -> VerifyCodeResponse:
    session = service.verify_code(
        db, body.code_id, body.code, ip=client_ip(request), user_agent=user_agent(request)
    )
    return VerifyCodeResponse(session_id=session.id, expires_at=session.expires_at)


@router.get("/content/{session_id}", response_model=ContentResponse)
def fetch_content(
    session_id: str,
    request: Request,
    db: Session = Depends(get_session),
    service: DisclosureService = Depends(get_disclosure_service),
) -> ContentResponse:
    content = service.fetch_content(db, session_id, ip=client_ip(request), user_agent=user_agent(request))
    return ContentResponse(
        data=content.data,
        pathways=content.pathways,
        remaining_minutes=content.remaining_minutes,
    )


@router.post("/session/terminate")
def terminate_session(
    request: Request,
    body: TerminateSessionRequest,
    db: Session = Depends(get_session),
    service: DisclosureService = Depends(get_disclosure_service),
) -> dict:
    service.terminate_session(db, body.session_id, ip=client_ip(request))
    return {"success": True}
