"""Referral endpoints: fan-out to candidates, view, first-come accept."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from carelink.db import get_session
from carelink.dependencies import client_ip, get_referral_coordinator
from carelink.models.referral import (
    AcceptedByInfo,
    AcceptReferralResponse,
    CreateReferralRequest,
    CreateReferralResponse,
    InviteTokenRequest,
    ReferralSummary,
    ReferralViewResponse,
)
from carelink.services.referrals import ReferralClaimCoordinator

router = APIRouter(prefix="/api/referral", tags=["referral"])


@router.post("", response_model=CreateReferralResponse, status_code=201)
def create_referral(
    request: Request,
    body: CreateReferralRequest,
    db: Session = Depends(get_session),
    coordinator: ReferralClaimCoordinator = Depends(get_referral_coordinator),
) -> CreateReferralResponse:
    referral, invites = coordinator.create_referral(db, body, ip=client_ip(request))
    return CreateReferralResponse(
        referral_id=referral.id,
        invites_sent=sum(1 for invite in invites if invite.delivered),
    )


@router.post("/view", response_model=ReferralViewResponse)
def view_referral(
    request: Request,
    body: InviteTokenRequest,
    db: Session = Depends(get_session),
    coordinator: ReferralClaimCoordinator = Depends(get_referral_coordinator),
) -> ReferralViewResponse:
    view = coordinator.view_invite(db, body.invite_token, ip=client_ip(request))
    referral = view.referral
    accepted_by = None
    if view.accepted_by_name is not None and not view.is_accepted_by_me:
        accepted_by = AcceptedByInfo(name=view.accepted_by_name, accepted_at=view.accepted_at)
    return ReferralViewResponse(
        referral=ReferralSummary(
            id=referral.id,
            subject_initials=referral.subject_initials,
            subject_city=referral.subject_city,
            pathways=referral.pathways,
            urgency=referral.urgency,
            notes=referral.notes,
            status=referral.status,
            created_at=referral.created_at,
            expires_at=referral.expires_at,
        ),
        invite_status=view.invite.status,
        can_accept=view.can_accept,
        is_accepted_by_me=view.is_accepted_by_me,
        accepted_by_info=accepted_by,
    )


@router.post("/accept", response_model=AcceptReferralResponse)
def accept_referral(
    request: Request,
    body: InviteTokenRequest,
    db: Session = Depends(get_session),
    coordinator: ReferralClaimCoordinator = Depends(get_referral_coordinator),
) -> AcceptReferralResponse:
    result = coordinator.accept(db, body.invite_token, ip=client_ip(request))
    return AcceptReferralResponse(referral_id=result.referral_id, accepted_at=result.accepted_at)


@router.post("/decline")
def decline_referral(
    request: Request,
    body: InviteTokenRequest,
    db: Session = Depends(get_session),
    coordinator: ReferralClaimCoordinator = Depends(get_referral_coordinator),
) -> dict:
    coordinator.decline(db, body.invite_token, ip=client_ip(request))
    return {"success": True}
