"""
Reviewer Invitation API Routes.

Provides endpoints for:
- Inviting a reviewer to a manuscript
- Accept/decline by invitation id (editorial staff) or via the signed link
  from the invitation email (reviewer, no login)
- Invitation deadline and timeline views

Reminders and auto-withdrawal are timer transitions; they are driven by the
scheduler tick or the admin force-transition endpoint, not from here.
"""
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field

from editorial_clock.models.enums import Decision
from editorial_clock.models.schemas import InvitationResponse, TimelineEventResponse
from editorial_clock.services.container import Services, get_services
from editorial_clock.services.response_links import validate_response_token


router = APIRouter(prefix="/api/invitations", tags=["Invitations"])


# ==========================================
# PYDANTIC MODELS
# ==========================================

class InviteRequest(BaseModel):
    """Request body for inviting a reviewer."""
    manuscript_id: str = Field(..., description="Manuscript ID")
    reviewer_id: str = Field(..., description="Reviewer ID")
    reviewer_email: Optional[str] = Field(None, description="Where invitation emails are sent")
    reviewer_name: Optional[str] = Field(None, description="Used in the email greeting")
    actor_id: str = Field("system", description="Who sent the invitation")
    at: Optional[datetime] = Field(None, description="Invitation time (defaults to now)")


class RespondRequest(BaseModel):
    """Request body for accepting or declining by invitation id."""
    decision: Decision = Field(..., description="accept or decline")
    actor_id: Optional[str] = Field(None, description="Defaults to the invited reviewer")
    reason: Optional[str] = Field(None, description="Decline reason")
    alternative_reviewers: Optional[List[str]] = Field(None, description="Suggested replacements")
    at: Optional[datetime] = Field(None, description="Response time (defaults to now)")


class TokenRespondRequest(BaseModel):
    """Request body for responding through a signed link."""
    decision: Decision = Field(..., description="accept or decline")
    reason: Optional[str] = Field(None, description="Decline reason")
    alternative_reviewers: Optional[List[str]] = Field(None, description="Suggested replacements")


# ==========================================
# SIGNED LINK ENDPOINTS
# Declared before /{invitation_id} so "respond" is not taken as an id
# ==========================================

@router.get(
    "/respond/{token}",
    summary="Validate Response Link",
    description="Validates a signed response link and returns the invitation it belongs to"
)
async def validate_response_link(
    token: str = Path(..., description="Signed response token"),
    services: Services = Depends(get_services),
) -> dict:
    claims = validate_response_token(token)
    invitation = services.invitations.get(claims["iid"])
    return {
        "valid": True,
        "invitation": InvitationResponse.from_record(invitation),
        "can_respond": not invitation.is_terminal,
        "token_expires_at": datetime.fromtimestamp(claims["exp"], tz=timezone.utc).isoformat(),
    }


@router.post(
    "/respond/{token}",
    summary="Respond via Signed Link",
    description="Accept or decline the invitation the link was issued for"
)
async def respond_with_link(
    body: TokenRespondRequest,
    token: str = Path(..., description="Signed response token"),
    services: Services = Depends(get_services),
) -> dict:
    invitation = services.invitations.respond_with_token(
        token,
        body.decision,
        reason=body.reason,
        alternative_reviewers=body.alternative_reviewers,
    )
    return {
        "success": True,
        "invitation": InvitationResponse.from_record(invitation),
    }


# ==========================================
# INVITATION ENDPOINTS
# ==========================================

@router.post(
    "",
    summary="Invite Reviewer",
    description="Create an invitation with a 7-day response deadline and email the reviewer"
)
async def invite_reviewer(
    body: InviteRequest,
    services: Services = Depends(get_services),
) -> dict:
    invitation = services.invitations.invite(
        body.manuscript_id,
        body.reviewer_id,
        at=body.at,
        actor_id=body.actor_id,
        reviewer_email=body.reviewer_email,
        reviewer_name=body.reviewer_name,
    )
    return {
        "success": True,
        "invitation": InvitationResponse.from_record(invitation),
    }


@router.get(
    "/{invitation_id}",
    summary="Get Invitation"
)
async def get_invitation(
    invitation_id: str = Path(..., description="Invitation ID"),
    services: Services = Depends(get_services),
) -> dict:
    return InvitationResponse.from_record(services.invitations.get(invitation_id))


@router.get(
    "/{invitation_id}/deadline",
    summary="Invitation Deadlines",
    description="Response and review deadline status, and when auto-withdrawal would happen"
)
async def invitation_deadline(
    invitation_id: str = Path(..., description="Invitation ID"),
    services: Services = Depends(get_services),
) -> dict:
    return services.admin.invitation_deadline(invitation_id)


@router.post(
    "/{invitation_id}/respond",
    summary="Record Response",
    description="Accept or decline on the reviewer's behalf"
)
async def respond(
    body: RespondRequest,
    invitation_id: str = Path(..., description="Invitation ID"),
    services: Services = Depends(get_services),
) -> dict:
    invitation = services.invitations.respond(
        invitation_id,
        body.decision,
        at=body.at,
        actor_id=body.actor_id,
        reason=body.reason,
        alternative_reviewers=body.alternative_reviewers,
    )
    return {
        "success": True,
        "invitation": InvitationResponse.from_record(invitation),
    }


@router.get(
    "/{invitation_id}/timeline",
    summary="Invitation Timeline"
)
async def invitation_timeline(
    invitation_id: str = Path(..., description="Invitation ID"),
    services: Services = Depends(get_services),
) -> dict:
    services.invitations.get(invitation_id)
    events = services.event_log.timeline(invitation_id)
    return {
        "invitation_id": invitation_id,
        "events": [TimelineEventResponse.from_record(e) for e in events],
        "count": len(events),
    }
