"""
Signed reviewer response links.

Invitation and reminder emails carry accept/decline links that work
without a login. Each link is an HS256 JWT bound to one reviewer and one
invitation; it authorises responding to that invitation and nothing else.
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from ..core.config import settings
from ..core.exceptions import TokenExpiredError, TokenInvalidError
from ..models.domain import ReviewInvitation


logger = logging.getLogger(__name__)


JWT_ALGORITHM = "HS256"
TOKEN_TYPE = "invitation_response"

_ephemeral_secret: Optional[str] = None


def _get_jwt_secret() -> str:
    """Signing secret from settings, or a per-process secret for development."""
    global _ephemeral_secret
    if settings.response_link_secret:
        return settings.response_link_secret
    if _ephemeral_secret is None:
        _ephemeral_secret = secrets.token_urlsafe(32)
        logger.warning(
            "⚠️ RESPONSE_LINK_SECRET not set; using a per-process secret. "
            "Links will stop working after a restart."
        )
    return _ephemeral_secret


def create_response_token(
    invitation_id: str,
    reviewer_id: str,
    expires_at: datetime,
) -> str:
    """Sign a response token for one reviewer and one invitation."""
    payload = {
        "sub": reviewer_id,
        "iid": invitation_id,
        "jti": secrets.token_urlsafe(16),
        "iat": datetime.now(timezone.utc),
        "exp": expires_at,
        "type": TOKEN_TYPE,
    }
    return jwt.encode(payload, _get_jwt_secret(), algorithm=JWT_ALGORITHM)


def validate_response_token(token: str) -> dict:
    """
    Verify signature, expiry and required claims.

    Raises:
        TokenExpiredError: If the link has expired
        TokenInvalidError: If the link is malformed or tampered with
    """
    try:
        payload = jwt.decode(token, _get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError("This link has expired")
    except jwt.InvalidTokenError as e:
        raise TokenInvalidError(f"Invalid token: {str(e)}", token_hint=token)

    for claim in ("sub", "iid", "jti"):
        if claim not in payload:
            raise TokenInvalidError(f"Missing required claim: {claim}", token_hint=token)
    if payload.get("type") != TOKEN_TYPE:
        raise TokenInvalidError("Token is not an invitation response link", token_hint=token)

    return payload


def build_response_links(invitation: ReviewInvitation) -> dict[str, str]:
    """Accept/decline URLs for an invitation email."""
    expires_at = datetime.now(timezone.utc) + timedelta(days=settings.response_link_ttl_days)
    token = create_response_token(invitation.id, invitation.reviewer_id, expires_at)
    base = settings.frontend_url.rstrip("/")
    return {
        "accept_url": f"{base}/reviewer/invitation/{token}/accept",
        "decline_url": f"{base}/reviewer/invitation/{token}/decline",
    }
