"""
Tests for signed reviewer response links.
"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from editorial_clock.core.exceptions import TokenExpiredError, TokenInvalidError
from editorial_clock.services.response_links import (
    JWT_ALGORITHM,
    _get_jwt_secret,
    build_response_links,
    create_response_token,
    validate_response_token,
)


def _future(days=1):
    return datetime.now(timezone.utc) + timedelta(days=days)


class TestResponseTokens:

    @pytest.mark.unit
    def test_round_trip_claims(self):
        claims = validate_response_token(create_response_token("inv-1", "reviewer-1", _future()))
        assert claims["iid"] == "inv-1"
        assert claims["sub"] == "reviewer-1"
        assert claims["type"] == "invitation_response"

    @pytest.mark.unit
    def test_tokens_are_unique(self):
        """Each link carries its own jti."""
        assert create_response_token("inv-1", "r", _future()) != create_response_token("inv-1", "r", _future())

    @pytest.mark.edge
    def test_expired(self):
        token = create_response_token("inv-1", "reviewer-1", datetime.now(timezone.utc) - timedelta(minutes=1))
        with pytest.raises(TokenExpiredError) as exc:
            validate_response_token(token)
        assert exc.value.status_code == 401

    @pytest.mark.edge
    def test_tampered(self):
        token = create_response_token("inv-1", "reviewer-1", _future())
        header, payload, signature = token.split(".")
        forged = ".".join([header, payload, signature[::-1]])
        with pytest.raises(TokenInvalidError) as exc:
            validate_response_token(forged)
        assert exc.value.details["token_hint"].endswith("...")

    @pytest.mark.edge
    def test_signed_with_another_secret(self):
        token = jwt.encode(
            {"sub": "r", "iid": "inv-1", "jti": "x", "exp": _future(), "type": "invitation_response"},
            "someone-elses-secret",
            algorithm=JWT_ALGORITHM,
        )
        with pytest.raises(TokenInvalidError):
            validate_response_token(token)

    @pytest.mark.edge
    def test_wrong_token_type(self):
        token = jwt.encode(
            {"sub": "r", "iid": "inv-1", "jti": "x", "exp": _future(), "type": "password_reset"},
            _get_jwt_secret(),
            algorithm=JWT_ALGORITHM,
        )
        with pytest.raises(TokenInvalidError, match="not an invitation response link"):
            validate_response_token(token)

    @pytest.mark.edge
    def test_missing_invitation_claim(self):
        token = jwt.encode(
            {"sub": "r", "jti": "x", "exp": _future(), "type": "invitation_response"},
            _get_jwt_secret(),
            algorithm=JWT_ALGORITHM,
        )
        with pytest.raises(TokenInvalidError, match="iid"):
            validate_response_token(token)


class TestResponseLinks:

    @pytest.mark.unit
    def test_links_point_at_frontend(self, make_invitation):
        invitation = make_invitation()
        links = build_response_links(invitation)

        token = links["accept_url"].split("/")[-2]
        assert links["decline_url"] == links["accept_url"].replace("/accept", "/decline")
        assert validate_response_token(token)["iid"] == invitation.id
