"""
Tests for API Dependencies.

Tests bearer token authentication and the org/team role checks.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from app.api.dependencies import (
    authorize_org_admin,
    authorize_team_admin,
    decode_access_token,
    get_current_user,
)
from app.db.models import UserProfile, UserTeamMembership
from app.exceptions import AuthenticationError, AuthorizationError
from app.models.api import OrgRole, TeamRole
from app.services.billing_context import BillingContextService
from tests.factories import make_access_token


def _credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def _profile(organization_id, org_role: str = "member") -> MagicMock:
    profile = MagicMock(spec=UserProfile)
    profile.organization_id = organization_id
    profile.org_role = org_role
    return profile


def _membership(team_role: str) -> MagicMock:
    membership = MagicMock(spec=UserTeamMembership)
    membership.team_role = team_role
    return membership


def _context_service(profile=None, membership=None) -> AsyncMock:
    service = AsyncMock(spec=BillingContextService)
    service.get_profile = AsyncMock(return_value=profile)
    service.get_team_membership = AsyncMock(return_value=membership)
    return service


class TestDecodeAccessToken:
    """Tests for access token verification."""

    def test_valid_token(self) -> None:
        user_id = uuid4()

        user = decode_access_token(make_access_token(str(user_id), email="a@example.com"))

        assert user.user_id == user_id
        assert user.email == "a@example.com"

    def test_expired_token(self) -> None:
        token = make_access_token(str(uuid4()), expires_in=timedelta(minutes=-5))

        with pytest.raises(AuthenticationError, match="Token has expired"):
            decode_access_token(token)

    def test_wrong_secret(self) -> None:
        token = make_access_token(str(uuid4()), secret="another-secret-that-is-long-enough-32")

        with pytest.raises(AuthenticationError, match="Invalid token"):
            decode_access_token(token)

    def test_wrong_audience(self) -> None:
        token = make_access_token(str(uuid4()), audience="anon")

        with pytest.raises(AuthenticationError, match="Invalid token"):
            decode_access_token(token)

    def test_subject_must_be_uuid(self) -> None:
        with pytest.raises(AuthenticationError, match="not a UUID"):
            decode_access_token(make_access_token("service-account"))

    def test_garbage_token(self) -> None:
        with pytest.raises(AuthenticationError):
            decode_access_token("not.a.jwt")


class TestGetCurrentUser:
    """Tests for the get_current_user dependency."""

    async def test_missing_header(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(None)

        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}

    async def test_invalid_token(self) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_credentials("not.a.jwt"))

        assert exc_info.value.status_code == 401

    async def test_valid_token(self) -> None:
        user_id = uuid4()

        user = await get_current_user(_credentials(make_access_token(str(user_id))))

        assert user.user_id == user_id


class TestAuthorizeOrgAdmin:
    """Tests for the organization admin check."""

    async def test_org_admin_allowed(self) -> None:
        org_id = uuid4()
        service = _context_service(profile=_profile(org_id, "org_admin"))

        assert await authorize_org_admin(uuid4(), org_id, service) == OrgRole.ORG_ADMIN

    async def test_member_denied(self) -> None:
        org_id = uuid4()
        service = _context_service(profile=_profile(org_id, "member"))

        with pytest.raises(AuthorizationError, match="org_admin"):
            await authorize_org_admin(uuid4(), org_id, service)

    async def test_admin_of_other_org_denied(self) -> None:
        service = _context_service(profile=_profile(uuid4(), "org_admin"))

        with pytest.raises(AuthorizationError):
            await authorize_org_admin(uuid4(), uuid4(), service)

    async def test_no_profile_denied(self) -> None:
        with pytest.raises(AuthorizationError):
            await authorize_org_admin(uuid4(), uuid4(), _context_service())


class TestAuthorizeTeamAdmin:
    """Tests for the team admin check."""

    async def test_team_admin_allowed(self) -> None:
        service = _context_service(membership=_membership("team_admin"))

        assert await authorize_team_admin(uuid4(), uuid4(), service) == TeamRole.TEAM_ADMIN

    async def test_org_admin_member_allowed(self) -> None:
        service = _context_service(
            profile=_profile(uuid4(), "org_admin"), membership=_membership("member")
        )

        assert await authorize_team_admin(uuid4(), uuid4(), service) == TeamRole.MEMBER

    async def test_plain_member_denied(self) -> None:
        service = _context_service(
            profile=_profile(uuid4(), "member"), membership=_membership("member")
        )

        with pytest.raises(AuthorizationError, match="team_admin"):
            await authorize_team_admin(uuid4(), uuid4(), service)

    async def test_non_member_org_admin_denied(self) -> None:
        service = _context_service(profile=_profile(uuid4(), "org_admin"))

        with pytest.raises(AuthorizationError):
            await authorize_team_admin(uuid4(), uuid4(), service)
