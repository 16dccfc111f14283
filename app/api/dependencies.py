"""
FastAPI Dependencies - Authentication and authorization.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import AuthenticationError, AuthorizationError
from app.models.api import OrgRole, TeamRole
from app.models.domain import BillingContext
from app.services.billing_context import BillingContextService

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication
# ============================================================================


@dataclass
class AuthenticatedUser:
    """Authenticated user identity from JWT token."""

    user_id: UUID
    email: str | None = None


# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> AuthenticatedUser:
    """
    Verify an HS256 access token issued by the auth provider.

    Raises:
        AuthenticationError: Signature, expiry, audience or subject is invalid
    """
    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc

    subject = claims.get("sub")
    if not subject:
        raise AuthenticationError("Invalid token: missing user ID")
    try:
        user_id = UUID(str(subject))
    except ValueError as exc:
        raise AuthenticationError("Invalid token: user ID is not a UUID") from exc

    return AuthenticatedUser(user_id=user_id, email=claims.get("email"))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency to validate the bearer token from the Authorization header.

    Usage:
        @router.get("/v1/usage/current")
        async def get_current_usage(
            user: AuthenticatedUser = Depends(get_current_user)
        ):
            pass

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_access_token(credentials.credentials)
    except AuthenticationError as exc:
        logger.warning("access_token_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def get_billing_context(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> BillingContext:
    """Organization and team attribution for the caller, resolved once per request."""
    return await BillingContextService(db).resolve(user.user_id)


# ============================================================================
# Role checks for organization/team reports
# ============================================================================


async def authorize_org_admin(
    user_id: UUID, organization_id: UUID, service: BillingContextService
) -> OrgRole:
    """
    Caller must be an org_admin of this organization.

    Raises:
        AuthorizationError: Caller isn't an admin of the organization
    """
    profile = await service.get_profile(user_id)
    if profile is None or profile.organization_id != organization_id:
        raise AuthorizationError(OrgRole.ORG_ADMIN.value)
    if profile.org_role != OrgRole.ORG_ADMIN.value:
        raise AuthorizationError(OrgRole.ORG_ADMIN.value)
    return OrgRole(profile.org_role)


async def authorize_team_admin(
    user_id: UUID, team_id: UUID, service: BillingContextService
) -> TeamRole:
    """
    Caller must belong to the team and be its team_admin or an org_admin.

    Raises:
        AuthorizationError: Caller isn't a member, or is a plain member
    """
    membership = await service.get_team_membership(user_id, team_id)
    if membership is None:
        raise AuthorizationError(TeamRole.TEAM_ADMIN.value)
    if membership.team_role == TeamRole.TEAM_ADMIN.value:
        return TeamRole.TEAM_ADMIN

    profile = await service.get_profile(user_id)
    if profile is not None and profile.org_role == OrgRole.ORG_ADMIN.value:
        return TeamRole(membership.team_role)
    raise AuthorizationError(TeamRole.TEAM_ADMIN.value)


async def get_report_context_service(
    db: AsyncSession = Depends(get_read_db),
) -> BillingContextService:
    return BillingContextService(db)
