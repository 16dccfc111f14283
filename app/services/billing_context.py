"""
Billing Context Service - Resolves who a request is billed to.

Organization comes from the user's profile; team attribution is the user's
earliest team membership. Attribution only - nothing correctness-critical
depends on the team.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import UserProfile, UserTeamMembership
from app.models.domain import BillingContext


class BillingContextService:
    """Lookups over the tenancy tables owned by the wider product."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def resolve(self, user_id: UUID) -> BillingContext:
        """Build the billing context for a user, computed once per request."""
        profile = await self.get_profile(user_id)
        team_id = await self._find_first_team_id(user_id)
        return BillingContext(
            user_id=user_id,
            organization_id=profile.organization_id if profile else None,
            team_id=team_id,
        )

    async def get_profile(self, user_id: UUID) -> UserProfile | None:
        stmt = select(UserProfile).where(UserProfile.id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_team_membership(self, user_id: UUID, team_id: UUID) -> UserTeamMembership | None:
        stmt = select(UserTeamMembership).where(
            UserTeamMembership.user_id == user_id,
            UserTeamMembership.team_id == team_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_first_team_id(self, user_id: UUID) -> UUID | None:
        stmt = (
            select(UserTeamMembership.team_id)
            .where(UserTeamMembership.user_id == user_id)
            .order_by(UserTeamMembership.created_at.asc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
