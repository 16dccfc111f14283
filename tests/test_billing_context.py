"""
Tests for BillingContextService.
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

from app.db.models import UserProfile
from app.services.billing_context import BillingContextService
from tests.factories import make_result


class TestResolve:
    """Tests for billing context resolution."""

    async def test_solo_user(self, db_session: AsyncMock) -> None:
        user_id = uuid4()

        context = await BillingContextService(db_session).resolve(user_id)

        assert context.user_id == user_id
        assert context.organization_id is None
        assert context.team_id is None

    async def test_organization_member_with_team(self, db_session: AsyncMock) -> None:
        user_id, org_id, team_id = uuid4(), uuid4(), uuid4()
        profile = MagicMock(spec=UserProfile)
        profile.organization_id = org_id
        db_session.execute = AsyncMock(
            side_effect=[make_result(scalar=profile), make_result(scalar=team_id)]
        )

        context = await BillingContextService(db_session).resolve(user_id)

        assert context.organization_id == org_id
        assert context.team_id == team_id

    async def test_first_team_is_earliest_membership(self, db_session: AsyncMock) -> None:
        await BillingContextService(db_session)._find_first_team_id(uuid4())

        sql = str(db_session.execute.await_args.args[0])
        assert "ORDER BY user_team_memberships.created_at ASC" in sql
        assert "LIMIT" in sql


async def test_get_team_membership_missing(db_session: AsyncMock) -> None:
    assert await BillingContextService(db_session).get_team_membership(uuid4(), uuid4()) is None
