"""
Plan Catalog Service - Read access to subscription plans.

Plans are created and retired administratively; this service never writes.
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import SubscriptionPlan
from app.models.domain import PlanData


def plan_to_domain(plan: SubscriptionPlan) -> PlanData:
    """Convert ORM plan to domain model."""
    return PlanData(
        plan_id=plan.id,
        name=plan.name,
        description=plan.description,
        monthly_token_limit=plan.monthly_token_limit,
        price_cents=plan.price_cents,
        is_active=plan.is_active,
    )


class PlanCatalogService:
    """Queries over the subscription_plans table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_active_plans(self) -> list[PlanData]:
        """Active plans, cheapest first."""
        stmt = (
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.price_cents.asc(), SubscriptionPlan.name.asc())
        )
        result = await self.session.execute(stmt)
        return [plan_to_domain(plan) for plan in result.scalars().all()]

    async def get_active_plan_by_name(self, name: str) -> PlanData | None:
        stmt = select(SubscriptionPlan).where(
            SubscriptionPlan.name == name,
            SubscriptionPlan.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        plan = result.scalar_one_or_none()
        return plan_to_domain(plan) if plan is not None else None

    async def get_active_plan(self, plan_id: UUID) -> PlanData | None:
        stmt = select(SubscriptionPlan).where(
            SubscriptionPlan.id == plan_id,
            SubscriptionPlan.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        plan = result.scalar_one_or_none()
        return plan_to_domain(plan) if plan is not None else None
