"""
Subscription Service - Resolves, provisions and changes user subscriptions.

NO DICTIONARIES - All operations use strongly typed domain models.

Every user that touches a metered endpoint ends up with exactly one active
subscription: the first lookup auto-provisions the default (Free) plan.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.models import BillingPeriod, TokenUsageEvent, UserSubscription
from app.exceptions import ConfigurationError, PlanNotFoundError, WriteVerificationError
from app.models.api import BillingPeriodStatus, SubscriptionStatus
from app.models.domain import BillingContext, PlanData, SubscriptionData, compute_overage
from app.observability import get_logger, metrics
from app.services.plans import PlanCatalogService, plan_to_domain

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _period_length() -> timedelta:
    return timedelta(days=settings.billing_period_days)


def advance_period(
    period_start: datetime, period_end: datetime, now: datetime, length: timedelta
) -> tuple[datetime, datetime]:
    """
    Step a period forward by whole lengths until it contains now.

    Periods stay contiguous: each new start is the previous end, so a
    subscription idle for several months skips straight to the current one.
    """
    if length <= timedelta(0):
        raise ValueError(f"Period length must be positive, got {length}")
    while period_end < now:
        period_start, period_end = period_end, period_end + length
    return period_start, period_end


def skipped_periods(
    period_end: datetime, now: datetime, length: timedelta
) -> list[tuple[datetime, datetime]]:
    """Whole periods that began at or after period_end and also ended before now."""
    if length <= timedelta(0):
        raise ValueError(f"Period length must be positive, got {length}")
    skipped = []
    start, end = period_end, period_end + length
    while end < now:
        skipped.append((start, end))
        start, end = end, end + length
    return skipped


async def sum_period_usage(
    session: AsyncSession,
    subscription_id: UUID,
    period_start: datetime,
    period_end: datetime | None,
) -> int:
    """
    Total tokens logged against a subscription inside [start, end].

    With no end the window is open, which is how an expired period that
    hasn't been rolled over yet keeps counting new events.
    """
    stmt = select(func.coalesce(func.sum(TokenUsageEvent.tokens_used), 0)).where(
        TokenUsageEvent.subscription_id == subscription_id,
        TokenUsageEvent.created_at >= period_start,
    )
    if period_end is not None:
        stmt = stmt.where(TokenUsageEvent.created_at <= period_end)
    result = await session.execute(stmt)
    return int(result.scalar_one() or 0)


def _subscription_to_domain(subscription: UserSubscription, plan: PlanData) -> SubscriptionData:
    """Convert ORM subscription to domain model."""
    return SubscriptionData(
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        organization_id=subscription.organization_id,
        plan=plan,
        status=SubscriptionStatus(subscription.status),
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
    )


class SubscriptionService:
    """
    Subscription resolver with write verification.

    Writes follow the same pattern throughout:
    1. Insert subscription and its billing period
    2. Flush (the partial unique index rejects a second active row)
    3. Read back and verify
    4. Commit
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.plans = PlanCatalogService(session)

    async def ensure_active_subscription(self, context: BillingContext) -> SubscriptionData:
        """
        Return the user's active subscription, provisioning the default plan if none.

        Raises:
            ConfigurationError: No active default plan exists
            WriteVerificationError: Insert raced and no winner could be read back
        """
        subscription = await self._find_active_subscription(context.user_id)
        if subscription is not None:
            return _subscription_to_domain(subscription, plan_to_domain(subscription.plan))

        plan = await self.plans.get_active_plan_by_name(settings.default_plan_name)
        if plan is None:
            logger.error("default_plan_missing", plan_name=settings.default_plan_name)
            raise ConfigurationError(
                f"Default plan '{settings.default_plan_name}' is missing or inactive"
            )

        now = _utc_now()
        new_subscription = self._build_subscription(context, plan, now)
        self.session.add(new_subscription)

        try:
            await self.session.flush()
        except IntegrityError:
            # Another request provisioned first - use its row
            await self.session.rollback()
            logger.info("subscription_provision_race", user_id=str(context.user_id))
            subscription = await self._find_active_subscription(context.user_id)
            if subscription is None:
                raise WriteVerificationError("Subscription creation failed due to race condition")
            return _subscription_to_domain(subscription, plan_to_domain(subscription.plan))

        self.session.add(self._build_period(new_subscription, plan, amount_charged_cents=0))
        await self.session.flush()

        verified = await self.session.get(UserSubscription, new_subscription.id)
        if verified is None:
            raise WriteVerificationError(
                f"Subscription {new_subscription.id} not found after insert"
            )

        await self.session.commit()

        metrics.subscriptions_provisioned_total.inc()
        logger.info(
            "subscription_provisioned",
            user_id=str(context.user_id),
            subscription_id=str(verified.id),
            plan_name=plan.name,
            period_end=verified.current_period_end.isoformat(),
        )
        return _subscription_to_domain(verified, plan)

    async def get_user_subscription(self, user_id: UUID) -> SubscriptionData | None:
        """Read-only lookup of the active subscription. Never provisions."""
        subscription = await self._find_active_subscription(user_id)
        if subscription is None:
            return None
        return _subscription_to_domain(subscription, plan_to_domain(subscription.plan))

    async def change_plan(self, context: BillingContext, plan_id: UUID) -> SubscriptionData:
        """
        Move the user to another plan, starting a fresh period.

        Active subscriptions are canceled and their open billing periods closed
        before the replacement is inserted. Usage already logged stays with
        the old subscription, so the new period starts at zero.

        Raises:
            PlanNotFoundError: Plan doesn't exist or is inactive
        """
        plan = await self.plans.get_active_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)

        now = _utc_now()
        canceled_ids = await self._cancel_active_subscriptions(context.user_id, now)
        if canceled_ids:
            await self.session.execute(
                update(BillingPeriod)
                .where(
                    BillingPeriod.subscription_id.in_(canceled_ids),
                    BillingPeriod.status == BillingPeriodStatus.ACTIVE.value,
                )
                .values(status=BillingPeriodStatus.CLOSED.value, updated_at=now)
            )

        new_subscription = self._build_subscription(context, plan, now)
        self.session.add(new_subscription)
        await self.session.flush()

        self.session.add(
            self._build_period(new_subscription, plan, amount_charged_cents=plan.price_cents)
        )
        await self.session.flush()

        verified = await self.session.get(UserSubscription, new_subscription.id)
        if verified is None:
            raise WriteVerificationError(
                f"Subscription {new_subscription.id} not found after insert"
            )

        await self.session.commit()

        metrics.plan_changes_total.labels(plan_name=plan.name).inc()
        logger.info(
            "subscription_plan_changed",
            user_id=str(context.user_id),
            subscription_id=str(verified.id),
            plan_name=plan.name,
            canceled_count=len(canceled_ids),
        )
        return _subscription_to_domain(verified, plan)

    async def roll_over_expired_periods(self, now: datetime | None = None) -> int:
        """
        Close expired billing periods and open the next one for each active subscription.

        The closed period gets its final token total and overage from the
        usage log. Returns the number of subscriptions advanced.
        """
        now = now or _utc_now()
        length = _period_length()
        expired = await self._find_expired_subscriptions(now)

        for subscription in expired:
            plan = plan_to_domain(subscription.plan)
            used = await sum_period_usage(
                self.session,
                subscription.id,
                subscription.current_period_start,
                subscription.current_period_end,
            )
            await self.session.execute(
                update(BillingPeriod)
                .where(
                    BillingPeriod.subscription_id == subscription.id,
                    BillingPeriod.status == BillingPeriodStatus.ACTIVE.value,
                )
                .values(
                    status=BillingPeriodStatus.CLOSED.value,
                    tokens_used=used,
                    overage_tokens=compute_overage(used, plan.monthly_token_limit),
                    updated_at=now,
                )
            )

            skipped = skipped_periods(subscription.current_period_end, now, length)
            for period_start, period_end in skipped:
                skipped_used = await sum_period_usage(
                    self.session, subscription.id, period_start, period_end
                )
                self.session.add(
                    self._build_closed_period(
                        subscription.id, plan, period_start, period_end, skipped_used
                    )
                )

            subscription.current_period_start, subscription.current_period_end = advance_period(
                subscription.current_period_start, subscription.current_period_end, now, length
            )
            self.session.add(
                self._build_period(subscription, plan, amount_charged_cents=plan.price_cents)
            )
            logger.info(
                "billing_period_rolled_over",
                subscription_id=str(subscription.id),
                tokens_used=used,
                skipped_periods=len(skipped),
                period_end=subscription.current_period_end.isoformat(),
            )

        await self.session.flush()
        await self.session.commit()

        if expired:
            metrics.periods_rolled_over_total.inc(len(expired))
        return len(expired)

    def _build_subscription(
        self, context: BillingContext, plan: PlanData, now: datetime
    ) -> UserSubscription:
        return UserSubscription(
            id=uuid4(),
            user_id=context.user_id,
            organization_id=context.organization_id,
            subscription_plan_id=plan.plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_start=now,
            current_period_end=now + _period_length(),
        )

    def _build_period(
        self, subscription: UserSubscription, plan: PlanData, amount_charged_cents: int
    ) -> BillingPeriod:
        return BillingPeriod(
            id=uuid4(),
            subscription_id=subscription.id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            tokens_used=0,
            tokens_limit=plan.monthly_token_limit,
            overage_tokens=0,
            amount_charged_cents=amount_charged_cents,
            status=BillingPeriodStatus.ACTIVE.value,
        )

    def _build_closed_period(
        self,
        subscription_id: UUID,
        plan: PlanData,
        period_start: datetime,
        period_end: datetime,
        tokens_used: int,
    ) -> BillingPeriod:
        """A period that elapsed entirely while no rollover ran."""
        return BillingPeriod(
            id=uuid4(),
            subscription_id=subscription_id,
            period_start=period_start,
            period_end=period_end,
            tokens_used=tokens_used,
            tokens_limit=plan.monthly_token_limit,
            overage_tokens=compute_overage(tokens_used, plan.monthly_token_limit),
            amount_charged_cents=plan.price_cents,
            status=BillingPeriodStatus.CLOSED.value,
        )

    async def _find_active_subscription(self, user_id: UUID) -> UserSubscription | None:
        stmt = select(UserSubscription).where(
            UserSubscription.user_id == user_id,
            UserSubscription.status == SubscriptionStatus.ACTIVE.value,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _cancel_active_subscriptions(self, user_id: UUID, now: datetime) -> list[UUID]:
        stmt = (
            update(UserSubscription)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .values(status=SubscriptionStatus.CANCELED.value, updated_at=now)
            .returning(UserSubscription.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _find_expired_subscriptions(self, now: datetime) -> list[UserSubscription]:
        stmt = (
            select(UserSubscription)
            .where(
                UserSubscription.status == SubscriptionStatus.ACTIVE.value,
                UserSubscription.current_period_end < now,
            )
            .with_for_update(skip_locked=True, of=UserSubscription)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
