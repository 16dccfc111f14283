"""
Tests for SubscriptionService.

Unit tests for resolving, provisioning, changing and rolling over subscriptions.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy.exc import IntegrityError

from app.db.models import BillingPeriod, UserSubscription
from app.exceptions import ConfigurationError, PlanNotFoundError, WriteVerificationError
from app.models.api import SubscriptionStatus
from app.models.domain import BillingContext
from app.services.plans import plan_to_domain
from app.services.subscriptions import (
    SubscriptionService,
    advance_period,
    skipped_periods,
    sum_period_usage,
)
from tests.factories import added_of, create_mock_plan, create_mock_subscription, make_result


class TestEnsureActiveSubscription:
    """Tests for the get-or-provision path."""

    async def test_returns_existing_subscription_without_writing(
        self, db_session: AsyncMock, billing_context: BillingContext, pro_plan: MagicMock
    ) -> None:
        existing = create_mock_subscription(pro_plan, user_id=billing_context.user_id)
        service = SubscriptionService(db_session)

        with patch.object(
            service, "_find_active_subscription", new_callable=AsyncMock
        ) as mock_find:
            mock_find.return_value = existing
            result = await service.ensure_active_subscription(billing_context)

        assert result.subscription_id == existing.id
        assert result.plan.name == "Pro"
        assert result.status == SubscriptionStatus.ACTIVE
        assert db_session.added == []
        db_session.commit.assert_not_awaited()

    async def test_provisions_free_plan_for_new_user(
        self, db_session: AsyncMock, org_billing_context: BillingContext, free_plan: MagicMock
    ) -> None:
        service = SubscriptionService(db_session)

        with (
            patch.object(service, "_find_active_subscription", new_callable=AsyncMock) as mock_find,
            patch.object(
                service.plans, "get_active_plan_by_name", new_callable=AsyncMock
            ) as mock_plan,
        ):
            mock_find.return_value = None
            mock_plan.return_value = plan_to_domain(free_plan)
            result = await service.ensure_active_subscription(org_billing_context)

        mock_plan.assert_awaited_once_with("Free")

        subscriptions = added_of(db_session, UserSubscription)
        periods = added_of(db_session, BillingPeriod)
        assert len(subscriptions) == 1
        assert len(periods) == 1

        subscription = subscriptions[0]
        assert subscription.status == "active"
        assert subscription.user_id == org_billing_context.user_id
        assert subscription.organization_id == org_billing_context.organization_id
        assert subscription.current_period_end - subscription.current_period_start == timedelta(
            days=30
        )

        period = periods[0]
        assert period.subscription_id == subscription.id
        assert period.tokens_used == 0
        assert period.tokens_limit == 10_000
        assert period.amount_charged_cents == 0

        assert result.subscription_id == subscription.id
        assert result.plan.name == "Free"
        db_session.commit.assert_awaited_once()

    async def test_missing_default_plan_is_configuration_error(
        self, db_session: AsyncMock, billing_context: BillingContext
    ) -> None:
        service = SubscriptionService(db_session)

        with (
            patch.object(service, "_find_active_subscription", new_callable=AsyncMock) as mock_find,
            patch.object(
                service.plans, "get_active_plan_by_name", new_callable=AsyncMock
            ) as mock_plan,
        ):
            mock_find.return_value = None
            mock_plan.return_value = None

            with pytest.raises(ConfigurationError):
                await service.ensure_active_subscription(billing_context)

        assert db_session.added == []

    async def test_concurrent_provision_uses_winning_row(
        self, db_session: AsyncMock, billing_context: BillingContext, free_plan: MagicMock
    ) -> None:
        """The partial unique index rejects the second insert; the loser re-reads."""
        winner = create_mock_subscription(free_plan, user_id=billing_context.user_id)
        db_session.flush = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))
        service = SubscriptionService(db_session)

        with (
            patch.object(service, "_find_active_subscription", new_callable=AsyncMock) as mock_find,
            patch.object(
                service.plans, "get_active_plan_by_name", new_callable=AsyncMock
            ) as mock_plan,
        ):
            mock_find.side_effect = [None, winner]
            mock_plan.return_value = plan_to_domain(free_plan)
            result = await service.ensure_active_subscription(billing_context)

        assert result.subscription_id == winner.id
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_concurrent_provision_without_winner_raises(
        self, db_session: AsyncMock, billing_context: BillingContext, free_plan: MagicMock
    ) -> None:
        db_session.flush = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))
        service = SubscriptionService(db_session)

        with (
            patch.object(service, "_find_active_subscription", new_callable=AsyncMock) as mock_find,
            patch.object(
                service.plans, "get_active_plan_by_name", new_callable=AsyncMock
            ) as mock_plan,
        ):
            mock_find.return_value = None
            mock_plan.return_value = plan_to_domain(free_plan)

            with pytest.raises(WriteVerificationError):
                await service.ensure_active_subscription(billing_context)

    async def test_second_call_returns_provisioned_subscription(
        self, db_session: AsyncMock, billing_context: BillingContext, free_plan: MagicMock
    ) -> None:
        """Calling twice yields one subscription, not two."""
        service = SubscriptionService(db_session)

        with (
            patch.object(service, "_find_active_subscription", new_callable=AsyncMock) as mock_find,
            patch.object(
                service.plans, "get_active_plan_by_name", new_callable=AsyncMock
            ) as mock_plan,
        ):
            mock_find.return_value = None
            mock_plan.return_value = plan_to_domain(free_plan)
            first = await service.ensure_active_subscription(billing_context)

            stored = create_mock_subscription(free_plan, user_id=billing_context.user_id)
            stored.id = first.subscription_id
            mock_find.return_value = stored
            second = await service.ensure_active_subscription(billing_context)

        assert second.subscription_id == first.subscription_id
        assert len(added_of(db_session, UserSubscription)) == 1

    async def test_expired_period_is_reported_not_rolled(
        self, db_session: AsyncMock, billing_context: BillingContext, free_plan: MagicMock
    ) -> None:
        start = datetime.now(UTC) - timedelta(days=45)
        expired = create_mock_subscription(
            free_plan, user_id=billing_context.user_id, period_start=start
        )
        service = SubscriptionService(db_session)

        with patch.object(
            service, "_find_active_subscription", new_callable=AsyncMock
        ) as mock_find:
            mock_find.return_value = expired
            result = await service.ensure_active_subscription(billing_context)

        assert result.is_expired is True
        assert result.current_period_start == start
        assert db_session.added == []


class TestGetUserSubscription:
    """Tests for read-only lookup."""

    async def test_returns_none_without_provisioning(self, db_session: AsyncMock) -> None:
        service = SubscriptionService(db_session)

        result = await service.get_user_subscription(uuid4())

        assert result is None
        assert db_session.added == []

    async def test_returns_active_subscription(
        self, db_session: AsyncMock, enterprise_plan: MagicMock
    ) -> None:
        subscription = create_mock_subscription(enterprise_plan)
        db_session.execute = AsyncMock(return_value=make_result(scalar=subscription))
        service = SubscriptionService(db_session)

        result = await service.get_user_subscription(subscription.user_id)

        assert result is not None
        assert result.plan.is_unlimited is True


class TestChangePlan:
    """Tests for plan changes."""

    async def test_unknown_plan_raises(
        self, db_session: AsyncMock, billing_context: BillingContext
    ) -> None:
        service = SubscriptionService(db_session)

        with patch.object(service.plans, "get_active_plan", new_callable=AsyncMock) as mock_plan:
            mock_plan.return_value = None

            with pytest.raises(PlanNotFoundError):
                await service.change_plan(billing_context, uuid4())

        db_session.execute.assert_not_awaited()
        assert db_session.added == []

    async def test_cancels_old_and_starts_fresh_period(
        self, db_session: AsyncMock, billing_context: BillingContext, pro_plan: MagicMock
    ) -> None:
        old_subscription_id = uuid4()
        db_session.execute = AsyncMock(return_value=make_result(scalars=[old_subscription_id]))
        service = SubscriptionService(db_session)

        with patch.object(service.plans, "get_active_plan", new_callable=AsyncMock) as mock_plan:
            mock_plan.return_value = plan_to_domain(pro_plan)
            result = await service.change_plan(billing_context, pro_plan.id)

        # cancel subscriptions, then close their periods
        assert db_session.execute.await_count == 2

        subscriptions = added_of(db_session, UserSubscription)
        periods = added_of(db_session, BillingPeriod)
        assert len(subscriptions) == 1
        assert subscriptions[0].status == "active"
        assert subscriptions[0].subscription_plan_id == pro_plan.id
        assert len(periods) == 1
        assert periods[0].tokens_used == 0
        assert periods[0].tokens_limit == 100_000
        assert periods[0].amount_charged_cents == 1_900

        assert result.plan.name == "Pro"
        assert result.subscription_id != old_subscription_id
        db_session.commit.assert_awaited_once()

    async def test_first_plan_change_skips_period_close(
        self, db_session: AsyncMock, billing_context: BillingContext, pro_plan: MagicMock
    ) -> None:
        service = SubscriptionService(db_session)

        with patch.object(service.plans, "get_active_plan", new_callable=AsyncMock) as mock_plan:
            mock_plan.return_value = plan_to_domain(pro_plan)
            await service.change_plan(billing_context, pro_plan.id)

        assert db_session.execute.await_count == 1


class TestRollOverExpiredPeriods:
    """Tests for the explicit rollover job."""

    async def test_nothing_expired(self, db_session: AsyncMock) -> None:
        service = SubscriptionService(db_session)

        assert await service.roll_over_expired_periods() == 0
        assert db_session.added == []

    async def test_closes_old_period_and_opens_next(self, db_session: AsyncMock) -> None:
        plan = create_mock_plan(name="Free", monthly_token_limit=10_000)
        start = datetime(2026, 8, 1, tzinfo=UTC)
        subscription = create_mock_subscription(plan, period_start=start)
        now = datetime(2026, 9, 5, tzinfo=UTC)
        service = SubscriptionService(db_session)

        with (
            patch.object(
                service, "_find_expired_subscriptions", new_callable=AsyncMock
            ) as mock_expired,
            patch(
                "app.services.subscriptions.sum_period_usage", new_callable=AsyncMock
            ) as mock_sum,
        ):
            mock_expired.return_value = [subscription]
            mock_sum.return_value = 12_500
            rolled = await service.roll_over_expired_periods(now)

        assert rolled == 1
        mock_sum.assert_awaited_once_with(
            db_session, subscription.id, start, start + timedelta(days=30)
        )
        assert subscription.current_period_start == start + timedelta(days=30)
        assert subscription.current_period_end == start + timedelta(days=60)

        periods = added_of(db_session, BillingPeriod)
        assert len(periods) == 1
        assert periods[0].period_start == subscription.current_period_start
        assert periods[0].tokens_used == 0

        close_stmt = db_session.execute.await_args.args[0]
        params = close_stmt.compile().params
        assert params["status"] == "closed"
        assert params["tokens_used"] == 12_500
        assert params["overage_tokens"] == 2_500
        db_session.commit.assert_awaited_once()

    async def test_snapshots_each_skipped_period(self, db_session: AsyncMock) -> None:
        plan = create_mock_plan(name="Pro", monthly_token_limit=100_000, price_cents=1_900)
        start = datetime(2026, 1, 1, tzinfo=UTC)
        length = timedelta(days=30)
        subscription = create_mock_subscription(plan, period_start=start)
        now = datetime(2026, 4, 15, tzinfo=UTC)
        service = SubscriptionService(db_session)

        with (
            patch.object(
                service, "_find_expired_subscriptions", new_callable=AsyncMock
            ) as mock_expired,
            patch(
                "app.services.subscriptions.sum_period_usage", new_callable=AsyncMock
            ) as mock_sum,
        ):
            mock_expired.return_value = [subscription]
            mock_sum.side_effect = [3_000, 120_000, 0]
            rolled = await service.roll_over_expired_periods(now)

        assert rolled == 1
        windows = [call.args[2:] for call in mock_sum.await_args_list]
        assert windows == [
            (start, start + length),
            (start + length, start + 2 * length),
            (start + 2 * length, start + 3 * length),
        ]

        closed = [p for p in added_of(db_session, BillingPeriod) if p.status == "closed"]
        assert [(p.period_start, p.tokens_used, p.overage_tokens) for p in closed] == [
            (start + length, 120_000, 20_000),
            (start + 2 * length, 0, 0),
        ]
        assert all(p.amount_charged_cents == 1_900 for p in closed)

        active = [p for p in added_of(db_session, BillingPeriod) if p.status == "active"]
        assert len(active) == 1
        assert active[0].period_start == start + 3 * length
        assert active[0].period_start <= now <= active[0].period_end


class TestSumPeriodUsage:
    """Tests for the period SUM query."""

    async def test_window_is_inclusive_and_scoped_to_subscription(
        self, db_session: AsyncMock
    ) -> None:
        subscription_id = uuid4()
        start = datetime(2026, 10, 1, tzinfo=UTC)
        end = start + timedelta(days=30)
        db_session.execute = AsyncMock(return_value=make_result(scalar=300))

        total = await sum_period_usage(db_session, subscription_id, start, end)

        assert total == 300
        stmt = db_session.execute.await_args.args[0]
        sql = str(stmt)
        assert "token_usage_events.subscription_id =" in sql
        assert "token_usage_events.created_at >=" in sql
        assert "token_usage_events.created_at <=" in sql
        params = list(stmt.compile().params.values())
        assert subscription_id in params
        assert start in params
        assert end in params

    async def test_open_window_has_no_upper_bound(self, db_session: AsyncMock) -> None:
        start = datetime(2026, 10, 1, tzinfo=UTC)
        db_session.execute = AsyncMock(return_value=make_result(scalar=42))

        total = await sum_period_usage(db_session, uuid4(), start, None)

        assert total == 42
        sql = str(db_session.execute.await_args.args[0])
        assert "token_usage_events.created_at >=" in sql
        assert "created_at <=" not in sql

    async def test_empty_log_sums_to_zero(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(scalar=None))
        start = datetime(2026, 10, 1, tzinfo=UTC)

        assert await sum_period_usage(db_session, uuid4(), start, start) == 0


class TestAdvancePeriod:
    """Tests for period arithmetic."""

    def test_current_period_unchanged(self) -> None:
        start = datetime(2026, 10, 1, tzinfo=UTC)
        end = start + timedelta(days=30)

        assert advance_period(start, end, start + timedelta(days=3), timedelta(days=30)) == (
            start,
            end,
        )

    def test_skips_idle_months(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=UTC)
        now = datetime(2026, 4, 15, tzinfo=UTC)

        new_start, new_end = advance_period(
            start, start + timedelta(days=30), now, timedelta(days=30)
        )

        assert new_start == start + timedelta(days=90)
        assert new_start <= now <= new_end

    def test_rejects_non_positive_length(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=UTC)
        with pytest.raises(ValueError):
            advance_period(start, start, start + timedelta(days=1), timedelta(0))

    def test_no_skipped_periods_after_one_missed_rollover(self) -> None:
        end = datetime(2026, 1, 31, tzinfo=UTC)

        assert skipped_periods(end, end + timedelta(days=5), timedelta(days=30)) == []

    def test_skipped_periods_sit_between_old_and_new(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=UTC)
        length = timedelta(days=30)
        now = datetime(2026, 4, 15, tzinfo=UTC)

        skipped = skipped_periods(start + length, now, length)
        new_start, _ = advance_period(start, start + length, now, length)

        assert skipped == [
            (start + length, start + 2 * length),
            (start + 2 * length, start + 3 * length),
        ]
        assert skipped[-1][1] == new_start

    @given(
        elapsed_hours=st.integers(min_value=0, max_value=24 * 365 * 3),
        length_days=st.integers(min_value=1, max_value=90),
    )
    def test_result_contains_now_and_keeps_length(
        self, elapsed_hours: int, length_days: int
    ) -> None:
        start = datetime(2025, 1, 1, tzinfo=UTC)
        length = timedelta(days=length_days)
        now = start + timedelta(hours=elapsed_hours)

        new_start, new_end = advance_period(start, start + length, now, length)

        assert new_end - new_start == length
        assert new_start <= now <= new_end
        assert (new_start - start) % length == timedelta(0)
