"""
Usage Service - Records token usage and enforces plan limits.

NO DICTIONARIES - All operations use strongly typed domain models.

Two policies live here and they point in opposite directions:
- Recording is best-effort. A failed write is logged and dropped; the
  caller's work has already happened and must not be turned into an error.
- Enforcement fails closed. If usage can't be verified the request is denied.
"""

import time
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import TokenUsageEvent
from app.exceptions import BillingError, RecordingFailure, ResolutionFailure
from app.models.domain import (
    BillingContext,
    EnforcementResult,
    SubscriptionData,
    UsageEventIntent,
    UsageLimit,
    compute_overage,
)
from app.observability import get_logger, get_tracer, metrics, traced_span
from app.services.subscriptions import SubscriptionService, sum_period_usage

logger = get_logger(__name__)
tracer = get_tracer(__name__)

UNVERIFIED_USAGE_MESSAGE = "Unable to verify usage limits"
USAGE_CHECK_ERROR_MESSAGE = "Error checking usage limits"


def build_usage_limit(subscription: SubscriptionData, current_usage: int) -> UsageLimit:
    """Compare period usage against the subscription's plan."""
    limit = subscription.plan.monthly_token_limit
    return UsageLimit(
        current_usage=current_usage,
        limit=limit,
        period_start=subscription.current_period_start,
        period_end=subscription.current_period_end,
        overage=compute_overage(current_usage, limit),
    )


def limit_exceeded_message(limit: int) -> str:
    return (
        f"This request would exceed your monthly limit of {limit:,} tokens. "
        "Please upgrade your plan to continue."
    )


class UsageService:
    """Usage recorder, limit evaluator and enforcement gate."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.subscriptions = SubscriptionService(session)

    async def record_usage(self, intent: UsageEventIntent, context: BillingContext) -> None:
        """
        Append one event to the usage log against the active subscription.

        Never raises. Any failure (including provisioning) is logged, counted
        and swallowed so the caller's response is unaffected.
        """
        try:
            subscription = await self.subscriptions.ensure_active_subscription(context)
            event = TokenUsageEvent(
                id=uuid4(),
                user_id=context.user_id,
                organization_id=context.organization_id or subscription.organization_id,
                team_id=context.team_id,
                subscription_id=subscription.subscription_id,
                endpoint=intent.endpoint,
                tokens_used=intent.tokens_used,
                model_used=intent.model_used,
                feature_used=intent.feature_used,
                request_id=intent.request_id or str(uuid4()),
                billing_period_start=subscription.current_period_start,
                billing_period_end=subscription.current_period_end,
            )
            self.session.add(event)
            await self.session.flush()
            await self.session.commit()
        except Exception as e:
            failure = RecordingFailure(context.user_id, str(e))
            logger.error(
                "token_usage_record_failed",
                user_id=str(context.user_id),
                endpoint=intent.endpoint,
                feature=intent.feature_used,
                tokens_used=intent.tokens_used,
                error=str(failure),
                error_type=type(e).__name__,
            )
            metrics.record_usage_event(
                intent.feature_used, intent.model_used, intent.tokens_used, success=False
            )
            metrics.record_error(type(e).__name__, "record_usage")
            await self._rollback_quietly()
            return

        metrics.record_usage_event(
            intent.feature_used, intent.model_used, intent.tokens_used, success=True
        )
        logger.info(
            "token_usage_recorded",
            user_id=str(context.user_id),
            subscription_id=str(event.subscription_id),
            endpoint=intent.endpoint,
            feature=intent.feature_used,
            model=intent.model_used,
            tokens_used=intent.tokens_used,
        )

    async def check_usage_limit(self, context: BillingContext) -> UsageLimit | None:
        """
        Usage in the current billing period against the plan limit.

        Returns None only when no subscription could be resolved or created.
        Unlimited plans report zero usage without scanning the log.
        """
        try:
            subscription = await self.subscriptions.ensure_active_subscription(context)
        except (BillingError, SQLAlchemyError) as e:
            failure = ResolutionFailure(context.user_id, str(e))
            logger.error(
                "usage_limit_resolution_failed",
                user_id=str(context.user_id),
                error=str(failure),
                error_type=type(e).__name__,
            )
            metrics.record_error(type(e).__name__, "check_usage_limit")
            return None

        if subscription.plan.is_unlimited:
            return build_usage_limit(subscription, 0)

        # Until rollover runs, everything since the stale period began still counts
        period_end = None if subscription.is_expired else subscription.current_period_end
        if period_end is None:
            logger.warning(
                "usage_period_expired",
                user_id=str(context.user_id),
                subscription_id=str(subscription.subscription_id),
                period_end=subscription.current_period_end.isoformat(),
            )

        current_usage = await self._sum_period_usage(
            subscription.subscription_id,
            subscription.current_period_start,
            period_end,
        )
        return build_usage_limit(subscription, current_usage)

    async def enforce_usage_limit(
        self, estimated_tokens: int, context: BillingContext
    ) -> EnforcementResult:
        """
        Pre-flight gate: may the user spend estimated_tokens more?

        Fails closed - an unverifiable or erroring check denies the request.
        Exactly reaching the limit is allowed; only exceeding it is denied.
        """
        if estimated_tokens < 0:
            raise ValueError(f"estimated_tokens cannot be negative: {estimated_tokens}")

        start = time.time()
        with traced_span(
            tracer,
            "usage.enforce",
            user_id=str(context.user_id),
            estimated_tokens=estimated_tokens,
        ) as span:
            result, reason = await self._evaluate(estimated_tokens, context)
            span.set_attribute("usage.allowed", result.allowed)
        metrics.record_usage_check(result.allowed, reason, time.time() - start)

        if not result.allowed:
            logger.warning(
                "usage_limit_denied",
                user_id=str(context.user_id),
                reason=reason,
                estimated_tokens=estimated_tokens,
                current_usage=result.usage.current_usage if result.usage else None,
                limit=result.usage.limit if result.usage else None,
            )
        return result

    async def _evaluate(
        self, estimated_tokens: int, context: BillingContext
    ) -> tuple[EnforcementResult, str | None]:
        try:
            usage = await self.check_usage_limit(context)
        except Exception as e:
            logger.error(
                "usage_limit_check_error",
                user_id=str(context.user_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_error(type(e).__name__, "enforce_usage_limit")
            return EnforcementResult(allowed=False, message=USAGE_CHECK_ERROR_MESSAGE), "error"

        if usage is None:
            return EnforcementResult(allowed=False, message=UNVERIFIED_USAGE_MESSAGE), "unverified"

        if usage.is_unlimited:
            return EnforcementResult(allowed=True, usage=usage), "unlimited"

        if usage.current_usage + estimated_tokens > usage.limit:
            return (
                EnforcementResult(
                    allowed=False, usage=usage, message=limit_exceeded_message(usage.limit)
                ),
                "limit_exceeded",
            )

        return EnforcementResult(allowed=True, usage=usage), None

    async def _sum_period_usage(
        self, subscription_id: UUID, period_start: datetime, period_end: datetime | None
    ) -> int:
        return await sum_period_usage(self.session, subscription_id, period_start, period_end)

    async def _rollback_quietly(self) -> None:
        try:
            await self.session.rollback()
        except SQLAlchemyError as e:
            logger.warning("token_usage_rollback_failed", error=str(e))
