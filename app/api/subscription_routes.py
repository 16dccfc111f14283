"""
Subscription API routes - Current subscription, plan catalog and plan changes.

Plan changes here are the administrative path; checkout/payment collection
happens elsewhere and calls POST /v1/subscriptions once payment succeeds.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_billing_context
from app.db.session import get_read_db, get_write_db
from app.exceptions import ConfigurationError, PlanNotFoundError, WriteVerificationError
from app.models.api import (
    ChangePlanRequest,
    PlanListResponse,
    PlanResponse,
    SubscriptionResponse,
)
from app.models.domain import BillingContext, PlanData, SubscriptionData
from app.services.plans import PlanCatalogService
from app.services.subscriptions import SubscriptionService

router = APIRouter(prefix="/v1/subscriptions", tags=["subscriptions"])


def plan_to_response(plan: PlanData) -> PlanResponse:
    return PlanResponse(
        plan_id=plan.plan_id,
        name=plan.name,
        description=plan.description,
        monthly_token_limit=plan.monthly_token_limit,
        price_cents=plan.price_cents,
        is_unlimited=plan.is_unlimited,
    )


def subscription_to_response(subscription: SubscriptionData) -> SubscriptionResponse:
    return SubscriptionResponse(
        subscription_id=subscription.subscription_id,
        organization_id=subscription.organization_id,
        plan=plan_to_response(subscription.plan),
        status=subscription.status,
        current_period_start=subscription.current_period_start.isoformat(),
        current_period_end=subscription.current_period_end.isoformat(),
        is_expired=subscription.is_expired,
    )


@router.get("", response_model=SubscriptionResponse)
async def get_subscription(
    context: BillingContext = Depends(get_billing_context),
    db: AsyncSession = Depends(get_write_db),
) -> SubscriptionResponse:
    """
    The caller's active subscription with its plan.

    Auto-provisions the default plan on first call.
    """
    try:
        subscription = await SubscriptionService(db).ensure_active_subscription(context)
    except (ConfigurationError, WriteVerificationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    return subscription_to_response(subscription)


@router.post("", response_model=SubscriptionResponse)
async def change_subscription_plan(
    request: ChangePlanRequest,
    context: BillingContext = Depends(get_billing_context),
    db: AsyncSession = Depends(get_write_db),
) -> SubscriptionResponse:
    """
    Move the caller to another plan.

    The previous subscription is canceled and a fresh billing period starts.
    """
    try:
        subscription = await SubscriptionService(db).change_plan(context, request.plan_id)
    except PlanNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid subscription plan",
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    return subscription_to_response(subscription)


@router.get("/plans", response_model=PlanListResponse)
async def list_plans(db: AsyncSession = Depends(get_read_db)) -> PlanListResponse:
    """Active subscription plans, cheapest first."""
    plans = await PlanCatalogService(db).list_active_plans()
    return PlanListResponse(plans=[plan_to_response(plan) for plan in plans])
