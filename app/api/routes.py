"""
API Routes - FastAPI endpoints for usage metering.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import (
    AuthenticatedUser,
    authorize_org_admin,
    authorize_team_admin,
    get_billing_context,
    get_current_user,
    get_report_context_service,
)
from app.api.subscription_routes import subscription_to_response
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    AuthorizationError,
    ConfigurationError,
    ScopeNotFoundError,
    WriteVerificationError,
)
from app.models.api import (
    CurrentUsageResponse,
    EstimateRequest,
    EstimateResponse,
    HealthResponse,
    OrganizationUsageResponse,
    RecordUsageRequest,
    RecordUsageResponse,
    SetupBillingResponse,
    SubscriptionSummary,
    TeamUsageResponse,
    UsageHistoryResponse,
    UsageSnapshot,
)
from app.models.domain import BillingContext, UsageEventIntent, UsageLimit
from app.services.analytics import UsageAnalyticsService
from app.services.billing_context import BillingContextService
from app.services.estimation import (
    calculate_magic_token_cost,
    estimate_token_usage,
    resolve_model,
)
from app.services.metering import MeteredOperation, failure_intent
from app.services.subscriptions import SubscriptionService
from app.services.usage import UNVERIFIED_USAGE_MESSAGE, UsageService

router = APIRouter()


def usage_to_snapshot(usage: UsageLimit) -> UsageSnapshot:
    """Convert domain usage to the API snapshot."""
    return UsageSnapshot(
        current=usage.current_usage,
        limit=usage.limit,
        overage=usage.overage,
        percentage=round(usage.percentage, 2),
        period_start=usage.period_start.isoformat(),
        period_end=usage.period_end.isoformat(),
        is_unlimited=usage.is_unlimited,
    )


# =============================================================================
# Current usage & history
# =============================================================================


@router.get("/v1/usage/current", response_model=CurrentUsageResponse)
async def get_current_usage(
    context: BillingContext = Depends(get_billing_context),
    db: AsyncSession = Depends(get_write_db),
) -> CurrentUsageResponse | JSONResponse:
    """
    Usage in the caller's current billing period.

    Auto-provisions the default plan on first call.
    Write operation - requires primary database.
    """
    usage = await UsageService(db).check_usage_limit(context)
    if usage is None:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": UNVERIFIED_USAGE_MESSAGE},
        )

    subscription = await SubscriptionService(db).get_user_subscription(context.user_id)
    if subscription is None:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": UNVERIFIED_USAGE_MESSAGE},
        )

    return CurrentUsageResponse(
        usage=usage_to_snapshot(usage),
        subscription=SubscriptionSummary(
            plan_name=subscription.plan.name, status=subscription.status.value
        ),
    )


@router.get("/v1/usage/history", response_model=UsageHistoryResponse)
async def get_usage_history(
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(100, ge=1, le=1000),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> UsageHistoryResponse:
    """
    The caller's recent usage events with daily, feature and model rollups.

    Read operation - uses replica database.
    """
    return await UsageAnalyticsService(db).get_usage_history(user.user_id, days, limit)


# =============================================================================
# Organization & team reports
# =============================================================================


@router.get("/v1/usage/organization/{org_id}", response_model=OrganizationUsageResponse)
async def get_organization_usage(
    org_id: UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    context_service: BillingContextService = Depends(get_report_context_service),
    db: AsyncSession = Depends(get_read_db),
) -> OrganizationUsageResponse:
    """
    Current-month usage across an organization.

    Auth: caller must be org_admin of the organization.
    """
    try:
        role = await authorize_org_admin(user.user_id, org_id, context_service)
        return await UsageAnalyticsService(db).get_organization_usage(org_id, role)
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied. Only organization admins can view organization usage.",
        ) from exc
    except ScopeNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/v1/usage/team/{team_id}", response_model=TeamUsageResponse)
async def get_team_usage(
    team_id: UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    context_service: BillingContextService = Depends(get_report_context_service),
    db: AsyncSession = Depends(get_read_db),
) -> TeamUsageResponse:
    """
    Current-month usage for a team, broken down by member.

    Auth: caller must be a team member with team_admin or org_admin role.
    """
    try:
        role = await authorize_team_admin(user.user_id, team_id, context_service)
        return await UsageAnalyticsService(db).get_team_usage(team_id, role)
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied. Only team admins can view team usage.",
        ) from exc
    except ScopeNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


# =============================================================================
# Provisioning, estimation & recording
# =============================================================================


@router.post("/v1/usage/setup-billing", response_model=SetupBillingResponse)
async def setup_billing(
    context: BillingContext = Depends(get_billing_context),
    db: AsyncSession = Depends(get_write_db),
) -> SetupBillingResponse:
    """
    Ensure the caller has an active subscription.

    Idempotent - repeated calls return the same subscription.
    """
    try:
        subscription = await SubscriptionService(db).ensure_active_subscription(context)
    except (ConfigurationError, WriteVerificationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to set up billing: {exc}",
        ) from exc

    return SetupBillingResponse(
        success=True,
        message="Billing setup completed successfully",
        subscription=subscription_to_response(subscription),
    )


@router.post("/v1/usage/estimate", response_model=EstimateResponse)
async def estimate_usage(
    request: EstimateRequest,
    context: BillingContext = Depends(get_billing_context),
    db: AsyncSession = Depends(get_write_db),
) -> EstimateResponse:
    """
    Estimate tokens for a prospective operation and run the usage gate.

    Nothing is recorded.
    """
    model = resolve_model(request.model).name
    estimated = estimate_token_usage(request.operation, request.text_length, model)
    result = await UsageService(db).enforce_usage_limit(estimated, context)

    return EstimateResponse(
        allowed=result.allowed,
        estimated_tokens=estimated,
        magic_token_cost=calculate_magic_token_cost(estimated, model),
        model=model,
        message=result.message,
        usage=usage_to_snapshot(result.usage) if result.usage else None,
    )


@router.post("/v1/usage/authorize", response_model=EstimateResponse)
async def authorize_usage(
    request: EstimateRequest,
    context: BillingContext = Depends(get_billing_context),
    db: AsyncSession = Depends(get_write_db),
) -> EstimateResponse:
    """
    Admit a metered operation before the AI call is made.

    A denied gate raises LimitExceededError, which the app turns into 429.
    Record the outcome afterwards with POST /v1/usage/events.
    """
    operation = MeteredOperation(
        UsageService(db),
        context,
        endpoint="/v1/usage/authorize",
        feature=request.operation.value,
        operation=request.operation,
        text_length=request.text_length,
        model=request.model,
    )
    gate = await operation.admit()

    return EstimateResponse(
        allowed=True,
        estimated_tokens=operation.estimated_tokens,
        magic_token_cost=calculate_magic_token_cost(operation.estimated_tokens, operation.model),
        model=operation.model,
        usage=usage_to_snapshot(gate.usage) if gate.usage else None,
    )


@router.post(
    "/v1/usage/events",
    response_model=RecordUsageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def record_usage_event(
    request: RecordUsageRequest,
    context: BillingContext = Depends(get_billing_context),
    db: AsyncSession = Depends(get_write_db),
) -> RecordUsageResponse:
    """
    Record tokens consumed by the caller.

    Best effort - a failed write is logged server-side and still returns 202.
    A failed AI call is charged the flat failure tax instead of tokens_used.
    """
    request_id = request.request_id or str(uuid4())
    if request.failed:
        intent = failure_intent(
            request.endpoint, request.feature_used, request.model_used, request_id
        )
    else:
        intent = UsageEventIntent(
            endpoint=request.endpoint,
            tokens_used=request.tokens_used,
            model_used=request.model_used,
            feature_used=request.feature_used,
            request_id=request_id,
        )
    await UsageService(db).record_usage(intent, context)
    return RecordUsageResponse(accepted=True, request_id=request_id)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

