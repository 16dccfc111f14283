"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - Request and response bodies are strongly typed. Breakdown
maps (feature -> tokens, date -> tokens) are the only keyed collections.
"""

from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration."""

    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"


class BillingPeriodStatus(str, Enum):
    """Billing period status enumeration."""

    ACTIVE = "active"
    CLOSED = "closed"


class OrgRole(str, Enum):
    """Organization role enumeration."""

    ORG_ADMIN = "org_admin"
    MEMBER = "member"


class TeamRole(str, Enum):
    """Team role enumeration."""

    TEAM_ADMIN = "team_admin"
    MEMBER = "member"


class OperationType(str, Enum):
    """AI operations that consume tokens."""

    CHAT = "chat"
    REFINE = "refine"
    ASSESS = "assess"


# ============================================================================
# Plan & Subscription Models
# ============================================================================


class PlanResponse(BaseModel):
    """Subscription plan as exposed to clients."""

    plan_id: UUID
    name: str
    description: str | None = None
    monthly_token_limit: int
    price_cents: int
    is_unlimited: bool


class PlanListResponse(BaseModel):
    """GET /v1/subscriptions/plans response."""

    plans: list[PlanResponse]


class SubscriptionResponse(BaseModel):
    """Active subscription with its plan."""

    subscription_id: UUID
    organization_id: UUID | None = None
    plan: PlanResponse
    status: SubscriptionStatus
    current_period_start: str
    current_period_end: str
    is_expired: bool = False


class ChangePlanRequest(BaseModel):
    """POST /v1/subscriptions request body."""

    plan_id: UUID


class SetupBillingResponse(BaseModel):
    """POST /v1/usage/setup-billing response."""

    success: bool
    message: str
    subscription: SubscriptionResponse


# ============================================================================
# Usage Models
# ============================================================================


class UsageSnapshot(BaseModel):
    """Usage in the current billing period."""

    current: int
    limit: int
    overage: int
    percentage: float
    period_start: str
    period_end: str
    is_unlimited: bool


class SubscriptionSummary(BaseModel):
    """Plan name and status shown beside usage."""

    plan_name: str
    status: str


class CurrentUsageResponse(BaseModel):
    """GET /v1/usage/current response."""

    usage: UsageSnapshot
    subscription: SubscriptionSummary


class UsageEventItem(BaseModel):
    """A single recorded token usage event."""

    model_config = ConfigDict(protected_namespaces=())

    event_id: UUID
    endpoint: str
    tokens_used: int
    model_used: str | None = None
    feature_used: str
    request_id: str | None = None
    team_id: UUID | None = None
    organization_id: UUID | None = None
    created_at: str


class DailyUsage(BaseModel):
    """Tokens used on one calendar day, split by feature."""

    total: int = 0
    features: dict[str, int] = Field(default_factory=dict)


class UsageHistoryResponse(BaseModel):
    """GET /v1/usage/history response."""

    total_events: int
    total_tokens: int
    daily_usage: dict[str, DailyUsage]
    feature_breakdown: dict[str, int]
    model_breakdown: dict[str, int]
    raw_events: list[UsageEventItem]


class RecordUsageRequest(BaseModel):
    """POST /v1/usage/events request body."""

    model_config = ConfigDict(protected_namespaces=())

    endpoint: str = Field(..., min_length=1, max_length=255)
    tokens_used: int = Field(..., ge=0)
    model_used: str = Field(..., min_length=1, max_length=100)
    # Leaves room for the _failed suffix
    feature_used: str = Field(..., min_length=1, max_length=93)
    request_id: str | None = Field(None, max_length=255)
    failed: bool = False


class RecordUsageResponse(BaseModel):
    """POST /v1/usage/events response."""

    accepted: bool
    request_id: str


class EstimateRequest(BaseModel):
    """POST /v1/usage/estimate and /v1/usage/authorize request body."""

    operation: OperationType
    text_length: int = Field(0, ge=0)
    model: str | None = Field(None, max_length=100)


class EstimateResponse(BaseModel):
    """POST /v1/usage/estimate and /v1/usage/authorize response."""

    allowed: bool
    estimated_tokens: int
    magic_token_cost: int
    model: str
    message: str | None = None
    usage: UsageSnapshot | None = None


# ============================================================================
# Reporting Models
# ============================================================================


class PeriodTotals(BaseModel):
    """Totals for a reporting window."""

    total_tokens: int
    total_events: int
    unique_users: int | None = None
    period_start: str
    period_end: str


class UsageTrendPoint(BaseModel):
    """Tokens on one day of a zero-filled trend."""

    date: str
    tokens: int


class TeamUsageItem(BaseModel):
    """Per-team usage inside an organization report."""

    team_id: UUID
    team_name: str
    team_slug: str | None = None
    token_limit: int
    tokens_used: int
    usage_percentage: float
    active_users: int
    api_requests: int


class TopUserItem(BaseModel):
    """A heavy user inside an organization report."""

    user_id: UUID
    tokens_used: int
    api_requests: int


class OrganizationSummary(BaseModel):
    """Organization header for usage reports."""

    id: UUID
    name: str
    token_limit: int


class OrganizationUsageBreakdown(BaseModel):
    """Organization usage rollups."""

    current_month: PeriodTotals
    feature_breakdown: dict[str, int]
    daily_usage: dict[str, int]
    usage_trend: list[UsageTrendPoint]
    team_breakdown: list[TeamUsageItem]
    top_users: list[TopUserItem]


class OrganizationUsageResponse(BaseModel):
    """GET /v1/usage/organization/{org_id} response."""

    organization: OrganizationSummary
    usage: OrganizationUsageBreakdown
    teams_count: int
    user_role: OrgRole


class TeamMemberUsageItem(BaseModel):
    """Per-member usage inside a team report."""

    user_id: UUID
    full_name: str | None = None
    team_role: TeamRole
    tokens_used: int


class TeamSummary(BaseModel):
    """Team header for usage reports."""

    id: UUID
    name: str
    organization_id: UUID


class TeamUsageBreakdown(BaseModel):
    """Team usage rollups."""

    current_month: PeriodTotals
    feature_breakdown: dict[str, int]
    daily_usage: dict[str, int]
    members: list[TeamMemberUsageItem]


class TeamUsageResponse(BaseModel):
    """GET /v1/usage/team/{team_id} response."""

    team: TeamSummary
    usage: TeamUsageBreakdown
    user_role: TeamRole


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
