"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from app.models.api import SubscriptionStatus

# Sentinel monthly_token_limit meaning "no limit"
UNLIMITED_TOKENS = -1


def compute_overage(current_usage: int, limit: int) -> int:
    """Tokens consumed beyond the allotment; never negative, zero when unlimited."""
    if limit == UNLIMITED_TOKENS:
        return 0
    return max(0, current_usage - limit)


@dataclass(frozen=True)
class BillingContext:
    """
    Who a metered request is billed to.

    Resolved once per request and threaded through the resolver and recorder
    so organization/team attribution is computed in one place.
    """

    user_id: UUID
    organization_id: UUID | None = None
    team_id: UUID | None = None


@dataclass(frozen=True)
class PlanData:
    """Immutable subscription plan snapshot."""

    plan_id: UUID
    name: str
    description: str | None
    monthly_token_limit: int
    price_cents: int
    is_active: bool

    def __post_init__(self) -> None:
        """Validate plan constraints."""
        if self.monthly_token_limit < 0 and self.monthly_token_limit != UNLIMITED_TOKENS:
            raise ValueError(f"Invalid monthly token limit: {self.monthly_token_limit}")
        if self.price_cents < 0:
            raise ValueError(f"Plan price cannot be negative: {self.price_cents}")

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_token_limit == UNLIMITED_TOKENS


@dataclass(frozen=True)
class SubscriptionData:
    """Immutable subscription snapshot with its plan."""

    subscription_id: UUID
    user_id: UUID
    organization_id: UUID | None
    plan: PlanData
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime

    @property
    def is_expired(self) -> bool:
        """True once the current period has ended and no rollover has run yet."""
        return datetime.now(UTC) > self.current_period_end


@dataclass(frozen=True)
class UsageEventIntent:
    """Domain model for a usage event before persistence - immutable intent."""

    endpoint: str
    tokens_used: int
    model_used: str
    feature_used: str
    request_id: str | None = None

    def __post_init__(self) -> None:
        """Validate usage event constraints."""
        if isinstance(self.tokens_used, bool) or not isinstance(self.tokens_used, int):
            raise ValueError(f"tokens_used must be an integer: {self.tokens_used!r}")
        if self.tokens_used < 0:
            raise ValueError(f"tokens_used cannot be negative: {self.tokens_used}")
        if not self.endpoint:
            raise ValueError("endpoint cannot be empty")
        if not self.feature_used:
            raise ValueError("feature_used cannot be empty")


@dataclass(frozen=True)
class UsageLimit:
    """Usage within the active billing period compared against the plan limit."""

    current_usage: int
    limit: int
    period_start: datetime
    period_end: datetime
    overage: int

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED_TOKENS

    @property
    def percentage(self) -> float:
        """Share of the allotment used, capped at 100."""
        if self.is_unlimited:
            return 0.0
        if self.limit == 0:
            return 100.0 if self.current_usage > 0 else 0.0
        return min(100.0, self.current_usage / self.limit * 100)


@dataclass(frozen=True)
class EnforcementResult:
    """Outcome of the pre-flight usage gate."""

    allowed: bool
    usage: UsageLimit | None = None
    message: str | None = None
