"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


# ============================================================================
# Metering Tables
# ============================================================================


class SubscriptionPlan(Base):
    """
    ORM model for subscription_plans table.

    Named tiers with a monthly token allotment. A limit of -1 means unlimited.
    Rows are seeded by migration and retired by flipping is_active.
    """

    __tablename__ = "subscription_plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    monthly_token_limit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("name", name="uq_subscription_plans_name"),
        CheckConstraint(
            "monthly_token_limit >= 0 OR monthly_token_limit = -1",
            name="ck_plan_token_limit_valid",
        ),
        CheckConstraint("price_cents >= 0", name="ck_plan_price_non_negative"),
        Index("idx_subscription_plans_active_price", "is_active", "price_cents"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<SubscriptionPlan(id={self.id}, name={self.name}, "
            f"monthly_token_limit={self.monthly_token_limit})>"
        )


class UserSubscription(Base):
    """
    ORM model for user_subscriptions table.

    Binds a user (and optionally their organization) to a plan for a period.
    At most one row per user may be active.
    """

    __tablename__ = "user_subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    organization_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    subscription_plan_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # External billing references (written by the checkout flow, not here)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    current_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    plan: Mapped[SubscriptionPlan] = relationship(lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "current_period_end > current_period_start", name="ck_subscription_period_order"
        ),
        Index(
            "uq_user_subscriptions_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_user_subscriptions_user_status", "user_id", "status"),
        Index("idx_user_subscriptions_period_end", "current_period_end"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UserSubscription(id={self.id}, user_id={self.user_id}, "
            f"status={self.status}, period_end={self.current_period_end})>"
        )


class BillingPeriod(Base):
    """
    ORM model for billing_periods table.

    Denormalized snapshot of one subscription's allotment for one period.
    Invoicing anchor only - the token_usage_events log is authoritative.
    """

    __tablename__ = "billing_periods"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("user_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tokens_limit: Mapped[int] = mapped_column(BigInteger, nullable=False)
    overage_tokens: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_charged_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_used >= 0", name="ck_billing_period_tokens_non_negative"),
        CheckConstraint("overage_tokens >= 0", name="ck_billing_period_overage_non_negative"),
        Index("idx_billing_periods_subscription", "subscription_id", "period_start"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BillingPeriod(id={self.id}, subscription_id={self.subscription_id}, "
            f"status={self.status})>"
        )


class TokenUsageEvent(Base):
    """
    ORM model for token_usage_events table.

    Immutable, append-only log of tokens consumed. Billing period bounds are
    copied onto each row so reporting never joins back to the subscription.
    """

    __tablename__ = "token_usage_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    organization_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    team_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("user_subscriptions.id", ondelete="RESTRICT"),
        nullable=False,
    )

    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False)
    model_used: Mapped[str | None] = mapped_column(String(100), nullable=True)
    feature_used: Mapped[str] = mapped_column(String(100), nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    billing_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    billing_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_used >= 0", name="ck_usage_event_tokens_non_negative"),
        Index("idx_token_usage_subscription_created", "subscription_id", "created_at"),
        Index("idx_token_usage_user_created", "user_id", "created_at"),
        Index(
            "idx_token_usage_org_created",
            "organization_id",
            "created_at",
            postgresql_where=(organization_id.isnot(None)),
        ),
        Index(
            "idx_token_usage_request_id",
            "request_id",
            postgresql_where=(request_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenUsageEvent(id={self.id}, user_id={self.user_id}, "
            f"tokens_used={self.tokens_used}, feature={self.feature_used})>"
        )


# ============================================================================
# Tenancy Tables (owned by the product; read here for attribution and roles)
# ============================================================================


class Organization(Base):
    """ORM model for organizations table."""

    __tablename__ = "organizations"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    token_limit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class Team(Base):
    """ORM model for teams table."""

    __tablename__ = "teams"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    token_limit: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class UserProfile(Base):
    """ORM model for user_profiles table (id is the auth user id)."""

    __tablename__ = "user_profiles"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    organization_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    org_role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class UserTeamMembership(Base):
    """ORM model for user_team_memberships table."""

    __tablename__ = "user_team_memberships"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("user_profiles.id", ondelete="CASCADE"),
        nullable=False,
    )
    team_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
    )
    team_role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "team_id", name="uq_user_team_membership"),
        Index("idx_user_team_memberships_team", "team_id"),
    )
