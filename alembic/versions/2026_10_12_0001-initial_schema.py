"""Initial schema: tenancy tables, plans, subscriptions, billing periods, usage log.

Revision ID: 2026_10_12_0001
Revises:
Create Date: 2026-10-12

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_12_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    """Create metering tables and the tenancy tables they reference."""

    # ========================================================================
    # Tenancy
    # ========================================================================
    op.create_table(
        "organizations",
        _id_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False, unique=True),
        sa.Column("token_limit", sa.BigInteger, nullable=False, server_default="0"),
        _timestamp("created_at"),
    )

    op.create_table(
        "teams",
        _id_column(),
        sa.Column(
            "organization_id",
            UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=True),
        sa.Column("token_limit", sa.BigInteger, nullable=False, server_default="0"),
        _timestamp("created_at"),
    )
    op.create_index("ix_teams_organization_id", "teams", ["organization_id"])

    op.create_table(
        "user_profiles",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id",
            UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("org_role", sa.String(20), nullable=False, server_default="member"),
        _timestamp("created_at"),
        sa.CheckConstraint("org_role IN ('org_admin', 'member')", name="ck_user_profile_org_role"),
    )
    op.create_index("ix_user_profiles_organization_id", "user_profiles", ["organization_id"])

    op.create_table(
        "user_team_memberships",
        _id_column(),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("user_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "team_id",
            UUID(as_uuid=True),
            sa.ForeignKey("teams.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("team_role", sa.String(20), nullable=False, server_default="member"),
        _timestamp("created_at"),
        sa.CheckConstraint("team_role IN ('team_admin', 'member')", name="ck_membership_team_role"),
        sa.UniqueConstraint("user_id", "team_id", name="uq_user_team_membership"),
    )
    op.create_index("idx_user_team_memberships_team", "user_team_memberships", ["team_id"])

    # ========================================================================
    # Plans & subscriptions
    # ========================================================================
    op.create_table(
        "subscription_plans",
        _id_column(),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("monthly_token_limit", sa.BigInteger, nullable=False),
        sa.Column("price_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("stripe_price_id", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("name", name="uq_subscription_plans_name"),
        sa.CheckConstraint(
            "monthly_token_limit >= 0 OR monthly_token_limit = -1",
            name="ck_plan_token_limit_valid",
        ),
        sa.CheckConstraint("price_cents >= 0", name="ck_plan_price_non_negative"),
    )
    op.create_index(
        "idx_subscription_plans_active_price", "subscription_plans", ["is_active", "price_cents"]
    )

    op.create_table(
        "user_subscriptions",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "subscription_plan_id",
            UUID(as_uuid=True),
            sa.ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "status IN ('active', 'canceled', 'past_due', 'incomplete')",
            name="ck_subscription_status",
        ),
        sa.CheckConstraint(
            "current_period_end > current_period_start", name="ck_subscription_period_order"
        ),
    )
    # At most one active subscription per user
    op.create_index(
        "uq_user_subscriptions_one_active",
        "user_subscriptions",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index(
        "idx_user_subscriptions_user_status", "user_subscriptions", ["user_id", "status"]
    )
    op.create_index(
        "idx_user_subscriptions_period_end", "user_subscriptions", ["current_period_end"]
    )

    op.create_table(
        "billing_periods",
        _id_column(),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("user_subscriptions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tokens_used", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("tokens_limit", sa.BigInteger, nullable=False),
        sa.Column("overage_tokens", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("amount_charged_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("stripe_invoice_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("tokens_used >= 0", name="ck_billing_period_tokens_non_negative"),
        sa.CheckConstraint("overage_tokens >= 0", name="ck_billing_period_overage_non_negative"),
        sa.CheckConstraint("status IN ('active', 'closed')", name="ck_billing_period_status"),
    )
    op.create_index(
        "idx_billing_periods_subscription", "billing_periods", ["subscription_id", "period_start"]
    )

    # ========================================================================
    # Usage log (append-only)
    # ========================================================================
    op.create_table(
        "token_usage_events",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("organization_id", UUID(as_uuid=True), nullable=True),
        sa.Column("team_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("user_subscriptions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("tokens_used", sa.BigInteger, nullable=False),
        sa.Column("model_used", sa.String(100), nullable=True),
        sa.Column("feature_used", sa.String(100), nullable=False),
        sa.Column("request_id", sa.String(255), nullable=True),
        sa.Column("billing_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("billing_period_end", sa.DateTime(timezone=True), nullable=False),
        _timestamp("created_at"),
        sa.CheckConstraint("tokens_used >= 0", name="ck_usage_event_tokens_non_negative"),
    )
    op.create_index(
        "idx_token_usage_subscription_created",
        "token_usage_events",
        ["subscription_id", "created_at"],
    )
    op.create_index(
        "idx_token_usage_user_created", "token_usage_events", ["user_id", "created_at"]
    )
    op.create_index(
        "idx_token_usage_org_created",
        "token_usage_events",
        ["organization_id", "created_at"],
        postgresql_where=sa.text("organization_id IS NOT NULL"),
    )
    op.create_index(
        "idx_token_usage_request_id",
        "token_usage_events",
        ["request_id"],
        postgresql_where=sa.text("request_id IS NOT NULL"),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("token_usage_events")
    op.drop_table("billing_periods")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_plans")
    op.drop_table("user_team_memberships")
    op.drop_table("user_profiles")
    op.drop_table("teams")
    op.drop_table("organizations")
