"""Seed the Free, Pro and Enterprise subscription plans.

Revision ID: 2026_10_12_0002
Revises: 2026_10_12_0001
Create Date: 2026-10-12

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_12_0002"
down_revision: str | None = "2026_10_12_0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

PLANS = [
    {
        "name": "Free",
        "description": "Get started with AI-assisted ticket refinement",
        "monthly_token_limit": 10_000,
        "price_cents": 0,
    },
    {
        "name": "Pro",
        "description": "For individuals and small teams refining tickets daily",
        "monthly_token_limit": 100_000,
        "price_cents": 1_900,
    },
    {
        "name": "Enterprise",
        "description": "Unlimited tokens for organizations",
        "monthly_token_limit": -1,
        "price_cents": 9_900,
    },
]


def upgrade() -> None:
    """Insert default plans (skipped if a plan with the same name exists)."""
    for plan in PLANS:
        op.execute(
            sa.text(
                """
                INSERT INTO subscription_plans (name, description, monthly_token_limit, price_cents)
                VALUES (:name, :description, :monthly_token_limit, :price_cents)
                ON CONFLICT (name) DO NOTHING
                """
            ).bindparams(**plan)
        )


def downgrade() -> None:
    """Remove seeded plans that no subscription references."""
    op.execute(
        sa.text(
            """
            DELETE FROM subscription_plans
            WHERE name IN ('Free', 'Pro', 'Enterprise')
              AND id NOT IN (SELECT subscription_plan_id FROM user_subscriptions)
            """
        )
    )
