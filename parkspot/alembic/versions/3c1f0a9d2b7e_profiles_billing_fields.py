"""profiles billing fields

Revision ID: 3c1f0a9d2b7e
Revises:
Create Date: 2026-10-19 09:12:05.118402+00:00

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "3c1f0a9d2b7e"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.Text(), primary_key=True),  # Supabase auth user id
        sa.Column("email", sa.Text()),
        sa.Column(
            "subscription_tier", sa.Text(), nullable=False, server_default="free"
        ),  # free | basic | pro | enterprise
        sa.Column(
            "subscription_status", sa.Text(), nullable=False, server_default="inactive"
        ),  # active | inactive | trialing | canceled | past_due
        sa.Column("stripe_customer_id", sa.Text(), unique=True),  # set once
        sa.Column("stripe_subscription_id", sa.Text()),
        sa.Column("subscription_renews_at", sa.Text()),  # ISO-8601 UTC
        sa.Column(
            "cancel_at_period_end",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column("created_at", sa.Text()),
        sa.Column("updated_at", sa.Text()),
        if_not_exists=True,
    )
    op.create_index(
        "ix_profiles_stripe_subscription_id",
        "profiles",
        ["stripe_subscription_id"],
        if_not_exists=True,
    )


def downgrade() -> None:
    op.drop_index("ix_profiles_stripe_subscription_id", table_name="profiles")
    op.drop_table("profiles")
