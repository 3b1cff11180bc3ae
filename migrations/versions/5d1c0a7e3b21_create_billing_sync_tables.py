"""create billing sync tables

Revision ID: 5d1c0a7e3b21
Revises:
Create Date: 2026-10-17 09:00:00
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5d1c0a7e3b21"
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("legacy_external_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("subscription_tier", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("subscription_status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("token_version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_legacy_external_id", "users", ["legacy_external_id"], unique=True)
    op.create_index("ix_users_stripe_customer_id", "users", ["stripe_customer_id"], unique=True)

    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("plan_key", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("video_limit", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("api_calls_limit", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("storage_limit_gb", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("features", JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("plan_key"),
    )

    op.create_table(
        "subscription_plan_prices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.Integer(), nullable=False),
        sa.Column("stripe_price_id", sa.String(length=100), nullable=False),
        sa.Column("billing_period", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plans.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_plan_prices_plan_id", "subscription_plan_prices", ["plan_id"])
    op.create_index(
        "ix_subscription_plan_prices_stripe_price_id", "subscription_plan_prices", ["stripe_price_id"], unique=True
    )

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("plan_name", sa.String(length=32), nullable=False),
        sa.Column("price_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="incomplete"),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_start", sa.DateTime(), nullable=True),
        sa.Column("trial_end", sa.DateTime(), nullable=True),
        sa.Column("last_event_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"])
    op.create_index("ix_user_subscriptions_stripe_customer_id", "user_subscriptions", ["stripe_customer_id"])
    op.create_index(
        "ix_user_subscriptions_stripe_subscription_id", "user_subscriptions", ["stripe_subscription_id"], unique=True
    )
    op.create_index("ix_user_subscriptions_plan_name", "user_subscriptions", ["plan_name"])
    op.create_index("ix_user_subscriptions_price_id", "user_subscriptions", ["price_id"])
    op.create_index("ix_user_subscriptions_status", "user_subscriptions", ["status"])
    op.create_index("ix_user_subscriptions_current_period_end", "user_subscriptions", ["current_period_end"])

    op.create_table(
        "subscription_usage",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("period_start", sa.DateTime(), nullable=False),
        sa.Column("period_end", sa.DateTime(), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("videos_processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("api_calls_made", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("storage_used_mb", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("ai_summaries_generated", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("analytics_views", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "subscription_id", "period_start", name="uq_subscription_usage_period"),
    )
    op.create_index("ix_subscription_usage_user_id", "subscription_usage", ["user_id"])
    op.create_index("ix_subscription_usage_subscription_id", "subscription_usage", ["subscription_id"])
    op.create_index("ix_subscription_usage_period_end", "subscription_usage", ["period_end"])

    op.create_table(
        "subscription_plan_migrations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("from_plan", sa.String(length=32), nullable=True),
        sa.Column("to_plan", sa.String(length=32), nullable=False),
        sa.Column("migration_type", sa.String(length=16), nullable=False),
        sa.Column("migration_reason", sa.String(length=32), nullable=False),
        sa.Column("from_billing_period", sa.String(length=20), nullable=True),
        sa.Column("to_billing_period", sa.String(length=20), nullable=True),
        sa.Column("effective_date", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["subscription_id"], ["user_subscriptions.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_plan_migrations_user_id", "subscription_plan_migrations", ["user_id"])
    op.create_index(
        "ix_subscription_plan_migrations_subscription_id", "subscription_plan_migrations", ["subscription_id"]
    )
    op.create_index(
        "ix_subscription_plan_migrations_stripe_subscription_id",
        "subscription_plan_migrations",
        ["stripe_subscription_id"],
    )
    op.create_index(
        "ix_subscription_plan_migrations_migration_type", "subscription_plan_migrations", ["migration_type"]
    )

    op.create_table(
        "billing_event_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("signature_valid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("payload", JSON, nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.String(length=1000), nullable=True),
        sa.Column("result", JSON, nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("received_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("processing_started_at", sa.DateTime(), nullable=True),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_event_logs_stripe_event_id", "billing_event_logs", ["stripe_event_id"], unique=True)
    op.create_index("ix_billing_event_logs_event_type", "billing_event_logs", ["event_type"])
    op.create_index("ix_billing_event_logs_status", "billing_event_logs", ["status"])
    op.create_index("ix_billing_event_logs_stripe_subscription_id", "billing_event_logs", ["stripe_subscription_id"])
    op.create_index("ix_billing_event_logs_user_id", "billing_event_logs", ["user_id"])
    op.create_index("ix_billing_event_logs_received_at", "billing_event_logs", ["received_at"])

    op.create_table(
        "email_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("to_email", sa.String(length=320), nullable=False),
        sa.Column("template", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("meta", JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_email_logs_to_email", "email_logs", ["to_email"])
    op.create_index("ix_email_logs_status", "email_logs", ["status"])


def downgrade():
    op.drop_table("email_logs")
    op.drop_table("billing_event_logs")
    op.drop_table("subscription_plan_migrations")
    op.drop_table("subscription_usage")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_plan_prices")
    op.drop_table("subscription_plans")
    op.drop_table("users")
