"""Create users (with embedded subscription) and payment_events tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision = "4a9e2c7b1d05"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("plan", sa.String(length=32), nullable=False, server_default="free"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider", sa.String(length=64), nullable=True),
        sa.Column("provider_ref", sa.String(length=255), nullable=True),
        sa.Column(
            "subscription_updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "provider_ref IS NULL OR provider IS NOT NULL", name="ck_users_provider_ref_requires_provider"
        ),
    )
    op.create_index("ix_users_subscription_status", "users", ["status"])

    op.create_table(
        "payment_events",
        sa.Column("event_id", sa.String(length=255), primary_key=True, nullable=False),
        sa.Column("type", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column(
            "data",
            sa.JSON().with_variant(JSONB(astext_type=sa.Text()), "postgresql"),
            nullable=False,
        ),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_payment_events_user_type", "payment_events", ["user_id", "type"])
    op.create_index(
        "ix_payment_events_processed_received", "payment_events", ["processed", "received_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_payment_events_processed_received", table_name="payment_events")
    op.drop_index("ix_payment_events_user_type", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index("ix_users_subscription_status", table_name="users")
    op.drop_table("users")
