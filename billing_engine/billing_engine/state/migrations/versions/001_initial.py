"""Initial billing state schema.

Creates the ``entitlements``, ``billing_customers`` and ``stripe_events``
tables used by the webhook reconciler and the account deletion workflow.

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "entitlements",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("stripe_subscription_id", sa.String(256), nullable=True),
        sa.Column("stripe_status", sa.String(64), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_event_created", sa.BigInteger(), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_entitlements_status", "entitlements", ["stripe_status"])

    op.create_table(
        "billing_customers",
        sa.Column("user_id", sa.String(128), primary_key=True),
        sa.Column("stripe_customer_id", sa.String(256), nullable=False, unique=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_billing_customers_stripe_customer",
        "billing_customers",
        ["stripe_customer_id"],
    )

    op.create_table(
        "stripe_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_stripe_events_received_at", "stripe_events", ["received_at"])


def downgrade() -> None:
    op.drop_index("ix_stripe_events_received_at", table_name="stripe_events")
    op.drop_table("stripe_events")
    op.drop_index("ix_billing_customers_stripe_customer", table_name="billing_customers")
    op.drop_table("billing_customers")
    op.drop_index("ix_entitlements_status", table_name="entitlements")
    op.drop_table("entitlements")
