"""create_crm_tables

Revision ID: 3b1f0c2d9a7e
Revises:
Create Date: 2026-10-18 09:12:41.508213

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql


# revision identifiers, used by Alembic.
revision: str = '3b1f0c2d9a7e'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
PRECISE_DATETIME = sa.DateTime(timezone=True).with_variant(mysql.DATETIME(fsp=6), "mysql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("customer_key", sa.String(40), nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(254)),
        sa.Column("phone", sa.String(20)),
        sa.Column("city", sa.String(100)),
        sa.Column("total_spending", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_visits", sa.Integer(), nullable=False),
        sa.Column("last_visit_at", sa.DateTime(timezone=True)),
        sa.Column("registered_at", sa.DateTime(timezone=True)),
        sa.Column("churn_risk", sa.String(10), nullable=False),
        sa.Column("preferred_channel", sa.String(10), nullable=False),
        sa.Column("preferred_category", sa.String(50)),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_customer_total_spending", "customers", ["total_spending"])
    op.create_index("ix_customer_last_visit", "customers", ["last_visit_at"])

    op.create_table(
        "orders",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("customer_id", sa.BigInteger(), sa.ForeignKey("customers.id", ondelete="CASCADE")),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("category", sa.String(50)),
        sa.Column("ordered_at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_order_customer_date", "orders", ["customer_id", "ordered_at"])

    op.create_table(
        "segments",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("rule_tree", sa.JSON(), nullable=False),
        sa.Column("natural_language_query", sa.Text()),
        sa.Column("audience_size", sa.Integer(), nullable=False),
        sa.Column("last_calculated_at", sa.DateTime(timezone=True)),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("tags", sa.JSON()),
        *_timestamps(),
    )

    op.create_table(
        "campaigns",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("campaign_key", sa.String(40), nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("segment_id", sa.BigInteger(), sa.ForeignKey("segments.id"), nullable=False),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("subject", sa.String(200)),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True)),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("audience_size", sa.Integer(), nullable=False),
        sa.Column("launched_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("stats", sa.JSON()),
        *_timestamps(),
    )

    op.create_table(
        "campaign_messages",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("campaign_id", sa.BigInteger(), sa.ForeignKey("campaigns.id", ondelete="CASCADE")),
        sa.Column("customer_id", sa.BigInteger(), sa.ForeignKey("customers.id")),
        sa.Column("vendor_message_id", sa.String(64), nullable=False, unique=True),
        sa.Column("channel", sa.String(10), nullable=False),
        sa.Column("recipient", sa.String(254)),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("queued_at", PRECISE_DATETIME),
        sa.Column("sent_at", PRECISE_DATETIME),
        sa.Column("delivered_at", PRECISE_DATETIME),
        sa.Column("opened_at", PRECISE_DATETIME),
        sa.Column("clicked_at", PRECISE_DATETIME),
        sa.Column("bounced_at", PRECISE_DATETIME),
        sa.Column("failed_at", PRECISE_DATETIME),
        sa.Column("unsubscribed_at", PRECISE_DATETIME),
        sa.Column("inferred_statuses", sa.JSON()),
        sa.Column("error_code", sa.String(30)),
        sa.Column("error_message", sa.String(255)),
        *_timestamps(),
        sa.UniqueConstraint("campaign_id", "customer_id", name="uq_message_recipient"),
    )
    op.create_index("ix_message_campaign_status", "campaign_messages", ["campaign_id", "status"])

    op.create_table(
        "delivery_receipt_logs",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column(
            "message_id",
            sa.BigInteger(),
            sa.ForeignKey("campaign_messages.id", ondelete="CASCADE"),
        ),
        sa.Column("vendor_message_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("occurred_at", PRECISE_DATETIME, nullable=False),
        sa.Column("outcome", sa.String(40), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "vendor_message_id", "status", "occurred_at", name="uq_receipt_fingerprint"
        ),
    )
    op.create_index(
        "ix_delivery_receipt_logs_vendor_message_id",
        "delivery_receipt_logs",
        ["vendor_message_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_delivery_receipt_logs_vendor_message_id", table_name="delivery_receipt_logs")
    op.drop_table("delivery_receipt_logs")
    op.drop_index("ix_message_campaign_status", table_name="campaign_messages")
    op.drop_table("campaign_messages")
    op.drop_table("campaigns")
    op.drop_table("segments")
    op.drop_index("ix_order_customer_date", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_customer_last_visit", table_name="customers")
    op.drop_index("ix_customer_total_spending", table_name="customers")
    op.drop_table("customers")
