from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from mini_crm.models.base import Base, BigIntPK, PreciseDateTime, TimestampMixin


class Customer(TimestampMixin, Base):
    __tablename__ = "customers"
    __table_args__ = (
        Index("ix_customer_total_spending", "total_spending"),
        Index("ix_customer_last_visit", "last_visit_at"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    customer_key: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(254))
    phone: Mapped[str | None] = mapped_column(String(20))
    city: Mapped[str | None] = mapped_column(String(100))
    total_spending: Mapped[float] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    total_visits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_visit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    registered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    churn_risk: Mapped[str] = mapped_column(String(10), default="low", nullable=False)
    preferred_channel: Mapped[str] = mapped_column(String(10), default="email", nullable=False)
    preferred_category: Mapped[str | None] = mapped_column(String(50))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Order(TimestampMixin, Base):
    __tablename__ = "orders"
    __table_args__ = (Index("ix_order_customer_date", "customer_id", "ordered_at"),)

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"))
    amount: Mapped[float] = mapped_column(Numeric(12, 2), nullable=False)
    category: Mapped[str | None] = mapped_column(String(50))
    ordered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Segment(TimestampMixin, Base):
    __tablename__ = "segments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    rule_tree: Mapped[dict] = mapped_column(JSON, nullable=False)
    natural_language_query: Mapped[str | None] = mapped_column(Text)
    audience_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    tags: Mapped[list | None] = mapped_column(JSON)


class Campaign(TimestampMixin, Base):
    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    campaign_key: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    segment_id: Mapped[int] = mapped_column(ForeignKey("segments.id"))
    channel: Mapped[str] = mapped_column(String(10), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(200))
    body: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(20), default="DRAFT", nullable=False)
    audience_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    launched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    stats: Mapped[dict | None] = mapped_column(JSON)


class CampaignMessage(TimestampMixin, Base):
    __tablename__ = "campaign_messages"
    __table_args__ = (
        UniqueConstraint("campaign_id", "customer_id", name="uq_message_recipient"),
        Index("ix_message_campaign_status", "campaign_id", "status"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    campaign_id: Mapped[int] = mapped_column(ForeignKey("campaigns.id", ondelete="CASCADE"))
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"))
    vendor_message_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    channel: Mapped[str] = mapped_column(String(10), nullable=False)
    recipient: Mapped[str | None] = mapped_column(String(254))
    status: Mapped[str] = mapped_column(String(20), default="queued", nullable=False)
    queued_at: Mapped[datetime | None] = mapped_column(PreciseDateTime)
    sent_at: Mapped[datetime | None] = mapped_column(PreciseDateTime)
    delivered_at: Mapped[datetime | None] = mapped_column(PreciseDateTime)
    opened_at: Mapped[datetime | None] = mapped_column(PreciseDateTime)
    clicked_at: Mapped[datetime | None] = mapped_column(PreciseDateTime)
    bounced_at: Mapped[datetime | None] = mapped_column(PreciseDateTime)
    failed_at: Mapped[datetime | None] = mapped_column(PreciseDateTime)
    unsubscribed_at: Mapped[datetime | None] = mapped_column(PreciseDateTime)
    inferred_statuses: Mapped[list | None] = mapped_column(JSON)
    error_code: Mapped[str | None] = mapped_column(String(30))
    error_message: Mapped[str | None] = mapped_column(String(255))


class DeliveryReceiptLog(TimestampMixin, Base):
    __tablename__ = "delivery_receipt_logs"
    __table_args__ = (
        UniqueConstraint(
            "vendor_message_id", "status", "occurred_at", name="uq_receipt_fingerprint"
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("campaign_messages.id", ondelete="CASCADE")
    )
    vendor_message_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(PreciseDateTime, nullable=False)
    outcome: Mapped[str] = mapped_column(String(40), nullable=False)
