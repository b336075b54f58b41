from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal

from pydantic import BaseModel, Field


class CampaignCreate(BaseModel):
    name: str = Field(..., max_length=100)
    segment_id: int = Field(..., description="대상 세그먼트 ID")
    channel: Literal["email", "sms"] = "email"
    subject: str | None = Field(default=None, max_length=200)
    body: str = Field(..., min_length=1)
    scheduled_at: datetime | None = None


class CampaignRead(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    campaign_key: str
    name: str
    segment_id: int
    channel: str
    subject: str | None = None
    body: str
    scheduled_at: datetime | None
    status: str
    audience_size: int
    launched_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


class CampaignLaunchSummary(BaseModel):
    campaign_id: int
    status: str
    audience_size: int
    queued: int
    skipped: int = Field(default=0, description="이미 메시지가 있거나 연락처가 없는 고객 수")


class CampaignDeliverySummary(BaseModel):
    total: int = 0
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    bounced: int = 0
    failed: int = 0
    unsubscribed: int = 0
    open_rate: float = 0.0
    click_rate: float = 0.0


class CampaignAnalytics(BaseModel):
    campaign_id: int
    status: str
    summary: CampaignDeliverySummary
    by_channel: Dict[str, CampaignDeliverySummary] = Field(default_factory=dict)


class DispatchError(BaseModel):
    vendor_message_id: str
    reason: str


class DispatchSummary(BaseModel):
    submitted: int
    accepted: int
    rejected: int
    errors: List[DispatchError] = Field(default_factory=list)
