from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field


class DeliveryReceiptIn(BaseModel):
    """벤더 웹훅 페이로드. status는 서비스에서 MessageStatus로 해석한다."""

    vendor_message_id: str = Field(..., min_length=1, max_length=64)
    status: str = Field(..., min_length=1, max_length=20)
    occurred_at: datetime
    campaign_id: int | None = None
    customer_id: int | None = None
    error_code: str | None = Field(default=None, max_length=30)
    error_message: str | None = Field(default=None, max_length=255)


class DeliveryReceiptBatch(BaseModel):
    receipts: List[DeliveryReceiptIn] = Field(..., min_length=1)


class ReceiptOutcomeRead(BaseModel):
    vendor_message_id: str
    status: str
    outcome: str | None = None
    message_status: str | None = None
    inferred: List[str] = Field(default_factory=list)
    error: str | None = None


class ReceiptBatchResponse(BaseModel):
    processed: int
    errors: int
    outcomes: Dict[str, int]
    results: List[ReceiptOutcomeRead]


class MessageDeliveryRead(BaseModel):
    vendor_message_id: str
    campaign_id: int
    customer_id: int
    channel: str
    status: str
    timestamps: Dict[str, datetime]
    inferred_statuses: List[str] = Field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None
