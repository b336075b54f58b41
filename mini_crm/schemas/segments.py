from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal

from pydantic import BaseModel, Field


class FieldDescriptorRead(BaseModel):
    name: str
    type: str
    label: str
    operators: List[str]
    options: List[str] = Field(default_factory=list)


class RuleErrorRead(BaseModel):
    code: str
    message: str
    path: str
    rule_id: str | None = None


class CustomerBrief(BaseModel):
    id: int
    customer_key: str
    name: str
    email: str | None = None
    city: str | None = None
    total_spending: float
    churn_risk: str | None = None


class SegmentPreviewRequest(BaseModel):
    rule_tree: Any = Field(..., description="RuleGroup (dict) 또는 예전 ruleGroups 배열")
    sample_size: int | None = Field(default=None, ge=0, le=100)


class SegmentPreviewResponse(BaseModel):
    valid: bool
    audience_size: int = 0
    description: str = ""
    sample: List[CustomerBrief] = Field(default_factory=list)
    errors: List[RuleErrorRead] = Field(default_factory=list)


class SegmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    rule_tree: Any
    natural_language_query: str | None = None
    tags: List[str] = Field(default_factory=list)


class SegmentUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    rule_tree: Any = None
    natural_language_query: str | None = None
    tags: List[str] | None = None


class SegmentRead(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    name: str
    description: str | None = None
    rule_tree: Any
    natural_language_query: str | None = None
    audience_size: int
    last_calculated_at: datetime | None = None
    is_active: bool
    tags: List[str] | None = None
    created_at: datetime | None = None


class SegmentCustomersPage(BaseModel):
    segment_id: int
    total: int
    limit: int
    offset: int
    items: List[CustomerBrief]


class SegmentFromTextRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=500)


class SegmentFromTextResponse(BaseModel):
    rule_tree: Any
    valid: bool
    description: str = ""
    confidence: float = 0.0
    explanation: str | None = None
    source: Literal["ai", "fallback"]
    errors: List[RuleErrorRead] = Field(default_factory=list)
