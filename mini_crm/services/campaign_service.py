from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from secrets import token_hex

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from mini_crm.core.config import settings
from mini_crm.models.domain import Campaign, CampaignMessage, Customer, Segment
from mini_crm.schemas.campaigns import CampaignAnalytics, CampaignCreate, CampaignLaunchSummary
from mini_crm.services import campaign_aggregator
from mini_crm.services.customer_service import get_customers_by_ids
from mini_crm.services.delivery_receipt_service import message_state_from_row
from mini_crm.services.delivery_state import MessageState, MessageStatus, TERMINAL_STATUSES
from mini_crm.services.segment_service import select_segment_customer_ids

logger = logging.getLogger(__name__)

LAUNCHABLE_STATUSES = {"DRAFT", "SCHEDULED"}
VENDOR_MESSAGE_ID_MAX = 64


class CampaignNotFoundError(ValueError):
    pass


def _generate_campaign_key() -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{timestamp}{token_hex(4)}"


def build_vendor_message_id(campaign_key: str, customer_id: int) -> str:
    """
    벤더 메시지 ID 길이 제한(64 bytes)을 넘으면 suffix 해시를 붙인다.
    """
    base = f"{campaign_key}-{customer_id}"
    if len(base) <= VENDOR_MESSAGE_ID_MAX:
        return base
    suffix = hashlib.sha1(base.encode("utf-8")).hexdigest()[:8]
    trimmed = campaign_key[: VENDOR_MESSAGE_ID_MAX - len(suffix) - 1]
    return f"{trimmed}-{suffix}"


def create_campaign(db: Session, payload: CampaignCreate) -> Campaign:
    segment = db.get(Segment, payload.segment_id)
    if not segment or not segment.is_active:
        raise ValueError("사용할 수 없는 세그먼트입니다.")
    if payload.channel == "email" and not (payload.subject or "").strip():
        raise ValueError("이메일 캠페인은 제목이 필요합니다.")

    campaign = Campaign(
        campaign_key=_generate_campaign_key(),
        name=payload.name.strip(),
        segment_id=segment.id,
        channel=payload.channel,
        subject=payload.subject,
        body=payload.body,
        scheduled_at=payload.scheduled_at,
        status="DRAFT",
        audience_size=segment.audience_size,
    )
    db.add(campaign)
    db.commit()
    db.refresh(campaign)
    return campaign


def get_campaign(db: Session, campaign_id: int) -> Campaign:
    campaign = db.get(Campaign, campaign_id)
    if not campaign:
        raise CampaignNotFoundError("캠페인을 찾을 수 없습니다.")
    return campaign


def _recipient_for(customer: Customer, channel: str) -> str | None:
    return customer.email if channel == "email" else customer.phone


def launch_campaign(db: Session, campaign_id: int) -> CampaignLaunchSummary:
    """
    세그먼트를 평가해 수신자별 CampaignMessage(queued)를 만든다.
    이미 메시지가 있는 고객은 건너뛰므로 다시 호출해도 중복 생성되지 않는다.
    """
    campaign = get_campaign(db, campaign_id)
    if campaign.status not in LAUNCHABLE_STATUSES:
        raise ValueError(f"{campaign.status} 상태의 캠페인은 실행할 수 없습니다.")
    segment = db.get(Segment, campaign.segment_id)
    if not segment or not segment.is_active:
        raise ValueError("캠페인의 세그먼트를 사용할 수 없습니다.")

    customer_ids = select_segment_customer_ids(db, segment)
    existing = set(
        db.scalars(
            select(CampaignMessage.customer_id).where(CampaignMessage.campaign_id == campaign.id)
        )
    )
    now = datetime.now(timezone.utc)
    queued = 0
    for customer in get_customers_by_ids(db, [cid for cid in customer_ids if cid not in existing]):
        db.add(
            CampaignMessage(
                campaign_id=campaign.id,
                customer_id=customer.id,
                vendor_message_id=build_vendor_message_id(campaign.campaign_key, customer.id),
                channel=campaign.channel,
                recipient=_recipient_for(customer, campaign.channel),
                status=MessageStatus.QUEUED.value,
                queued_at=now,
                inferred_statuses=[],
            )
        )
        queued += 1

    scheduled_at = campaign.scheduled_at
    if scheduled_at and scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
    campaign.status = "SCHEDULED" if scheduled_at and scheduled_at > now else "SENDING"
    campaign.audience_size = len(customer_ids)
    campaign.launched_at = now
    db.commit()
    logger.info(
        "캠페인 실행 (id=%s, audience=%s, queued=%s)", campaign.id, campaign.audience_size, queued
    )
    return CampaignLaunchSummary(
        campaign_id=campaign.id,
        status=campaign.status,
        audience_size=campaign.audience_size,
        queued=queued,
        skipped=len(customer_ids) - queued,
    )


def _load_message_states(db: Session, campaign_id: int) -> list[MessageState]:
    rows = db.scalars(
        select(CampaignMessage)
        .where(CampaignMessage.campaign_id == campaign_id)
        .order_by(CampaignMessage.id)
    )
    return [message_state_from_row(row) for row in rows]


def get_campaign_analytics(db: Session, campaign_id: int) -> CampaignAnalytics:
    campaign = get_campaign(db, campaign_id)
    states = _load_message_states(db, campaign.id)
    return CampaignAnalytics(
        campaign_id=campaign.id,
        status=campaign.status,
        summary=campaign_aggregator.summarize(states),
        by_channel=campaign_aggregator.summarize_by_channel(states),
    )


def sync_campaign_stats(db: Session, *, lookback_minutes: int | None = None) -> dict[str, int]:
    """
    발송 중이거나 최근 실행된 캠페인의 stats 스냅샷을 갱신한다.
    모든 메시지가 종료 상태면 COMPLETED로 바꾼다.
    """
    minutes = lookback_minutes or settings.campaign_stats_sync_lookback_minutes
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    campaigns = db.scalars(
        select(Campaign).where(
            or_(
                Campaign.status == "SENDING",
                Campaign.launched_at >= cutoff,
            )
        )
    ).all()

    updated = 0
    completed = 0
    for campaign in campaigns:
        states = _load_message_states(db, campaign.id)
        campaign.stats = campaign_aggregator.summarize(states).model_dump()
        updated += 1
        if (
            campaign.status == "SENDING"
            and states
            and all(state.status in TERMINAL_STATUSES for state in states)
        ):
            campaign.status = "COMPLETED"
            campaign.completed_at = datetime.now(timezone.utc)
            completed += 1
    db.commit()
    return {"updated": updated, "completed": completed}
