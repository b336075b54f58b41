from __future__ import annotations

import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.orm import Session

from mini_crm.models.domain import CampaignMessage
from mini_crm.schemas.campaigns import DispatchError, DispatchSummary
from mini_crm.services import vendor_service
from mini_crm.services.campaign_service import get_campaign
from mini_crm.services.delivery_receipt_service import apply_receipts
from mini_crm.services.delivery_state import DeliveryReceipt, MessageStatus, ReceiptOutcome

logger = logging.getLogger(__name__)

DISPATCHABLE_STATUSES = {"SCHEDULED", "SENDING"}


def dispatch_campaign_messages(db: Session, campaign_id: int, *, limit: int | None = None) -> DispatchSummary:
    """
    queued 메시지를 벤더에 접수하고, 접수 결과를 sent/failed receipt로 상태 머신에 반영한다.
    벤더 호출 자체가 실패한 메시지는 queued로 남아 다음 dispatch에서 다시 시도된다.
    """
    campaign = get_campaign(db, campaign_id)
    if campaign.status not in DISPATCHABLE_STATUSES:
        raise ValueError("실행(launch)된 캠페인만 발송할 수 있습니다.")

    stmt = (
        select(CampaignMessage)
        .where(
            CampaignMessage.campaign_id == campaign.id,
            CampaignMessage.status == MessageStatus.QUEUED.value,
        )
        .order_by(CampaignMessage.id)
    )
    if limit:
        stmt = stmt.limit(limit)
    messages = db.scalars(stmt).all()
    if not messages:
        raise ValueError("발송 대기(queued) 메시지가 없습니다.")

    errors: List[DispatchError] = []
    receipts: List[DeliveryReceipt] = []
    for message in messages:
        try:
            submission = vendor_service.submit_message(
                vendor_message_id=message.vendor_message_id,
                channel=message.channel,
                recipient=message.recipient,
                subject=campaign.subject,
                body=campaign.body,
            )
        except vendor_service.VendorAPIError as exc:
            errors.append(DispatchError(vendor_message_id=message.vendor_message_id, reason=str(exc)))
            continue
        receipts.append(
            DeliveryReceipt(
                vendor_message_id=message.vendor_message_id,
                status=MessageStatus.SENT if submission.accepted else MessageStatus.FAILED,
                occurred_at=submission.submitted_at,
                campaign_id=message.campaign_id,
                customer_id=message.customer_id,
                error_code=None if submission.accepted else submission.code,
                error_message=submission.message,
                submission_rejected=not submission.accepted,
            )
        )

    results = apply_receipts(db, receipts)
    accepted = sum(
        1
        for result in results
        if result.outcome is ReceiptOutcome.APPLIED and result.status is MessageStatus.SENT
    )
    rejected = sum(
        1
        for result in results
        if result.outcome is ReceiptOutcome.APPLIED and result.status is MessageStatus.FAILED
    )
    for result in results:
        if result.error:
            errors.append(DispatchError(vendor_message_id=result.receipt.vendor_message_id, reason=result.error))

    if campaign.status == "SCHEDULED":
        campaign.status = "SENDING"
    db.commit()

    if not receipts and errors:
        raise ValueError("모든 메시지 발송 접수에 실패했습니다.")

    logger.info(
        "캠페인 발송 (id=%s, submitted=%s, accepted=%s, rejected=%s, errors=%s)",
        campaign.id,
        len(messages),
        accepted,
        rejected,
        len(errors),
    )
    return DispatchSummary(
        submitted=len(messages),
        accepted=accepted,
        rejected=rejected,
        errors=errors,
    )
