"""
벤더 수신 확인(웹훅) 처리.

DeliveryStateMachine에 DB 저장소를 붙인다. 메시지 행은 SELECT ... FOR UPDATE로 잠그고,
처리한 receipt는 DeliveryReceiptLog에 남겨 재전송 시 중복으로 판정한다.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from mini_crm.core.config import settings
from mini_crm.models.domain import CampaignMessage, DeliveryReceiptLog
from mini_crm.schemas.receipts import (
    DeliveryReceiptIn,
    MessageDeliveryRead,
    ReceiptBatchResponse,
    ReceiptOutcomeRead,
)
from mini_crm.services.delivery_state import (
    Channel,
    DeliveryReceipt,
    DeliveryStateMachine,
    MessageLockRegistry,
    MessageState,
    MessageStatus,
    ReceiptOutcome,
    ReceiptResult,
    as_utc,
)

logger = logging.getLogger(__name__)

STATUS_COLUMNS: dict[MessageStatus, str] = {status: f"{status.value}_at" for status in MessageStatus}

# 프로세스 안의 동시 웹훅 요청끼리 같은 메시지를 번갈아 쓰지 않도록 공유한다.
_LOCKS = MessageLockRegistry()


class ReceiptNotFoundError(ValueError):
    pass


def parse_status(raw: str) -> MessageStatus:
    try:
        return MessageStatus(raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"지원하지 않는 발송 상태입니다: {raw}") from exc


def message_state_from_row(
    row: CampaignMessage,
    seen: frozenset[tuple[MessageStatus, object]] = frozenset(),
) -> MessageState:
    timestamps = {}
    for status, column in STATUS_COLUMNS.items():
        value = getattr(row, column)
        if value is not None:
            timestamps[status] = as_utc(value)
    return MessageState(
        vendor_message_id=row.vendor_message_id,
        status=MessageStatus(row.status),
        campaign_id=row.campaign_id,
        customer_id=row.customer_id,
        channel=Channel(row.channel),
        timestamps=timestamps,
        inferred=frozenset(MessageStatus(s) for s in (row.inferred_statuses or [])),
        seen=seen,
        error_code=row.error_code,
        error_message=row.error_message,
    )


def _write_state(row: CampaignMessage, state: MessageState) -> None:
    row.status = state.status.value
    for status, column in STATUS_COLUMNS.items():
        setattr(row, column, state.timestamps.get(status))
    row.inferred_statuses = sorted(status.value for status in state.inferred)
    row.error_code = state.error_code
    row.error_message = state.error_message


class SqlMessageStore:
    def __init__(self, db: Session) -> None:
        self._db = db
        self._rows: dict[str, CampaignMessage] = {}

    def load(self, vendor_message_id: str) -> Optional[MessageState]:
        row = self._db.scalar(
            select(CampaignMessage)
            .where(CampaignMessage.vendor_message_id == vendor_message_id)
            .with_for_update()
        )
        if row is None:
            self._db.rollback()
            return None
        logged = self._db.execute(
            select(DeliveryReceiptLog.status, DeliveryReceiptLog.occurred_at).where(
                DeliveryReceiptLog.message_id == row.id
            )
        ).all()
        seen = frozenset((MessageStatus(status), as_utc(occurred_at)) for status, occurred_at in logged)
        self._rows[vendor_message_id] = row
        return message_state_from_row(row, seen)

    def save(
        self, state: MessageState, receipt: DeliveryReceipt, outcome: Optional[ReceiptOutcome]
    ) -> None:
        row = self._rows.pop(state.vendor_message_id)
        if outcome is not None and outcome is not ReceiptOutcome.IGNORED_DUPLICATE:
            _write_state(row, state)
            self._db.add(
                DeliveryReceiptLog(
                    message_id=row.id,
                    vendor_message_id=receipt.vendor_message_id,
                    status=receipt.status.value,
                    occurred_at=as_utc(receipt.occurred_at),
                    outcome=outcome.value,
                )
            )
        # 커밋으로 행 잠금을 푼다.
        self._db.commit()


def build_state_machine(db: Session) -> DeliveryStateMachine:
    return DeliveryStateMachine(SqlMessageStore(db), _LOCKS)


def to_receipt(payload: DeliveryReceiptIn) -> DeliveryReceipt:
    return DeliveryReceipt(
        vendor_message_id=payload.vendor_message_id,
        status=parse_status(payload.status),
        occurred_at=as_utc(payload.occurred_at),
        campaign_id=payload.campaign_id,
        customer_id=payload.customer_id,
        error_code=payload.error_code,
        error_message=payload.error_message,
    )


def _to_read(result: ReceiptResult) -> ReceiptOutcomeRead:
    return ReceiptOutcomeRead(
        vendor_message_id=result.receipt.vendor_message_id,
        status=result.receipt.status.value,
        outcome=result.outcome.value if result.outcome else None,
        message_status=result.status.value if result.status else None,
        inferred=[status.value for status in result.inferred],
        error=result.error,
    )


def apply_receipts(db: Session, receipts: Sequence[DeliveryReceipt]) -> list[ReceiptResult]:
    return build_state_machine(db).apply_batch(receipts)


def process_receipt(db: Session, payload: DeliveryReceiptIn) -> ReceiptOutcomeRead:
    receipt = to_receipt(payload)
    result = build_state_machine(db).apply(receipt)
    if result.outcome is None:
        if result.status is None:
            raise ReceiptNotFoundError(result.error or "메시지를 찾을 수 없습니다.")
        raise ValueError(result.error)
    return _to_read(result)


def process_receipt_batch(db: Session, payloads: Sequence[DeliveryReceiptIn]) -> ReceiptBatchResponse:
    """
    receipt를 건별로 처리한다. 한 건의 오류가 나머지 처리를 막지 않으며
    결과는 요청 순서대로 돌려준다.
    """
    if len(payloads) > settings.receipt_batch_max:
        raise ValueError(f"한 번에 최대 {settings.receipt_batch_max}건까지 처리할 수 있습니다.")

    reads: list[Optional[ReceiptOutcomeRead]] = [None] * len(payloads)
    parsed: list[tuple[int, DeliveryReceipt]] = []
    for index, payload in enumerate(payloads):
        try:
            parsed.append((index, to_receipt(payload)))
        except ValueError as exc:
            reads[index] = ReceiptOutcomeRead(
                vendor_message_id=payload.vendor_message_id,
                status=payload.status,
                error=str(exc),
            )

    results = apply_receipts(db, [receipt for _, receipt in parsed])
    for (index, _), result in zip(parsed, results):
        reads[index] = _to_read(result)

    items = [read for read in reads if read is not None]
    outcomes = Counter(item.outcome for item in items if item.outcome)
    errors = sum(1 for item in items if item.error)
    if outcomes.get(ReceiptOutcome.REJECTED_INVALID_TRANSITION.value) or errors:
        logger.info(
            "receipt 배치 처리 (total=%s, rejected=%s, errors=%s)",
            len(items),
            outcomes.get(ReceiptOutcome.REJECTED_INVALID_TRANSITION.value, 0),
            errors,
        )
    return ReceiptBatchResponse(
        processed=len(items) - errors,
        errors=errors,
        outcomes=dict(outcomes),
        results=items,
    )


def get_message_delivery(db: Session, vendor_message_id: str) -> MessageDeliveryRead:
    row = db.scalar(
        select(CampaignMessage).where(CampaignMessage.vendor_message_id == vendor_message_id)
    )
    if not row:
        raise ReceiptNotFoundError("메시지를 찾을 수 없습니다.")
    state = message_state_from_row(row)
    return MessageDeliveryRead(
        vendor_message_id=row.vendor_message_id,
        campaign_id=row.campaign_id,
        customer_id=row.customer_id,
        channel=row.channel,
        status=state.status.value,
        timestamps={status.value: value for status, value in state.timestamps.items()},
        inferred_statuses=sorted(status.value for status in state.inferred),
        error_code=row.error_code,
        error_message=row.error_message,
    )
