"""
메시지별 발송 상태 머신.

queued → sent → delivered → opened → clicked
sent → failed, sent/delivered → bounced
queued → failed 는 발송 접수 단계에서 거절된 경우에만 직접 이어진다.
queued/sent/delivered/opened/clicked → unsubscribed

벤더 수신 확인(receipt)은 중복/역순/누락을 전제로 처리한다.
- 같은 (vendor_message_id, status, occurred_at)은 한 번만 반영한다.
- 순서상 현재 상태보다 앞서거나 같은 단계의 receipt는 상태를 되돌리지 않는다 (Stale).
- 중간 단계를 건너뛴 receipt는 경로상의 단계를 같은 시각으로 채워 넣는다.
- 종료 상태와 모순되는 receipt는 거부한다.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    FAILED = "failed"
    UNSUBSCRIBED = "unsubscribed"


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class ReceiptOutcome(str, Enum):
    APPLIED = "Applied"
    IGNORED_STALE = "Ignored-Stale"
    IGNORED_DUPLICATE = "Ignored-Duplicate"
    REJECTED_INVALID_TRANSITION = "Rejected-InvalidTransition"


STATUS_RANK: dict[MessageStatus, int] = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.FAILED: 2,
    MessageStatus.OPENED: 3,
    MessageStatus.BOUNCED: 3,
    MessageStatus.CLICKED: 4,
    MessageStatus.UNSUBSCRIBED: 5,
}

FORWARD_TRANSITIONS: dict[MessageStatus, tuple[MessageStatus, ...]] = {
    MessageStatus.QUEUED: (MessageStatus.SENT,),
    MessageStatus.SENT: (MessageStatus.DELIVERED, MessageStatus.BOUNCED, MessageStatus.FAILED),
    MessageStatus.DELIVERED: (MessageStatus.OPENED, MessageStatus.BOUNCED),
    MessageStatus.OPENED: (MessageStatus.CLICKED,),
}

TERMINAL_STATUSES = frozenset(
    {
        MessageStatus.FAILED,
        MessageStatus.BOUNCED,
        MessageStatus.CLICKED,
        MessageStatus.UNSUBSCRIBED,
    }
)

UNSUBSCRIBABLE_STATUSES = frozenset(
    {
        MessageStatus.QUEUED,
        MessageStatus.SENT,
        MessageStatus.DELIVERED,
        MessageStatus.OPENED,
        MessageStatus.CLICKED,
    }
)

ERROR_STATUSES = frozenset({MessageStatus.FAILED, MessageStatus.BOUNCED})


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DeliveryReceipt:
    vendor_message_id: str
    status: MessageStatus
    occurred_at: datetime
    campaign_id: Any = None
    customer_id: Any = None
    error_code: str | None = None
    error_message: str | None = None
    # 벤더가 접수 자체를 거절했다 (queued → failed 직행).
    submission_rejected: bool = False

    @property
    def fingerprint(self) -> tuple[MessageStatus, datetime]:
        return (self.status, as_utc(self.occurred_at))

    @property
    def ordering_key(self) -> tuple[datetime, int, str]:
        # 같은 시각의 receipt도 배열 순서와 무관하게 정렬되도록 상태 순위로 한 번 더 정렬한다.
        return (as_utc(self.occurred_at), STATUS_RANK[self.status], self.status.value)


@dataclass(frozen=True)
class MessageState:
    vendor_message_id: str
    status: MessageStatus = MessageStatus.QUEUED
    campaign_id: Any = None
    customer_id: Any = None
    channel: Channel = Channel.EMAIL
    timestamps: dict[MessageStatus, datetime] = field(default_factory=dict)
    inferred: frozenset[MessageStatus] = frozenset()
    seen: frozenset[tuple[MessageStatus, datetime]] = frozenset()
    error_code: str | None = None
    error_message: str | None = None

    def reached(self, status: MessageStatus) -> bool:
        return status == self.status or status in self.timestamps

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ApplyResult:
    state: MessageState
    outcome: ReceiptOutcome
    inferred: tuple[MessageStatus, ...] = ()


def forward_path(source: MessageStatus, target: MessageStatus) -> list[MessageStatus]:
    """source 다음 단계부터 target까지의 최단 정방향 경로. 없으면 빈 리스트."""
    queue: deque[tuple[MessageStatus, list[MessageStatus]]] = deque([(source, [])])
    visited = {source}
    while queue:
        current, path = queue.popleft()
        for nxt in FORWARD_TRANSITIONS.get(current, ()):
            if nxt in visited:
                continue
            next_path = path + [nxt]
            if nxt == target:
                return next_path
            visited.add(nxt)
            queue.append((nxt, next_path))
    return []


def apply_receipt(message: MessageState, receipt: DeliveryReceipt) -> ApplyResult:
    """
    (현재 상태, receipt) → (새 상태, 결과). 입력을 변경하지 않는 순수 함수.
    """
    if receipt.vendor_message_id != message.vendor_message_id:
        raise ValueError("receipt와 메시지의 vendor_message_id가 다릅니다.")

    fingerprint = receipt.fingerprint
    if fingerprint in message.seen:
        return ApplyResult(message, ReceiptOutcome.IGNORED_DUPLICATE)

    occurred_at = fingerprint[1]
    target = receipt.status
    seen = message.seen | {fingerprint}

    if message.reached(target):
        timestamps = dict(message.timestamps)
        inferred = set(message.inferred)
        # 추정으로 찍어둔 시각은 늦게 도착한 실제 확인 시각으로 교체한다.
        if target in inferred or target not in timestamps:
            timestamps[target] = occurred_at
            inferred.discard(target)
        state = replace(message, seen=seen, timestamps=timestamps, inferred=frozenset(inferred))
        return ApplyResult(state, ReceiptOutcome.IGNORED_STALE)

    if target is MessageStatus.UNSUBSCRIBED:
        if message.status not in UNSUBSCRIBABLE_STATUSES:
            return ApplyResult(replace(message, seen=seen), ReceiptOutcome.REJECTED_INVALID_TRANSITION)
        timestamps = {**message.timestamps, target: occurred_at}
        state = replace(message, status=target, seen=seen, timestamps=timestamps)
        return ApplyResult(state, ReceiptOutcome.APPLIED)

    # 오류/수신거부로 끝난 메시지에 도달하지 않은 단계가 오면 기록과 모순되므로 아래에서 거부한다.
    if (
        STATUS_RANK[target] <= STATUS_RANK[message.status]
        and message.status not in ERROR_STATUSES
        and message.status is not MessageStatus.UNSUBSCRIBED
    ):
        return ApplyResult(replace(message, seen=seen), ReceiptOutcome.IGNORED_STALE)

    if (
        receipt.submission_rejected
        and message.status is MessageStatus.QUEUED
        and target is MessageStatus.FAILED
    ):
        path = [MessageStatus.FAILED]
    elif message.is_terminal:
        path = []
    else:
        path = forward_path(message.status, target)
    if not path:
        return ApplyResult(replace(message, seen=seen), ReceiptOutcome.REJECTED_INVALID_TRANSITION)

    skipped = tuple(path[:-1])
    timestamps = dict(message.timestamps)
    for status in skipped:
        timestamps.setdefault(status, occurred_at)
    timestamps[target] = occurred_at

    changes: dict[str, Any] = {
        "status": target,
        "seen": seen,
        "timestamps": timestamps,
        "inferred": message.inferred | frozenset(skipped),
    }
    if target in ERROR_STATUSES:
        changes["error_code"] = receipt.error_code
        changes["error_message"] = receipt.error_message
    return ApplyResult(replace(message, **changes), ReceiptOutcome.APPLIED, skipped)


# --------------------------------------------------------------------------- #
# 저장소 + 메시지 단위 직렬화


class MessageStore(Protocol):
    def load(self, vendor_message_id: str) -> Optional[MessageState]:
        ...

    def save(
        self, state: MessageState, receipt: DeliveryReceipt, outcome: Optional[ReceiptOutcome]
    ) -> None:
        ...


class InMemoryMessageStore:
    def __init__(self, messages: Sequence[MessageState] = ()) -> None:
        self._messages: dict[str, MessageState] = {m.vendor_message_id: m for m in messages}

    def add(self, message: MessageState) -> None:
        self._messages[message.vendor_message_id] = message

    def load(self, vendor_message_id: str) -> Optional[MessageState]:
        return self._messages.get(vendor_message_id)

    def save(
        self, state: MessageState, receipt: DeliveryReceipt, outcome: Optional[ReceiptOutcome]
    ) -> None:
        self._messages[state.vendor_message_id] = state

    def all(self) -> list[MessageState]:
        return list(self._messages.values())


class MessageLockRegistry:
    """vendor_message_id 단위 락. 다른 메시지끼리는 서로 막지 않는다."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class ReceiptResult:
    receipt: DeliveryReceipt
    outcome: Optional[ReceiptOutcome] = None
    status: Optional[MessageStatus] = None
    error: Optional[str] = None
    inferred: tuple[MessageStatus, ...] = ()


class DeliveryStateMachine:
    def __init__(self, store: MessageStore, locks: MessageLockRegistry | None = None) -> None:
        self._store = store
        self._locks = locks or MessageLockRegistry()

    def apply(self, receipt: DeliveryReceipt) -> ReceiptResult:
        with self._locks.hold(receipt.vendor_message_id):
            message = self._store.load(receipt.vendor_message_id)
            if message is None:
                return ReceiptResult(receipt, error=f"알 수 없는 vendor_message_id: {receipt.vendor_message_id}")
            mismatch = _reference_mismatch(message, receipt)
            if mismatch:
                self._store.save(message, receipt, None)
                return ReceiptResult(receipt, status=message.status, error=mismatch)

            result = apply_receipt(message, receipt)
            self._store.save(result.state, receipt, result.outcome)

        if result.outcome is ReceiptOutcome.REJECTED_INVALID_TRANSITION:
            logger.warning(
                "receipt 거부 (vendor_message_id=%s, current=%s, received=%s)",
                receipt.vendor_message_id,
                message.status.value,
                receipt.status.value,
            )
        return ReceiptResult(
            receipt,
            outcome=result.outcome,
            status=result.state.status,
            inferred=result.inferred,
        )

    def apply_batch(self, receipts: Sequence[DeliveryReceipt]) -> list[ReceiptResult]:
        """
        receipt마다 독립적으로 반영한다. 같은 메시지의 receipt는 occurred_at 순으로 적용하고,
        결과는 입력 순서대로 돌려준다.
        """
        order = sorted(
            range(len(receipts)),
            key=lambda index: (receipts[index].vendor_message_id, receipts[index].ordering_key),
        )
        results: list[Optional[ReceiptResult]] = [None] * len(receipts)
        for index in order:
            receipt = receipts[index]
            try:
                results[index] = self.apply(receipt)
            except Exception as exc:  # noqa: BLE001
                logger.exception("receipt 처리 실패 (vendor_message_id=%s)", receipt.vendor_message_id)
                results[index] = ReceiptResult(receipt, error=str(exc))
        return [result for result in results if result is not None]


def _reference_mismatch(message: MessageState, receipt: DeliveryReceipt) -> Optional[str]:
    if receipt.campaign_id is not None and str(receipt.campaign_id) != str(message.campaign_id):
        return "receipt의 campaign_id가 메시지와 일치하지 않습니다."
    if receipt.customer_id is not None and str(receipt.customer_id) != str(message.customer_id):
        return "receipt의 customer_id가 메시지와 일치하지 않습니다."
    return None
