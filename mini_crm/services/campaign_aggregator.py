from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable

from mini_crm.schemas.campaigns import CampaignDeliverySummary
from mini_crm.services.delivery_state import MessageState, MessageStatus

MILESTONES: tuple[MessageStatus, ...] = (
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.OPENED,
    MessageStatus.CLICKED,
    MessageStatus.BOUNCED,
    MessageStatus.FAILED,
    MessageStatus.UNSUBSCRIBED,
)


def _rate(numerator: int, denominator: int) -> float:
    if denominator == 0:
        return 0.0
    return round(numerator / denominator, 4)


def summarize(messages: Iterable[MessageState]) -> CampaignDeliverySummary:
    """
    마일스톤 집계. clicked 메시지는 sent/delivered/opened에도 함께 집계된다.
    open_rate/click_rate의 분모는 delivered 수.
    """
    total = 0
    counts: Dict[MessageStatus, int] = {milestone: 0 for milestone in MILESTONES}
    for message in messages:
        total += 1
        for milestone in MILESTONES:
            if message.reached(milestone):
                counts[milestone] += 1

    delivered = counts[MessageStatus.DELIVERED]
    return CampaignDeliverySummary(
        total=total,
        sent=counts[MessageStatus.SENT],
        delivered=delivered,
        opened=counts[MessageStatus.OPENED],
        clicked=counts[MessageStatus.CLICKED],
        bounced=counts[MessageStatus.BOUNCED],
        failed=counts[MessageStatus.FAILED],
        unsubscribed=counts[MessageStatus.UNSUBSCRIBED],
        open_rate=_rate(counts[MessageStatus.OPENED], delivered),
        click_rate=_rate(counts[MessageStatus.CLICKED], delivered),
    )


def summarize_by_channel(messages: Iterable[MessageState]) -> Dict[str, CampaignDeliverySummary]:
    grouped: Dict[str, list[MessageState]] = defaultdict(list)
    for message in messages:
        grouped[message.channel.value].append(message)
    return {channel: summarize(items) for channel, items in sorted(grouped.items())}
