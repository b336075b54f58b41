from datetime import datetime, timezone

from mini_crm.services.campaign_aggregator import summarize, summarize_by_channel
from mini_crm.services.delivery_state import Channel, MessageState, MessageStatus

T = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


def message(n: int, *reached: MessageStatus, channel: Channel = Channel.EMAIL) -> MessageState:
    timestamps = {MessageStatus.QUEUED: T}
    timestamps.update({status: T for status in reached})
    return MessageState(
        vendor_message_id=f"m-{n}",
        status=reached[-1] if reached else MessageStatus.QUEUED,
        channel=channel,
        timestamps=timestamps,
    )


class TestSummarize:
    def test_milestones_count_every_reached_step(self):
        messages = [
            message(1, MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.OPENED, MessageStatus.CLICKED),
            message(2, MessageStatus.SENT, MessageStatus.DELIVERED),
            message(3, MessageStatus.SENT, MessageStatus.BOUNCED),
            message(4, MessageStatus.FAILED),
            message(5),
        ]

        summary = summarize(messages)

        assert summary.total == 5
        assert summary.sent == 3
        assert summary.delivered == 2
        assert summary.opened == 1
        assert summary.clicked == 1
        assert summary.bounced == 1
        assert summary.failed == 1
        assert summary.open_rate == 0.5
        assert summary.click_rate == 0.5

    def test_unsubscribed_keeps_earlier_milestones(self):
        summary = summarize(
            [message(1, MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.UNSUBSCRIBED)]
        )

        assert summary.delivered == 1
        assert summary.unsubscribed == 1

    def test_rates_are_zero_without_deliveries(self):
        summary = summarize([message(1, MessageStatus.SENT)])

        assert summary.open_rate == 0.0
        assert summary.click_rate == 0.0

    def test_empty_campaign(self):
        summary = summarize([])

        assert summary.total == 0
        assert summary.open_rate == 0.0

    def test_rates_are_rounded(self):
        delivered = (MessageStatus.SENT, MessageStatus.DELIVERED)
        messages = [
            message(1, *delivered, MessageStatus.OPENED),
            message(2, *delivered),
            message(3, *delivered),
        ]

        assert summarize(messages).open_rate == 0.3333


class TestByChannel:
    def test_groups_by_channel(self):
        messages = [
            message(1, MessageStatus.SENT, channel=Channel.SMS),
            message(2, MessageStatus.SENT, MessageStatus.DELIVERED),
            message(3, channel=Channel.SMS),
        ]

        by_channel = summarize_by_channel(messages)

        assert list(by_channel) == ["email", "sms"]
        assert by_channel["email"].delivered == 1
        assert by_channel["sms"].total == 2
        assert by_channel["sms"].sent == 1
