"""
Unit tests for the per-message delivery state machine.

Covers idempotence, monotonicity, out-of-order catch-up and batch order independence.
"""

import itertools
import threading
from datetime import datetime, timedelta, timezone

import pytest

from mini_crm.services.delivery_state import (
    DeliveryReceipt,
    DeliveryStateMachine,
    InMemoryMessageStore,
    MessageLockRegistry,
    MessageState,
    MessageStatus,
    ReceiptOutcome,
    STATUS_RANK,
    apply_receipt,
    forward_path,
)

T0 = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
VID = "20261018090000abcd-1"


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def receipt(status: MessageStatus, minutes: int, vid: str = VID, **extra) -> DeliveryReceipt:
    return DeliveryReceipt(vendor_message_id=vid, status=status, occurred_at=at(minutes), **extra)


def queued(vid: str = VID, **extra) -> MessageState:
    return MessageState(
        vendor_message_id=vid,
        campaign_id=1,
        customer_id=10,
        timestamps={MessageStatus.QUEUED: T0},
        **extra,
    )


def run(state: MessageState, *receipts: DeliveryReceipt):
    outcomes = []
    for item in receipts:
        result = apply_receipt(state, item)
        state = result.state
        outcomes.append(result.outcome)
    return state, outcomes


# =============================================================================
# Single receipt rules
# =============================================================================


class TestApplyReceipt:
    def test_sent_delivered_then_duplicate(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.SENT, 1),
            receipt(MessageStatus.DELIVERED, 2),
            receipt(MessageStatus.DELIVERED, 2),
        )

        assert outcomes == [
            ReceiptOutcome.APPLIED,
            ReceiptOutcome.APPLIED,
            ReceiptOutcome.IGNORED_DUPLICATE,
        ]
        assert state.status is MessageStatus.DELIVERED
        assert state.timestamps[MessageStatus.DELIVERED] == at(2)

    def test_clicked_from_queued_infers_intermediate_steps(self):
        result = apply_receipt(queued(), receipt(MessageStatus.CLICKED, 5))

        assert result.outcome is ReceiptOutcome.APPLIED
        assert result.state.status is MessageStatus.CLICKED
        assert result.inferred == (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.OPENED)
        for status in (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.OPENED, MessageStatus.CLICKED):
            assert result.state.timestamps[status] == at(5)
        assert result.state.inferred == {MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.OPENED}

    def test_late_real_receipt_replaces_inferred_timestamp(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.OPENED, 10),
            receipt(MessageStatus.DELIVERED, 4),
        )

        assert outcomes == [ReceiptOutcome.APPLIED, ReceiptOutcome.IGNORED_STALE]
        assert state.status is MessageStatus.OPENED
        assert state.timestamps[MessageStatus.DELIVERED] == at(4)
        assert MessageStatus.DELIVERED not in state.inferred
        assert MessageStatus.SENT in state.inferred

    def test_stale_receipt_keeps_real_timestamp(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.SENT, 1),
            receipt(MessageStatus.DELIVERED, 3),
            receipt(MessageStatus.SENT, 7),
        )

        assert outcomes[-1] is ReceiptOutcome.IGNORED_STALE
        assert state.status is MessageStatus.DELIVERED
        assert state.timestamps[MessageStatus.SENT] == at(1)

    def test_bounced_then_delivered_is_rejected(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.SENT, 1),
            receipt(MessageStatus.BOUNCED, 2, error_code="550", error_message="mailbox unavailable"),
            receipt(MessageStatus.DELIVERED, 3),
        )

        assert outcomes == [
            ReceiptOutcome.APPLIED,
            ReceiptOutcome.APPLIED,
            ReceiptOutcome.REJECTED_INVALID_TRANSITION,
        ]
        assert state.status is MessageStatus.BOUNCED
        assert state.error_code == "550"
        assert MessageStatus.DELIVERED not in state.timestamps

    def test_delivered_then_bounced_is_allowed(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.DELIVERED, 2),
            receipt(MessageStatus.BOUNCED, 3),
        )

        assert outcomes == [ReceiptOutcome.APPLIED, ReceiptOutcome.APPLIED]
        assert state.status is MessageStatus.BOUNCED

    def test_vendor_failure_from_queued_infers_sent(self):
        result = apply_receipt(queued(), receipt(MessageStatus.FAILED, 1, error_code="5000"))

        assert result.outcome is ReceiptOutcome.APPLIED
        assert result.state.status is MessageStatus.FAILED
        assert result.inferred == (MessageStatus.SENT,)
        assert result.state.timestamps[MessageStatus.SENT] == at(1)

    def test_late_sent_after_vendor_failure_is_stale(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.FAILED, 2),
            receipt(MessageStatus.SENT, 1),
        )

        assert outcomes == [ReceiptOutcome.APPLIED, ReceiptOutcome.IGNORED_STALE]
        assert state.status is MessageStatus.FAILED
        assert state.timestamps[MessageStatus.SENT] == at(1)
        assert MessageStatus.SENT not in state.inferred

    def test_submission_rejection_fails_directly(self):
        result = apply_receipt(
            queued(),
            receipt(MessageStatus.FAILED, 1, error_code="1001", submission_rejected=True),
        )

        assert result.outcome is ReceiptOutcome.APPLIED
        assert result.inferred == ()
        assert set(result.state.timestamps) == {MessageStatus.QUEUED, MessageStatus.FAILED}

    def test_sent_after_submission_rejection_is_rejected(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.FAILED, 1, submission_rejected=True),
            receipt(MessageStatus.SENT, 2),
        )

        assert outcomes[-1] is ReceiptOutcome.REJECTED_INVALID_TRANSITION
        assert state.status is MessageStatus.FAILED

    @pytest.mark.parametrize("current", [MessageStatus.OPENED, MessageStatus.CLICKED])
    def test_bounce_after_engagement_is_stale(self, current):
        state, _ = run(queued(), receipt(current, 3))

        result = apply_receipt(state, receipt(MessageStatus.BOUNCED, 4))

        assert result.outcome is ReceiptOutcome.IGNORED_STALE
        assert result.state.status is current
        assert MessageStatus.BOUNCED not in result.state.timestamps

    def test_failure_after_delivery_is_stale(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.DELIVERED, 2),
            receipt(MessageStatus.FAILED, 3),
        )

        assert outcomes[-1] is ReceiptOutcome.IGNORED_STALE
        assert state.status is MessageStatus.DELIVERED

    def test_opened_after_failure_is_rejected(self):
        state, outcomes = run(queued(), receipt(MessageStatus.FAILED, 1), receipt(MessageStatus.OPENED, 2))

        assert outcomes[-1] is ReceiptOutcome.REJECTED_INVALID_TRANSITION
        assert state.status is MessageStatus.FAILED

    @pytest.mark.parametrize(
        "before",
        [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.OPENED, MessageStatus.CLICKED],
    )
    def test_unsubscribe_from_engaged_states(self, before):
        state, _ = run(queued(), receipt(before, 1))

        state, outcomes = run(state, receipt(MessageStatus.UNSUBSCRIBED, 2))

        assert outcomes == [ReceiptOutcome.APPLIED]
        assert state.status is MessageStatus.UNSUBSCRIBED
        assert state.timestamps[before] == at(1)

    def test_unsubscribe_after_bounce_is_rejected(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.BOUNCED, 1),
            receipt(MessageStatus.UNSUBSCRIBED, 2),
        )

        assert outcomes[-1] is ReceiptOutcome.REJECTED_INVALID_TRANSITION
        assert state.status is MessageStatus.BOUNCED

    def test_input_state_is_not_mutated(self):
        original = queued()

        apply_receipt(original, receipt(MessageStatus.CLICKED, 5))

        assert original.status is MessageStatus.QUEUED
        assert original.timestamps == {MessageStatus.QUEUED: T0}
        assert original.seen == frozenset()

    def test_same_status_different_time_is_not_duplicate(self):
        state, outcomes = run(queued(), receipt(MessageStatus.SENT, 1), receipt(MessageStatus.SENT, 2))

        assert outcomes == [ReceiptOutcome.APPLIED, ReceiptOutcome.IGNORED_STALE]

    def test_rejected_receipt_retransmitted_is_duplicate(self):
        state, outcomes = run(
            queued(),
            receipt(MessageStatus.FAILED, 1),
            receipt(MessageStatus.DELIVERED, 2),
            receipt(MessageStatus.DELIVERED, 2),
        )

        assert outcomes[1:] == [
            ReceiptOutcome.REJECTED_INVALID_TRANSITION,
            ReceiptOutcome.IGNORED_DUPLICATE,
        ]

    def test_mismatched_vendor_message_id(self):
        with pytest.raises(ValueError):
            apply_receipt(queued(), receipt(MessageStatus.SENT, 1, vid="other"))


class TestProperties:
    STATUSES = [s for s in MessageStatus if s is not MessageStatus.QUEUED]

    def test_idempotent_reapplication(self):
        for status in self.STATUSES:
            first = apply_receipt(queued(), receipt(status, 1))
            second = apply_receipt(first.state, receipt(status, 1))

            assert second.outcome is ReceiptOutcome.IGNORED_DUPLICATE
            assert second.state == first.state

    def test_applied_never_moves_backwards(self):
        for sequence in itertools.permutations(self.STATUSES, 3):
            state = queued()
            for minute, status in enumerate(sequence, start=1):
                result = apply_receipt(state, receipt(status, minute))
                if result.outcome is ReceiptOutcome.APPLIED:
                    assert STATUS_RANK[result.state.status] > STATUS_RANK[state.status], sequence
                else:
                    assert result.state.status is state.status
                state = result.state

    def test_forward_path_is_shortest(self):
        assert forward_path(MessageStatus.QUEUED, MessageStatus.BOUNCED) == [
            MessageStatus.SENT,
            MessageStatus.BOUNCED,
        ]
        assert forward_path(MessageStatus.QUEUED, MessageStatus.FAILED) == [
            MessageStatus.SENT,
            MessageStatus.FAILED,
        ]
        assert forward_path(MessageStatus.OPENED, MessageStatus.DELIVERED) == []


# =============================================================================
# State machine with a store
# =============================================================================


@pytest.fixture
def store():
    return InMemoryMessageStore([queued(), queued("other-message")])


class TestDeliveryStateMachine:
    def test_batch_order_independence(self):
        receipts = [
            receipt(MessageStatus.SENT, 1),
            receipt(MessageStatus.DELIVERED, 2),
            receipt(MessageStatus.OPENED, 3),
            receipt(MessageStatus.SENT, 1, vid="other-message"),
            receipt(MessageStatus.BOUNCED, 4, vid="other-message"),
        ]
        final_states = set()
        for order in itertools.permutations(receipts):
            store = InMemoryMessageStore([queued(), queued("other-message")])
            DeliveryStateMachine(store).apply_batch(list(order))
            final_states.add(tuple((m.vendor_message_id, m.status, tuple(sorted(m.timestamps.items()))) for m in store.all()))

        assert len(final_states) == 1

    def test_batch_results_follow_input_order(self, store):
        receipts = [
            receipt(MessageStatus.DELIVERED, 2),
            receipt(MessageStatus.SENT, 1),
        ]

        results = DeliveryStateMachine(store).apply_batch(receipts)

        assert [r.receipt for r in results] == receipts
        assert [r.outcome for r in results] == [ReceiptOutcome.APPLIED, ReceiptOutcome.APPLIED]
        assert store.load(VID).inferred == frozenset()

    def test_unknown_message_is_reported_not_raised(self, store):
        results = DeliveryStateMachine(store).apply_batch(
            [receipt(MessageStatus.SENT, 1, vid="missing"), receipt(MessageStatus.SENT, 1)]
        )

        assert results[0].outcome is None
        assert "missing" in results[0].error
        assert results[1].outcome is ReceiptOutcome.APPLIED

    def test_campaign_mismatch_is_reported(self, store):
        result = DeliveryStateMachine(store).apply(receipt(MessageStatus.SENT, 1, campaign_id=99))

        assert result.outcome is None
        assert result.error
        assert store.load(VID).status is MessageStatus.QUEUED

    def test_one_failure_does_not_block_others(self, store):
        class FlakyStore(InMemoryMessageStore):
            def load(self, vendor_message_id):
                if vendor_message_id == "other-message":
                    raise RuntimeError("storage down")
                return super().load(vendor_message_id)

        flaky = FlakyStore(store.all())
        results = DeliveryStateMachine(flaky).apply_batch(
            [receipt(MessageStatus.SENT, 1, vid="other-message"), receipt(MessageStatus.SENT, 1)]
        )

        assert results[0].error == "storage down"
        assert results[1].outcome is ReceiptOutcome.APPLIED

    def test_rejection_is_logged(self, store, caplog):
        machine = DeliveryStateMachine(store)
        machine.apply(receipt(MessageStatus.FAILED, 1))

        with caplog.at_level("WARNING", logger="mini_crm.services.delivery_state"):
            result = machine.apply(receipt(MessageStatus.OPENED, 2))

        assert result.outcome is ReceiptOutcome.REJECTED_INVALID_TRANSITION
        assert any(VID in message for message in caplog.messages)

    def test_concurrent_receipts_for_one_message(self):
        store = InMemoryMessageStore([queued()])
        machine = DeliveryStateMachine(store)
        receipts = [receipt(MessageStatus.SENT, 1), receipt(MessageStatus.DELIVERED, 2), receipt(MessageStatus.OPENED, 3)]
        threads = [threading.Thread(target=machine.apply, args=(item,)) for item in receipts * 5]

        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        final = store.load(VID)
        assert final.status is MessageStatus.OPENED
        assert len(final.seen) == 3


class TestMessageLockRegistry:
    def test_locks_are_released_after_use(self):
        registry = MessageLockRegistry()

        with registry.hold("a"):
            with registry.hold("b"):
                assert len(registry) == 2

        assert len(registry) == 0
