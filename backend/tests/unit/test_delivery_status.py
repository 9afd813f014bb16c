import pytest

from chatsync.domain.chat.delivery import DeliveryEvent, DeliveryStatusTracker, advance, is_terminal
from chatsync.domain.chat.models import DeliveryStatus


@pytest.mark.parametrize(
    ("status", "event", "expected"),
    [
        (DeliveryStatus.SENDING, DeliveryEvent.SEND_CONFIRMED, DeliveryStatus.SENT),
        (DeliveryStatus.SENT, DeliveryEvent.DELIVERED, DeliveryStatus.DELIVERED),
        (DeliveryStatus.DELIVERED, DeliveryEvent.READ, DeliveryStatus.READ),
        (DeliveryStatus.SENDING, DeliveryEvent.ERROR, DeliveryStatus.FAILED),
        (DeliveryStatus.SENT, DeliveryEvent.ERROR, DeliveryStatus.FAILED),
        (DeliveryStatus.SENDING, DeliveryEvent.RECONNECT_EXHAUSTED, DeliveryStatus.FAILED),
        (DeliveryStatus.SENDING, DeliveryEvent.ACK_TIMEOUT, DeliveryStatus.FAILED),
    ],
)
def test_forward_transitions(status, event, expected):
    assert advance(status, event) is expected


def test_receipts_may_skip_intermediate_states():
    assert advance(DeliveryStatus.SENT, DeliveryEvent.READ) is DeliveryStatus.READ
    assert advance(DeliveryStatus.SENDING, DeliveryEvent.DELIVERED) is DeliveryStatus.DELIVERED


def test_status_never_moves_backwards():
    assert advance(DeliveryStatus.DELIVERED, DeliveryEvent.SEND_CONFIRMED) is DeliveryStatus.DELIVERED
    assert advance(DeliveryStatus.DELIVERED, DeliveryEvent.DELIVERED) is DeliveryStatus.DELIVERED
    # A confirmed message is not failed by an exhausted reconnect or a late timeout.
    assert advance(DeliveryStatus.SENT, DeliveryEvent.RECONNECT_EXHAUSTED) is DeliveryStatus.SENT
    assert advance(DeliveryStatus.DELIVERED, DeliveryEvent.ACK_TIMEOUT) is DeliveryStatus.DELIVERED


@pytest.mark.parametrize("terminal", [DeliveryStatus.READ, DeliveryStatus.FAILED])
@pytest.mark.parametrize("event", list(DeliveryEvent))
def test_terminal_states_absorb_every_event(terminal, event):
    assert is_terminal(terminal)
    assert advance(terminal, event) is terminal


def test_tracker_reports_only_real_transitions():
    seen = []
    tracker = DeliveryStatusTracker(on_transition=lambda old, new: seen.append((old, new)))

    assert tracker.next_status(DeliveryStatus.SENDING, DeliveryEvent.SEND_CONFIRMED) is DeliveryStatus.SENT
    assert tracker.next_status(DeliveryStatus.READ, DeliveryEvent.DELIVERED) is DeliveryStatus.READ

    assert seen == [(DeliveryStatus.SENDING, DeliveryStatus.SENT)]
