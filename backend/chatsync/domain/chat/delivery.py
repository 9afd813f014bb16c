"""Delivery status state machine."""

from __future__ import annotations

from enum import Enum

from .models import DeliveryStatus

TERMINAL_STATUSES = frozenset({DeliveryStatus.READ, DeliveryStatus.FAILED})

_RANK = {
	DeliveryStatus.SENDING: 0,
	DeliveryStatus.SENT: 1,
	DeliveryStatus.DELIVERED: 2,
	DeliveryStatus.READ: 3,
}


class DeliveryEvent(str, Enum):
	SEND_CONFIRMED = "send_confirmed"
	DELIVERED = "delivered"
	READ = "read"
	ERROR = "error"
	RECONNECT_EXHAUSTED = "reconnect_exhausted"
	ACK_TIMEOUT = "ack_timeout"


def is_terminal(status: DeliveryStatus) -> bool:
	return status in TERMINAL_STATUSES


def advance(status: DeliveryStatus, event: DeliveryEvent) -> DeliveryStatus:
	"""Return the status after ``event``; events that do not apply leave it unchanged.

	Statuses only move forward. A delivery or read receipt that overtakes an
	earlier one skips the intermediate state. ``read`` and ``failed`` absorb
	everything.
	"""
	if status in TERMINAL_STATUSES:
		return status
	match event:
		case DeliveryEvent.SEND_CONFIRMED:
			return DeliveryStatus.SENT if status is DeliveryStatus.SENDING else status
		case DeliveryEvent.DELIVERED:
			return DeliveryStatus.DELIVERED if _RANK[status] < _RANK[DeliveryStatus.DELIVERED] else status
		case DeliveryEvent.READ:
			return DeliveryStatus.READ
		case DeliveryEvent.ERROR:
			return DeliveryStatus.FAILED
		case DeliveryEvent.RECONNECT_EXHAUSTED | DeliveryEvent.ACK_TIMEOUT:
			return DeliveryStatus.FAILED if status is DeliveryStatus.SENDING else status
	raise ValueError(f"unknown delivery event: {event!r}")


class DeliveryStatusTracker:
	"""Thin object wrapper so the transition function can be injected and counted."""

	def __init__(self, on_transition=None) -> None:
		self._on_transition = on_transition

	def next_status(self, status: DeliveryStatus, event: DeliveryEvent) -> DeliveryStatus:
		new_status = advance(status, event)
		if new_status is not status and self._on_transition is not None:
			self._on_transition(status, new_status)
		return new_status


__all__ = ["DeliveryEvent", "DeliveryStatusTracker", "TERMINAL_STATUSES", "advance", "is_terminal"]
