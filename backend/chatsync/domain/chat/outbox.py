"""Outbound queue for live-channel actions issued while disconnected."""

from __future__ import annotations

from collections import deque
from typing import Callable, Deque, List, Tuple

from chatsync.obs import metrics as obs_metrics

from .events import OutboundAction


class OutboundQueue:
	"""Ordered, in-memory buffer of actions waiting for an open connection.

	No de-duplication happens across enqueues. ``drain`` hands the whole
	sequence over and clears it, so a reconnection replays each action once.
	"""

	def __init__(self) -> None:
		self._items: Deque[OutboundAction] = deque()

	def __len__(self) -> int:
		return len(self._items)

	def enqueue(self, action: OutboundAction) -> None:
		if not action.queueable:
			raise ValueError(f"{action.type.value} is not queueable")
		self._items.append(action)
		obs_metrics.set_outbox_depth(len(self._items))

	def pending(self) -> Tuple[OutboundAction, ...]:
		return tuple(self._items)

	def drain(self) -> List[OutboundAction]:
		items = list(self._items)
		self._items.clear()
		obs_metrics.set_outbox_depth(0)
		return items

	def requeue_front(self, actions: List[OutboundAction]) -> None:
		"""Put unsent actions back ahead of anything enqueued since the drain."""
		for action in reversed(actions):
			self._items.appendleft(action)
		obs_metrics.set_outbox_depth(len(self._items))

	def discard(self, predicate: Callable[[OutboundAction], bool], *, reason: str = "discarded") -> int:
		kept = [action for action in self._items if not predicate(action)]
		dropped = len(self._items) - len(kept)
		if dropped:
			self._items = deque(kept)
			obs_metrics.inc_outbox_discarded(reason, dropped)
			obs_metrics.set_outbox_depth(len(self._items))
		return dropped

	def clear(self, *, reason: str = "cleared") -> int:
		return self.discard(lambda _action: True, reason=reason)
