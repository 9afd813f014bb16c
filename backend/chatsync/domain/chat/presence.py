"""Typing presence: local debounce and remote indicators with a TTL."""

from __future__ import annotations

import logging
import time
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from chatsync.infra.timers import TimerRegistry
from chatsync.obs import metrics as obs_metrics

from .changes import ChangeFeed, ChangeKind
from .events import OutboundAction
from .models import TypingState

logger = logging.getLogger(__name__)

SendAction = Callable[[OutboundAction], Awaitable[object]]


class PresenceTracker:
	"""Tracks who is typing.

	Locally each conversation is ``idle`` or ``typing``: the first keystroke
	emits ``typing_start`` and a quiet period of ``debounce_seconds`` emits
	``typing_stop``. Remote indicators are only kept for the active
	conversation and drop out on a stop event or after ``ttl_seconds``.
	"""

	def __init__(
		self,
		feed: ChangeFeed,
		send: SendAction,
		*,
		timers: TimerRegistry,
		local_user_id: str,
		debounce_seconds: float = 2.0,
		ttl_seconds: float = 6.0,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self._feed = feed
		self._send = send
		self._timers = timers
		self._local_user_id = str(local_user_id)
		self._debounce = debounce_seconds
		self._ttl = ttl_seconds
		self._clock = clock
		self._local: Set[str] = set()
		self._remote: Dict[Tuple[str, str], TypingState] = {}
		self._names: Dict[str, str] = {}
		self._active_id: Optional[str] = None

	@property
	def active_id(self) -> Optional[str]:
		return self._active_id

	# local side ----------------------------------------------------------

	def is_typing(self, conversation_id: str) -> bool:
		return str(conversation_id) in self._local

	async def keystroke(self, conversation_id: str) -> None:
		conversation_id = str(conversation_id)
		if conversation_id not in self._local:
			self._local.add(conversation_id)
			await self._send(OutboundAction.typing_start(conversation_id))
		self._timers.schedule(
			f"debounce:{conversation_id}",
			self._debounce,
			partial(self.stop_local, conversation_id),
		)

	async def stop_local(self, conversation_id: str) -> bool:
		conversation_id = str(conversation_id)
		self._timers.cancel(f"debounce:{conversation_id}")
		if conversation_id not in self._local:
			return False
		self._local.discard(conversation_id)
		await self._send(OutboundAction.typing_stop(conversation_id))
		return True

	# remote side ---------------------------------------------------------

	def set_active(self, conversation_id: Optional[str]) -> None:
		previous = self._active_id
		self._active_id = None if conversation_id is None else str(conversation_id)
		if previous is not None and previous != self._active_id:
			self.clear_conversation(previous)

	def remote_started(self, conversation_id: str, user_id: str, user_name: Optional[str] = None) -> bool:
		conversation_id, user_id = str(conversation_id), str(user_id)
		if conversation_id != self._active_id or user_id == self._local_user_id:
			return False
		if user_name:
			self._names[user_id] = user_name
		self._remote[(conversation_id, user_id)] = TypingState(
			conversation_id=conversation_id,
			user_id=user_id,
			expires_at=self._clock() + self._ttl,
		)
		self._timers.schedule(
			self._expiry_key(conversation_id, user_id),
			self._ttl,
			partial(self._expired, conversation_id, user_id),
		)
		self._publish(conversation_id)
		return True

	def remote_stopped(self, conversation_id: str, user_id: str) -> bool:
		conversation_id, user_id = str(conversation_id), str(user_id)
		self._timers.cancel(self._expiry_key(conversation_id, user_id))
		if self._remote.pop((conversation_id, user_id), None) is None:
			return False
		self._publish(conversation_id)
		return True

	def expire(self, now: Optional[float] = None) -> int:
		"""Drop every indicator whose TTL has passed at ``now``."""
		moment = self._clock() if now is None else now
		stale = [key for key, state in self._remote.items() if state.expires_at <= moment]
		for conversation_id, user_id in stale:
			self._timers.cancel(self._expiry_key(conversation_id, user_id))
			del self._remote[(conversation_id, user_id)]
		if stale:
			obs_metrics.inc_typing_expired(len(stale))
			for conversation_id in {key[0] for key in stale}:
				self._publish(conversation_id)
		return len(stale)

	def typing_users(self, conversation_id: str) -> List[str]:
		"""Users shown as typing; stale entries are hidden, removal is left to the TTL timers."""
		conversation_id = str(conversation_id)
		now = self._clock()
		return sorted(
			user_id
			for (conv, user_id), state in self._remote.items()
			if conv == conversation_id and state.expires_at > now
		)

	def display_name(self, user_id: str) -> str:
		return self._names.get(user_id, user_id)

	def clear_conversation(self, conversation_id: str) -> None:
		conversation_id = str(conversation_id)
		self._timers.cancel_matching(f"expire:{conversation_id}:")
		self._timers.cancel(f"debounce:{conversation_id}")
		self._local.discard(conversation_id)
		stale = [key for key in self._remote if key[0] == conversation_id]
		for key in stale:
			del self._remote[key]
		if stale:
			self._publish(conversation_id)

	def reset(self) -> None:
		self._timers.cancel_matching("debounce:")
		self._timers.cancel_matching("expire:")
		self._local.clear()
		self._remote.clear()

	async def _expired(self, conversation_id: str, user_id: str) -> None:
		if self._remote.pop((conversation_id, user_id), None) is None:
			return
		obs_metrics.inc_typing_expired()
		logger.debug("typing indicator expired", extra={"conversation_id": conversation_id})
		self._publish(conversation_id)

	def _publish(self, conversation_id: str) -> None:
		users = sorted(user_id for (conv, user_id) in self._remote if conv == conversation_id)
		self._feed.publish(
			ChangeKind.TYPING_CHANGED,
			conversation_id=conversation_id,
			user_ids=tuple(users),
			names=tuple(self.display_name(user_id) for user_id in users),
		)

	@staticmethod
	def _expiry_key(conversation_id: str, user_id: str) -> str:
		return f"expire:{conversation_id}:{user_id}"


__all__ = ["PresenceTracker"]
