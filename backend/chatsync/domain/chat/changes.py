"""State-change feed consumed by the presentation layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
	CONVERSATIONS_LOADED = "conversations_loaded"
	CONVERSATION_UPDATED = "conversation_updated"
	CONVERSATION_REMOVED = "conversation_removed"
	CONVERSATION_SELECTED = "conversation_selected"
	MESSAGE_ADDED = "message_added"
	MESSAGE_REPLACED = "message_replaced"
	MESSAGE_UPDATED = "message_updated"
	MESSAGE_REMOVED = "message_removed"
	HISTORY_LOADED = "history_loaded"
	TYPING_CHANGED = "typing_changed"
	CONNECTION_CHANGED = "connection_changed"
	NOTIFICATION = "notification"


class NotificationLevel(str, Enum):
	INFO = "info"
	SUCCESS = "success"
	ERROR = "error"


@dataclass(frozen=True, slots=True)
class Notification:
	"""User-visible message; ``blocking`` ones ask the user to reload."""

	level: NotificationLevel
	code: str
	message: str
	blocking: bool = False


@dataclass(frozen=True, slots=True)
class StateChange:
	kind: ChangeKind
	payload: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[StateChange], None]


class ChangeFeed:
	"""Fan-out of state changes; a failing listener never breaks the engine."""

	def __init__(self) -> None:
		self._listeners: List[Listener] = []

	def subscribe(self, listener: Listener) -> Callable[[], None]:
		self._listeners.append(listener)

		def _unsubscribe() -> None:
			if listener in self._listeners:
				self._listeners.remove(listener)

		return _unsubscribe

	def publish(self, kind: ChangeKind, **payload: Any) -> StateChange:
		change = StateChange(kind=kind, payload=payload)
		for listener in list(self._listeners):
			try:
				listener(change)
			except Exception:
				logger.exception("change listener failed", extra={"change_kind": kind.value})
		return change

	def notify(
		self,
		level: NotificationLevel,
		code: str,
		message: str,
		*,
		blocking: bool = False,
		**extra: Any,
	) -> Notification:
		notification = Notification(level=level, code=code, message=message, blocking=blocking)
		self.publish(ChangeKind.NOTIFICATION, notification=notification, **extra)
		return notification


class RecordingListener:
	"""Collects every change; handy for tests and debugging tools."""

	def __init__(self) -> None:
		self.changes: List[StateChange] = []

	def __call__(self, change: StateChange) -> None:
		self.changes.append(change)

	def of_kind(self, kind: ChangeKind) -> List[StateChange]:
		return [change for change in self.changes if change.kind is kind]

	def notifications(self, code: Optional[str] = None) -> List[Notification]:
		found = [change.payload["notification"] for change in self.of_kind(ChangeKind.NOTIFICATION)]
		if code is None:
			return found
		return [item for item in found if item.code == code]


__all__ = [
	"ChangeFeed",
	"ChangeKind",
	"Notification",
	"NotificationLevel",
	"RecordingListener",
	"StateChange",
]
