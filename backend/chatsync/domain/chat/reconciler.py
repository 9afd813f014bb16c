"""Optimistic-send reconciliation against server-confirmed messages."""

from __future__ import annotations

import logging
from collections import OrderedDict
from enum import Enum
from typing import Callable, List, Optional, Set

import ulid

from chatsync.obs import metrics as obs_metrics

from .delivery import DeliveryEvent
from .errors import DuplicateEventError
from .events import MessagePayload
from .models import DeliveryStatus, Message, utcnow
from .store import ConversationStateStore

logger = logging.getLogger(__name__)


def new_client_msg_id() -> str:
	return str(ulid.new())


class ReconcileResult(str, Enum):
	INSERTED = "inserted"
	RECONCILED = "reconciled"
	DUPLICATE = "duplicate"
	IGNORED = "ignored"


class MessageReconciler:
	"""Matches placeholders created by live sends to the messages the server confirms.

	Each live send carries a ``clientMsgId`` equal to its temporary id. Echoes
	that repeat it are matched exactly; echoes without it fall back to the
	oldest placeholder still ``sending`` in the same conversation.
	"""

	def __init__(
		self,
		store: ConversationStateStore,
		*,
		id_factory: Callable[[], str] = new_client_msg_id,
	) -> None:
		self._store = store
		self._new_id = id_factory
		self._pending: "OrderedDict[str, Message]" = OrderedDict()
		self._gateway_inflight: Set[str] = set()

	@property
	def local_user_id(self) -> str:
		return self._store.local_user_id

	def create_optimistic(self, conversation_id: str, content: str) -> Message:
		temp_id = self._new_id()
		message = Message(
			conversation_id=str(conversation_id),
			sender_id=self.local_user_id,
			content=content,
			created_at=utcnow(),
			temp_id=temp_id,
			client_msg_id=temp_id,
			delivery_status=DeliveryStatus.SENDING,
		)
		self._store.insert_message(message)
		self._store.update_from_message(message)
		self._pending[temp_id] = message
		return message

	def pending(self, conversation_id: Optional[str] = None) -> List[Message]:
		return [
			message
			for message in self._pending.values()
			if conversation_id is None or message.conversation_id == str(conversation_id)
		]

	def apply_confirmed(self, payload: MessagePayload, *, scheduled: bool = False) -> ReconcileResult:
		"""Apply a ``new_message`` or ``scheduled_message_delivered`` payload.

		Applying the same payload twice leaves the state as applying it once.
		"""
		if self._store.get(payload.conversation_id) is None:
			logger.debug("message for unknown or deleted conversation dropped", extra={"conversation_id": payload.conversation_id})
			return ReconcileResult.IGNORED
		if self._store.find_by_server_id(payload.id) is not None:
			obs_metrics.inc_duplicate()
			return ReconcileResult.DUPLICATE
		own = payload.sender_id == self.local_user_id
		direct = scheduled or (payload.client_msg_id is not None and payload.client_msg_id in self._gateway_inflight)
		placeholder = None if (direct or not own) else self._match(payload.conversation_id, payload.client_msg_id)
		if placeholder is None:
			return self._insert(payload, own=own, scheduled=scheduled)
		placeholder.created_at = payload.created_at
		placeholder.attachments = tuple(item.to_model() for item in payload.attachments)
		self._store.confirm_temporary(placeholder, payload.id)
		self._store.update_from_message(placeholder)
		return ReconcileResult.RECONCILED

	def confirm_sent(self, message_id: str, client_msg_id: Optional[str] = None) -> ReconcileResult:
		"""Handle the sender-only ``message_sent`` acknowledgement.

		The ack names no conversation, so only a ``client_msg_id`` can pick the
		placeholder. An uncorrelated ack is left to the ``new_message`` echo.
		"""
		existing = self._store.find_by_server_id(message_id)
		if existing is not None:
			changed = self._store.apply_delivery_event(existing, DeliveryEvent.SEND_CONFIRMED)
			return ReconcileResult.RECONCILED if changed else ReconcileResult.DUPLICATE
		placeholder = self._pending.get(client_msg_id) if client_msg_id is not None else None
		if placeholder is None or not placeholder.is_temporary:
			return ReconcileResult.IGNORED
		del self._pending[client_msg_id]
		obs_metrics.inc_reconciled("correlation")
		self._store.confirm_temporary(placeholder, message_id)
		return ReconcileResult.RECONCILED

	def apply_status_event(self, message_id: str, event: DeliveryEvent) -> bool:
		message = self._store.find_by_server_id(message_id)
		if message is None:
			return False
		return self._store.apply_delivery_event(message, event)

	def fail_message(self, *, message_id: Optional[str] = None, client_msg_id: Optional[str] = None) -> Optional[Message]:
		"""Mark the message an ``error`` event refers to as failed."""
		message = None
		if client_msg_id is not None:
			message = self._pending.get(client_msg_id)
		if message is None and message_id is not None:
			message = self._store.find_by_server_id(message_id) or self._store.find_temporary(message_id)
		if message is None:
			return None
		self._store.apply_delivery_event(message, DeliveryEvent.ERROR)
		return message

	def expire(self, client_msg_id: str) -> bool:
		"""Fail a placeholder whose acknowledgement never came."""
		message = self._pending.get(client_msg_id)
		if message is None or not message.is_temporary:
			return False
		if self._store.apply_delivery_event(message, DeliveryEvent.ACK_TIMEOUT):
			obs_metrics.inc_ack_timeout()
			logger.info("message acknowledgement timed out", extra={"conversation_id": message.conversation_id})
			return True
		return False

	def fail_pending(self) -> List[Message]:
		"""Fail every placeholder still ``sending``; used when the connection is lost."""
		failed = []
		for message in self._pending.values():
			if self._store.apply_delivery_event(message, DeliveryEvent.RECONNECT_EXHAUSTED):
				failed.append(message)
		return failed

	def begin_gateway(self, client_msg_id: str) -> None:
		self._gateway_inflight.add(client_msg_id)

	def finish_gateway(self, client_msg_id: str) -> None:
		self._gateway_inflight.discard(client_msg_id)

	def insert_direct(self, message: Message) -> ReconcileResult:
		"""Insert a message the side channel confirmed with an id."""
		if self._store.get(message.conversation_id) is None:
			return ReconcileResult.IGNORED
		try:
			self._store.insert_message(message)
		except DuplicateEventError:
			obs_metrics.inc_duplicate()
			return ReconcileResult.DUPLICATE
		self._store.update_from_message(message)
		return ReconcileResult.INSERTED

	def forget(self, conversation_id: str) -> int:
		stale = [key for key, message in self._pending.items() if message.conversation_id == str(conversation_id)]
		for key in stale:
			del self._pending[key]
		return len(stale)

	def _match(self, conversation_id: str, client_msg_id: Optional[str]) -> Optional[Message]:
		if client_msg_id is not None and client_msg_id in self._pending:
			message = self._pending[client_msg_id]
			if message.conversation_id == conversation_id:
				del self._pending[client_msg_id]
				obs_metrics.inc_reconciled("correlation")
				return message
		for key, message in self._pending.items():
			if message.delivery_status is not DeliveryStatus.SENDING:
				continue
			if message.conversation_id != conversation_id:
				continue
			del self._pending[key]
			obs_metrics.inc_reconciled("fifo")
			return message
		return None

	def _insert(self, payload: MessagePayload, *, own: bool, scheduled: bool) -> ReconcileResult:
		if own or payload.conversation_id != self._store.active_id:
			status = DeliveryStatus.SENT
		else:
			status = DeliveryStatus.DELIVERED
		message = payload.to_model(status, scheduled=scheduled)
		self._store.insert_message(message)
		self._store.update_from_message(message)
		return ReconcileResult.INSERTED


__all__ = ["MessageReconciler", "ReconcileResult", "new_client_msg_id"]
