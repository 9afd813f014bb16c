"""In-memory index of conversations and their messages."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from chatsync.obs import metrics as obs_metrics

from .changes import ChangeFeed, ChangeKind
from .delivery import DeliveryEvent, DeliveryStatusTracker
from .errors import ConversationNotFoundError, DuplicateEventError
from .models import Conversation, Message

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _default_tracker() -> DeliveryStatusTracker:
	return DeliveryStatusTracker(on_transition=lambda old, new: obs_metrics.inc_delivery_transition(old.value, new.value))


class ConversationStateStore:
	"""Owns every Conversation and Message; other components only ask it to change them.

	Deleted conversations leave a tombstone: any later event naming the id is
	ignored instead of resurrecting it.
	"""

	def __init__(
		self,
		feed: ChangeFeed,
		*,
		local_user_id: str,
		tracker: Optional[DeliveryStatusTracker] = None,
	) -> None:
		self._feed = feed
		self._local_user_id = str(local_user_id)
		self._tracker = tracker or _default_tracker()
		self._conversations: Dict[str, Conversation] = {}
		self._messages: Dict[str, List[Message]] = {}
		self._by_server_id: Dict[str, Message] = {}
		self._by_temp_id: Dict[str, Message] = {}
		self._deleted: Set[str] = set()
		self._active_id: Optional[str] = None
		self._history_loaded: Dict[str, int] = {}
		self._history_complete: Set[str] = set()

	@property
	def local_user_id(self) -> str:
		return self._local_user_id

	@property
	def active_id(self) -> Optional[str]:
		return self._active_id

	# conversations -----------------------------------------------------

	def load(self, conversations: Iterable[Conversation]) -> None:
		"""Replace the conversation index with a full sync result."""
		fresh: Dict[str, Conversation] = {}
		for conversation in conversations:
			if conversation.conversation_id in self._deleted:
				continue
			previous = self._conversations.get(conversation.conversation_id)
			if previous is not None and not conversation.online_status:
				conversation.online_status = dict(previous.online_status)
			fresh[conversation.conversation_id] = conversation
		for gone in set(self._conversations) - set(fresh):
			self._drop_messages(gone)
		self._conversations = fresh
		if self._active_id is not None and self._active_id not in fresh:
			self._active_id = None
		self._feed.publish(ChangeKind.CONVERSATIONS_LOADED, conversations=self.conversations())

	def add_conversation(self, conversation: Conversation) -> Optional[Conversation]:
		if conversation.conversation_id in self._deleted:
			return None
		self._conversations[conversation.conversation_id] = conversation
		self._feed.publish(ChangeKind.CONVERSATION_UPDATED, conversation=conversation)
		return conversation

	def get(self, conversation_id: str) -> Optional[Conversation]:
		return self._conversations.get(str(conversation_id))

	def require(self, conversation_id: str) -> Conversation:
		conversation = self.get(conversation_id)
		if conversation is None:
			raise ConversationNotFoundError(str(conversation_id))
		return conversation

	def is_deleted(self, conversation_id: str) -> bool:
		return str(conversation_id) in self._deleted

	def conversations(self) -> List[Conversation]:
		return sorted(
			self._conversations.values(),
			key=lambda item: item.last_message_time or _EPOCH,
			reverse=True,
		)

	def select(self, conversation_id: str) -> Optional[str]:
		"""Make ``conversation_id`` the active one and return the previous id.

		The previously active conversation keeps its unread count untouched.
		"""
		conversation = self.require(conversation_id)
		previous = self._active_id
		self._active_id = conversation.conversation_id
		self._feed.publish(
			ChangeKind.CONVERSATION_SELECTED,
			conversation_id=conversation.conversation_id,
			previous_id=previous,
		)
		return previous

	def mark_read(self, conversation_id: str) -> Conversation:
		conversation = self.require(conversation_id)
		if conversation.unread_count:
			conversation.unread_count = 0
			self._feed.publish(ChangeKind.CONVERSATION_UPDATED, conversation=conversation)
		return conversation

	def delete(self, conversation_id: str) -> bool:
		conversation_id = str(conversation_id)
		self._deleted.add(conversation_id)
		removed = self._conversations.pop(conversation_id, None)
		self._drop_messages(conversation_id)
		if self._active_id == conversation_id:
			self._active_id = None
		if removed is None:
			return False
		self._feed.publish(ChangeKind.CONVERSATION_REMOVED, conversation_id=conversation_id)
		return True

	def update_from_message(self, message: Message) -> Optional[Conversation]:
		"""Patch preview, time and unread count for the message's conversation."""
		conversation = self.get(message.conversation_id)
		if conversation is None:
			return None
		conversation.last_message_preview = message.preview()
		conversation.last_message_time = message.created_at
		if message.sender_id != self._local_user_id and conversation.conversation_id != self._active_id:
			conversation.unread_count += 1
		self._feed.publish(ChangeKind.CONVERSATION_UPDATED, conversation=conversation)
		return conversation

	def set_online_status(self, user_id: str, status: str) -> List[str]:
		"""Record a participant's status on every 1:1 conversation they are in."""
		touched: List[str] = []
		for conversation in self._conversations.values():
			if conversation.is_group or not conversation.has_participant(user_id):
				continue
			if conversation.online_status.get(user_id) == status:
				continue
			conversation.online_status[user_id] = status
			touched.append(conversation.conversation_id)
			self._feed.publish(ChangeKind.CONVERSATION_UPDATED, conversation=conversation)
		return touched

	# messages ------------------------------------------------------------

	def messages(self, conversation_id: str) -> Tuple[Message, ...]:
		return tuple(self._messages.get(str(conversation_id), ()))

	def find_by_server_id(self, message_id: str) -> Optional[Message]:
		return self._by_server_id.get(str(message_id))

	def find_temporary(self, temp_id: str) -> Optional[Message]:
		return self._by_temp_id.get(temp_id)

	def insert_message(self, message: Message) -> Message:
		conversation = self.require(message.conversation_id)
		if message.message_id is not None and message.message_id in self._by_server_id:
			raise DuplicateEventError(message.message_id)
		self._messages.setdefault(conversation.conversation_id, []).append(message)
		self._index(message)
		self._feed.publish(ChangeKind.MESSAGE_ADDED, message=message)
		return message

	def confirm_temporary(
		self,
		message: Message,
		message_id: str,
		*,
		event: DeliveryEvent = DeliveryEvent.SEND_CONFIRMED,
	) -> Message:
		"""Swap a placeholder's temporary id for the server id, keeping its position."""
		if message_id in self._by_server_id:
			raise DuplicateEventError(message_id)
		temp_id = message.temp_id
		self._by_temp_id.pop(str(temp_id), None)
		message.confirm(message_id)
		self._by_server_id[message.message_id] = message
		message.delivery_status = self._tracker.next_status(message.delivery_status, event)
		self._feed.publish(ChangeKind.MESSAGE_REPLACED, temp_id=temp_id, message=message)
		return message

	def apply_delivery_event(self, message: Message, event: DeliveryEvent) -> bool:
		new_status = self._tracker.next_status(message.delivery_status, event)
		if new_status is message.delivery_status:
			return False
		message.delivery_status = new_status
		self._feed.publish(ChangeKind.MESSAGE_UPDATED, message=message)
		return True

	def remove_message(self, message_id: str) -> Optional[Message]:
		message = self._by_server_id.pop(str(message_id), None) or self._by_temp_id.pop(str(message_id), None)
		if message is None:
			return None
		bucket = self._messages.get(message.conversation_id, [])
		if message in bucket:
			bucket.remove(message)
		self._feed.publish(ChangeKind.MESSAGE_REMOVED, conversation_id=message.conversation_id, key=str(message_id))
		return message

	def merge_history(self, conversation_id: str, page: Sequence[Message], *, older: bool) -> int:
		"""Merge a history page; messages already present are skipped.

		``older`` pages go in front of what is loaded, otherwise the page seeds
		the conversation ahead of any live messages already received.
		"""
		conversation = self.require(conversation_id)
		fresh = [message for message in page if message.message_id not in self._by_server_id]
		bucket = self._messages.setdefault(conversation.conversation_id, [])
		bucket[:0] = fresh
		if not older:
			bucket.sort(key=lambda item: (item.is_temporary, item.created_at))
		for message in fresh:
			self._index(message)
		self._history_loaded[conversation.conversation_id] = self._history_loaded.get(conversation.conversation_id, 0) + len(page)
		self._feed.publish(
			ChangeKind.HISTORY_LOADED,
			conversation_id=conversation.conversation_id,
			messages=tuple(fresh),
			older=older,
		)
		return len(fresh)

	def history_offset(self, conversation_id: str) -> int:
		return self._history_loaded.get(str(conversation_id), 0)

	def history_complete(self, conversation_id: str) -> bool:
		return str(conversation_id) in self._history_complete

	def mark_history_complete(self, conversation_id: str) -> None:
		self._history_complete.add(str(conversation_id))

	def _index(self, message: Message) -> None:
		if message.message_id is not None:
			self._by_server_id[message.message_id] = message
		else:
			self._by_temp_id[str(message.temp_id)] = message

	def _drop_messages(self, conversation_id: str) -> None:
		for message in self._messages.pop(conversation_id, []):
			if message.message_id is not None:
				self._by_server_id.pop(message.message_id, None)
			else:
				self._by_temp_id.pop(str(message.temp_id), None)
		self._history_loaded.pop(conversation_id, None)
		self._history_complete.discard(conversation_id)


__all__ = ["ConversationStateStore"]
