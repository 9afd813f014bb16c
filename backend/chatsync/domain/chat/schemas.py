"""Pydantic schemas for side-channel (request/response) payloads."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import Field, field_validator

from .events import MessagePayload, WireModel, wire_alias
from .models import Conversation, DeliveryStatus, Message


class ConversationPayload(WireModel):
	id: str
	display_name: Optional[str] = Field(default=None, validation_alias=wire_alias("display_name", "displayName", "conversation_name", "name"))
	is_group: bool = Field(default=False, validation_alias=wire_alias("is_group", "isGroup"))
	participant_ids: List[str] = Field(default_factory=list, validation_alias=wire_alias("participant_ids", "participantIds", "participants"))
	unread_count: int = Field(default=0, ge=0, validation_alias=wire_alias("unread_count", "unreadCount"))
	last_message: Optional[str] = Field(default=None, validation_alias=wire_alias("last_message", "lastMessage", "last_message_preview"))
	last_message_time: Optional[datetime] = Field(default=None, validation_alias=wire_alias("last_message_time", "lastMessageTime"))

	@field_validator("participant_ids", mode="before")
	def _participant_ids(cls, value):  # type: ignore[override]
		if value is None:
			return []
		ids = []
		for item in value:
			if isinstance(item, dict):
				item = item.get("id", item.get("user_id"))
			if item is not None:
				ids.append(str(item))
		return ids

	@field_validator("unread_count", mode="before")
	def _unread_or_zero(cls, value):  # type: ignore[override]
		return 0 if value is None else value

	def to_model(self) -> Conversation:
		last_time = self.last_message_time
		if last_time is not None and last_time.tzinfo is None:
			last_time = last_time.replace(tzinfo=timezone.utc)
		return Conversation(
			conversation_id=self.id,
			is_group=self.is_group,
			display_name=self.display_name or ("Group chat" if self.is_group else "Unknown user"),
			participant_ids=set(self.participant_ids),
			last_message_preview=self.last_message,
			last_message_time=last_time,
			unread_count=self.unread_count,
		)


class UserPayload(WireModel):
	id: str
	username: Optional[str] = None
	first_name: Optional[str] = Field(default=None, validation_alias=wire_alias("first_name", "firstName"))
	last_name: Optional[str] = Field(default=None, validation_alias=wire_alias("last_name", "lastName"))
	role: Optional[str] = None
	department_name: Optional[str] = Field(default=None, validation_alias=wire_alias("department_name", "departmentName"))
	can_send_message: bool = Field(default=True, validation_alias=wire_alias("can_send_message", "canSendMessage"))

	@property
	def display_name(self) -> str:
		full = " ".join(part for part in (self.first_name, self.last_name) if part)
		return full or self.username or self.id


class CreateConversationResponse(WireModel):
	id: str
	message: Optional[str] = None


class PostMessageResponse(WireModel):
	id: Optional[str] = Field(default=None, validation_alias=wire_alias("id", "message_id", "messageId"))
	scheduled: bool = False
	scheduled_delivery: Optional[Any] = Field(default=None, validation_alias=wire_alias("scheduled_delivery", "scheduledDelivery"))
	message: Optional[Any] = None

	@property
	def is_scheduled(self) -> bool:
		return bool(self.scheduled or self.scheduled_delivery)


class SearchHit(WireModel):
	message_id: str = Field(validation_alias=wire_alias("message_id", "messageId", "id"))
	conversation_id: Optional[str] = Field(default=None, validation_alias=wire_alias("conversation_id", "conversationId"))
	sender_id: Optional[str] = Field(default=None, validation_alias=wire_alias("sender_id", "senderId"))
	content: str = ""
	created_at: Optional[datetime] = Field(default=None, validation_alias=wire_alias("created_at", "createdAt"))
	score: Optional[float] = Field(default=None, validation_alias=wire_alias("score", "relevance"))


def history_message(payload: MessagePayload, local_user_id: str) -> Message:
	"""Build a message from a history row; history never holds temporary ids."""
	if payload.sender_id == local_user_id:
		status = DeliveryStatus.READ if payload.is_read else DeliveryStatus.SENT
	else:
		status = DeliveryStatus.DELIVERED
	return payload.to_model(status)


__all__ = [
	"ConversationPayload",
	"CreateConversationResponse",
	"PostMessageResponse",
	"SearchHit",
	"UserPayload",
	"history_message",
]
