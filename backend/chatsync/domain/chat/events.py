"""Envelope codec: tagged inbound events and outbound actions.

Every frame on the live channel is ``{"type": str, "data": object}``. Inbound
frames decode into one pydantic model per ``type`` (a discriminated union);
types the engine does not know decode into ``UnknownEvent`` so the dispatcher
can log and drop them.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .errors import MalformedFrameError
from .models import Attachment, DeliveryStatus, Message, utcnow


def wire_alias(*names: str) -> AliasChoices:
	return AliasChoices(*names)


class WireModel(BaseModel):
	model_config = ConfigDict(populate_by_name=True, extra="ignore")

	@field_validator("*", mode="before")
	def _ids_as_strings(cls, value, info):  # type: ignore[override]
		# The server emits numeric ids; the engine keys everything by string.
		if info.field_name and info.field_name.endswith(("id", "_by")) and isinstance(value, int) and not isinstance(value, bool):
			return str(value)
		return value


class AttachmentPayload(WireModel):
	filename: str
	original_name: Optional[str] = Field(default=None, validation_alias=wire_alias("original_name", "originalName", "original_filename"))
	mime_type: str = Field(default="application/octet-stream", validation_alias=wire_alias("mime_type", "mimeType"))
	size_bytes: int = Field(default=0, ge=0, validation_alias=wire_alias("size_bytes", "sizeBytes", "file_size"))
	uploaded_by: Optional[str] = Field(default=None, validation_alias=wire_alias("uploaded_by", "uploadedBy"))

	def to_model(self) -> Attachment:
		return Attachment(
			filename=self.filename,
			original_name=self.original_name or self.filename,
			mime_type=self.mime_type,
			size_bytes=self.size_bytes,
			uploaded_by=self.uploaded_by,
		)


class MessagePayload(WireModel):
	id: str = Field(validation_alias=wire_alias("id", "message_id", "messageId"))
	conversation_id: str = Field(validation_alias=wire_alias("conversation_id", "conversationId"))
	sender_id: str = Field(validation_alias=wire_alias("sender_id", "senderId"))
	content: str = ""
	created_at: datetime = Field(default_factory=utcnow, validation_alias=wire_alias("created_at", "createdAt"))
	attachments: List[AttachmentPayload] = Field(default_factory=list)
	sender_name: Optional[str] = Field(default=None, validation_alias=wire_alias("sender_name", "senderName"))
	client_msg_id: Optional[str] = Field(default=None, validation_alias=wire_alias("client_msg_id", "clientMsgId"))
	is_scheduled: bool = Field(default=False, validation_alias=wire_alias("is_scheduled", "isScheduled"))
	is_read: bool = Field(default=False, validation_alias=wire_alias("is_read", "isRead"))

	@field_validator("content", mode="before")
	def _content_or_empty(cls, value):  # type: ignore[override]
		return "" if value is None else value

	@field_validator("attachments", mode="before")
	def _attachment_list(cls, value):  # type: ignore[override]
		# History rows carry attachments as an aggregated JSON string or NULL.
		if value is None:
			return []
		if isinstance(value, str):
			value = json.loads(value) if value.strip() else []
		return [item for item in value if item]

	@field_validator("created_at")
	def _aware(cls, value: datetime) -> datetime:
		return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

	def to_model(self, status: DeliveryStatus, *, scheduled: bool = False) -> Message:
		return Message(
			conversation_id=self.conversation_id,
			sender_id=self.sender_id,
			content=self.content,
			created_at=self.created_at,
			message_id=self.id,
			client_msg_id=self.client_msg_id,
			delivery_status=status,
			attachments=tuple(item.to_model() for item in self.attachments),
			is_scheduled=scheduled or self.is_scheduled,
			sender_name=self.sender_name,
		)


class ConnectionEstablishedData(WireModel):
	user_id: Optional[str] = Field(default=None, validation_alias=wire_alias("user_id", "userId"))
	timestamp: Optional[str] = None


class TypingData(WireModel):
	conversation_id: str = Field(validation_alias=wire_alias("conversation_id", "conversationId"))
	user_id: str = Field(validation_alias=wire_alias("user_id", "userId"))
	user_name: Optional[str] = Field(default=None, validation_alias=wire_alias("user_name", "userName"))


class MessageReadData(WireModel):
	message_id: str = Field(validation_alias=wire_alias("message_id", "messageId"))
	read_by: Optional[str] = Field(default=None, validation_alias=wire_alias("read_by", "readBy", "userId"))


class UserStatusData(WireModel):
	user_id: str = Field(validation_alias=wire_alias("user_id", "userId"))
	status: str


class MessageSentData(WireModel):
	message_id: str = Field(validation_alias=wire_alias("message_id", "messageId", "id"))
	client_msg_id: Optional[str] = Field(default=None, validation_alias=wire_alias("client_msg_id", "clientMsgId"))
	timestamp: Optional[str] = None


class MessageDeliveredData(WireModel):
	message_id: str = Field(validation_alias=wire_alias("message_id", "messageId", "id"))


class PongData(WireModel):
	timestamp: Optional[str] = None


class ErrorData(WireModel):
	message: str = "Server error"
	code: Optional[str] = None
	message_id: Optional[str] = Field(default=None, validation_alias=wire_alias("message_id", "messageId"))
	client_msg_id: Optional[str] = Field(default=None, validation_alias=wire_alias("client_msg_id", "clientMsgId"))


class ConnectionEstablished(BaseModel):
	type: Literal["connection_established"] = "connection_established"
	data: ConnectionEstablishedData = Field(default_factory=ConnectionEstablishedData)


class NewMessage(BaseModel):
	type: Literal["new_message"] = "new_message"
	data: MessagePayload


class UserTyping(BaseModel):
	type: Literal["user_typing"] = "user_typing"
	data: TypingData


class UserStoppedTyping(BaseModel):
	type: Literal["user_stopped_typing"] = "user_stopped_typing"
	data: TypingData


class MessageRead(BaseModel):
	type: Literal["message_read"] = "message_read"
	data: MessageReadData


class UserStatusChanged(BaseModel):
	type: Literal["user_status_changed"] = "user_status_changed"
	data: UserStatusData


class ScheduledMessageDelivered(BaseModel):
	type: Literal["scheduled_message_delivered"] = "scheduled_message_delivered"
	data: MessagePayload


class MessageSent(BaseModel):
	type: Literal["message_sent"] = "message_sent"
	data: MessageSentData


class MessageDelivered(BaseModel):
	type: Literal["message_delivered"] = "message_delivered"
	data: MessageDeliveredData


class Pong(BaseModel):
	type: Literal["pong"] = "pong"
	data: PongData = Field(default_factory=PongData)


class ServerError(BaseModel):
	type: Literal["error"] = "error"
	data: ErrorData = Field(default_factory=ErrorData)


class UnknownEvent(BaseModel):
	type: str
	data: Dict[str, Any] = Field(default_factory=dict)


InboundEvent = Annotated[
	Union[
		ConnectionEstablished,
		NewMessage,
		UserTyping,
		UserStoppedTyping,
		MessageRead,
		UserStatusChanged,
		ScheduledMessageDelivered,
		MessageSent,
		MessageDelivered,
		Pong,
		ServerError,
	],
	Field(discriminator="type"),
]

INBOUND_TYPES = frozenset(
	{
		"connection_established",
		"new_message",
		"user_typing",
		"user_stopped_typing",
		"message_read",
		"user_status_changed",
		"scheduled_message_delivered",
		"message_sent",
		"message_delivered",
		"pong",
		"error",
	}
)

_INBOUND_ADAPTER: TypeAdapter = TypeAdapter(InboundEvent)


def decode_frame(frame: Any) -> Union[InboundEvent, UnknownEvent]:
	"""Decode a raw frame (JSON text or mapping) into a typed event."""
	if isinstance(frame, (bytes, bytearray)):
		frame = frame.decode("utf-8", errors="replace")
	if isinstance(frame, str):
		try:
			frame = json.loads(frame)
		except json.JSONDecodeError as exc:
			raise MalformedFrameError("frame is not valid JSON") from exc
	if not isinstance(frame, Mapping):
		raise MalformedFrameError("frame is not an object")
	event_type = frame.get("type")
	if not isinstance(event_type, str) or not event_type:
		raise MalformedFrameError("frame has no type")
	data = frame.get("data")
	if data is None:
		data = {}
	if not isinstance(data, Mapping):
		raise MalformedFrameError(f"{event_type} data is not an object")
	if event_type not in INBOUND_TYPES:
		return UnknownEvent(type=event_type, data=dict(data))
	try:
		return _INBOUND_ADAPTER.validate_python({"type": event_type, "data": dict(data)})
	except pydantic.ValidationError as exc:
		raise MalformedFrameError(f"invalid {event_type} payload") from exc


class OutboundType(str, Enum):
	SEND_MESSAGE = "send_message"
	TYPING_START = "typing_start"
	TYPING_STOP = "typing_stop"
	JOIN_CONVERSATION = "join_conversation"
	MARK_READ = "mark_read"
	PING = "ping"


# Transient signals (typing, joins, pings) are dropped while disconnected;
# only these are buffered for replay.
_QUEUEABLE = frozenset({OutboundType.SEND_MESSAGE, OutboundType.MARK_READ})


@dataclass(frozen=True, slots=True)
class OutboundAction:
	type: OutboundType
	data: Dict[str, Any] = field(default_factory=dict)

	@property
	def queueable(self) -> bool:
		return self.type in _QUEUEABLE

	@property
	def conversation_id(self) -> Optional[str]:
		value = self.data.get("conversationId")
		return None if value is None else str(value)

	@property
	def client_msg_id(self) -> Optional[str]:
		return self.data.get("clientMsgId")

	def to_frame(self) -> Dict[str, Any]:
		return {"type": self.type.value, "data": dict(self.data)}

	@classmethod
	def send_message(cls, conversation_id: str, content: str, *, client_msg_id: str) -> "OutboundAction":
		return cls(
			OutboundType.SEND_MESSAGE,
			{"conversationId": conversation_id, "content": content, "clientMsgId": client_msg_id},
		)

	@classmethod
	def typing_start(cls, conversation_id: str) -> "OutboundAction":
		return cls(OutboundType.TYPING_START, {"conversationId": conversation_id})

	@classmethod
	def typing_stop(cls, conversation_id: str) -> "OutboundAction":
		return cls(OutboundType.TYPING_STOP, {"conversationId": conversation_id})

	@classmethod
	def join_conversation(cls, conversation_id: str) -> "OutboundAction":
		return cls(OutboundType.JOIN_CONVERSATION, {"conversationId": conversation_id})

	@classmethod
	def mark_read(cls, message_id: str) -> "OutboundAction":
		return cls(OutboundType.MARK_READ, {"messageId": message_id})

	@classmethod
	def ping(cls, timestamp: Optional[datetime] = None) -> "OutboundAction":
		moment = timestamp or utcnow()
		return cls(OutboundType.PING, {"timestamp": moment.isoformat()})


__all__ = [
	"INBOUND_TYPES",
	"AttachmentPayload",
	"ConnectionEstablished",
	"InboundEvent",
	"MessageDelivered",
	"MessagePayload",
	"MessageRead",
	"MessageSent",
	"NewMessage",
	"OutboundAction",
	"OutboundType",
	"Pong",
	"ScheduledMessageDelivered",
	"ServerError",
	"UnknownEvent",
	"UserStatusChanged",
	"UserStoppedTyping",
	"UserTyping",
	"decode_frame",
]
