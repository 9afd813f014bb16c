"""Domain models for the chat sync engine."""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from .errors import ValidationError

PREVIEW_LENGTH = 120


def utcnow() -> datetime:
	return datetime.now(timezone.utc)


class DeliveryStatus(str, Enum):
	"""Per-message delivery states, in the order a message moves through them."""

	SENDING = "sending"
	SENT = "sent"
	DELIVERED = "delivered"
	READ = "read"
	FAILED = "failed"


class DeliveryOption(str, Enum):
	"""When the server should hand a message to its recipients."""

	IMMEDIATE = "immediate"
	BREAK_TIME = "break_time"
	AFTER_WORK = "after_work"

	@classmethod
	def parse(cls, value: "DeliveryOption | str | None") -> "DeliveryOption":
		if value is None:
			return cls.IMMEDIATE
		if isinstance(value, cls):
			return value
		text = str(value).strip().lower()
		aliases = {
			"": cls.IMMEDIATE,
			"immediate": cls.IMMEDIATE,
			"deferred-a": cls.BREAK_TIME,
			"break_time": cls.BREAK_TIME,
			"deferred-b": cls.AFTER_WORK,
			"after_work": cls.AFTER_WORK,
		}
		try:
			return aliases[text]
		except KeyError:
			raise ValidationError(f"unsupported delivery option: {value}") from None

	@property
	def is_immediate(self) -> bool:
		return self is DeliveryOption.IMMEDIATE


class ConnectionState(str, Enum):
	CONNECTING = "connecting"
	OPEN = "open"
	CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class Attachment:
	"""Server-side attachment metadata; immutable once created."""

	filename: str
	original_name: str
	mime_type: str
	size_bytes: int
	uploaded_by: Optional[str] = None

	def to_dict(self) -> dict:
		return {
			"filename": self.filename,
			"original_name": self.original_name,
			"mime_type": self.mime_type,
			"size_bytes": self.size_bytes,
			"uploaded_by": self.uploaded_by,
		}


@dataclass(frozen=True, slots=True)
class OutgoingAttachment:
	"""A local file waiting to be uploaded through the side channel."""

	file_name: str
	data: bytes
	mime_type: str

	@property
	def size_bytes(self) -> int:
		return len(self.data)


@dataclass(slots=True)
class Message:
	"""A chat message identified by exactly one of a server id or a temporary id."""

	conversation_id: str
	sender_id: str
	content: str
	created_at: datetime
	message_id: Optional[str] = None
	temp_id: Optional[str] = None
	client_msg_id: Optional[str] = None
	delivery_status: DeliveryStatus = DeliveryStatus.SENDING
	attachments: Tuple[Attachment, ...] = ()
	is_scheduled: bool = False
	sender_name: Optional[str] = None

	def __post_init__(self) -> None:
		if (self.message_id is None) == (self.temp_id is None):
			raise ValueError("message needs exactly one of message_id or temp_id")

	@property
	def key(self) -> str:
		return self.message_id if self.message_id is not None else str(self.temp_id)

	@property
	def is_temporary(self) -> bool:
		return self.temp_id is not None

	@property
	def rendered_content(self) -> str:
		return html.escape(self.content)

	def confirm(self, message_id: str) -> None:
		"""Swap the temporary id for the server id; allowed once."""
		if self.temp_id is None:
			raise ValueError(f"message {self.message_id} is already confirmed")
		self.message_id = str(message_id)
		self.temp_id = None

	def preview(self) -> str:
		if self.content:
			text = " ".join(self.content.split())
			return text if len(text) <= PREVIEW_LENGTH else f"{text[:PREVIEW_LENGTH]}…"
		if self.attachments:
			return f"[attachment] {self.attachments[0].original_name}"
		return ""

	def to_dict(self) -> dict:
		return {
			"message_id": self.message_id,
			"temp_id": self.temp_id,
			"client_msg_id": self.client_msg_id,
			"conversation_id": self.conversation_id,
			"sender_id": self.sender_id,
			"sender_name": self.sender_name,
			"content": self.content,
			"created_at": self.created_at.isoformat(),
			"delivery_status": self.delivery_status.value,
			"attachments": [attachment.to_dict() for attachment in self.attachments],
			"is_scheduled": self.is_scheduled,
		}


@dataclass(slots=True)
class Conversation:
	conversation_id: str
	is_group: bool
	display_name: str
	participant_ids: Set[str] = field(default_factory=set)
	last_message_preview: Optional[str] = None
	last_message_time: Optional[datetime] = None
	unread_count: int = 0
	online_status: Dict[str, str] = field(default_factory=dict)

	def has_participant(self, user_id: str) -> bool:
		return user_id in self.participant_ids

	def to_dict(self) -> dict:
		return {
			"conversation_id": self.conversation_id,
			"is_group": self.is_group,
			"display_name": self.display_name,
			"participant_ids": sorted(self.participant_ids),
			"last_message_preview": self.last_message_preview,
			"last_message_time": self.last_message_time.isoformat() if self.last_message_time else None,
			"unread_count": self.unread_count,
			"online_status": dict(self.online_status),
		}


@dataclass(slots=True)
class TypingState:
	conversation_id: str
	user_id: str
	expires_at: float


@dataclass(frozen=True, slots=True)
class ConnectionSnapshot:
	state: ConnectionState
	reconnect_attempts: int
	pending_actions: Tuple[Any, ...]
	lost: bool = False


@dataclass(frozen=True, slots=True)
class ComposeDraft:
	"""Content and attachments the user is about to send."""

	conversation_id: str
	content: str = ""
	attachments: Tuple[OutgoingAttachment, ...] = ()
	delivery: DeliveryOption = DeliveryOption.IMMEDIATE

	@property
	def uses_side_channel(self) -> bool:
		return bool(self.attachments) or not self.delivery.is_immediate

	def validate(self) -> None:
		if not self.conversation_id:
			raise ValidationError("no conversation selected")
		if not self.content.strip() and not self.attachments:
			raise ValidationError("cannot send an empty message")
