"""Error taxonomy for the chat sync engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover - typing only
	from .models import ComposeDraft


class ChatSyncError(Exception):
	"""Base class for every error raised by the engine."""


class TransportError(ChatSyncError):
	"""The duplex channel is closed or unreachable."""


class ConnectionLostError(TransportError):
	"""Reconnection attempts are exhausted; the user has to reload."""


class ProtocolError(ChatSyncError):
	"""The server reported an error over the live channel."""

	def __init__(
		self,
		message: str,
		*,
		message_id: Optional[str] = None,
		client_msg_id: Optional[str] = None,
		code: Optional[str] = None,
	) -> None:
		super().__init__(message)
		self.message = message
		self.message_id = message_id
		self.client_msg_id = client_msg_id
		self.code = code


class MalformedFrameError(ChatSyncError):
	"""An inbound frame could not be decoded into a known event."""


class ValidationError(ChatSyncError, ValueError):
	"""A local action was rejected before any network call."""


class ConversationNotFoundError(ValidationError):
	def __init__(self, conversation_id: str) -> None:
		super().__init__(f"unknown conversation: {conversation_id}")
		self.conversation_id = conversation_id


class SideChannelError(ChatSyncError):
	"""A request/response call failed."""

	def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
		super().__init__(message)
		self.status_code = status_code


class UploadError(ChatSyncError):
	"""A gateway send failed; the compose buffer is kept for a retry."""

	def __init__(self, message: str, *, draft: "ComposeDraft", status_code: Optional[int] = None) -> None:
		super().__init__(message)
		self.draft = draft
		self.status_code = status_code


class DuplicateEventError(ChatSyncError):
	"""A confirmed message id was observed twice."""

	def __init__(self, message_id: str) -> None:
		super().__init__(f"message {message_id} already present")
		self.message_id = message_id


__all__ = [
	"ChatSyncError",
	"ConnectionLostError",
	"ConversationNotFoundError",
	"DuplicateEventError",
	"MalformedFrameError",
	"ProtocolError",
	"SideChannelError",
	"TransportError",
	"UploadError",
	"ValidationError",
]
