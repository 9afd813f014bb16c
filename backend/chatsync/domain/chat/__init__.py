"""Chat sync engine exports."""

from .changes import ChangeKind, Notification, NotificationLevel, StateChange
from .errors import (
	ChatSyncError,
	ConnectionLostError,
	ConversationNotFoundError,
	DuplicateEventError,
	MalformedFrameError,
	ProtocolError,
	SideChannelError,
	TransportError,
	UploadError,
	ValidationError,
)
from .models import ComposeDraft, ConnectionState, Conversation, DeliveryOption, DeliveryStatus, Message, OutgoingAttachment
from .session import ChatSession

__all__ = [
	"ChangeKind",
	"ChatSession",
	"ChatSyncError",
	"ComposeDraft",
	"ConnectionLostError",
	"ConnectionState",
	"Conversation",
	"ConversationNotFoundError",
	"DeliveryOption",
	"DeliveryStatus",
	"DuplicateEventError",
	"MalformedFrameError",
	"Message",
	"Notification",
	"NotificationLevel",
	"OutgoingAttachment",
	"ProtocolError",
	"SideChannelError",
	"StateChange",
	"TransportError",
	"UploadError",
	"ValidationError",
]
