"""Side-channel route for attachment-bearing and deferred sends."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from chatsync.obs import metrics as obs_metrics

from . import attachments as attachment_rules
from .errors import SideChannelError, UploadError
from .models import Attachment, ComposeDraft, DeliveryOption, DeliveryStatus, Message, OutgoingAttachment, utcnow
from .schemas import PostMessageResponse

logger = logging.getLogger(__name__)


class MessagePoster(Protocol):
	async def post_message(
		self,
		conversation_id: str,
		*,
		content: str,
		delivery: DeliveryOption,
		attachments: Sequence[OutgoingAttachment] = (),
		client_msg_id: Optional[str] = None,
	) -> PostMessageResponse:
		...


@dataclass(frozen=True, slots=True)
class GatewayReceipt:
	scheduled: bool
	message_id: Optional[str]
	client_msg_id: str
	delivery: DeliveryOption


class ScheduledDeliveryGateway:
	"""Submits drafts over request/response instead of the live channel.

	Nothing is rendered optimistically here. A scheduled send shows up later
	through ``scheduled_message_delivered``; an immediate one comes back with
	its server id.
	"""

	def __init__(self, api: MessagePoster, *, max_attachments: int = 5, max_attachment_bytes: int = 10 * 1024 * 1024) -> None:
		self._api = api
		self._max_attachments = max_attachments
		self._max_attachment_bytes = max_attachment_bytes

	@staticmethod
	def handles(draft: ComposeDraft) -> bool:
		return draft.uses_side_channel

	def prepare(self, draft: ComposeDraft) -> ComposeDraft:
		draft.validate()
		checked = attachment_rules.normalize_attachments(
			draft.attachments,
			max_count=self._max_attachments,
			max_bytes=self._max_attachment_bytes,
		)
		if checked == draft.attachments:
			return draft
		return ComposeDraft(
			conversation_id=draft.conversation_id,
			content=draft.content,
			attachments=checked,
			delivery=draft.delivery,
		)

	async def submit(self, draft: ComposeDraft, *, client_msg_id: str) -> GatewayReceipt:
		try:
			response = await self._api.post_message(
				draft.conversation_id,
				content=draft.content,
				delivery=draft.delivery,
				attachments=draft.attachments,
				client_msg_id=client_msg_id,
			)
		except SideChannelError as exc:
			obs_metrics.inc_gateway_send("error")
			logger.warning(
				"gateway send failed",
				extra={"conversation_id": draft.conversation_id, "status_code": exc.status_code},
			)
			raise UploadError(str(exc), draft=draft, status_code=exc.status_code) from exc
		receipt = GatewayReceipt(
			scheduled=response.is_scheduled,
			message_id=response.id,
			client_msg_id=client_msg_id,
			delivery=draft.delivery,
		)
		obs_metrics.inc_gateway_send("scheduled" if receipt.scheduled else "immediate")
		return receipt

	@staticmethod
	def confirmed_message(draft: ComposeDraft, receipt: GatewayReceipt, *, sender_id: str) -> Optional[Message]:
		"""The message an immediate receipt confirms; ``None`` for scheduled sends."""
		if receipt.scheduled or receipt.message_id is None:
			return None
		return Message(
			conversation_id=draft.conversation_id,
			sender_id=sender_id,
			content=draft.content,
			created_at=utcnow(),
			message_id=receipt.message_id,
			client_msg_id=receipt.client_msg_id,
			delivery_status=DeliveryStatus.SENT,
			attachments=tuple(
				Attachment(
					filename=item.file_name,
					original_name=item.file_name,
					mime_type=item.mime_type,
					size_bytes=item.size_bytes,
					uploaded_by=sender_id,
				)
				for item in draft.attachments
			),
		)


__all__ = ["GatewayReceipt", "MessagePoster", "ScheduledDeliveryGateway"]
