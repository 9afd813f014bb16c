"""Chat session: the single-writer engine behind one signed-in client."""

from __future__ import annotations

import asyncio
import logging
import time
from functools import partial
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Union, assert_never

import ulid

from chatsync import obs
from chatsync.infra.serial import ExecutorClosedError, SerialExecutor
from chatsync.infra.timers import Sleep, TimerRegistry
from chatsync.obs import logging as obs_logging
from chatsync.settings import Settings, settings as default_settings

from .changes import ChangeFeed, Listener, NotificationLevel
from .connection import ConnectionManager, DuplexTransport
from .delivery import DeliveryEvent
from .errors import ConversationNotFoundError, ProtocolError, SideChannelError, UploadError, ValidationError
from .events import (
	ConnectionEstablished,
	ErrorData,
	InboundEvent,
	MessageDelivered,
	MessagePayload,
	MessageRead,
	MessageSent,
	NewMessage,
	OutboundAction,
	OutboundType,
	Pong,
	ScheduledMessageDelivered,
	ServerError,
	UserStatusChanged,
	UserStoppedTyping,
	UserTyping,
)
from .gateway import GatewayReceipt, ScheduledDeliveryGateway
from .models import (
	ComposeDraft,
	ConnectionSnapshot,
	Conversation,
	DeliveryOption,
	Message,
	OutgoingAttachment,
)
from .outbox import OutboundQueue
from .presence import PresenceTracker
from .reconciler import MessageReconciler, ReconcileResult, new_client_msg_id
from .schemas import ConversationPayload, CreateConversationResponse, PostMessageResponse, SearchHit, UserPayload, history_message
from .store import ConversationStateStore

logger = logging.getLogger(__name__)

_DELIVERY_LABELS = {
	DeliveryOption.BREAK_TIME: "the lunch break (12:00)",
	DeliveryOption.AFTER_WORK: "after work (17:00)",
}


class ChatApi(Protocol):
	async def list_conversations(self) -> List[ConversationPayload]:
		...

	async def list_users(self) -> List[UserPayload]:
		...

	async def create_conversation(
		self,
		participant_ids: Iterable[str],
		*,
		is_group: bool = False,
		name: Optional[str] = None,
	) -> CreateConversationResponse:
		...

	async def list_messages(self, conversation_id: str, *, limit: int = 50, offset: int = 0) -> List[MessagePayload]:
		...

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

	async def delete_message(self, message_id: str) -> None:
		...

	async def archive_message(self, message_id: str) -> None:
		...

	async def delete_conversation(self, conversation_id: str) -> None:
		...

	async def search_messages(self, conversation_id: str, query: str) -> List[SearchHit]:
		...


class ChatSession:
	"""One client's view of conversations, kept in sync over a duplex channel.

	Every mutation of conversations, messages, typing state and delivery
	status runs on a single serial executor: inbound frames and local actions
	queue behind each other in arrival order. Request/response calls are
	awaited outside the executor and their results applied on it afterwards.
	Several sessions can live side by side; nothing here is global.
	"""

	def __init__(
		self,
		*,
		transport: DuplexTransport,
		api: ChatApi,
		local_user_id: Union[str, int],
		config: Optional[Settings] = None,
		sleep: Sleep = asyncio.sleep,
		clock: Callable[[], float] = time.monotonic,
		id_factory: Callable[[], str] = new_client_msg_id,
		session_id: Optional[str] = None,
	) -> None:
		config = config or default_settings
		self._config = config
		self._api = api
		self._owns_api = False
		self._local_user_id = str(local_user_id)
		self._session_id = session_id or str(ulid.new())
		self._id_factory = id_factory
		self._feed = ChangeFeed()
		self._executor = SerialExecutor(name=f"session:{self._session_id}")
		self._timers = TimerRegistry(sleep=sleep, runner=self._executor.submit, name="session")
		self._store = ConversationStateStore(self._feed, local_user_id=self._local_user_id)
		self._reconciler = MessageReconciler(self._store, id_factory=id_factory)
		self._outbox = OutboundQueue()
		self._connection = ConnectionManager(
			transport,
			executor=self._executor,
			handler=self._handle_event,
			feed=self._feed,
			outbox=self._outbox,
			sleep=sleep,
			base_delay=config.reconnect_base_delay,
			max_delay=config.reconnect_max_delay,
			max_attempts=config.reconnect_max_attempts,
			heartbeat_interval=config.heartbeat_interval_seconds,
			on_open=self._rejoin_active,
			on_lost=self._connection_lost,
			on_transmitted=self._transmitted,
		)
		self._presence = PresenceTracker(
			self._feed,
			self._connection.send,
			timers=self._timers,
			local_user_id=self._local_user_id,
			debounce_seconds=config.typing_debounce_seconds,
			ttl_seconds=config.typing_ttl_seconds,
			clock=clock,
		)
		self._gateway = ScheduledDeliveryGateway(
			api,
			max_attachments=config.max_attachments,
			max_attachment_bytes=config.max_attachment_bytes,
		)
		self._draft: Optional[ComposeDraft] = None
		self._closed = False

	@classmethod
	def from_settings(cls, local_user_id: Union[str, int], config: Optional[Settings] = None) -> "ChatSession":
		"""Assemble a session over Socket.IO and the REST API described by ``config``."""
		from chatsync.infra.http_client import ChatApiClient
		from chatsync.infra.socketio_transport import SocketIOTransport

		config = config or default_settings
		obs.init()
		session = cls(
			transport=SocketIOTransport.from_settings(config),
			api=ChatApiClient.from_settings(config),
			local_user_id=local_user_id,
			config=config,
		)
		session._owns_api = True
		return session

	# read-only views -------------------------------------------------------

	@property
	def session_id(self) -> str:
		return self._session_id

	@property
	def local_user_id(self) -> str:
		return self._local_user_id

	@property
	def conversations(self) -> List[Conversation]:
		return self._store.conversations()

	@property
	def active_conversation_id(self) -> Optional[str]:
		return self._store.active_id

	@property
	def connection(self) -> ConnectionSnapshot:
		return self._connection.snapshot()

	@property
	def draft(self) -> Optional[ComposeDraft]:
		return self._draft

	def conversation(self, conversation_id: Union[str, int]) -> Optional[Conversation]:
		return self._store.get(str(conversation_id))

	def messages(self, conversation_id: Union[str, int]) -> List[Message]:
		return list(self._store.messages(str(conversation_id)))

	def typing_users(self, conversation_id: Union[str, int]) -> List[str]:
		return self._presence.typing_users(str(conversation_id))

	def subscribe(self, listener: Listener) -> Callable[[], None]:
		return self._feed.subscribe(listener)

	# lifecycle ---------------------------------------------------------------

	async def start(self) -> None:
		"""Initial full sync, then open the live channel."""
		obs_logging.bind_context(session_id=self._session_id, user_id=self._local_user_id)
		await self.refresh_conversations()
		await self.connect()

	async def connect(self) -> None:
		await self._connection.connect()

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		await self._timers.close()
		await self._connection.close()
		await self._executor.close()
		if self._owns_api:
			await self._api.aclose()  # type: ignore[attr-defined]
		obs_logging.clear_context()
		logger.info("chat session closed")

	# conversations -----------------------------------------------------------

	async def refresh_conversations(self) -> List[Conversation]:
		"""Full resync of the conversation list; only on start or user request."""
		rows = await self._api.list_conversations()
		conversations = [row.to_model() for row in rows]
		await self._executor.submit(self._load_conversations, conversations)
		return self.conversations

	async def select_conversation(self, conversation_id: Union[str, int]) -> None:
		conversation_id = str(conversation_id)
		await self._executor.submit(self._select, conversation_id)
		if self._store.history_offset(conversation_id) == 0 and not self._store.history_complete(conversation_id):
			try:
				await self._fetch_history(conversation_id, older=False)
			except SideChannelError as exc:
				logger.warning("history fetch failed", extra={"conversation_id": conversation_id, "error": str(exc)})
				self._feed.notify(NotificationLevel.ERROR, "history_failed", "Messages could not be loaded.")

	async def load_older_messages(self, conversation_id: Union[str, int]) -> int:
		conversation_id = str(conversation_id)
		self._store.require(conversation_id)
		if self._store.history_complete(conversation_id):
			return 0
		return await self._fetch_history(conversation_id, older=True)

	async def mark_read(self, conversation_id: Union[str, int]) -> None:
		await self._executor.submit(self._mark_read, str(conversation_id))

	async def create_conversation(
		self,
		participant_ids: Iterable[Union[str, int]],
		*,
		is_group: bool = False,
		name: Optional[str] = None,
	) -> Conversation:
		participants = [str(value) for value in participant_ids]
		if not participants:
			raise ValidationError("a conversation needs at least one participant")
		if is_group and not (name or "").strip():
			raise ValidationError("group conversations need a name")
		created = await self._api.create_conversation(participants, is_group=is_group, name=name)
		await self.refresh_conversations()
		conversation = self._store.get(created.id)
		if conversation is None:
			fallback = Conversation(
				conversation_id=created.id,
				is_group=is_group,
				display_name=name or "",
				participant_ids=set(participants) | {self._local_user_id},
			)
			conversation = await self._executor.submit(self._add_conversation, fallback)
		if conversation is None:
			raise ConversationNotFoundError(created.id)
		await self.select_conversation(conversation.conversation_id)
		return conversation

	async def delete_conversation(self, conversation_id: Union[str, int]) -> None:
		conversation_id = str(conversation_id)
		await self._api.delete_conversation(conversation_id)
		await self._executor.submit(self._forget_conversation, conversation_id)

	async def list_users(self) -> List[UserPayload]:
		return await self._api.list_users()

	async def search_messages(self, conversation_id: Union[str, int], query: str) -> List[SearchHit]:
		if not query or not query.strip():
			raise ValidationError("search query is empty")
		return await self._api.search_messages(str(conversation_id), query.strip())

	# messages ------------------------------------------------------------------

	async def send(
		self,
		content: str = "",
		attachments: Sequence[OutgoingAttachment] = (),
		delivery: Union[DeliveryOption, str, None] = DeliveryOption.IMMEDIATE,
	) -> Optional[Message]:
		"""Send to the active conversation.

		Plain immediate sends render a ``sending`` placeholder and go over the
		live channel. Attachments or a deferred delivery option go through the
		side channel; those return the confirmed message, or ``None`` when the
		server scheduled it. Raises ``ValidationError`` before any network call
		and ``UploadError`` (with the draft kept) when the side channel fails.
		"""
		draft = ComposeDraft(
			conversation_id=self._store.active_id or "",
			content=(content or "").strip(),
			attachments=tuple(attachments or ()),
			delivery=DeliveryOption.parse(delivery),
		)
		return await self._send_draft(draft)

	async def retry_draft(self) -> Optional[Message]:
		"""Re-submit the compose buffer kept by the last ``UploadError``."""
		if self._draft is None:
			raise ValidationError("there is no draft to retry")
		return await self._send_draft(self._draft)

	async def delete_message(self, message_id: Union[str, int]) -> None:
		await self._api.delete_message(str(message_id))
		await self._executor.submit(self._remove_message, str(message_id))

	async def archive_message(self, message_id: Union[str, int]) -> None:
		await self._api.archive_message(str(message_id))
		await self._executor.submit(self._remove_message, str(message_id))

	# typing --------------------------------------------------------------------

	async def keystroke(self) -> None:
		conversation_id = self._store.active_id
		if conversation_id is not None:
			await self._executor.submit(self._presence.keystroke, conversation_id)

	async def stop_typing(self) -> None:
		conversation_id = self._store.active_id
		if conversation_id is not None:
			await self._executor.submit(self._presence.stop_local, conversation_id)

	# serialized work -------------------------------------------------------------

	async def _load_conversations(self, conversations: List[Conversation]) -> None:
		self._store.load(conversations)
		if self._store.active_id is None:
			self._presence.set_active(None)

	async def _add_conversation(self, conversation: Conversation) -> Optional[Conversation]:
		return self._store.add_conversation(conversation)

	async def _select(self, conversation_id: str) -> None:
		self._store.require(conversation_id)
		previous = self._store.active_id
		if previous is not None and previous != conversation_id and self._presence.is_typing(previous):
			await self._presence.stop_local(previous)
		self._store.select(conversation_id)
		self._presence.set_active(conversation_id)
		await self._connection.send(OutboundAction.join_conversation(conversation_id))

	async def _mark_read(self, conversation_id: str) -> None:
		self._store.mark_read(conversation_id)
		latest = next(
			(
				message
				for message in reversed(self._store.messages(conversation_id))
				if message.sender_id != self._local_user_id and message.message_id is not None
			),
			None,
		)
		if latest is not None:
			await self._connection.send(OutboundAction.mark_read(latest.message_id))

	async def _forget_conversation(self, conversation_id: str) -> None:
		self._presence.clear_conversation(conversation_id)
		for message in self._reconciler.pending(conversation_id):
			self._timers.cancel(f"ack:{message.client_msg_id}")
		self._reconciler.forget(conversation_id)
		self._outbox.discard(lambda action: action.conversation_id == conversation_id, reason="conversation_deleted")
		if self._store.delete(conversation_id):
			self._feed.notify(NotificationLevel.SUCCESS, "conversation_deleted", "Conversation deleted.", conversation_id=conversation_id)

	async def _remove_message(self, message_id: str) -> None:
		self._store.remove_message(message_id)

	async def _fetch_history(self, conversation_id: str, *, older: bool) -> int:
		page_size = self._config.history_page_size
		offset = self._store.history_offset(conversation_id) if older else 0
		with obs_logging.conversation_context(conversation_id):
			rows = await self._api.list_messages(conversation_id, limit=page_size, offset=offset)
		return await self._executor.submit(self._apply_history, conversation_id, rows, older, page_size)

	async def _apply_history(self, conversation_id: str, rows: List[MessagePayload], older: bool, page_size: int) -> int:
		if self._store.get(conversation_id) is None:
			return 0
		page = [history_message(row, self._local_user_id) for row in rows]
		added = self._store.merge_history(conversation_id, page, older=older)
		if len(rows) < page_size:
			self._store.mark_history_complete(conversation_id)
		return added

	async def _send_draft(self, draft: ComposeDraft) -> Optional[Message]:
		draft.validate()
		self._store.require(draft.conversation_id)
		if self._gateway.handles(draft):
			return await self._send_via_gateway(draft)
		return await self._executor.submit(self._send_live, draft)

	async def _send_live(self, draft: ComposeDraft) -> Message:
		await self._presence.stop_local(draft.conversation_id)
		message = self._reconciler.create_optimistic(draft.conversation_id, draft.content)
		self._draft = None
		if self._connection.lost:
			self._store.apply_delivery_event(message, DeliveryEvent.RECONNECT_EXHAUSTED)
			return message
		await self._connection.send(
			OutboundAction.send_message(draft.conversation_id, draft.content, client_msg_id=str(message.client_msg_id))
		)
		return message

	async def _send_via_gateway(self, draft: ComposeDraft) -> Optional[Message]:
		prepared = self._gateway.prepare(draft)
		client_msg_id = self._id_factory()
		await self._executor.submit(self._gateway_started, prepared, client_msg_id)
		try:
			with obs_logging.conversation_context(prepared.conversation_id):
				receipt = await self._gateway.submit(prepared, client_msg_id=client_msg_id)
		except UploadError as exc:
			try:
				await self._executor.submit(self._gateway_failed, exc, client_msg_id)
			except ExecutorClosedError:
				# Closed mid-upload: nothing else writes now, keep the draft for the caller.
				self._draft = exc.draft
			raise
		try:
			return await self._executor.submit(self._gateway_done, prepared, receipt)
		except ExecutorClosedError:
			logger.info("session closed before the gateway receipt was applied")
			return None

	async def _gateway_started(self, draft: ComposeDraft, client_msg_id: str) -> None:
		await self._presence.stop_local(draft.conversation_id)
		self._reconciler.begin_gateway(client_msg_id)

	async def _gateway_failed(self, exc: UploadError, client_msg_id: str) -> None:
		self._reconciler.finish_gateway(client_msg_id)
		self._draft = exc.draft
		self._feed.notify(
			NotificationLevel.ERROR,
			"upload_failed",
			"The message could not be sent. Your draft was kept so you can retry.",
			conversation_id=exc.draft.conversation_id,
		)

	async def _gateway_done(self, draft: ComposeDraft, receipt: GatewayReceipt) -> Optional[Message]:
		self._reconciler.finish_gateway(receipt.client_msg_id)
		self._draft = None
		if receipt.scheduled:
			label = _DELIVERY_LABELS.get(receipt.delivery, "later")
			self._feed.notify(
				NotificationLevel.SUCCESS,
				"message_scheduled",
				f"Message scheduled for {label}.",
				conversation_id=draft.conversation_id,
			)
			return None
		message = self._gateway.confirmed_message(draft, receipt, sender_id=self._local_user_id)
		if message is None:
			return None
		self._reconciler.insert_direct(message)
		return self._store.find_by_server_id(str(message.message_id))

	# connection hooks --------------------------------------------------------------

	async def _rejoin_active(self) -> None:
		active = self._store.active_id
		if active is not None:
			await self._connection.send(OutboundAction.join_conversation(active))

	async def _connection_lost(self) -> None:
		failed = self._reconciler.fail_pending()
		for message in failed:
			self._timers.cancel(f"ack:{message.client_msg_id}")
		dropped = self._outbox.discard(lambda action: action.type is OutboundType.SEND_MESSAGE, reason="connection_lost")
		self._presence.reset()
		logger.warning("connection lost", extra={"failed_messages": len(failed), "dropped_actions": dropped})

	async def _transmitted(self, action: OutboundAction) -> None:
		if action.type is not OutboundType.SEND_MESSAGE or self._config.ack_timeout_seconds <= 0:
			return
		client_msg_id = action.client_msg_id
		if client_msg_id:
			self._timers.schedule(
				f"ack:{client_msg_id}",
				self._config.ack_timeout_seconds,
				partial(self._ack_expired, client_msg_id),
			)

	async def _ack_expired(self, client_msg_id: str) -> None:
		self._reconciler.expire(client_msg_id)

	# inbound dispatch ----------------------------------------------------------------

	async def _handle_event(self, event: InboundEvent) -> None:
		match event:
			case ConnectionEstablished(data=data):
				logger.info("connection established", extra={"server_user_id": data.user_id})
			case NewMessage(data=payload):
				await self._on_new_message(payload)
			case ScheduledMessageDelivered(data=payload):
				self._reconciler.apply_confirmed(payload, scheduled=True)
			case UserTyping(data=data):
				self._presence.remote_started(data.conversation_id, data.user_id, data.user_name)
			case UserStoppedTyping(data=data):
				self._presence.remote_stopped(data.conversation_id, data.user_id)
			case MessageSent(data=data):
				self._reconciler.confirm_sent(data.message_id, data.client_msg_id)
				self._cancel_ack(data.message_id, data.client_msg_id)
			case MessageDelivered(data=data):
				self._reconciler.apply_status_event(data.message_id, DeliveryEvent.DELIVERED)
			case MessageRead(data=data):
				self._reconciler.apply_status_event(data.message_id, DeliveryEvent.READ)
			case UserStatusChanged(data=data):
				self._store.set_online_status(data.user_id, data.status)
			case Pong():
				logger.debug("pong received")
			case ServerError(data=data):
				self._on_server_error(data)
			case _:
				assert_never(event)

	async def _on_new_message(self, payload: MessagePayload) -> None:
		own = payload.sender_id == self._local_user_id
		if not own:
			self._presence.remote_stopped(payload.conversation_id, payload.sender_id)
		result = self._reconciler.apply_confirmed(payload)
		if own:
			self._cancel_ack(payload.id, payload.client_msg_id)
			return
		if result is not ReconcileResult.INSERTED:
			return
		if payload.conversation_id == self._store.active_id:
			await self._connection.send(OutboundAction.mark_read(payload.id))
		else:
			sender = payload.sender_name or payload.sender_id
			self._feed.notify(
				NotificationLevel.INFO,
				"new_message",
				f"New message from {sender}",
				conversation_id=payload.conversation_id,
			)

	def _on_server_error(self, data: ErrorData) -> None:
		error = ProtocolError(data.message, message_id=data.message_id, client_msg_id=data.client_msg_id, code=data.code)
		failed = None
		if data.message_id is not None or data.client_msg_id is not None:
			failed = self._reconciler.fail_message(message_id=data.message_id, client_msg_id=data.client_msg_id)
			if failed is not None:
				self._timers.cancel(f"ack:{failed.client_msg_id}")
		logger.warning("server reported an error", extra={"code": data.code, "message_id": data.message_id})
		self._feed.notify(NotificationLevel.ERROR, "protocol_error", data.message, error=error, failed_message=failed)

	def _cancel_ack(self, message_id: str, client_msg_id: Optional[str]) -> None:
		if client_msg_id is None:
			confirmed = self._store.find_by_server_id(message_id)
			client_msg_id = confirmed.client_msg_id if confirmed is not None else None
		if client_msg_id is not None:
			self._timers.cancel(f"ack:{client_msg_id}")


__all__ = ["ChatApi", "ChatSession"]
