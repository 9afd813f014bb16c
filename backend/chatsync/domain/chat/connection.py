"""Duplex connection lifecycle: handshake, heartbeat, backoff and dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from chatsync.infra.serial import ExecutorClosedError, SerialExecutor
from chatsync.infra.timers import Sleep, TimerRegistry
from chatsync.obs import metrics as obs_metrics

from .changes import ChangeFeed, ChangeKind, NotificationLevel
from .errors import ConnectionLostError, DuplicateEventError, MalformedFrameError, TransportError
from .events import InboundEvent, OutboundAction, UnknownEvent, decode_frame
from .models import ConnectionSnapshot, ConnectionState
from .outbox import OutboundQueue

logger = logging.getLogger(__name__)

FrameCallback = Callable[[Any], Awaitable[None]]
CloseCallback = Callable[[Optional[BaseException]], Awaitable[None]]
EventHandler = Callable[[InboundEvent], Awaitable[None]]
Hook = Callable[[], Awaitable[None]]
TransmitHook = Callable[[OutboundAction], Awaitable[None]]

CONNECTION_LOST_MESSAGE = "Connection to the chat server was lost. Please reload the page."

_RECONNECT = "reconnect"
_HEARTBEAT = "heartbeat"


class DuplexTransport(Protocol):
	"""A long-lived channel carrying ``{type, data}`` envelopes."""

	def bind(self, *, on_frame: FrameCallback, on_close: CloseCallback) -> None:
		...

	async def open(self) -> None:
		...

	async def send(self, frame: Mapping[str, Any]) -> None:
		...

	async def close(self) -> None:
		...


def backoff_delay(attempt: int, base: float, cap: float) -> float:
	"""Delay before reconnect ``attempt`` (1-based): ``base * 2^(attempt-1)``, capped."""
	if attempt < 1:
		raise ValueError("attempt starts at 1")
	return min(cap, base * (2 ** (attempt - 1)))


class ConnectionManager:
	"""Owns the single duplex connection of a session.

	State changes and inbound dispatch all run on ``executor`` so they never
	interleave with other writers. The handshake itself is awaited outside the
	executor so local actions keep queueing while it is in flight.
	"""

	def __init__(
		self,
		transport: DuplexTransport,
		*,
		executor: SerialExecutor,
		handler: EventHandler,
		feed: ChangeFeed,
		outbox: Optional[OutboundQueue] = None,
		sleep: Sleep = asyncio.sleep,
		base_delay: float = 1.0,
		max_delay: float = 30.0,
		max_attempts: int = 5,
		heartbeat_interval: float = 30.0,
		on_open: Optional[Hook] = None,
		on_lost: Optional[Hook] = None,
		on_transmitted: Optional[TransmitHook] = None,
	) -> None:
		self._transport = transport
		self._executor = executor
		self._handler = handler
		self._feed = feed
		self._outbox = outbox if outbox is not None else OutboundQueue()
		self._timers = TimerRegistry(sleep=sleep, name="connection")
		self._base_delay = base_delay
		self._max_delay = max_delay
		self._max_attempts = max_attempts
		self._heartbeat_interval = heartbeat_interval
		self._on_open_hook = on_open
		self._on_lost_hook = on_lost
		self._on_transmitted = on_transmitted
		self._state = ConnectionState.CLOSED
		self._attempts = 0
		self._lost = False
		self._torn_down = False
		transport.bind(on_frame=self.receive, on_close=self._transport_closed)

	@property
	def state(self) -> ConnectionState:
		return self._state

	@property
	def is_open(self) -> bool:
		return self._state is ConnectionState.OPEN

	@property
	def lost(self) -> bool:
		return self._lost

	@property
	def reconnect_attempts(self) -> int:
		return self._attempts

	@property
	def outbox(self) -> OutboundQueue:
		return self._outbox

	def snapshot(self) -> ConnectionSnapshot:
		return ConnectionSnapshot(
			state=self._state,
			reconnect_attempts=self._attempts,
			pending_actions=self._outbox.pending(),
			lost=self._lost,
		)

	# lifecycle -------------------------------------------------------------

	async def connect(self) -> None:
		"""Open the channel; a no-op while already open or connecting."""
		if await self._executor.submit(self._begin_connect, True):
			await self._handshake()

	async def close(self) -> None:
		"""Tear down: no timer fires and no reconnect happens afterwards."""
		self._torn_down = True
		await self._timers.close()
		if self._state is not ConnectionState.CLOSED:
			try:
				await self._transport.close()
			except TransportError as exc:
				logger.warning("transport close failed", extra={"error": str(exc)})
			self._set_state(ConnectionState.CLOSED)

	async def _begin_connect(self, explicit: bool) -> bool:
		if self._torn_down or self._state is not ConnectionState.CLOSED:
			return False
		if explicit:
			self._timers.cancel(_RECONNECT)
			if self._lost:
				self._lost = False
				self._attempts = 0
		elif self._lost:
			return False
		self._set_state(ConnectionState.CONNECTING)
		return True

	async def _handshake(self) -> None:
		try:
			await self._transport.open()
		except TransportError as exc:
			logger.warning("connection attempt failed", extra={"attempt": self._attempts, "error": str(exc)})
			await self._submit(self._on_closed, exc)
			return
		await self._submit(self._on_open)

	async def _on_open(self) -> None:
		if self._state is not ConnectionState.CONNECTING:
			return
		self._attempts = 0
		self._set_state(ConnectionState.OPEN)
		logger.info("connection open")
		await self._flush_outbox()
		if self._on_open_hook is not None and self.is_open:
			await self._on_open_hook()
		self._schedule_heartbeat()

	async def _transport_closed(self, exc: Optional[BaseException] = None) -> None:
		await self._submit(self._on_closed, exc)

	async def _on_closed(self, exc: Optional[BaseException] = None) -> None:
		self._timers.cancel(_HEARTBEAT)
		if self._state is ConnectionState.CLOSED:
			return
		self._set_state(ConnectionState.CLOSED)
		if self._torn_down:
			return
		logger.info("connection closed", extra={"error": str(exc) if exc else None})
		await self._schedule_reconnect()

	async def _schedule_reconnect(self) -> None:
		if self._lost:
			return
		if self._attempts >= self._max_attempts:
			await self._mark_lost()
			return
		self._attempts += 1
		delay = backoff_delay(self._attempts, self._base_delay, self._max_delay)
		obs_metrics.inc_reconnect_attempt()
		logger.info("reconnect scheduled", extra={"attempt": self._attempts, "delay_seconds": delay})
		self._feed.publish(ChangeKind.CONNECTION_CHANGED, snapshot=self.snapshot())
		self._timers.schedule(_RECONNECT, delay, self._reconnect)

	async def _reconnect(self) -> None:
		if await self._submit(self._begin_connect, False):
			await self._handshake()

	async def _mark_lost(self) -> None:
		self._lost = True
		obs_metrics.inc_connection_lost()
		logger.error("reconnection attempts exhausted", extra={"attempts": self._attempts})
		self._feed.publish(ChangeKind.CONNECTION_CHANGED, snapshot=self.snapshot())
		self._feed.notify(
			NotificationLevel.ERROR,
			"connection_lost",
			CONNECTION_LOST_MESSAGE,
			blocking=True,
			error=ConnectionLostError(f"gave up after {self._attempts} reconnect attempts"),
		)
		if self._on_lost_hook is not None:
			await self._on_lost_hook()

	# heartbeat -------------------------------------------------------------

	def _schedule_heartbeat(self) -> None:
		if self._heartbeat_interval > 0 and self.is_open:
			self._timers.schedule(_HEARTBEAT, self._heartbeat_interval, self._heartbeat_due)

	async def _heartbeat_due(self) -> None:
		await self._submit(self._heartbeat)

	async def _heartbeat(self) -> None:
		if not self.is_open:
			return
		if await self.send(OutboundAction.ping()):
			obs_metrics.inc_heartbeat()
		self._schedule_heartbeat()

	# outbound --------------------------------------------------------------

	async def send(self, action: OutboundAction) -> bool:
		"""Transmit now when open, otherwise buffer queueable actions.

		Returns ``True`` only when the action went out on the wire. Must run
		on the executor.
		"""
		if self.is_open:
			try:
				await self._transmit(action)
				return True
			except TransportError as exc:
				logger.warning("send failed, treating as disconnect", extra={"action": action.type.value})
				if action.queueable:
					self._outbox.enqueue(action)
				await self._on_closed(exc)
				return False
		if action.queueable:
			self._outbox.enqueue(action)
		else:
			logger.debug("transient action dropped while disconnected", extra={"action": action.type.value})
		return False

	async def _transmit(self, action: OutboundAction) -> None:
		await self._transport.send(action.to_frame())
		if self._on_transmitted is not None:
			await self._on_transmitted(action)

	async def _flush_outbox(self) -> None:
		actions = self._outbox.drain()
		for index, action in enumerate(actions):
			try:
				await self._transmit(action)
			except TransportError as exc:
				self._outbox.requeue_front(actions[index:])
				obs_metrics.inc_outbox_replayed(index)
				logger.warning("outbox replay interrupted", extra={"replayed": index, "remaining": len(actions) - index})
				await self._on_closed(exc)
				return
		if actions:
			obs_metrics.inc_outbox_replayed(len(actions))
			logger.info("outbox replayed", extra={"count": len(actions)})

	# inbound ---------------------------------------------------------------

	async def receive(self, frame: Any) -> None:
		"""Entry point for the transport: queue ``frame`` on the dispatch path."""
		try:
			await self._submit(self.dispatch, frame)
		except ExecutorClosedError:
			logger.debug("frame dropped after teardown")

	async def dispatch(self, frame: Any) -> None:
		try:
			event = decode_frame(frame)
		except MalformedFrameError as exc:
			obs_metrics.inc_discarded("malformed")
			logger.warning("malformed frame discarded", extra={"error": str(exc)})
			return
		if isinstance(event, UnknownEvent):
			obs_metrics.inc_discarded("unknown")
			logger.info("unknown event discarded", extra={"event_type": event.type})
			return
		obs_metrics.inc_inbound(event.type)
		try:
			await self._handler(event)
		except DuplicateEventError as exc:
			obs_metrics.inc_duplicate()
			logger.debug("duplicate event absorbed", extra={"message_id": exc.message_id})

	async def _submit(self, fn: Callable[..., Awaitable[Any]], *args: Any) -> Any:
		return await self._executor.submit(fn, *args)

	def _set_state(self, state: ConnectionState) -> None:
		if state is self._state:
			return
		self._state = state
		obs_metrics.set_connection_state(state.value)
		self._feed.publish(ChangeKind.CONNECTION_CHANGED, snapshot=self.snapshot())


__all__ = [
	"CONNECTION_LOST_MESSAGE",
	"ConnectionManager",
	"DuplexTransport",
	"backoff_delay",
]
