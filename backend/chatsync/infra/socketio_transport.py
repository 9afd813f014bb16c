"""Socket.IO implementation of the duplex transport."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import socketio
from socketio import exceptions as sio_exceptions

from chatsync.domain.chat.connection import CloseCallback, FrameCallback
from chatsync.domain.chat.errors import TransportError
from chatsync.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class SocketIOTransport:
	"""Carries ``{type, data}`` envelopes as Socket.IO events named by ``type``.

	The peer must be a Socket.IO server; a plain WebSocket endpoint that
	exchanges raw JSON frames cannot be reached through this adapter.
	The library's own reconnection is disabled; the connection manager decides
	when and how often to retry.
	"""

	def __init__(
		self,
		url: str,
		*,
		token: Optional[str] = None,
		path: str = "socket.io",
		namespace: str = "/",
		wait_timeout: float = 10.0,
		client: Optional[socketio.AsyncClient] = None,
	) -> None:
		self._url = url
		self._token = token
		self._path = path.strip("/") or "socket.io"
		self._namespace = namespace or "/"
		self._wait_timeout = wait_timeout
		self._client = client or socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
		self._on_frame: Optional[FrameCallback] = None
		self._on_close: Optional[CloseCallback] = None
		self._closing = False
		self._client.on("*", self._on_any, namespace=self._namespace)
		self._client.on("disconnect", self._on_disconnect, namespace=self._namespace)

	@classmethod
	def from_settings(cls, config: Optional[Settings] = None) -> "SocketIOTransport":
		config = config or default_settings
		return cls(
			config.socket_url,
			token=config.auth_token,
			path=config.socket_path,
			namespace=config.socket_namespace,
			wait_timeout=config.http_timeout_seconds,
		)

	@property
	def connected(self) -> bool:
		return bool(self._client.connected)

	def bind(self, *, on_frame: FrameCallback, on_close: CloseCallback) -> None:
		self._on_frame = on_frame
		self._on_close = on_close

	async def open(self) -> None:
		self._closing = False
		auth: Dict[str, Any] = {"token": self._token} if self._token else {}
		headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
		try:
			await self._client.connect(
				self._url,
				headers=headers,
				auth=auth or None,
				transports=["websocket"],
				namespaces=[self._namespace],
				socketio_path=self._path,
				wait_timeout=self._wait_timeout,
			)
		except sio_exceptions.SocketIOError as exc:
			raise TransportError(f"socket connect failed: {exc}") from exc
		logger.debug("socket connected", extra={"namespace": self._namespace})

	async def send(self, frame: Mapping[str, Any]) -> None:
		if not self._client.connected:
			raise TransportError("socket is not connected")
		try:
			await self._client.emit(str(frame["type"]), dict(frame.get("data") or {}), namespace=self._namespace)
		except sio_exceptions.SocketIOError as exc:
			raise TransportError(f"socket emit failed: {exc}") from exc

	async def close(self) -> None:
		self._closing = True
		try:
			await self._client.disconnect()
		except sio_exceptions.SocketIOError as exc:
			raise TransportError(f"socket disconnect failed: {exc}") from exc

	async def _on_any(self, event: str, *args: Any) -> None:
		if self._on_frame is None:
			return
		data = args[0] if args else {}
		if event == "message" and isinstance(data, Mapping) and "type" in data:
			await self._on_frame(dict(data))
			return
		await self._on_frame({"type": event, "data": data})

	async def _on_disconnect(self, *args: Any) -> None:
		if self._closing or self._on_close is None:
			return
		reason = args[0] if args else None
		logger.info("socket disconnected", extra={"reason": str(reason) if reason is not None else None})
		await self._on_close(TransportError(f"socket disconnected: {reason}") if reason is not None else None)


__all__ = ["SocketIOTransport"]
