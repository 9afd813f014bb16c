"""Side-channel client for the chat REST API."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
import pydantic

from chatsync.domain.chat.attachments import multipart_files
from chatsync.domain.chat.errors import SideChannelError
from chatsync.domain.chat.events import MessagePayload
from chatsync.domain.chat.models import DeliveryOption, OutgoingAttachment
from chatsync.domain.chat.schemas import (
	ConversationPayload,
	CreateConversationResponse,
	PostMessageResponse,
	SearchHit,
	UserPayload,
)
from chatsync.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ChatApiClient:
	"""Bearer-authenticated wrapper over ``httpx.AsyncClient``.

	Every non-2xx response, transport failure or unexpected body raises
	``SideChannelError``.
	"""

	def __init__(
		self,
		base_url: str,
		*,
		token: Optional[str] = None,
		timeout: float = 10.0,
		http: Optional[httpx.AsyncClient] = None,
	) -> None:
		headers = {"Accept": "application/json"}
		if token:
			headers["Authorization"] = f"Bearer {token}"
		self._owns_http = http is None
		self._http = http or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)
		self._headers = headers

	@classmethod
	def from_settings(cls, config: Optional[Settings] = None) -> "ChatApiClient":
		config = config or default_settings
		return cls(config.api_base_url, token=config.auth_token, timeout=config.http_timeout_seconds)

	async def aclose(self) -> None:
		if self._owns_http:
			await self._http.aclose()

	async def list_conversations(self) -> List[ConversationPayload]:
		body = await self._request("GET", "/conversations")
		return self._parse_list(ConversationPayload, body, "conversations")

	async def list_users(self) -> List[UserPayload]:
		body = await self._request("GET", "/users")
		return self._parse_list(UserPayload, body, "users")

	async def create_conversation(
		self,
		participant_ids: Iterable[str],
		*,
		is_group: bool = False,
		name: Optional[str] = None,
	) -> CreateConversationResponse:
		payload: Dict[str, Any] = {
			"participant_ids": [self._wire_id(value) for value in participant_ids],
			"is_group": is_group,
		}
		if name:
			payload["name"] = name
		body = await self._request("POST", "/conversations", json=payload)
		return self._parse(CreateConversationResponse, body)

	async def list_messages(self, conversation_id: str, *, limit: int = 50, offset: int = 0) -> List[MessagePayload]:
		body = await self._request(
			"GET",
			f"/conversations/{conversation_id}/messages",
			params={"limit": limit, "offset": offset},
		)
		rows = body if isinstance(body, list) else (body or {}).get("messages", [])
		# History rows omit the conversation id.
		return self._parse_list(
			MessagePayload,
			[{"conversation_id": conversation_id, **row} if isinstance(row, dict) else row for row in rows],
			"messages",
		)

	async def post_message(
		self,
		conversation_id: str,
		*,
		content: str,
		delivery: DeliveryOption = DeliveryOption.IMMEDIATE,
		attachments: Sequence[OutgoingAttachment] = (),
		client_msg_id: Optional[str] = None,
	) -> PostMessageResponse:
		data = {"content": content, "scheduled_delivery": delivery.value}
		if client_msg_id:
			data["client_msg_id"] = client_msg_id
		files = multipart_files(attachments)
		if files:
			body = await self._request("POST", f"/conversations/{conversation_id}/messages", data=data, files=files)
		else:
			body = await self._request("POST", f"/conversations/{conversation_id}/messages", json=data)
		return self._parse(PostMessageResponse, body)

	async def mark_message_read(self, message_id: str) -> None:
		await self._request("PUT", f"/messages/{message_id}/read")

	async def delete_message(self, message_id: str) -> None:
		await self._request("DELETE", f"/messages/{message_id}")

	async def archive_message(self, message_id: str) -> None:
		await self._request("PUT", f"/messages/{message_id}/archive")

	async def delete_conversation(self, conversation_id: str) -> None:
		await self._request("DELETE", f"/conversations/{conversation_id}")

	async def search_messages(self, conversation_id: str, query: str) -> List[SearchHit]:
		body = await self._request("GET", "/search", params={"conversationId": conversation_id, "q": query})
		rows = body if isinstance(body, list) else (body or {}).get("results", [])
		return self._parse_list(SearchHit, rows, "search results")

	async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
		try:
			response = await self._http.request(method, path, headers=self._headers, **kwargs)
		except httpx.HTTPError as exc:
			logger.warning("side channel request failed", extra={"method": method, "path": path, "error": str(exc)})
			raise SideChannelError(f"{method} {path} failed: {exc}") from exc
		if response.status_code >= 400:
			detail = self._error_detail(response)
			logger.warning(
				"side channel request rejected",
				extra={"method": method, "path": path, "status_code": response.status_code},
			)
			raise SideChannelError(detail, status_code=response.status_code)
		if not response.content:
			return None
		try:
			return response.json()
		except ValueError as exc:
			raise SideChannelError(f"{method} {path} returned invalid JSON", status_code=response.status_code) from exc

	@staticmethod
	def _error_detail(response: httpx.Response) -> str:
		try:
			body = response.json()
		except ValueError:
			return f"request failed with status {response.status_code}"
		if isinstance(body, dict):
			for key in ("error", "message", "detail"):
				if body.get(key):
					return str(body[key])
		return f"request failed with status {response.status_code}"

	@staticmethod
	def _parse(model, body: Any):
		try:
			return model.model_validate(body or {})
		except pydantic.ValidationError as exc:
			raise SideChannelError(f"unexpected {model.__name__} payload") from exc

	@classmethod
	def _parse_list(cls, model, rows: Any, what: str) -> list:
		if not isinstance(rows, list):
			raise SideChannelError(f"expected a list of {what}")
		return [cls._parse(model, row) for row in rows]

	@staticmethod
	def _wire_id(value: str) -> Any:
		text = str(value)
		return int(text) if text.isdigit() else text


__all__ = ["ChatApiClient"]
