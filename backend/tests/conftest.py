import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from chatsync.domain.chat.errors import SideChannelError, TransportError
from chatsync.domain.chat.events import MessagePayload
from chatsync.domain.chat.schemas import (
	ConversationPayload,
	CreateConversationResponse,
	PostMessageResponse,
	SearchHit,
	UserPayload,
)
from chatsync.domain.chat.session import ChatSession
from chatsync.settings import settings

_real_sleep = asyncio.sleep

LOCAL_USER = "1"


async def settle(rounds: int = 50) -> None:
	"""Let queued tasks and executor jobs run."""
	for _ in range(rounds):
		await _real_sleep(0)


class FakeTransport:
	"""In-memory duplex transport; tests push frames and drops by hand."""

	def __init__(self, *, fail_opens: int = 0, always_fail: bool = False) -> None:
		self.sent: List[Dict[str, Any]] = []
		self.open_calls = 0
		self.close_calls = 0
		self.connected = False
		self.fail_opens = fail_opens
		self.always_fail = always_fail
		self.fail_sends = False
		self._on_frame = None
		self._on_close = None

	def bind(self, *, on_frame, on_close) -> None:
		self._on_frame = on_frame
		self._on_close = on_close

	async def open(self) -> None:
		self.open_calls += 1
		if self.always_fail or self.fail_opens > 0:
			self.fail_opens = max(0, self.fail_opens - 1)
			raise TransportError("connection refused")
		self.connected = True

	async def send(self, frame) -> None:
		if not self.connected or self.fail_sends:
			raise TransportError("socket is not connected")
		self.sent.append({"type": frame["type"], "data": dict(frame["data"])})

	async def close(self) -> None:
		self.close_calls += 1
		self.connected = False

	async def push(self, event_type: str, **data: Any) -> None:
		await self._on_frame({"type": event_type, "data": data})

	async def push_raw(self, frame: Any) -> None:
		await self._on_frame(frame)

	async def drop(self) -> None:
		self.connected = False
		await self._on_close(TransportError("connection reset"))

	def sent_types(self) -> List[str]:
		return [frame["type"] for frame in self.sent]

	def sent_of(self, event_type: str) -> List[Dict[str, Any]]:
		return [frame["data"] for frame in self.sent if frame["type"] == event_type]


class RecordingSleep:
	"""Stand-in for ``asyncio.sleep`` that records every requested delay.

	With ``instant=True`` it only yields once. Otherwise each call parks until
	``release()`` so timers fire exactly when a test says so.
	"""

	def __init__(self, *, instant: bool = True) -> None:
		self.delays: List[float] = []
		self.instant = instant
		self._parked: List[asyncio.Future] = []

	async def __call__(self, delay: float) -> None:
		self.delays.append(delay)
		if self.instant:
			await _real_sleep(0)
			return
		future = asyncio.get_running_loop().create_future()
		self._parked.append(future)
		await future

	@property
	def parked(self) -> int:
		return sum(1 for future in self._parked if not future.done())

	async def release(self) -> None:
		await settle()
		parked, self._parked = self._parked, []
		for future in parked:
			if not future.done():
				future.set_result(None)
		await settle()


class ManualClock:
	def __init__(self, start: float = 1000.0) -> None:
		self.now = start

	def __call__(self) -> float:
		return self.now

	def advance(self, seconds: float) -> None:
		self.now += seconds


class FakeChatApi:
	"""Side channel double that records calls and serves canned rows."""

	def __init__(self, conversations: Optional[List[Dict[str, Any]]] = None) -> None:
		self.conversation_rows: List[Dict[str, Any]] = list(conversations or [])
		self.history: Dict[str, List[Dict[str, Any]]] = {}
		self.users: List[Dict[str, Any]] = []
		self.search_rows: List[Dict[str, Any]] = []
		self.posted: List[Dict[str, Any]] = []
		self.post_response: Dict[str, Any] = {"id": 900, "scheduled_delivery": None}
		self.post_error: Optional[SideChannelError] = None
		self.history_calls: List[Dict[str, Any]] = []
		self.deleted_messages: List[str] = []
		self.archived_messages: List[str] = []
		self.deleted_conversations: List[str] = []
		self.created: List[Dict[str, Any]] = []
		self.next_conversation_id = 99

	async def list_conversations(self) -> List[ConversationPayload]:
		return [ConversationPayload.model_validate(row) for row in self.conversation_rows]

	async def list_users(self) -> List[UserPayload]:
		return [UserPayload.model_validate(row) for row in self.users]

	async def create_conversation(self, participant_ids, *, is_group=False, name=None) -> CreateConversationResponse:
		new_id = self.next_conversation_id
		self.created.append({"participant_ids": list(participant_ids), "is_group": is_group, "name": name})
		self.conversation_rows.append(
			{
				"id": new_id,
				"display_name": name or "New chat",
				"is_group": is_group,
				"participants": [int(LOCAL_USER), *[int(value) for value in participant_ids]],
			}
		)
		return CreateConversationResponse(id=str(new_id))

	async def list_messages(self, conversation_id, *, limit=50, offset=0) -> List[MessagePayload]:
		self.history_calls.append({"conversation_id": conversation_id, "limit": limit, "offset": offset})
		rows = self.history.get(str(conversation_id), [])
		end = max(0, len(rows) - offset)
		page = rows[max(0, end - limit):end]
		return [MessagePayload.model_validate({"conversation_id": conversation_id, **row}) for row in page]

	async def post_message(self, conversation_id, *, content, delivery, attachments=(), client_msg_id=None) -> PostMessageResponse:
		self.posted.append(
			{
				"conversation_id": conversation_id,
				"content": content,
				"delivery": delivery,
				"attachments": list(attachments),
				"client_msg_id": client_msg_id,
			}
		)
		if self.post_error is not None:
			raise self.post_error
		return PostMessageResponse.model_validate(self.post_response)

	async def delete_message(self, message_id) -> None:
		self.deleted_messages.append(str(message_id))

	async def archive_message(self, message_id) -> None:
		self.archived_messages.append(str(message_id))

	async def delete_conversation(self, conversation_id) -> None:
		self.deleted_conversations.append(str(conversation_id))

	async def search_messages(self, conversation_id, query) -> List[SearchHit]:
		return [SearchHit.model_validate(row) for row in self.search_rows]


def conversation_row(conversation_id: int, *, name: str = "Alice", group: bool = False, participants=(1, 2)) -> Dict[str, Any]:
	return {
		"id": conversation_id,
		"display_name": name,
		"is_group": 1 if group else 0,
		"participants": list(participants),
		"unread_count": 0,
	}


@pytest.fixture
def test_settings():
	return settings.model_copy(
		update={
			"heartbeat_interval_seconds": 0.0,
			"ack_timeout_seconds": 0.0,
			"reconnect_base_delay_ms": 1000,
			"reconnect_max_delay_ms": 30000,
			"reconnect_max_attempts": 5,
			"typing_debounce_seconds": 2.0,
			"typing_ttl_seconds": 6.0,
			"history_page_size": 50,
		}
	)


@pytest.fixture
def transport():
	return FakeTransport()


@pytest.fixture
def flush():
	return settle


@pytest.fixture
def make_transport():
	return FakeTransport


@pytest.fixture
def fake_api():
	return FakeChatApi(
		[
			conversation_row(7, name="Alice", participants=(1, 2)),
			conversation_row(8, name="Bob", participants=(1, 3)),
			conversation_row(9, name="Team", group=True, participants=(1, 2, 3)),
		]
	)


@pytest.fixture
def recording_sleep():
	return RecordingSleep(instant=False)


@pytest.fixture
def clock():
	return ManualClock()


@pytest_asyncio.fixture
async def make_session(transport, fake_api, test_settings, recording_sleep, clock):
	"""Build sessions over the fakes; every session is closed after the test."""
	created: List[ChatSession] = []
	counter = {"value": 0}

	def _ids() -> str:
		counter["value"] += 1
		return f"tmp-{counter['value']}"

	def _make(*, config=None, sleep=None, api=None, duplex=None, **overrides) -> ChatSession:
		config = config or test_settings
		if overrides:
			config = config.model_copy(update=overrides)
		session = ChatSession(
			transport=duplex or transport,
			api=api or fake_api,
			local_user_id=LOCAL_USER,
			config=config,
			sleep=sleep or recording_sleep,
			clock=clock,
			id_factory=_ids,
		)
		created.append(session)
		return session

	yield _make
	for session in created:
		await session.close()


@pytest_asyncio.fixture
async def session(make_session, transport):
	"""A started session (conversations loaded, channel open) with 7 selected."""
	chat = make_session()
	await chat.start()
	await chat.select_conversation(7)
	transport.sent.clear()
	return chat
