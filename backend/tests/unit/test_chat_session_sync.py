import json
import logging

import pytest

from chatsync.domain.chat.changes import ChangeKind, NotificationLevel, RecordingListener
from chatsync.domain.chat.errors import ConversationNotFoundError, SideChannelError, ValidationError
from chatsync.domain.chat.models import ConnectionState, DeliveryStatus
from chatsync.obs import logging as obs_logging


@pytest.mark.asyncio
async def test_start_loads_conversations_and_opens_the_channel(make_session, transport):
    chat = make_session()
    listener = RecordingListener()
    chat.subscribe(listener)

    await chat.start()

    assert {item.conversation_id for item in chat.conversations} == {"7", "8", "9"}
    assert chat.conversation(9).is_group
    assert chat.conversation(7).participant_ids == {"1", "2"}
    assert chat.connection.state is ConnectionState.OPEN
    assert listener.of_kind(ChangeKind.CONVERSATIONS_LOADED)
    assert transport.open_calls == 1


@pytest.mark.asyncio
async def test_selecting_joins_and_loads_history(make_session, transport, fake_api):
    fake_api.history["8"] = [
        {"id": 1, "sender_id": 3, "content": "one", "created_at": "2024-05-01T10:00:00Z"},
        {"id": 2, "sender_id": 1, "content": "two", "created_at": "2024-05-01T10:01:00Z", "is_read": 1},
        {"id": 3, "sender_id": 1, "content": "three", "created_at": "2024-05-01T10:02:00Z", "is_read": 0, "attachments": None},
    ]
    chat = make_session(history_page_size=2)
    await chat.start()

    await chat.select_conversation(8)

    assert chat.active_conversation_id == "8"
    assert transport.sent_of("join_conversation") == [{"conversationId": "8"}]
    assert [item.message_id for item in chat.messages(8)] == ["2", "3"]
    assert [item.delivery_status for item in chat.messages(8)] == [DeliveryStatus.READ, DeliveryStatus.SENT]

    assert await chat.load_older_messages(8) == 1
    assert await chat.load_older_messages(8) == 0

    messages = chat.messages(8)
    assert [item.message_id for item in messages] == ["1", "2", "3"]
    assert messages[0].delivery_status is DeliveryStatus.DELIVERED
    assert [call["offset"] for call in fake_api.history_calls] == [0, 2]


@pytest.mark.asyncio
async def test_history_failure_is_reported_not_raised(make_session, fake_api):
    async def _broken(conversation_id, *, limit=50, offset=0):
        raise SideChannelError("boom", status_code=500)

    fake_api.list_messages = _broken
    chat = make_session()
    listener = RecordingListener()
    chat.subscribe(listener)
    await chat.start()

    await chat.select_conversation(7)

    assert chat.active_conversation_id == "7"
    assert listener.notifications("history_failed")[0].level is NotificationLevel.ERROR


@pytest.mark.asyncio
async def test_selecting_unknown_conversation_raises(session):
    with pytest.raises(ConversationNotFoundError):
        await session.select_conversation(404)
    assert session.active_conversation_id == "7"


@pytest.mark.asyncio
async def test_remote_message_in_active_conversation_is_marked_read(session, transport):
    await transport.push("new_message", id=700, conversationId=7, senderId=2, senderName="Alice", content="hey")

    message = session.messages(7)[-1]
    assert message.delivery_status is DeliveryStatus.DELIVERED
    assert session.conversation(7).unread_count == 0
    assert transport.sent_of("mark_read") == [{"messageId": "700"}]


@pytest.mark.asyncio
async def test_remote_message_elsewhere_counts_unread_and_notifies(session, transport):
    listener = RecordingListener()
    session.subscribe(listener)

    await transport.push("new_message", id=701, conversationId=8, senderId=3, senderName="Bob", content="ping")

    assert session.conversation(8).unread_count == 1
    assert session.conversation(8).last_message_preview == "ping"
    assert session.conversations[0].conversation_id == "8"
    notice = listener.notifications("new_message")
    assert notice[0].message == "New message from Bob"
    assert notice[0].level is NotificationLevel.INFO
    assert transport.sent_of("mark_read") == []


@pytest.mark.asyncio
async def test_mark_read_clears_unread_and_acknowledges_latest(session, transport):
    await transport.push("new_message", id=701, conversationId=8, senderId=3, content="one")
    await transport.push("new_message", id=702, conversationId=8, senderId=3, content="two")
    assert session.conversation(8).unread_count == 2

    await session.mark_read(8)

    assert session.conversation(8).unread_count == 0
    assert transport.sent_of("mark_read") == [{"messageId": "702"}]


@pytest.mark.asyncio
async def test_remote_typing_indicator_cleared_by_their_message(session, transport):
    await transport.push("user_typing", conversationId=7, userId=2, userName="Alice")
    await transport.push("user_typing", conversationId=8, userId=3, userName="Bob")

    assert session.typing_users(7) == ["2"]
    assert session.typing_users(8) == []

    await transport.push("new_message", id=700, conversationId=7, senderId=2, content="done typing")

    assert session.typing_users(7) == []


@pytest.mark.asyncio
async def test_typing_accessor_hides_stale_indicators_without_publishing(session, transport, clock):
    listener = RecordingListener()
    session.subscribe(listener)
    await transport.push("user_typing", conversationId=7, userId=2)
    published = len(listener.of_kind(ChangeKind.TYPING_CHANGED))
    clock.advance(10)

    assert session.typing_users(7) == []
    assert len(listener.of_kind(ChangeKind.TYPING_CHANGED)) == published


@pytest.mark.asyncio
async def test_remote_typing_stop_event(session, transport):
    await transport.push("user_typing", conversationId=7, userId=2)
    await transport.push("user_stopped_typing", conversationId=7, userId=2)

    assert session.typing_users(7) == []


@pytest.mark.asyncio
async def test_switching_conversation_stops_local_typing(session, transport):
    await session.keystroke()

    await session.select_conversation(8)

    assert transport.sent_types() == ["typing_start", "typing_stop", "join_conversation"]
    assert transport.sent_of("typing_stop") == [{"conversationId": "7"}]


@pytest.mark.asyncio
async def test_user_status_updates_one_to_one_conversations(session, transport):
    await transport.push("user_status_changed", userId=2, status="online")

    assert session.conversation(7).online_status == {"2": "online"}
    assert session.conversation(9).online_status == {}


@pytest.mark.asyncio
async def test_deleted_conversation_ignores_later_events(session, transport, fake_api):
    listener = RecordingListener()
    session.subscribe(listener)
    await transport.drop()
    await session.send("queued")

    await session.delete_conversation(7)

    assert fake_api.deleted_conversations == ["7"]
    assert session.conversation(7) is None
    assert session.active_conversation_id is None
    assert session.connection.pending_actions == ()
    assert listener.notifications("conversation_deleted")[0].level is NotificationLevel.SUCCESS

    await transport.push("new_message", id=900, conversationId=7, senderId=2, content="late")
    assert session.conversation(7) is None
    assert session.messages(7) == []


@pytest.mark.asyncio
async def test_create_conversation_selects_it(session, transport, fake_api):
    conversation = await session.create_conversation([3], name="Project")

    assert conversation.conversation_id == "99"
    assert fake_api.created == [{"participant_ids": ["3"], "is_group": False, "name": "Project"}]
    assert session.active_conversation_id == "99"
    assert transport.sent_of("join_conversation") == [{"conversationId": "99"}]


@pytest.mark.asyncio
async def test_create_conversation_validates_input(session, fake_api):
    with pytest.raises(ValidationError):
        await session.create_conversation([])
    with pytest.raises(ValidationError):
        await session.create_conversation([2, 3], is_group=True, name="  ")
    assert fake_api.created == []


@pytest.mark.asyncio
async def test_delete_and_archive_remove_messages(session, transport, fake_api):
    await transport.push("new_message", id=700, conversationId=7, senderId=2, content="a")
    await transport.push("new_message", id=701, conversationId=7, senderId=2, content="b")

    await session.delete_message(700)
    await session.archive_message(701)

    assert fake_api.deleted_messages == ["700"]
    assert fake_api.archived_messages == ["701"]
    assert session.messages(7) == []


@pytest.mark.asyncio
async def test_search_messages(session, fake_api):
    fake_api.search_rows = [{"id": 5, "conversationId": 7, "senderId": 2, "content": "hello there"}]

    hits = await session.search_messages(7, "  hello ")

    assert [hit.message_id for hit in hits] == ["5"]
    with pytest.raises(ValidationError):
        await session.search_messages(7, "   ")


@pytest.mark.asyncio
async def test_sessions_are_independent(make_session, make_transport):
    first_transport, second_transport = make_transport(), make_transport()
    first = make_session(duplex=first_transport)
    second = make_session(duplex=second_transport)
    await first.start()
    await second.start()
    await first.select_conversation(7)
    await second.select_conversation(7)

    await first_transport.push("new_message", id=700, conversationId=7, senderId=2, content="only first")

    assert len(first.messages(7)) == 1
    assert second.messages(7) == []
    assert first.session_id != second.session_id


@pytest.mark.asyncio
async def test_close_stops_everything(session, transport, recording_sleep):
    await transport.drop()

    await session.close()
    await recording_sleep.release()
    await transport.push("new_message", id=700, conversationId=7, senderId=2, content="after close")

    assert session.connection.state is ConnectionState.CLOSED
    assert transport.open_calls == 1
    assert session.messages(7) == []


@pytest.mark.asyncio
async def test_history_requests_log_with_the_conversation_bound(make_session, fake_api):
    formatter = obs_logging.JSONLogFormatter()
    seen = []
    list_messages = fake_api.list_messages

    async def recording_list_messages(conversation_id, **kwargs):
        record = logging.LogRecord("chatsync.test", logging.INFO, __file__, 1, "history", None, None)
        seen.append(json.loads(formatter.format(record)).get("conversation_id"))
        return await list_messages(conversation_id, **kwargs)

    fake_api.list_messages = recording_list_messages
    chat = make_session()
    await chat.start()
    await chat.select_conversation(8)

    assert seen == ["8"]
