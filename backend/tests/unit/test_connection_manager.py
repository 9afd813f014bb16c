import pytest
import pytest_asyncio

from chatsync.domain.chat.changes import ChangeFeed, ChangeKind, RecordingListener
from chatsync.domain.chat.connection import CONNECTION_LOST_MESSAGE, ConnectionManager, backoff_delay
from chatsync.domain.chat.errors import ConnectionLostError, DuplicateEventError
from chatsync.domain.chat.events import NewMessage, OutboundAction
from chatsync.domain.chat.models import ConnectionState
from chatsync.infra.serial import SerialExecutor


class Harness:
    def __init__(self, manager, executor, transport, listener, handled, hooks):
        self.manager = manager
        self.executor = executor
        self.transport = transport
        self.listener = listener
        self.handled = handled
        self.hooks = hooks


@pytest_asyncio.fixture
async def build(make_transport, recording_sleep):
    created = []

    def _build(*, transport=None, heartbeat_interval=0.0, max_attempts=5, handler=None):
        transport = transport or make_transport()
        executor = SerialExecutor(name="connection-test")
        feed = ChangeFeed()
        listener = RecordingListener()
        feed.subscribe(listener)
        handled = []
        hooks = []

        async def _handle(event):
            handled.append(event)

        async def _on_open():
            hooks.append("open")

        async def _on_lost():
            hooks.append("lost")

        async def _on_transmitted(action):
            hooks.append(f"sent:{action.type.value}")

        manager = ConnectionManager(
            transport,
            executor=executor,
            handler=handler or _handle,
            feed=feed,
            sleep=recording_sleep,
            base_delay=1.0,
            max_delay=30.0,
            max_attempts=max_attempts,
            heartbeat_interval=heartbeat_interval,
            on_open=_on_open,
            on_lost=_on_lost,
            on_transmitted=_on_transmitted,
        )
        created.append((manager, executor))
        return Harness(manager, executor, transport, listener, handled, hooks)

    yield _build
    for manager, executor in created:
        await manager.close()
        await executor.close()


def test_backoff_doubles_and_caps():
    delays = [backoff_delay(attempt, 1.0, 30.0) for attempt in range(1, 9)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]
    assert all(earlier <= later for earlier, later in zip(delays, delays[1:]))
    with pytest.raises(ValueError):
        backoff_delay(0, 1.0, 30.0)


@pytest.mark.asyncio
async def test_connect_opens_and_runs_open_hook(build):
    harness = build()

    await harness.manager.connect()

    assert harness.manager.state is ConnectionState.OPEN
    assert harness.manager.reconnect_attempts == 0
    assert harness.hooks == ["open"]
    # Connecting again while open is a no-op.
    await harness.manager.connect()
    assert harness.transport.open_calls == 1


@pytest.mark.asyncio
async def test_unreachable_server_retries_with_backoff_then_reports_lost_once(build, make_transport, recording_sleep):
    harness = build(transport=make_transport(always_fail=True))

    await harness.manager.connect()
    for _ in range(10):
        await recording_sleep.release()

    assert recording_sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert harness.transport.open_calls == 6
    assert harness.manager.lost
    assert harness.manager.state is ConnectionState.CLOSED
    lost = harness.listener.notifications("connection_lost")
    assert len(lost) == 1
    assert lost[0].blocking
    assert lost[0].message == CONNECTION_LOST_MESSAGE
    lost_change = [change for change in harness.listener.of_kind(ChangeKind.NOTIFICATION) if change.payload["notification"].code == "connection_lost"][0]
    assert isinstance(lost_change.payload["error"], ConnectionLostError)
    assert harness.hooks == ["lost"]


@pytest.mark.asyncio
async def test_successful_reconnect_resets_attempts(build, make_transport, recording_sleep):
    harness = build(transport=make_transport(fail_opens=2))

    await harness.manager.connect()
    await recording_sleep.release()
    await recording_sleep.release()

    assert recording_sleep.delays == [1.0, 2.0]
    assert harness.manager.is_open
    assert harness.manager.reconnect_attempts == 0


@pytest.mark.asyncio
async def test_explicit_connect_after_lost_starts_over(build, make_transport, recording_sleep):
    transport = make_transport(always_fail=True)
    harness = build(transport=transport, max_attempts=1)
    await harness.manager.connect()
    await recording_sleep.release()
    assert harness.manager.lost

    transport.always_fail = False
    await harness.manager.connect()

    assert harness.manager.is_open
    assert not harness.manager.lost


@pytest.mark.asyncio
async def test_actions_buffered_while_closed_are_replayed_in_order(build, recording_sleep):
    harness = build()
    await harness.manager.connect()
    await harness.transport.drop()
    executor_submit = harness.executor.submit

    first = OutboundAction.send_message("7", "A", client_msg_id="a")
    second = OutboundAction.send_message("7", "B", client_msg_id="b")
    assert await executor_submit(harness.manager.send, first) is False
    assert await executor_submit(harness.manager.send, OutboundAction.typing_start("7")) is False
    assert await executor_submit(harness.manager.send, second) is False
    assert len(harness.manager.outbox) == 2

    await recording_sleep.release()

    assert harness.manager.is_open
    assert harness.transport.sent_types() == ["send_message", "send_message"]
    assert [frame["content"] for frame in harness.transport.sent_of("send_message")] == ["A", "B"]
    assert len(harness.manager.outbox) == 0
    # Replay happens before the open hook rejoins anything.
    assert harness.hooks == ["open", "sent:send_message", "sent:send_message", "open"]


@pytest.mark.asyncio
async def test_send_failure_while_open_buffers_and_reconnects(build, recording_sleep):
    harness = build()
    await harness.manager.connect()
    harness.transport.fail_sends = True

    action = OutboundAction.send_message("7", "A", client_msg_id="a")
    delivered = await harness.executor.submit(harness.manager.send, action)

    assert delivered is False
    assert harness.manager.state is ConnectionState.CLOSED
    assert harness.manager.outbox.pending() == (action,)

    harness.transport.fail_sends = False
    await recording_sleep.release()

    assert harness.transport.sent_of("send_message") == [action.data]


@pytest.mark.asyncio
async def test_heartbeat_pings_while_open(build, recording_sleep):
    harness = build(heartbeat_interval=30.0)
    await harness.manager.connect()

    await recording_sleep.release()
    await recording_sleep.release()

    assert harness.transport.sent_types() == ["ping", "ping"]
    assert recording_sleep.delays == [30.0, 30.0, 30.0]


@pytest.mark.asyncio
async def test_close_cancels_timers_and_never_reconnects(build, recording_sleep):
    harness = build(heartbeat_interval=30.0)
    await harness.manager.connect()
    await harness.transport.drop()

    await harness.manager.close()
    await recording_sleep.release()

    assert harness.manager.state is ConnectionState.CLOSED
    assert harness.transport.open_calls == 1
    assert harness.transport.sent == []
    assert harness.manager._timers.keys() == ()


@pytest.mark.asyncio
async def test_dispatch_discards_malformed_and_unknown_frames(build):
    harness = build()
    await harness.manager.connect()

    await harness.transport.push_raw("{broken")
    await harness.transport.push("poll_created", id=1)
    await harness.transport.push("new_message", id=5, conversationId=7, senderId=2, content="hi")

    assert len(harness.handled) == 1
    assert isinstance(harness.handled[0], NewMessage)


@pytest.mark.asyncio
async def test_dispatch_absorbs_duplicate_events(build):
    async def _duplicate(event):
        raise DuplicateEventError("5")

    harness = build(handler=_duplicate)
    await harness.manager.connect()

    await harness.transport.push("new_message", id=5, conversationId=7, senderId=2, content="hi")

    assert harness.manager.is_open
