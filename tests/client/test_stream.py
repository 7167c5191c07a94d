"""Tests for the stream lifecycle manager."""

import asyncio
from contextlib import asynccontextmanager

import pytest

from kestrel_chat.client.stream import StreamLifecycleManager, StreamState
from kestrel_chat.core.events import RawEvent


def event(name):
    return RawEvent(event_type=name, data={"type": name, "properties": {}})


class ScriptedSource:
    """Each connection takes the next script entry: a list of events, or an exception to raise.

    Once the script runs out, connections hang until closed.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.opened = 0
        self.closed = 0
        self.connected = asyncio.Event()

    @asynccontextmanager
    async def _connect(self):
        self.opened += 1
        step = self.script.pop(0) if self.script else None
        if isinstance(step, Exception):
            raise step

        async def events():
            for item in step or []:
                yield item
            if step is None:
                await asyncio.Event().wait()

        self.connected.set()
        try:
            yield events()
        finally:
            self.closed += 1

    def __call__(self):
        return self._connect()


class Statuses(list):
    def __call__(self, state, error):
        self.append((state, error))


class TestStreamLifecycle:
    @pytest.mark.asyncio
    async def test_events_in_order_then_give_up(self):
        source = ScriptedSource([event("a"), event("b"), event("c")], ConnectionError("refused"))
        received = []
        statuses = Statuses()
        manager = StreamLifecycleManager(
            source,
            lambda e: received.append(e.type),
            reconnect_delay=0,
            max_reconnect_attempts=1,
            on_status=statuses,
        )

        await manager.start()
        await asyncio.wait_for(manager.wait(), timeout=2)

        assert received == ["a", "b", "c"]
        assert manager.connect_count == 1
        assert manager.gave_up
        assert manager.state == StreamState.DISCONNECTED
        assert statuses == [
            (StreamState.CONNECTING, None),
            (StreamState.CONNECTED, None),
            (StreamState.DISCONNECTED, None),
            (StreamState.CONNECTING, None),
            (StreamState.DISCONNECTED, None),
            (StreamState.DISCONNECTED, "Event stream unavailable after 1 attempts"),
        ]

    @pytest.mark.asyncio
    async def test_successful_connect_resets_failures(self):
        source = ScriptedSource(
            ConnectionError("1"), [event("a")], ConnectionError("2"), ConnectionError("3")
        )
        manager = StreamLifecycleManager(source, lambda e: None, reconnect_delay=0, max_reconnect_attempts=2)

        await manager.start()
        await asyncio.wait_for(manager.wait(), timeout=2)

        assert source.opened == 4
        assert manager.connect_count == 1

    @pytest.mark.asyncio
    async def test_stop_closes_subscription(self):
        source = ScriptedSource()
        manager = StreamLifecycleManager(source, lambda e: None, reconnect_delay=0)

        await manager.start()
        await asyncio.wait_for(source.connected.wait(), timeout=2)
        assert manager.state == StreamState.CONNECTED
        assert manager.is_running

        await manager.stop()

        assert manager.state == StreamState.DISCONNECTED
        assert not manager.is_running
        assert source.closed == 1
        assert not manager.gave_up

    @pytest.mark.asyncio
    async def test_double_start_keeps_one_subscription(self):
        source = ScriptedSource()
        manager = StreamLifecycleManager(source, lambda e: None)

        await manager.start()
        await manager.start()
        await asyncio.wait_for(source.connected.wait(), timeout=2)

        assert source.opened == 1
        await manager.stop()

    @pytest.mark.asyncio
    async def test_restart_opens_new_subscription(self):
        source = ScriptedSource()
        manager = StreamLifecycleManager(source, lambda e: None)

        await manager.start()
        await asyncio.wait_for(source.connected.wait(), timeout=2)
        source.connected.clear()

        await manager.restart()
        await asyncio.wait_for(source.connected.wait(), timeout=2)

        assert source.opened == 2
        assert source.closed == 1
        await manager.stop()

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_stop_stream(self, caplog):
        source = ScriptedSource([event("bad"), event("good")], ConnectionError("gone"))
        received = []

        def on_event(e):
            if e.type == "bad":
                raise ValueError("render bug")
            received.append(e.type)

        manager = StreamLifecycleManager(source, on_event, reconnect_delay=0, max_reconnect_attempts=1)
        await manager.start()
        await asyncio.wait_for(manager.wait(), timeout=2)

        assert received == ["good"]
        assert "render bug" in caplog.text

    def test_invalid_transition(self):
        manager = StreamLifecycleManager(ScriptedSource(), lambda e: None)
        result = manager._transition(StreamState.CONNECTED)
        assert result.is_err()
        assert result.code == "INVALID_TRANSITION"
        assert manager.state == StreamState.DISCONNECTED
