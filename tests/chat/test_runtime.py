"""Tests for ChatRuntime against an in-memory backend."""

import asyncio
from contextlib import asynccontextmanager

import pytest

from kestrel_chat.chat.permissions import PermissionQueue
from kestrel_chat.chat.runtime import ChatRuntime
from kestrel_chat.client.stream import StreamState
from kestrel_chat.core.exceptions import PermissionResponseError
from kestrel_chat.core.models import FileAttachment, SessionInfo
from kestrel_chat.core.session_status import SessionStatus
from kestrel_chat.core.settings import Settings


class FakeBackend:
    """Records calls; ``fail[name]`` makes that call raise."""

    def __init__(self, sessions=None, history=None, permissions=None):
        self.sessions = sessions if sessions is not None else [SessionInfo(id="ses_1")]
        self.history = history or {}
        self.pending_permissions = permissions or []
        self.calls = []
        self.fail = {}
        self.connections = []
        self.hold_open = asyncio.Event()

    def _record(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        if name in self.fail:
            raise self.fail[name]

    def called(self, name):
        return [call for call in self.calls if call[0] == name]

    async def list_sessions(self, project_id):
        self._record("list_sessions", project_id)
        return list(self.sessions)

    async def create_session(self, project_id, title=None):
        self._record("create_session", project_id)
        return SessionInfo(id="ses_new")

    async def list_messages(self, project_id, session_id):
        self._record("list_messages", project_id, session_id)
        return list(self.history.get(session_id, []))

    async def send_message(self, project_id, session_id, parts, agent=None, model=None):
        self._record("send_message", project_id, session_id, parts, agent=agent, model=model)

    async def abort_session(self, project_id, session_id):
        self._record("abort_session", project_id, session_id)

    async def revert_message(self, project_id, session_id, message_id):
        self._record("revert_message", project_id, session_id, message_id)

    async def respond_to_permission(self, project_id, session_id, permission_id, response):
        self._record("respond_to_permission", project_id, session_id, permission_id, response)

    async def list_permissions(self, project_id, session_id):
        self._record("list_permissions", project_id, session_id)
        return list(self.pending_permissions)

    @asynccontextmanager
    async def _open_stream(self):
        self._record("event_stream")
        events = self.connections.pop(0) if self.connections else []

        async def iterate():
            for event in events:
                yield event
            await self.hold_open.wait()

        yield iterate()

    def event_stream(self, project_id):
        return self._open_stream()


def entry(message_id, role, text=None, session_id="ses_1", **info):
    parts = [{"type": "text", "id": f"prt_{message_id}", "text": text}] if text is not None else []
    return {"info": {"id": message_id, "role": role, "sessionID": session_id, **info}, "parts": parts}


def permission_payload(permission_id="perm_1", session_id="ses_1"):
    return {
        "id": permission_id,
        "type": "bash",
        "pattern": "rm -rf build",
        "sessionID": session_id,
        "messageID": "msg_2",
        "title": "Delete build output",
    }


@pytest.fixture
def settings():
    return Settings(reconnect_delay=0, max_reconnect_attempts=2)


@pytest.fixture
def backend():
    return FakeBackend(
        history={
            "ses_1": [
                entry("msg_1", "user", "Fix the tests", agent="build"),
                entry("msg_2", "assistant", "On it", parentID="msg_1", modelID="claude", providerID="anthropic"),
            ]
        }
    )


@pytest.fixture
def runtime(backend, settings):
    return ChatRuntime(backend, "proj_1", "ses_1", settings=settings)


class TestLoad:
    """History load and session bootstrap."""

    @pytest.mark.asyncio
    async def test_loads_history_and_detects_model_and_agent(self, backend, settings):
        models, agents = [], []
        runtime = ChatRuntime(
            backend,
            "proj_1",
            "ses_1",
            settings=settings,
            on_model_detected=models.append,
            on_agent_detected=agents.append,
        )

        assert await runtime.load()

        assert [m.id for m in runtime.messages] == ["msg_1", "msg_2"]
        assert runtime.messages[1].text == "On it"
        assert models == [{"provider_id": "anthropic", "model_id": "claude"}]
        assert agents == ["build"]
        assert runtime.agent == "build"
        assert not runtime.is_loading

    @pytest.mark.asyncio
    async def test_picks_first_session(self, settings):
        backend = FakeBackend(sessions=[SessionInfo(id="ses_a"), SessionInfo(id="ses_b")])
        runtime = ChatRuntime(backend, "proj_1", settings=settings)

        assert await runtime.load()

        assert runtime.session_id == "ses_a"
        assert backend.called("list_messages")[0][1] == ("proj_1", "ses_a")

    @pytest.mark.asyncio
    async def test_creates_session_when_none_exist(self, settings):
        backend = FakeBackend(sessions=[])
        runtime = ChatRuntime(backend, "proj_1", settings=settings)

        assert await runtime.load()

        assert runtime.session_id == "ses_new"
        assert backend.called("create_session")

    @pytest.mark.asyncio
    async def test_load_failure_sets_error(self, runtime, backend):
        backend.fail["list_messages"] = RuntimeError("offline")

        assert not await runtime.load()

        assert runtime.error == "Failed to load messages: offline"
        assert runtime.messages == []
        assert not runtime.is_loading

    @pytest.mark.asyncio
    async def test_restores_pending_permissions(self, runtime, backend, caplog):
        backend.pending_permissions = [permission_payload("perm_1"), {"id": "broken"}]

        assert await runtime.load()

        assert [p.id for p in runtime.permissions.items] == ["perm_1"]
        assert runtime.current_permission.title == "Delete build output"
        assert "Skipping unreadable pending permission" in caplog.text

    @pytest.mark.asyncio
    async def test_permission_restore_failure_is_not_fatal(self, runtime, backend):
        backend.fail["list_permissions"] = RuntimeError("no route")

        assert await runtime.load()
        assert runtime.error is None
        assert len(runtime.permissions) == 0


class TestSend:
    """Optimistic sends."""

    @pytest.mark.asyncio
    async def test_optimistic_message_then_confirmation(self, runtime, backend, make_event):
        assert await runtime.load()
        result = await runtime.send_message("Run them again")

        assert result.is_ok()
        optimistic_id = result.unwrap()
        assert optimistic_id.startswith("user-")
        assert runtime.messages[-1].id == optimistic_id
        assert runtime.messages[-1].text == "Run them again"
        assert runtime.is_running
        assert runtime.session_status == SessionStatus.busy()
        assert runtime.activity.is_busy("proj_1")

        (call,) = backend.called("send_message")
        assert call[1] == ("proj_1", "ses_1", [{"type": "text", "text": "Run them again"}])
        assert call[2] == {"agent": "build", "model": {"provider_id": "anthropic", "model_id": "claude"}}

        runtime.handle_event(make_event("message.updated", info={"id": "msg_3", "role": "user", "sessionID": "ses_1"}))

        assert [m.id for m in runtime.messages] == ["msg_1", "msg_2", "msg_3"]
        assert runtime.messages[-1].text == "Run them again"

    @pytest.mark.asyncio
    async def test_explicit_agent_and_model(self, runtime, backend):
        assert await runtime.load()
        await runtime.send_message("hi", agent="plan", model={"provider_id": "p", "model_id": "m"})
        (call,) = backend.called("send_message")
        assert call[2] == {"agent": "plan", "model": {"provider_id": "p", "model_id": "m"}}
        assert runtime.messages[-1].agent == "plan"

    @pytest.mark.asyncio
    async def test_failure_keeps_message_and_allows_resend(self, runtime, backend):
        assert await runtime.load()
        backend.fail["send_message"] = RuntimeError("502 Bad Gateway")

        failed = await runtime.send_message("Run them again")

        assert failed.is_err()
        assert failed.code == "SEND_FAILED"
        assert failed.retryable
        assert runtime.error == "Failed to send message: 502 Bad Gateway"
        assert not runtime.is_running
        assert runtime.session_status == SessionStatus.idle()
        assert runtime.messages[-1].text == "Run them again"

        del backend.fail["send_message"]
        retried = await runtime.send_message("Run them again")

        assert retried.is_ok()
        assert runtime.error is None
        assert [m.text for m in runtime.messages].count("Run them again") == 1
        assert len(backend.called("send_message")) == 2

    @pytest.mark.asyncio
    async def test_duplicate_send_skipped(self, runtime, backend, make_event):
        assert await runtime.load()
        await runtime.send_message("again")
        runtime.handle_event(make_event("message.updated", info={"id": "msg_3", "role": "user", "sessionID": "ses_1"}))

        result = await runtime.send_message("  again ")

        assert result.is_pass()
        assert result.message == "duplicate message ignored"
        assert len(backend.called("send_message")) == 1

    @pytest.mark.asyncio
    async def test_send_blocked_while_unacknowledged(self, runtime, backend):
        assert await runtime.load()
        await runtime.send_message("first")
        result = await runtime.send_message("second")

        assert result.is_pass()
        assert result.message == "previous message not yet acknowledged"
        assert sum(1 for m in runtime.messages if m.is_optimistic) == 1

    @pytest.mark.asyncio
    async def test_empty_message(self, runtime, backend):
        assert await runtime.load()
        assert (await runtime.send_message("   ")).is_pass()
        assert backend.called("send_message") == []

    @pytest.mark.asyncio
    async def test_no_session(self, backend, settings):
        runtime = ChatRuntime(backend, "proj_1", settings=settings)
        result = await runtime.send_message("hello")
        assert result.is_err()
        assert result.code == "NO_SESSION"

    @pytest.mark.asyncio
    async def test_attachments_only(self, runtime, backend):
        assert await runtime.load()
        attachment = FileAttachment(id="local", url="data:image/png;base64,AA==", mime="image/png", filename="shot.png")

        result = await runtime.send_with_attachments("", [attachment])

        assert result.is_ok()
        message = runtime.messages[-1]
        assert message.text == "[1 file(s) attached]"
        assert message.files[0].id == f"{result.unwrap()}-file-0"
        parts = backend.called("send_message")[0][1][2]
        assert parts == [{"type": "file", "mime": "image/png", "url": "data:image/png;base64,AA==", "filename": "shot.png"}]

    @pytest.mark.asyncio
    async def test_attachments_with_text(self, runtime, backend):
        assert await runtime.load()
        attachment = FileAttachment(id="local", url="file:///a.txt", mime="text/plain")
        await runtime.send_with_attachments("see file", [attachment])

        parts = backend.called("send_message")[0][1][2]
        assert parts == [{"type": "text", "text": "see file"}, {"type": "file", "mime": "text/plain", "url": "file:///a.txt"}]
        assert runtime.messages[-1].text == "see file"


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_stops_locally(self, runtime, backend):
        assert await runtime.load()
        await runtime.send_message("long task")
        await runtime.abort()

        assert backend.called("abort_session")[0][1] == ("proj_1", "ses_1")
        assert not runtime.is_running
        assert not runtime.state.session_active

    @pytest.mark.asyncio
    async def test_abort_failure_still_stops(self, runtime, backend):
        assert await runtime.load()
        await runtime.send_message("long task")
        backend.fail["abort_session"] = RuntimeError("timeout")

        await runtime.abort()

        assert not runtime.is_running
        assert runtime.error == "Failed to abort: timeout"


class TestEditAndReload:
    """Both revert from the user message and send again."""

    @pytest.mark.asyncio
    async def test_edit_truncates_and_sends(self, runtime, backend):
        assert await runtime.load()
        result = await runtime.edit_message("msg_1", "Fix only the unit tests")

        assert result.is_ok()
        assert backend.called("revert_message")[0][1] == ("proj_1", "ses_1", "msg_1")
        assert [m.text for m in runtime.messages] == ["Fix only the unit tests"]
        assert backend.called("send_message")[0][2]["agent"] == "build"

    @pytest.mark.asyncio
    async def test_reload_resends_user_text(self, runtime, backend):
        assert await runtime.load()
        result = await runtime.reload("msg_2")

        assert result.is_ok()
        assert backend.called("revert_message")[0][1][2] == "msg_1"
        assert backend.called("send_message")[0][1][2] == [{"type": "text", "text": "Fix the tests"}]
        assert len(runtime.messages) == 1

    @pytest.mark.asyncio
    async def test_revert_failure_keeps_transcript(self, runtime, backend):
        assert await runtime.load()
        backend.fail["revert_message"] = RuntimeError("conflict")

        result = await runtime.edit_message("msg_1", "new text")

        assert result.code == "REVERT_FAILED"
        assert [m.id for m in runtime.messages] == ["msg_1", "msg_2"]
        assert runtime.error == "Failed to revert message: conflict"
        assert backend.called("send_message") == []

    @pytest.mark.asyncio
    async def test_unknown_message(self, runtime):
        assert await runtime.load()
        assert (await runtime.edit_message("msg_404", "x")).code == "NOT_FOUND"
        assert (await runtime.reload("msg_404")).code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_edit_optimistic_message_skips_revert(self, runtime, backend):
        assert await runtime.load()
        sent = await runtime.send_message("tpyo")
        result = await runtime.edit_message(sent.unwrap(), "typo")

        assert result.is_ok()
        assert backend.called("revert_message") == []
        assert [m.text for m in runtime.messages] == ["Fix the tests", "On it", "typo"]


class TestPermissions:
    @pytest.mark.asyncio
    async def test_respond_uses_permission_session(self, runtime, backend, make_event):
        assert await runtime.load()
        runtime.handle_event(make_event("permission.updated", **permission_payload("perm_1", "ses_child")))

        assert await runtime.respond_to_permission("perm_1", "always")

        assert backend.called("respond_to_permission")[0][1] == ("proj_1", "ses_child", "perm_1", "always")
        assert runtime.current_permission is None

    @pytest.mark.asyncio
    async def test_respond_failure_surfaces_error(self, runtime, backend, make_event):
        assert await runtime.load()
        runtime.handle_event(make_event("permission.updated", **permission_payload()))
        backend.fail["respond_to_permission"] = RuntimeError("403")

        with pytest.raises(PermissionResponseError):
            await runtime.respond_to_permission("perm_1", "once")

        assert "403" in runtime.error
        assert runtime.current_permission.id == "perm_1"
        assert not runtime.current_permission.is_responding

    @pytest.mark.asyncio
    async def test_switch_session_keeps_queue(self, backend, settings, make_event):
        queue = PermissionQueue()
        backend.history["ses_2"] = [entry("msg_9", "user", "other session", session_id="ses_2")]
        runtime = ChatRuntime(backend, "proj_1", "ses_1", permissions=queue, settings=settings)
        await runtime.load()
        runtime.handle_event(make_event("permission.updated", **permission_payload("perm_1")))

        assert await runtime.switch_session("ses_2")

        assert runtime.session_id == "ses_2"
        assert [m.id for m in runtime.messages] == ["msg_9"]
        assert [p.id for p in queue.items] == ["perm_1"]


class TestEventScenarios:
    """End-to-end event sequences through route and apply."""

    @pytest.mark.asyncio
    async def test_tool_run_then_idle(self, runtime, make_event):
        assert await runtime.load()
        await runtime.send_message("list files")
        tool = {"type": "tool", "id": "prt_t", "callID": "call_1", "tool": "bash", "messageID": "msg_4", "sessionID": "ses_1"}

        result = runtime.handle_events(
            [
                make_event("message.updated", info={"id": "msg_3", "role": "user", "sessionID": "ses_1"}),
                make_event("session.status", sessionID="ses_1", status={"type": "busy"}),
                make_event("message.updated", info={"id": "msg_4", "role": "assistant", "sessionID": "ses_1", "parentID": "msg_3"}),
                make_event("message.part.updated", part={**tool, "state": {"status": "running", "input": {"cmd": "ls"}}}),
                make_event("message.part.updated", part={**tool, "state": {"status": "completed", "output": "a.py"}}),
                make_event("message.part.updated", part={**tool, "state": {"status": "running"}}),
                make_event("session.idle", sessionID="ses_1"),
            ]
        )

        assert result.handled
        reply = runtime.messages[-1]
        assert reply.id == "msg_4"
        assert reply.tool_calls["call_1"].status == "completed"
        assert reply.tool_calls["call_1"].result == "a.py"
        assert not runtime.is_running
        assert runtime.session_status == SessionStatus.idle()
        assert runtime.status_registry.get("ses_1") == SessionStatus.idle()

    @pytest.mark.asyncio
    async def test_pending_tool_from_history_completes(self, settings, make_event):
        tool = {"type": "tool", "id": "prt_t", "callID": "call_1", "tool": "calculator", "messageID": "msg_2", "sessionID": "ses_1"}
        pending = entry("msg_2", "assistant", parentID="msg_1")
        pending["parts"] = [{**tool, "state": {"status": "pending"}}]
        backend = FakeBackend(history={"ses_1": [entry("msg_1", "user", "Hi"), pending]})
        runtime = ChatRuntime(backend, "proj_1", "ses_1", settings=settings)

        assert await runtime.load()
        assert runtime.messages[1].tool_calls["call_1"].status == "pending"
        runtime.handle_event(make_event("session.status", sessionID="ses_1", status={"type": "busy"}))
        assert runtime.is_running

        runtime.handle_events(
            [
                make_event("message.part.updated", part={**tool, "state": {"status": "completed", "output": "42"}}),
                make_event("session.idle", sessionID="ses_1"),
            ]
        )

        assert [m.id for m in runtime.messages] == ["msg_1", "msg_2"]
        assert runtime.messages[0].text == "Hi"
        call = runtime.messages[1].tool_calls["call_1"]
        assert call.status == "completed"
        assert call.result == "42"
        assert not runtime.is_running

    def test_part_before_message(self, runtime, make_event):
        runtime.handle_event(
            make_event("message.part.updated", part={"type": "text", "id": "p1", "messageID": "msg_5", "sessionID": "ses_1"}, delta="Hel")
        )
        runtime.handle_event(make_event("message.updated", info={"id": "msg_5", "role": "assistant", "sessionID": "ses_1"}))
        runtime.handle_event(
            make_event("message.part.updated", part={"type": "text", "id": "p1", "messageID": "msg_5", "sessionID": "ses_1"}, delta="lo")
        )

        (message,) = runtime.messages
        assert message.id == "msg_5"
        assert message.role == "assistant"
        assert message.text == "Hello"

    def test_other_session_events_do_not_leak(self, runtime, make_event):
        runtime.handle_events(
            [
                make_event("message.updated", info={"id": "msg_c", "role": "assistant", "sessionID": "ses_child"}),
                make_event("message.part.updated", part={"type": "text", "messageID": "msg_c", "sessionID": "ses_child", "text": "x"}),
                make_event("session.error", sessionID="ses_child", error="child failed"),
                make_event("session.status", sessionID="ses_child", status={"type": "busy"}),
                make_event("permission.updated", **permission_payload("perm_c", "ses_child")),
            ]
        )

        assert runtime.messages == []
        assert runtime.error is None
        assert not runtime.is_running
        assert runtime.status_registry.is_working("ses_child")
        assert runtime.current_permission.id == "perm_c"

    def test_session_error(self, runtime, make_event):
        runtime.handle_event(make_event("session.status", sessionID="ses_1", status={"type": "busy"}))
        runtime.handle_event(make_event("session.error", sessionID="ses_1", error={"name": "APIError", "data": {"message": "Overloaded"}}))

        assert runtime.error == "Overloaded"
        assert not runtime.is_running

        runtime.dismiss_error()
        assert runtime.error is None

    def test_observer_sees_every_event(self, backend, settings, make_event):
        seen = []
        runtime = ChatRuntime(backend, "proj_1", "ses_1", settings=settings, on_event=lambda e, r: seen.append((e.type, r.handled)))

        runtime.handle_event(make_event("server.heartbeat"))
        runtime.handle_event(make_event("session.idle", sessionID="ses_1"))

        assert seen == [("server.heartbeat", False), ("session.idle", True)]


class TestStream:
    """Live stream wiring."""

    @pytest.mark.asyncio
    async def test_events_applied_in_order(self, runtime, backend, make_event):
        done = asyncio.Event()
        seen = []

        def observe(event, result):
            seen.append(event.type)
            if len(seen) == 3:
                done.set()

        runtime.on_event = observe
        backend.connections.append(
            [
                make_event("message.updated", info={"id": "msg_7", "role": "assistant", "sessionID": "ses_1"}),
                make_event("message.part.updated", part={"type": "text", "id": "p", "messageID": "msg_7", "sessionID": "ses_1", "text": "streamed"}),
                make_event("session.idle", sessionID="ses_1"),
            ]
        )

        await runtime.start_stream()
        await asyncio.wait_for(done.wait(), timeout=2)

        assert runtime.stream_state == StreamState.CONNECTED
        assert runtime.messages[-1].text == "streamed"

        await runtime.stop_stream()
        assert runtime.stream_state == StreamState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_gives_up_with_error(self, runtime, backend):
        backend.fail["event_stream"] = ConnectionError("refused")

        await runtime.start_stream()
        await asyncio.wait_for(runtime.wait_stream(), timeout=2)

        assert runtime.error == "Event stream unavailable after 2 attempts"
        assert runtime.stream_state == StreamState.DISCONNECTED
