"""Chat runtime: wires history load, live events, commands and the stream together.

ChatRuntime owns the conversation state of one project view. Inbound events
go through the router and the action applier; local commands (send, abort,
edit) go through the same applier so every state change is an action.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import pydantic as pd

from kestrel_chat.chat.handlers.router import handle_event as route_event
from kestrel_chat.chat.message_converter import convert_history, detect_agent, detect_model
from kestrel_chat.chat.permissions import PermissionQueue
from kestrel_chat.chat.state import ActionApplier, ConversationState, SessionCallback
from kestrel_chat.client.backend import AgentBackend
from kestrel_chat.client.stream import StreamLifecycleManager, StreamState
from kestrel_chat.core.actions import (
    Action,
    AddMessage,
    HandlerResult,
    RemoveMessage,
    SetError,
    SetRunning,
    SetSessionStatus,
    UpdateSessionActivity,
)
from kestrel_chat.core.events import RawEvent
from kestrel_chat.core.exceptions import PermissionResponseError
from kestrel_chat.core.models import (
    FileAttachment,
    Message,
    PendingPermission,
    PermissionRequest,
    create_empty_message,
    make_optimistic_id,
)
from kestrel_chat.core.result import Err, Ok, Pass, Result
from kestrel_chat.core.session_status import (
    SessionActivityTracker,
    SessionStatus,
    SessionStatusRegistry,
)
from kestrel_chat.core.settings import Settings, get_settings


logger = logging.getLogger(__name__)

ModelCallback = Callable[[Dict[str, str]], None]
AgentCallback = Callable[[str], None]
EventObserver = Callable[[RawEvent, HandlerResult], None]


class ChatRuntime:
    """Conversation state for one project, kept in sync with the agent backend.

    Args:
        backend: Backend used for commands, history and the event stream.
        project_id: Project (sandbox) whose sessions are shown.
        session_id: Session to show; when None, ``load`` picks or creates one.
        permissions: Shared permission queue; survives session switches.
        status_registry: Application-wide per-session status store.
        activity: Optional per-project activity tracker.
        on_event: Called after each routed event has been applied.
    """

    def __init__(
        self,
        backend: AgentBackend,
        project_id: str,
        session_id: Optional[str] = None,
        *,
        permissions: Optional[PermissionQueue] = None,
        status_registry: Optional[SessionStatusRegistry] = None,
        activity: Optional[SessionActivityTracker] = None,
        settings: Optional[Settings] = None,
        on_session_created: Optional[SessionCallback] = None,
        on_session_updated: Optional[SessionCallback] = None,
        on_model_detected: Optional[ModelCallback] = None,
        on_agent_detected: Optional[AgentCallback] = None,
        on_event: Optional[EventObserver] = None,
    ):
        self.backend = backend
        self.settings = settings or get_settings()
        self.state = ConversationState(project_id=project_id, session_id=session_id)
        self.permissions = permissions if permissions is not None else PermissionQueue()
        self.status_registry = status_registry if status_registry is not None else SessionStatusRegistry()
        self.activity = activity if activity is not None else SessionActivityTracker(
            stale_after=self.settings.activity_stale_seconds
        )
        self.applier = ActionApplier(
            self.state,
            self.permissions,
            activity=self.activity,
            on_session_created=on_session_created,
            on_session_updated=on_session_updated,
        )
        self.on_model_detected = on_model_detected
        self.on_agent_detected = on_agent_detected
        self.on_event = on_event
        self.model: Optional[Dict[str, str]] = None
        self.agent: Optional[str] = None
        self.is_loading = False
        self.stream_state = StreamState.DISCONNECTED
        self._stream: Optional[StreamLifecycleManager] = None
        self._failed_sends: Set[str] = set()

    # State exposed to renderers

    @property
    def project_id(self) -> str:
        return self.state.project_id

    @property
    def session_id(self) -> Optional[str]:
        return self.state.session_id

    @property
    def messages(self) -> List[Message]:
        return self.state.visible_messages()

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def session_status(self) -> SessionStatus:
        return self.state.session_status

    @property
    def error(self) -> Optional[str]:
        return self.state.error

    @property
    def current_permission(self) -> Optional[PendingPermission]:
        return self.permissions.current

    def apply(self, actions: Iterable[Action]) -> None:
        self.applier.apply(actions)

    # Inbound events

    def handle_event(self, event: RawEvent) -> HandlerResult:
        """Route one event and apply its actions before returning."""
        result = route_event(
            event, self.state.context(self.status_registry, self.settings.retry_fallback_ms)
        )
        try:
            self.apply(result.actions)
        except Exception as e:
            logger.exception(f"Failed to apply actions for {event.type}: {e}")
        if self.on_event is not None:
            self.on_event(event, result)
        return result

    def handle_events(self, events: Iterable[RawEvent]) -> HandlerResult:
        """Route and apply events one at a time; each sees the previous one's effect."""
        actions: List[Action] = []
        any_handled = False
        for event in events:
            result = self.handle_event(event)
            actions.extend(result.actions)
            any_handled = any_handled or result.handled
        return HandlerResult(actions=tuple(actions), handled=any_handled)

    # History

    async def load(self) -> bool:
        """Load the session's history, picking or creating a session if none is set.

        Returns:
            True on success. On failure the error is surfaced in ``error``.
        """
        self.is_loading = True
        try:
            if self.state.session_id is None:
                self.state.session_id = await self._pick_session()
            entries = await self.backend.list_messages(self.project_id, self.state.session_id)
        except Exception as e:
            logger.error(f"Failed to load messages for {self.project_id}: {e}")
            self.apply([SetError(f"Failed to load messages: {e}")])
            return False
        finally:
            self.is_loading = False

        history = convert_history(entries)
        actions: List[Action] = []
        for message in history:
            if message.session_id is None:
                message.session_id = self.state.session_id
            actions.append(AddMessage(message))
        self.apply(actions)
        logger.info(f"Loaded {len(history)} messages for session {self.state.session_id}")

        self._detect_model_and_agent(history)
        await self._restore_permissions()
        return True

    async def _pick_session(self) -> str:
        sessions = await self.backend.list_sessions(self.project_id)
        if sessions:
            return sessions[0].id
        session = await self.backend.create_session(self.project_id)
        logger.info(f"Created session {session.id} for project {self.project_id}")
        return session.id

    def _detect_model_and_agent(self, history: List[Message]) -> None:
        model = detect_model(history)
        if model is not None:
            self.model = model
            if self.on_model_detected is not None:
                self.on_model_detected(model)

        agent = detect_agent(history)
        if agent is not None:
            self.agent = agent
            if self.on_agent_detected is not None:
                self.on_agent_detected(agent)

    async def _restore_permissions(self) -> None:
        session_id = self.state.session_id
        if session_id is None:
            return
        try:
            pending = await self.backend.list_permissions(self.project_id, session_id)
        except Exception as e:
            logger.warning(f"Could not restore pending permissions: {e}")
            return

        restored = 0
        for item in pending:
            try:
                restored += self.permissions.add(PermissionRequest.model_validate(item))
            except pd.ValidationError as e:
                logger.warning(f"Skipping unreadable pending permission: {e.error_count()} validation error(s)")
        if restored:
            logger.info(f"Restored {restored} pending permission(s)")

    async def switch_session(self, session_id: str) -> bool:
        """Show another session; the permission queue is kept."""
        restart = self._stream is not None and self._stream.is_running
        if restart:
            await self.stop_stream()
        self.state.reset(session_id)
        self._failed_sends.clear()
        loaded = await self.load()
        if restart:
            await self.start_stream()
        return loaded

    # Stream

    async def start_stream(self) -> None:
        if self._stream is None:
            self._stream = StreamLifecycleManager(
                lambda: self.backend.event_stream(self.project_id),
                self.handle_event,
                reconnect_delay=self.settings.reconnect_delay,
                max_reconnect_attempts=self.settings.max_reconnect_attempts,
                on_status=self._on_stream_status,
            )
        await self._stream.start()

    async def stop_stream(self) -> None:
        if self._stream is not None:
            await self._stream.stop()

    async def wait_stream(self) -> None:
        if self._stream is not None:
            await self._stream.wait()

    def _on_stream_status(self, state: StreamState, error: Optional[str]) -> None:
        self.stream_state = state
        if error is not None:
            self.apply([SetError(error)])

    # Commands

    def _pending_optimistic(self) -> List[Message]:
        return [message for message in self.messages if message.is_optimistic]

    def _is_duplicate(self, text: str) -> bool:
        visible = self.messages
        if not visible:
            return False
        last = visible[-1]
        return (
            last.role == "user"
            and last.text.strip() == text.strip()
            and last.id not in self._failed_sends
        )

    async def _send(
        self,
        parts: List[Dict[str, Any]],
        display_text: str,
        files: Optional[List[FileAttachment]] = None,
        agent: Optional[str] = None,
        model: Optional[Dict[str, str]] = None,
    ) -> Result[str]:
        session_id = self.state.session_id
        if session_id is None:
            return Err("No active session", code="NO_SESSION")

        if self._is_duplicate(display_text):
            logger.debug("Ignoring duplicate send")
            return Pass("duplicate message ignored")

        pending = self._pending_optimistic()
        if any(message.id not in self._failed_sends for message in pending):
            return Pass("previous message not yet acknowledged")

        optimistic_id = make_optimistic_id()
        message = create_empty_message(optimistic_id, "user", session_id=session_id)
        message.text = display_text
        message.agent = agent or self.agent
        for index, attachment in enumerate(files or []):
            message.files.append(attachment.model_copy(update={"id": f"{optimistic_id}-file-{index}"}))

        self.apply(
            [
                *(RemoveMessage(failed.id) for failed in pending),
                AddMessage(message),
                SetError(None),
                SetRunning(True),
                SetSessionStatus(SessionStatus.busy()),
                UpdateSessionActivity(True),
            ]
        )
        self._failed_sends.difference_update(failed.id for failed in pending)

        try:
            await self.backend.send_message(
                self.project_id,
                session_id,
                parts,
                agent=agent or self.agent,
                model=model or self.model,
            )
        except Exception as e:
            logger.error(f"Failed to send message: {e}")
            self._failed_sends.add(optimistic_id)
            self.apply(
                [
                    SetError(f"Failed to send message: {e}"),
                    SetRunning(False),
                    SetSessionStatus(SessionStatus.idle()),
                    UpdateSessionActivity(False),
                ]
            )
            return Err(str(e), code="SEND_FAILED", retryable=True)

        return Ok(optimistic_id)

    async def send_message(
        self,
        text: str,
        agent: Optional[str] = None,
        model: Optional[Dict[str, str]] = None,
    ) -> Result[str]:
        """Send a user message, showing it optimistically until the backend confirms it.

        Returns:
            Ok with the optimistic message id, Pass when the send was skipped
            (empty, duplicate, or a previous send still unacknowledged),
            or Err when the backend call failed.
        """
        if not text.strip():
            return Pass("empty message")
        return await self._send([{"type": "text", "text": text}], text, agent=agent, model=model)

    async def send_with_attachments(
        self,
        text: str,
        files: List[FileAttachment],
        agent: Optional[str] = None,
        model: Optional[Dict[str, str]] = None,
    ) -> Result[str]:
        """Send text with file parts; without text the message shows an attachment count."""
        if not text.strip() and not files:
            return Pass("empty message")

        parts: List[Dict[str, Any]] = []
        if text.strip():
            parts.append({"type": "text", "text": text})
        for attachment in files:
            part: Dict[str, Any] = {"type": "file", "mime": attachment.mime, "url": attachment.url}
            if attachment.filename:
                part["filename"] = attachment.filename
            parts.append(part)

        display_text = text if text.strip() else f"[{len(files)} file(s) attached]"
        return await self._send(parts, display_text, files=files, agent=agent, model=model)

    async def abort(self) -> None:
        """Ask the backend to stop the turn; locally it stops immediately."""
        session_id = self.state.session_id
        actions: List[Action] = []
        try:
            if session_id is not None:
                await self.backend.abort_session(self.project_id, session_id)
        except Exception as e:
            logger.warning(f"Failed to abort session {session_id}: {e}")
            actions.append(SetError(f"Failed to abort: {e}"))
        finally:
            self.apply([*actions, SetRunning(False), UpdateSessionActivity(False)])

    def _user_message_for(self, message_id: str) -> Optional[Message]:
        visible = self.messages
        index = next((i for i, message in enumerate(visible) if message.id == message_id), -1)
        if index < 0:
            return None
        message = visible[index]
        if message.role == "user":
            return message
        if message.parent_id:
            parent = next((m for m in visible if m.id == message.parent_id), None)
            if parent is not None:
                return parent
        for candidate in reversed(visible[:index]):
            if candidate.role == "user":
                return candidate
        return None

    async def _revert_and_truncate(self, user_message: Message) -> Optional[Err]:
        session_id = self.state.session_id
        if session_id is None:
            return Err("No active session", code="NO_SESSION")
        if not user_message.is_optimistic:
            try:
                await self.backend.revert_message(self.project_id, session_id, user_message.id)
            except Exception as e:
                logger.error(f"Failed to revert message {user_message.id}: {e}")
                self.apply([SetError(f"Failed to revert message: {e}")])
                return Err(str(e), code="REVERT_FAILED", retryable=True)

        visible_ids = [message.id for message in self.messages]
        cut = visible_ids.index(user_message.id)
        self.apply(RemoveMessage(message_id) for message_id in visible_ids[cut:])
        self._failed_sends.difference_update(visible_ids[cut:])
        return None

    async def edit_message(self, message_id: str, new_text: str) -> Result[str]:
        """Replace a user message and everything after it with a new send."""
        if not new_text.strip():
            return Pass("empty message")
        user_message = self._user_message_for(message_id)
        if user_message is None:
            return Err(f"Message {message_id} not found", code="NOT_FOUND")

        failure = await self._revert_and_truncate(user_message)
        if failure is not None:
            return failure
        return await self.send_message(new_text, agent=user_message.agent)

    async def reload(self, message_id: str) -> Result[str]:
        """Regenerate the reply to a message by re-sending its user message."""
        user_message = self._user_message_for(message_id)
        if user_message is None:
            return Err(f"Message {message_id} not found", code="NOT_FOUND")
        return await self.edit_message(user_message.id, user_message.text)

    async def respond_to_permission(self, permission_id: str, response: str) -> bool:
        """Answer a queued permission request.

        Raises:
            PermissionResponseError: If the backend rejects the response.
        """

        async def responder(permission: PendingPermission, answer: str) -> None:
            await self.backend.respond_to_permission(
                self.project_id, permission.session_id, permission.id, answer
            )

        try:
            return await self.permissions.respond(permission_id, response, responder)
        except PermissionResponseError as e:
            self.apply([SetError(str(e))])
            raise

    def dismiss_error(self) -> None:
        self.apply([SetError(None)])
