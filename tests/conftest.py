"""Shared fixtures for kestrel_chat tests"""

from typing import Any, Callable, Optional

import pytest

from kestrel_chat.chat.permissions import PermissionQueue
from kestrel_chat.chat.state import ActionApplier, ConversationState
from kestrel_chat.core.actions import HandlerContext
from kestrel_chat.core.events import RawEvent
from kestrel_chat.core.session_status import SessionStatusRegistry


@pytest.fixture
def make_event() -> Callable[..., RawEvent]:
    """Factory for stream events: make_event("session.idle", sessionID="ses_1")."""

    def _make(event_type: str, **properties: Any) -> RawEvent:
        return RawEvent(event_type=event_type, data={"type": event_type, "properties": properties})

    return _make


@pytest.fixture
def registry() -> SessionStatusRegistry:
    return SessionStatusRegistry()


@pytest.fixture
def state() -> ConversationState:
    return ConversationState(project_id="proj_1", session_id="ses_1")


@pytest.fixture
def permission_queue() -> PermissionQueue:
    return PermissionQueue()


@pytest.fixture
def applier(state: ConversationState, permission_queue: PermissionQueue) -> ActionApplier:
    return ActionApplier(state, permission_queue)


@pytest.fixture
def make_context(state: ConversationState, registry: SessionStatusRegistry) -> Callable[..., HandlerContext]:
    """Snapshot of the current state, optionally for another active session."""

    def _make(session_id: Optional[str] = "ses_1") -> HandlerContext:
        return HandlerContext(
            project_id=state.project_id,
            session_id=session_id,
            messages=tuple(state.messages),
            status_registry=registry,
        )

    return _make
