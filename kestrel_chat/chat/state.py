"""Conversation state and the action applier.

The applier is the single serialization point for state changes. It applies
actions in order and never mutates a message in place: every message change
produces a new message object and a new message list, so snapshots handed
out earlier (handler contexts, rendered views) are never altered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Type

from kestrel_chat.chat.merge import merge_messages
from kestrel_chat.chat.permissions import PermissionQueue
from kestrel_chat.core.actions import (
    Action,
    AddMessage,
    AddPermission,
    HandlerContext,
    NotifySessionCreated,
    NotifySessionUpdated,
    RemoveMessage,
    RemovePermission,
    ReplaceOptimisticId,
    SetError,
    SetRunning,
    SetSessionStatus,
    UpdateMessage,
    UpdateSessionActivity,
)
from kestrel_chat.core.models import Message, SessionInfo
from kestrel_chat.core.session_status import (
    DEFAULT_RETRY_FALLBACK_MS,
    SessionActivityTracker,
    SessionStatus,
    SessionStatusRegistry,
)


logger = logging.getLogger(__name__)

SessionCallback = Callable[[SessionInfo], None]


@dataclass
class ConversationState:
    """Authoritative client state for one project's chat view"""

    project_id: str
    session_id: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    is_running: bool = False
    session_status: SessionStatus = field(default_factory=SessionStatus.idle)
    error: Optional[str] = None
    session_active: bool = False

    def find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def visible_messages(self) -> List[Message]:
        """Messages of the active session, in list order."""
        return [
            message
            for message in self.messages
            if message.session_id is None or message.session_id == self.session_id
        ]

    def context(
        self,
        status_registry: Optional[SessionStatusRegistry] = None,
        retry_fallback_ms: int = DEFAULT_RETRY_FALLBACK_MS,
    ) -> HandlerContext:
        return HandlerContext(
            project_id=self.project_id,
            session_id=self.session_id,
            messages=tuple(self.messages),
            status_registry=status_registry,
            retry_fallback_ms=retry_fallback_ms,
        )

    def reset(self, session_id: Optional[str]) -> None:
        """Forget the transcript and status when switching to another session."""
        self.session_id = session_id
        self.messages = []
        self.is_running = False
        self.session_status = SessionStatus.idle()
        self.error = None
        self.session_active = False


class ActionApplier:
    """Applies handler actions to a ConversationState and its collaborators."""

    def __init__(
        self,
        state: ConversationState,
        permissions: PermissionQueue,
        activity: Optional[SessionActivityTracker] = None,
        on_session_created: Optional[SessionCallback] = None,
        on_session_updated: Optional[SessionCallback] = None,
    ):
        self.state = state
        self.permissions = permissions
        self.activity = activity
        self.on_session_created = on_session_created
        self.on_session_updated = on_session_updated
        self._dispatch: Dict[Type, Callable] = {
            AddMessage: self._add_message,
            UpdateMessage: self._update_message,
            RemoveMessage: self._remove_message,
            ReplaceOptimisticId: self._replace_optimistic_id,
            SetRunning: self._set_running,
            SetSessionStatus: self._set_session_status,
            SetError: self._set_error,
            AddPermission: self._add_permission,
            RemovePermission: self._remove_permission,
            NotifySessionCreated: self._notify_session_created,
            NotifySessionUpdated: self._notify_session_updated,
            UpdateSessionActivity: self._update_session_activity,
        }

    def apply(self, actions: Iterable[Action]) -> None:
        for action in actions:
            self.apply_one(action)

    def apply_one(self, action: Action) -> None:
        method = self._dispatch.get(type(action))
        if method is None:
            raise TypeError(f"Unknown action: {type(action).__name__}")
        method(action)

    def _index_of(self, message_id: str) -> int:
        for index, message in enumerate(self.state.messages):
            if message.id == message_id:
                return index
        return -1

    def _add_message(self, action: AddMessage) -> None:
        incoming = action.message
        index = self._index_of(incoming.id)
        if index < 0:
            self.state.messages = [*self.state.messages, incoming.model_copy(deep=True)]
            return

        # Same id from two paths (synthesized from a part, then announced): merge
        merged = merge_messages(self.state.messages[index], incoming)
        messages = list(self.state.messages)
        messages[index] = merged
        self.state.messages = messages

    def _update_message(self, action: UpdateMessage) -> None:
        index = self._index_of(action.message_id)
        if index < 0:
            logger.debug(f"Update for unknown message {action.message_id} ignored")
            return
        updated = action.updater(self.state.messages[index].model_copy(deep=True))
        messages = list(self.state.messages)
        messages[index] = updated
        self.state.messages = messages

    def _remove_message(self, action: RemoveMessage) -> None:
        self.state.messages = [m for m in self.state.messages if m.id != action.message_id]

    def _replace_optimistic_id(self, action: ReplaceOptimisticId) -> None:
        index = self._index_of(action.optimistic_id)
        if index < 0:
            logger.debug(f"Optimistic message {action.optimistic_id} already gone")
            return

        if self._index_of(action.real_id) >= 0:
            # The real message arrived by another path first
            self.state.messages = [m for m in self.state.messages if m.id != action.optimistic_id]
            return

        messages = list(self.state.messages)
        messages[index] = messages[index].model_copy(update={"id": action.real_id}, deep=True)
        self.state.messages = messages

    def _set_running(self, action: SetRunning) -> None:
        self.state.is_running = action.running

    def _set_session_status(self, action: SetSessionStatus) -> None:
        self.state.session_status = action.status

    def _set_error(self, action: SetError) -> None:
        self.state.error = action.error

    def _add_permission(self, action: AddPermission) -> None:
        self.permissions.add(action.permission)

    def _remove_permission(self, action: RemovePermission) -> None:
        self.permissions.remove(action.permission_id)

    def _notify_session_created(self, action: NotifySessionCreated) -> None:
        if self.on_session_created is not None:
            self.on_session_created(action.session)

    def _notify_session_updated(self, action: NotifySessionUpdated) -> None:
        if self.on_session_updated is not None:
            self.on_session_updated(action.session)

    def _update_session_activity(self, action: UpdateSessionActivity) -> None:
        self.state.session_active = action.active
        if self.activity is not None:
            self.activity.set_activity(self.state.project_id, action.active, self.state.session_id)
