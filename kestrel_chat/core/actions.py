"""Actions: the only way event handlers affect conversation state.

Handlers read an immutable HandlerContext and return a HandlerResult holding
zero or more actions. The action applier is the single place that applies
them, in order, to the real state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Tuple, Union

from kestrel_chat.core.models import Message, PermissionRequest, SessionInfo
from kestrel_chat.core.session_status import DEFAULT_RETRY_FALLBACK_MS, SessionStatus

if TYPE_CHECKING:
    from kestrel_chat.core.session_status import SessionStatusRegistry


MessageUpdater = Callable[[Message], Message]


@dataclass(frozen=True)
class AddMessage:
    message: Message


@dataclass(frozen=True)
class UpdateMessage:
    """Replace a message with ``updater(copy_of_message)``."""

    message_id: str
    updater: MessageUpdater


@dataclass(frozen=True)
class RemoveMessage:
    message_id: str


@dataclass(frozen=True)
class ReplaceOptimisticId:
    optimistic_id: str
    real_id: str


@dataclass(frozen=True)
class SetRunning:
    running: bool


@dataclass(frozen=True)
class SetSessionStatus:
    status: SessionStatus


@dataclass(frozen=True)
class SetError:
    error: Optional[str]


@dataclass(frozen=True)
class AddPermission:
    permission: PermissionRequest


@dataclass(frozen=True)
class RemovePermission:
    permission_id: str


@dataclass(frozen=True)
class NotifySessionCreated:
    session: SessionInfo


@dataclass(frozen=True)
class NotifySessionUpdated:
    session: SessionInfo


@dataclass(frozen=True)
class UpdateSessionActivity:
    active: bool


Action = Union[
    AddMessage,
    UpdateMessage,
    RemoveMessage,
    ReplaceOptimisticId,
    SetRunning,
    SetSessionStatus,
    SetError,
    AddPermission,
    RemovePermission,
    NotifySessionCreated,
    NotifySessionUpdated,
    UpdateSessionActivity,
]


@dataclass(frozen=True)
class HandlerResult:
    actions: Tuple[Action, ...] = ()
    handled: bool = False


def handled(*actions: Action) -> HandlerResult:
    return HandlerResult(actions=tuple(actions), handled=True)


def not_handled() -> HandlerResult:
    return HandlerResult(actions=(), handled=False)


@dataclass(frozen=True)
class HandlerContext:
    """Read-only snapshot of client state handed to every handler.

    ``status_registry`` is the application-wide store of per-session
    statuses; it is the one thing a handler may write to directly, and
    only for ``session.status`` style events.
    ``retry_fallback_ms`` fills a retry status that arrives without a
    next-attempt time.
    """

    project_id: str
    session_id: Optional[str]
    messages: Tuple[Message, ...] = ()
    status_registry: Optional["SessionStatusRegistry"] = None
    retry_fallback_ms: int = DEFAULT_RETRY_FALLBACK_MS

    def find_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def has_message(self, message_id: str) -> bool:
        return self.find_message(message_id) is not None

    def find_optimistic_message(self) -> Optional[Message]:
        for message in self.messages:
            if message.is_optimistic and (message.session_id is None or message.session_id == self.session_id):
                return message
        return None

    def is_other_session(self, session_id: Optional[str]) -> bool:
        """True when an event names a session that is not the active one."""
        return bool(session_id) and session_id != self.session_id
