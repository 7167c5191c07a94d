"""Protocol for the agent backend the chat runtime talks to."""

from __future__ import annotations

from typing import Any, AsyncContextManager, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

from kestrel_chat.core.events import RawEvent
from kestrel_chat.core.models import SessionInfo


@runtime_checkable
class AgentBackend(Protocol):
    """Outbound commands and the inbound event stream of an agent backend.

    The HTTP implementation lives in ``kestrel_chat.client.http_client``;
    tests substitute in-memory fakes.
    """

    async def list_sessions(self, project_id: str) -> List[SessionInfo]:
        ...

    async def create_session(self, project_id: str, title: Optional[str] = None) -> SessionInfo:
        ...

    async def list_messages(self, project_id: str, session_id: str) -> List[Dict[str, Any]]:
        """Stored messages as ``{info, parts}`` entries, oldest first."""
        ...

    async def send_message(
        self,
        project_id: str,
        session_id: str,
        parts: List[Dict[str, Any]],
        agent: Optional[str] = None,
        model: Optional[Dict[str, str]] = None,
    ) -> None:
        ...

    async def abort_session(self, project_id: str, session_id: str) -> None:
        ...

    async def revert_message(self, project_id: str, session_id: str, message_id: str) -> None:
        ...

    async def respond_to_permission(
        self,
        project_id: str,
        session_id: str,
        permission_id: str,
        response: str,
    ) -> None:
        ...

    async def list_permissions(self, project_id: str, session_id: str) -> List[Dict[str, Any]]:
        ...

    def event_stream(self, project_id: str) -> AsyncContextManager[AsyncIterator[RawEvent]]:
        """Open the push channel; the context yields events until it breaks."""
        ...
