"""Offline replay of recorded event logs.

A recording is a JSON Lines file of raw stream payloads, one
``{"eventType": ..., "data": {"type": ..., "properties": ...}}`` object per
line (a bare ``{"type", "properties"}`` payload is accepted too).
The optional history file holds the ``{info, parts}`` entries the
backend returned when the recording started.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from rich.markup import escape  # type: ignore[import-not-found]
from rich.table import Table  # type: ignore[import-not-found]

from kestrel_chat.core.events import RawEvent
from kestrel_chat.core.exceptions import BackendError
from kestrel_chat.core.models import Message, SessionInfo
from kestrel_chat.chat.transcript import group_turns


logger = logging.getLogger(__name__)


def load_events(path: Path) -> List[RawEvent]:
    """Read a JSON Lines recording; blank lines are skipped.

    Raises:
        ValueError: If a line is not a JSON object.
    """
    events: List[RawEvent] = []
    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_number}: invalid JSON: {e}") from e
            if not isinstance(payload, dict):
                raise ValueError(f"{path}:{line_number}: expected a JSON object")
            if "data" in payload or "eventType" in payload:
                events.append(RawEvent.from_payload(payload))
            else:
                events.append(RawEvent(event_type=str(payload.get("type", "")), data=payload))
    return events


def load_history(path: Path) -> List[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as handle:
        body = json.load(handle)
    if isinstance(body, dict):
        body = body.get("data", body.get("items", []))
    if not isinstance(body, list):
        raise ValueError(f"{path}: expected a list of messages")
    return [entry for entry in body if isinstance(entry, dict)]


def infer_session_id(history: List[Dict[str, Any]], events: List[RawEvent]) -> Optional[str]:
    """First session id found in the history, else in the recorded events."""
    for entry in history:
        info = entry.get("info")
        if isinstance(info, dict) and isinstance(info.get("sessionID"), str):
            return info["sessionID"]

    for event in events:
        props = event.properties
        candidates = [props.get("sessionID")]
        for key in ("info", "part"):
            nested = props.get(key)
            if isinstance(nested, dict):
                candidates.append(nested.get("sessionID"))
        for candidate in candidates:
            if isinstance(candidate, str):
                return candidate
    return None


class RecordedBackend:
    """Read-only AgentBackend serving a recorded history; commands are rejected"""

    def __init__(self, session_id: str, history: Optional[List[Dict[str, Any]]] = None):
        self.session_id = session_id
        self.history = history or []

    async def list_sessions(self, project_id: str) -> List[SessionInfo]:
        return [SessionInfo(id=self.session_id)]

    async def create_session(self, project_id: str, title: Optional[str] = None) -> SessionInfo:
        raise BackendError("Recorded sessions are read-only")

    async def list_messages(self, project_id: str, session_id: str) -> List[Dict[str, Any]]:
        return list(self.history)

    async def send_message(
        self,
        project_id: str,
        session_id: str,
        parts: List[Dict[str, Any]],
        agent: Optional[str] = None,
        model: Optional[Dict[str, str]] = None,
    ) -> None:
        raise BackendError("Recorded sessions are read-only")

    async def abort_session(self, project_id: str, session_id: str) -> None:
        raise BackendError("Recorded sessions are read-only")

    async def revert_message(self, project_id: str, session_id: str, message_id: str) -> None:
        raise BackendError("Recorded sessions are read-only")

    async def respond_to_permission(
        self,
        project_id: str,
        session_id: str,
        permission_id: str,
        response: str,
    ) -> None:
        raise BackendError("Recorded sessions are read-only")

    async def list_permissions(self, project_id: str, session_id: str) -> List[Dict[str, Any]]:
        return []

    @asynccontextmanager
    async def event_stream(self, project_id: str) -> AsyncIterator[AsyncIterator[RawEvent]]:
        raise BackendError("Recorded sessions have no live stream")
        yield  # pragma: no cover


def _tool_summary(message: Message) -> str:
    lines = []
    for call in message.tool_calls.values():
        line = f"{call.tool_name} ({call.status})"
        if call.title:
            line += f" - {call.title}"
        if call.status == "error" and call.error:
            line += f": {call.error}"
        lines.append(line)
    return "\n".join(lines)


def render_transcript(messages: List[Message]) -> Table:
    """Build a rich table with one row per turn."""
    table = Table()
    table.add_column("Role", style="cyan")
    table.add_column("Message", style="dim")
    table.add_column("Content")
    table.add_column("Tools", style="yellow")
    table.add_column("Tokens", justify="right")

    for turn in group_turns(messages):
        ids = ", ".join(m.id for m in turn.messages)
        tools = "\n".join(filter(None, (_tool_summary(m) for m in turn.messages)))
        tokens = turn.tokens.total
        table.add_row(turn.role, ids, escape(turn.text), escape(tools), str(tokens) if tokens else "")
    return table
