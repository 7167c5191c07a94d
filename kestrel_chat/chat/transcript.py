"""Read-only helpers over a reconciled transcript.

Turns group the assistant messages that answer the same user message, so a
reply split across several backend messages renders as one block.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from kestrel_chat.core.models import Message, SessionInfo, TokenUsage, ToolCall


_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

CHILD_SESSION_KEYS = ("sessionId", "session_id", "sessionID")


@dataclass
class Turn:
    """One rendered block: a user message, or the assistant messages answering it"""

    key: str
    role: str
    messages: List[Message] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n\n".join(m.text for m in self.messages if m.text.strip())

    @property
    def tool_calls(self) -> List[ToolCall]:
        return [call for m in self.messages for call in m.tool_calls.values()]

    @property
    def cost(self) -> float:
        return total_cost(self.messages)

    @property
    def tokens(self) -> TokenUsage:
        return total_tokens(self.messages)

    @property
    def agent(self) -> Optional[str]:
        return next((m.agent for m in self.messages if m.agent), None)

    @property
    def is_compacted(self) -> bool:
        return any(m.is_compacted for m in self.messages)


def group_turns(messages: Iterable[Message]) -> List[Turn]:
    """Group assistant messages sharing a parent_id; user messages stand alone.

    Turns keep the order in which their first message appears. Messages
    inside an assistant turn are ordered by creation time.
    """
    turns: Dict[str, Turn] = {}
    for message in messages:
        if message.role == "user":
            key = f"user:{message.id}"
        elif message.parent_id:
            key = f"assistant:{message.parent_id}"
        else:
            key = f"assistant:{message.id}"

        turn = turns.get(key)
        if turn is None:
            turns[key] = turn = Turn(key=key, role=message.role)
        turn.messages.append(message)

    for turn in turns.values():
        turn.messages.sort(key=lambda m: m.created_at or _EPOCH)
    return list(turns.values())


def total_tokens(messages: Iterable[Message]) -> TokenUsage:
    total = TokenUsage()
    for message in messages:
        if message.tokens is not None:
            total = total.plus(message.tokens)
    return total


def total_cost(messages: Iterable[Message]) -> float:
    return sum(message.cost or 0.0 for message in messages)


def has_active_tool_calls(message: Message) -> bool:
    return any(not call.is_terminal for call in message.tool_calls.values())


def completed_tool_call_count(messages: Iterable[Message]) -> int:
    return sum(
        1 for message in messages for call in message.tool_calls.values() if call.status == "completed"
    )


def errored_tool_call_count(messages: Iterable[Message]) -> int:
    return sum(
        1 for message in messages for call in message.tool_calls.values() if call.status == "error"
    )


def _session_id_from(value: Any) -> Optional[str]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None
    if not isinstance(value, dict):
        return None
    for key in CHILD_SESSION_KEYS:
        if isinstance(value.get(key), str):
            return value[key]
    session = value.get("session")
    if isinstance(session, dict) and isinstance(session.get("id"), str):
        return session["id"]
    return None


def find_child_session(call: ToolCall, child_sessions: Iterable[SessionInfo]) -> Optional[str]:
    """Best-effort link from a ``task`` tool call to the sub-session it spawned.

    An explicit session id in the result or metadata wins. Otherwise the
    first child session whose title contains the task description, or
    ``@<subagent_type>``, is taken.
    """
    if call.tool_name != "task":
        return None

    session_id = _session_id_from(call.result) or _session_id_from(call.metadata)
    if session_id:
        return session_id

    description = call.args.get("description")
    subagent = call.args.get("subagent_type")
    if not description and not subagent:
        return None

    for session in child_sessions:
        if not session.title:
            continue
        title = session.title.lower()
        if isinstance(description, str) and description and description.lower() in title:
            return session.id
        if isinstance(subagent, str) and subagent and f"@{subagent.lower()}" in title:
            return session.id
    return None


def link_subtask_sessions(
    messages: Iterable[Message], child_sessions: Iterable[SessionInfo]
) -> Dict[str, str]:
    """Map tool call ids of ``task`` calls to the child session ids they spawned."""
    children = list(child_sessions)
    links: Dict[str, str] = {}
    for message in messages:
        for call in message.tool_calls.values():
            session_id = find_child_session(call, children)
            if session_id is not None:
                links[call.tool_call_id] = session_id
    return links
