"""kestrel-chat - Core conversation data models with Pydantic"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

import pydantic as pd


logger = logging.getLogger(__name__)


MessageRole = Literal["user", "assistant"]
ToolCallStatus = Literal["pending", "running", "completed", "error"]
StepPhase = Literal["start", "finish"]
ContentKind = Literal["text", "reasoning", "tool", "file", "step", "patch", "subtask", "retry"]
PermissionResponse = Literal["once", "always", "reject"]

PERMISSION_RESPONSES = ("once", "always", "reject")

# Locally created user messages carry this prefix until the backend assigns an id
OPTIMISTIC_ID_PREFIX = "user-"


def now_ms() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000


def from_epoch_ms(value: Optional[float]) -> Optional[datetime]:
    """Convert an epoch-milliseconds timestamp from the wire to a datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def make_optimistic_id(timestamp_ms: Optional[float] = None) -> str:
    stamp = int(timestamp_ms if timestamp_ms is not None else now_ms())
    return f"{OPTIMISTIC_ID_PREFIX}{stamp}"


def is_optimistic_id(message_id: str) -> bool:
    return message_id.startswith(OPTIMISTIC_ID_PREFIX)


class TokenUsage(pd.BaseModel):
    """Token accounting for a step or a whole message"""
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cached: int = 0

    def plus(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            reasoning=self.reasoning + other.reasoning,
            cached=self.cached + other.cached,
        )

    @property
    def total(self) -> int:
        return self.input + self.output + self.reasoning + self.cached


class FileSource(pd.BaseModel):
    """Where an attached file came from"""
    type: Optional[str] = None
    path: Optional[str] = None


class FileAttachment(pd.BaseModel):
    """File attached to a message or produced by a tool"""
    id: str
    url: str
    mime: str
    filename: Optional[str] = None
    source: Optional[FileSource] = None


class ToolCall(pd.BaseModel):
    """One tool invocation, keyed by its call id across its whole lifecycle"""
    tool_call_id: str
    tool_name: str = "unknown"
    args: Dict[str, Any] = pd.Field(default_factory=dict)
    args_raw: Optional[str] = None
    result: Optional[str] = None
    status: ToolCallStatus = "pending"
    error: Optional[str] = None
    title: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    attachments: Optional[List[FileAttachment]] = None
    part_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "error")


class Reasoning(pd.BaseModel):
    """Reasoning trace emitted by the model"""
    id: str
    text: str = ""
    start_time: Optional[float] = None
    end_time: Optional[float] = None


class Step(pd.BaseModel):
    """A bounded unit of agent work; start and finish share one record"""
    id: str
    phase: StepPhase = "start"
    reason: Optional[str] = None
    snapshot: Optional[str] = None
    cost: Optional[float] = None
    tokens: Optional[TokenUsage] = None


class Patch(pd.BaseModel):
    """File patch summary"""
    id: str
    hash: str
    files: List[str] = pd.Field(default_factory=list)


class Subtask(pd.BaseModel):
    """Delegated task spawned into a child session"""
    id: str
    prompt: str
    description: str
    agent: str


class RetryError(pd.BaseModel):
    """Error that caused a provider retry"""
    name: str
    message: str
    status_code: Optional[int] = None
    is_retryable: Optional[bool] = None


class Retry(pd.BaseModel):
    """Retry attempt recorded in a message"""
    id: str
    attempt: int
    error: RetryError
    created_at: float


class ContentPart(pd.BaseModel):
    """Entry in a message's ordered part sequence

    ``ref`` is the stable id of the record the part points at (reasoning id,
    tool call id, step id...). Text parts keep their own segment of text.
    """
    kind: ContentKind
    ref: str
    order: int
    text: Optional[str] = None


class Message(pd.BaseModel):
    """One logical turn entry (user or assistant)"""
    id: str
    role: MessageRole
    session_id: Optional[str] = None
    text: str = ""
    content_parts: List[ContentPart] = pd.Field(default_factory=list)
    part_order_counter: int = 0
    tool_calls: Dict[str, ToolCall] = pd.Field(default_factory=dict)
    reasoning: List[Reasoning] = pd.Field(default_factory=list)
    files: List[FileAttachment] = pd.Field(default_factory=list)
    steps: List[Step] = pd.Field(default_factory=list)
    patches: List[Patch] = pd.Field(default_factory=list)
    subtasks: List[Subtask] = pd.Field(default_factory=list)
    retries: List[Retry] = pd.Field(default_factory=list)
    agent: Optional[str] = None
    parent_id: Optional[str] = None
    is_compacted: bool = False
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cost: Optional[float] = None
    tokens: Optional[TokenUsage] = None
    # Step ids whose finish has already been added to tokens/cost
    accounted_step_ids: List[str] = pd.Field(default_factory=list)
    model_id: Optional[str] = None
    provider_id: Optional[str] = None

    model_config = pd.ConfigDict(extra="forbid", protected_namespaces=())

    @property
    def is_optimistic(self) -> bool:
        return self.role == "user" and is_optimistic_id(self.id)

    def ordered_parts(self) -> List[ContentPart]:
        return sorted(self.content_parts, key=lambda part: part.order)


def create_empty_message(
    message_id: str,
    role: MessageRole,
    session_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Message:
    """Create a message with no content yet."""
    return Message(
        id=message_id,
        role=role,
        session_id=session_id,
        created_at=created_at or datetime.now(timezone.utc),
    )


class PermissionTime(pd.BaseModel):
    created: float = 0


class PermissionRequest(pd.BaseModel):
    """Human-approval request raised by the agent before a risky action

    Field names follow the wire payload of ``permission.updated``.
    """
    id: str
    type: str
    pattern: Optional[Union[str, List[str]]] = None
    session_id: str = pd.Field(alias="sessionID")
    message_id: str = pd.Field(alias="messageID")
    call_id: Optional[str] = pd.Field(default=None, alias="callID")
    title: str = ""
    metadata: Dict[str, Any] = pd.Field(default_factory=dict)
    time: PermissionTime = pd.Field(default_factory=PermissionTime)

    model_config = pd.ConfigDict(populate_by_name=True, extra="ignore")


class PendingPermission(PermissionRequest):
    """Permission request held in the queue, with its client-only responding flag"""
    is_responding: bool = False


class SessionInfo(pd.BaseModel):
    """Session metadata as reported by the backend"""
    id: str
    parent_id: Optional[str] = pd.Field(default=None, alias="parentID")
    title: Optional[str] = None
    time: Dict[str, Any] = pd.Field(default_factory=dict)
    status: Optional[str] = None

    model_config = pd.ConfigDict(populate_by_name=True, extra="ignore")
