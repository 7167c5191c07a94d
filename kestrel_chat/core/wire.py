"""Wire-format message parts as streamed and stored by the agent backend.

Each part is a tagged union member keyed by its ``type`` string. Field names
follow the backend payloads (``callID``, ``sessionID``...) through aliases.
Required fields are the ones without which a part carries nothing usable;
anything else is optional so that partial incremental updates still parse.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional, Type

import pydantic as pd

from kestrel_chat.core.result import Err, Ok, Pass, Result


logger = logging.getLogger(__name__)


class WireModel(pd.BaseModel):
    model_config = pd.ConfigDict(populate_by_name=True, extra="ignore")


class WireTime(WireModel):
    start: Optional[float] = None
    end: Optional[float] = None
    created: Optional[float] = None


class WireCache(WireModel):
    read: int = 0
    write: int = 0


class WireTokens(WireModel):
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache: WireCache = pd.Field(default_factory=WireCache)


class WireFileSource(WireModel):
    type: Optional[str] = None
    path: Optional[str] = None


class WireAttachment(WireModel):
    id: str
    url: str
    mime: str
    filename: Optional[str] = None


class WirePart(WireModel):
    type: str
    id: Optional[str] = None
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")
    message_id: Optional[str] = pd.Field(default=None, alias="messageID")
    time: Optional[WireTime] = None


class TextPart(WirePart):
    type: Literal["text"] = "text"
    text: Optional[str] = None
    synthetic: Optional[bool] = None


class ReasoningPart(WirePart):
    type: Literal["reasoning"] = "reasoning"
    id: str
    text: str


class FilePart(WirePart):
    type: Literal["file"] = "file"
    id: str
    url: str
    mime: str
    filename: Optional[str] = None
    source: Optional[WireFileSource] = None


class ToolState(WireModel):
    status: Literal["pending", "running", "completed", "error"] = "pending"
    input: Dict[str, Any] = pd.Field(default_factory=dict)
    raw: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    title: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    time: Optional[WireTime] = None
    attachments: Optional[List[WireAttachment]] = None


class ToolPart(WirePart):
    type: Literal["tool"] = "tool"
    call_id: str = pd.Field(alias="callID")
    tool: Optional[str] = None
    state: ToolState


class ToolInvocation(WireModel):
    tool_call_id: str = pd.Field(alias="toolCallId")
    tool_name: str = pd.Field(default="unknown", alias="toolName")
    args: Any = None
    state: Optional[str] = None
    result: Any = None


class ToolInvocationPart(WirePart):
    """Legacy tool format"""
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_invocation: ToolInvocation = pd.Field(alias="toolInvocation")


class ToolResultPart(WirePart):
    type: Literal["tool-result"] = "tool-result"
    call_id: Optional[str] = pd.Field(default=None, alias="callID")
    text: Optional[str] = None
    state: Optional[ToolState] = None


class StepStartPart(WirePart):
    type: Literal["step-start"] = "step-start"
    id: str
    snapshot: Optional[str] = None


class StepFinishPart(WirePart):
    type: Literal["step-finish"] = "step-finish"
    id: str
    reason: Optional[str] = None
    snapshot: Optional[str] = None
    cost: Optional[float] = None
    tokens: Optional[WireTokens] = None


class PatchPart(WirePart):
    type: Literal["patch"] = "patch"
    id: str
    hash: str
    files: List[str]


class SubtaskPart(WirePart):
    type: Literal["subtask"] = "subtask"
    id: str
    prompt: str
    description: str
    agent: str


class AgentPart(WirePart):
    type: Literal["agent"] = "agent"
    name: str


class WireErrorData(WireModel):
    message: str = ""
    status_code: Optional[int] = pd.Field(default=None, alias="statusCode")
    is_retryable: Optional[bool] = pd.Field(default=None, alias="isRetryable")


class WireError(WireModel):
    name: str = "Error"
    data: WireErrorData = pd.Field(default_factory=WireErrorData)


class RetryPart(WirePart):
    type: Literal["retry"] = "retry"
    id: str
    attempt: int
    error: WireError


class CompactionPart(WirePart):
    type: Literal["compaction"] = "compaction"
    auto: Optional[bool] = None


class SnapshotPart(WirePart):
    type: Literal["snapshot"] = "snapshot"
    snapshot: Optional[str] = None


PART_MODELS: Dict[str, Type[WirePart]] = {
    "text": TextPart,
    "reasoning": ReasoningPart,
    "file": FilePart,
    "tool": ToolPart,
    "tool-invocation": ToolInvocationPart,
    "tool-result": ToolResultPart,
    "step-start": StepStartPart,
    "step-finish": StepFinishPart,
    "patch": PatchPart,
    "subtask": SubtaskPart,
    "agent": AgentPart,
    "retry": RetryPart,
    "compaction": CompactionPart,
    "snapshot": SnapshotPart,
}


def parse_part(data: Any) -> Result[WirePart]:
    """Validate a raw part payload against the model for its ``type``.

    Returns:
        Ok with the typed part, Pass for an unknown part type,
        or Err when the payload is missing required fields.
    """
    if not isinstance(data, dict):
        return Err("part payload is not an object", code="MALFORMED_PART")

    part_type = data.get("type")
    if not isinstance(part_type, str):
        return Err("part payload has no type", code="MALFORMED_PART")

    model = PART_MODELS.get(part_type)
    if model is None:
        return Pass(f"unknown part type: {part_type}")

    try:
        return Ok(model.model_validate(data))
    except pd.ValidationError as e:
        return Err(f"invalid {part_type} part: {e.error_count()} validation error(s)", code="MALFORMED_PART")
