"""Part converters: wire-format parts to normalized conversion results.

Two entry points share the per-type converters:

- convert_part: full snapshot, used once per part when loading history.
  ``part.text`` is the complete text of the part.
- convert_sse_part: incremental, used for each ``message.part.updated``.
  A ``delta`` is a fragment to append; ``part.text`` is the full value of
  the part so far, which may lag behind the delta. Both are passed on and
  the merge engine decides which one to trust.

Unknown part types produce no result and are logged, never raised.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from kestrel_chat.core.models import (
    FileAttachment,
    FileSource,
    Patch,
    Reasoning,
    Retry,
    RetryError,
    Step,
    Subtask,
    TokenUsage,
    ToolCall,
    now_ms,
)
from kestrel_chat.core.wire import (
    AgentPart,
    CompactionPart,
    FilePart,
    PatchPart,
    ReasoningPart,
    RetryPart,
    StepFinishPart,
    StepStartPart,
    SubtaskPart,
    TextPart,
    ToolInvocationPart,
    ToolPart,
    ToolResultPart,
    WireAttachment,
    WirePart,
    WireTokens,
    parse_part,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolResultUpdate:
    """Legacy ``tool-result`` part completing an already known call"""

    call_id: str
    result: Optional[str]


@dataclass(frozen=True)
class PartConversionResult:
    """Fields of a message changed by one part; None means untouched.

    ``text`` is a full replacement value and ``text_delta`` a fragment to
    append. ``text_key`` identifies the text part the value belongs to.
    """

    text: Optional[str] = None
    text_delta: Optional[str] = None
    text_key: Optional[str] = None
    reasoning: Optional[Reasoning] = None
    tool_call: Optional[ToolCall] = None
    tool_result: Optional[ToolResultUpdate] = None
    file: Optional[FileAttachment] = None
    step: Optional[Step] = None
    patch: Optional[Patch] = None
    subtask: Optional[Subtask] = None
    retry: Optional[Retry] = None
    agent: Optional[str] = None
    is_compacted: Optional[bool] = None

    @property
    def is_empty(self) -> bool:
        return all(value is None for value in self.__dict__.values())


EMPTY_RESULT = PartConversionResult()

TEXT_KEY_FALLBACK = "text"


def convert_tokens(tokens: Optional[WireTokens]) -> Optional[TokenUsage]:
    if tokens is None:
        return None
    return TokenUsage(
        input=tokens.input,
        output=tokens.output,
        reasoning=tokens.reasoning,
        cached=tokens.cache.read + tokens.cache.write,
    )


def _convert_attachment(attachment: WireAttachment) -> FileAttachment:
    return FileAttachment(
        id=attachment.id,
        url=attachment.url,
        mime=attachment.mime,
        filename=attachment.filename,
    )


def _text(part: TextPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    key = part.id or TEXT_KEY_FALLBACK
    if snapshot:
        return PartConversionResult(text=part.text or "", text_key=key)
    if part.text is None and not delta:
        return EMPTY_RESULT
    return PartConversionResult(text=part.text, text_delta=delta or None, text_key=key)


def _reasoning(part: ReasoningPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    time = part.time
    return PartConversionResult(
        reasoning=Reasoning(
            id=part.id,
            text=part.text,
            start_time=time.start if time else None,
            end_time=time.end if time else None,
        )
    )


def _file(part: FilePart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    source = None
    if part.source is not None:
        source = FileSource(type=part.source.type, path=part.source.path)
    return PartConversionResult(
        file=FileAttachment(
            id=part.id,
            url=part.url,
            mime=part.mime,
            filename=part.filename,
            source=source,
        )
    )


def _tool_result_value(status: str, output: Optional[str], error: Optional[str]) -> Optional[str]:
    """Result shown for a call: output when completed, error when failed, else None."""
    if status == "completed":
        return output
    if status == "error":
        return error if error is not None else output
    return None


def _tool(part: ToolPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    state = part.state
    time = state.time
    attachments: Optional[List[FileAttachment]] = None
    if state.attachments:
        attachments = [_convert_attachment(attachment) for attachment in state.attachments]

    if snapshot:
        args_raw = state.raw if state.status == "pending" else None
        metadata = state.metadata if state.status != "pending" else None
    else:
        args_raw = state.raw
        metadata = state.metadata

    return PartConversionResult(
        tool_call=ToolCall(
            tool_call_id=part.call_id,
            tool_name=part.tool or "unknown",
            args=state.input,
            args_raw=args_raw,
            result=_tool_result_value(state.status, state.output, state.error),
            status=state.status,
            error=state.error if state.status == "error" else None,
            title=state.title,
            metadata=metadata,
            start_time=time.start if time else None,
            end_time=time.end if time else None,
            attachments=attachments,
            part_id=part.id,
        )
    )


def _tool_invocation(part: ToolInvocationPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    invocation = part.tool_invocation
    has_result = "result" in invocation.model_fields_set and invocation.result is not None

    status = "pending"
    if invocation.state == "running":
        status = "running"
    elif has_result:
        status = "completed"

    result: Optional[str] = None
    if has_result:
        result = invocation.result if isinstance(invocation.result, str) else json.dumps(invocation.result)

    time = part.time
    return PartConversionResult(
        tool_call=ToolCall(
            tool_call_id=invocation.tool_call_id,
            tool_name=invocation.tool_name,
            args=invocation.args if isinstance(invocation.args, dict) else {},
            result=result,
            status=status,
            start_time=time.start if time else None,
            end_time=time.end if time else None,
            part_id=part.id,
        )
    )


def _tool_result(part: ToolResultPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    if not part.call_id:
        return EMPTY_RESULT
    result = part.text or (part.state.output if part.state else None)
    if snapshot and not result:
        return EMPTY_RESULT
    return PartConversionResult(tool_result=ToolResultUpdate(call_id=part.call_id, result=result))


def _step_start(part: StepStartPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    return PartConversionResult(step=Step(id=part.id, phase="start", snapshot=part.snapshot))


def _step_finish(part: StepFinishPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    return PartConversionResult(
        step=Step(
            id=part.id,
            phase="finish",
            reason=part.reason,
            snapshot=part.snapshot,
            cost=part.cost,
            tokens=convert_tokens(part.tokens),
        )
    )


def _patch(part: PatchPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    return PartConversionResult(patch=Patch(id=part.id, hash=part.hash, files=list(part.files)))


def _subtask(part: SubtaskPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    return PartConversionResult(
        subtask=Subtask(
            id=part.id,
            prompt=part.prompt,
            description=part.description,
            agent=part.agent,
        )
    )


def _agent(part: AgentPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    return PartConversionResult(agent=part.name)


def _retry(part: RetryPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    created = part.time.created if part.time and part.time.created is not None else None
    data = part.error.data
    return PartConversionResult(
        retry=Retry(
            id=part.id,
            attempt=part.attempt,
            error=RetryError(
                name=part.error.name,
                message=data.message,
                status_code=data.status_code,
                is_retryable=data.is_retryable,
            ),
            created_at=created if created is not None else now_ms(),
        )
    )


def _compaction(part: CompactionPart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    return PartConversionResult(is_compacted=part.auto if part.auto is not None else True)


def _snapshot(part: WirePart, delta: Optional[str], snapshot: bool) -> PartConversionResult:
    # Snapshots are carried by step parts; standalone ones change nothing
    return EMPTY_RESULT


_CONVERTERS: Dict[str, Callable[[Any, Optional[str], bool], PartConversionResult]] = {
    "text": _text,
    "reasoning": _reasoning,
    "file": _file,
    "tool": _tool,
    "tool-invocation": _tool_invocation,
    "tool-result": _tool_result,
    "step-start": _step_start,
    "step-finish": _step_finish,
    "patch": _patch,
    "subtask": _subtask,
    "agent": _agent,
    "retry": _retry,
    "compaction": _compaction,
    "snapshot": _snapshot,
}


def convert_part(part: WirePart) -> PartConversionResult:
    """Convert a part from a full message snapshot (history load)."""
    converter = _CONVERTERS.get(part.type)
    if converter is None:
        logger.warning(f"Unknown part type: {part.type}")
        return EMPTY_RESULT
    return converter(part, None, True)


def convert_sse_part(part: WirePart, delta: Optional[str] = None) -> PartConversionResult:
    """Convert a part from an incremental ``message.part.updated`` event."""
    converter = _CONVERTERS.get(part.type)
    if converter is None:
        logger.warning(f"Unknown SSE part type: {part.type}")
        return EMPTY_RESULT
    return converter(part, delta, False)


def convert_raw_part(
    data: Any,
    delta: Optional[str] = None,
    snapshot: bool = False,
) -> Optional[PartConversionResult]:
    """Parse and convert a raw part payload.

    Returns None, after logging, when the payload is malformed or of an
    unknown type.
    """
    parsed = parse_part(data)
    if parsed.is_pass():
        logger.warning(f"Skipping part: {getattr(parsed, 'message', None)}")
        return None
    if parsed.is_err():
        logger.warning(f"Skipping malformed part: {getattr(parsed, 'error', None)}")
        return None

    part = parsed.unwrap()
    if snapshot:
        return convert_part(part)
    return convert_sse_part(part, delta)
