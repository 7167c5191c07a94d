"""Message merge engine.

Folds part conversion results into messages and merges two versions of the
same message. Every rule here is idempotent: applying the same result or
merging the same message twice leaves the state unchanged.

- Text never shrinks: a full value replaces the current one only if it is
  at least as long; deltas append. When both arrive together the delta is
  appended unless the full value already holds it on top of the current
  segment.
- Keyed lists (reasoning, files, steps, patches, subtasks, retries) are
  updated in place by id, never duplicated.
- Tool call status only moves forward: pending, running, then completed
  or error.
- Step tokens and cost are added to the message once per step id, when
  the step reaches its finish phase.

``apply_conversion`` and ``remove_part`` mutate the message they are given;
callers hand them a copy (the action applier always does).
``merge_messages`` returns a new message.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, TypeVar

import pydantic as pd

from kestrel_chat.chat.part_converter import PartConversionResult, ToolResultUpdate
from kestrel_chat.core.models import (
    ContentPart,
    Message,
    Reasoning,
    Step,
    TokenUsage,
    ToolCall,
)


logger = logging.getLogger(__name__)

_STATUS_RANK: Dict[str, int] = {"pending": 0, "running": 1, "completed": 2, "error": 2}
_TERMINAL_RANK = 2

Keyed = TypeVar("Keyed", bound=pd.BaseModel)


def _longer(current: str, candidate: str) -> str:
    return candidate if len(candidate) >= len(current) else current


def _content_part(message: Message, kind: str, ref: str) -> Optional[ContentPart]:
    for part in message.content_parts:
        if part.kind == kind and part.ref == ref:
            return part
    return None


def _track_part(message: Message, kind: str, ref: str) -> ContentPart:
    """Return the ordered content entry for a record, appending it on first sight."""
    part = _content_part(message, kind, ref)
    if part is None:
        part = ContentPart(kind=kind, ref=ref, order=message.part_order_counter)
        message.content_parts.append(part)
        message.part_order_counter += 1
    return part


def _covers(full: str, current: str, delta: str) -> bool:
    """True when ``full`` already holds the current segment plus ``delta``."""
    return len(full) >= len(current) + len(delta) and full.endswith(delta)


def _joined_text(message: Message) -> str:
    return "".join(part.text or "" for part in message.ordered_parts() if part.kind == "text")


def _merge_text(message: Message, result: PartConversionResult) -> None:
    key = result.text_key or "text"
    segment = _track_part(message, "text", key)
    current = segment.text or ""

    full, delta = result.text, result.text_delta
    if delta:
        if full is not None and _covers(full, current, delta):
            updated = _longer(current, full)
        elif full is not None and full == current and full.endswith(delta):
            # Re-delivery of an update already folded in
            return
        else:
            updated = current + delta
    elif full is not None:
        updated = _longer(current, full)
    else:
        return

    segment.text = updated
    message.text = _longer(message.text, _joined_text(message))


def _upsert(items: List[Keyed], incoming: Keyed) -> int:
    """Replace the item sharing incoming's id, or append; returns its index."""
    incoming_id = getattr(incoming, "id")
    for index, item in enumerate(items):
        if getattr(item, "id") == incoming_id:
            items[index] = incoming
            return index
    items.append(incoming)
    return len(items) - 1


def _find(items: Sequence[Keyed], item_id: str) -> Optional[Keyed]:
    for item in items:
        if getattr(item, "id") == item_id:
            return item
    return None


def merge_reasoning(existing: Optional[Reasoning], incoming: Reasoning) -> Reasoning:
    if existing is None:
        return incoming
    return Reasoning(
        id=existing.id,
        text=_longer(existing.text, incoming.text),
        start_time=incoming.start_time if incoming.start_time is not None else existing.start_time,
        end_time=incoming.end_time if incoming.end_time is not None else existing.end_time,
    )


def _overlay(base: pd.BaseModel, top: pd.BaseModel, fill_only: bool) -> Dict[str, object]:
    """Field values of base with top's set values laid over them.

    With ``fill_only`` top only supplies fields that are unset in base.
    Empty dicts and lists count as unset.
    """
    merged = base.model_dump()
    for name, value in top.model_dump().items():
        if value is None or value == {} or value == []:
            continue
        current = merged.get(name)
        if fill_only and not (current is None or current == {} or current == []):
            continue
        merged[name] = value
    return merged


def merge_tool_call(existing: Optional[ToolCall], incoming: ToolCall) -> ToolCall:
    """Merge a later view of a call into the known one without regressing status."""
    if existing is None:
        return incoming

    existing_rank = _STATUS_RANK[existing.status]
    incoming_rank = _STATUS_RANK[incoming.status]
    advances = incoming_rank > existing_rank or (
        incoming_rank == existing_rank and incoming_rank < _TERMINAL_RANK
    )

    merged = _overlay(existing, incoming, fill_only=not advances)
    if not advances:
        merged["status"] = existing.status
    return ToolCall.model_validate(merged)


def _apply_tool_result(message: Message, update: ToolResultUpdate) -> None:
    call = message.tool_calls.get(update.call_id)
    if call is None:
        logger.debug(f"tool-result for unknown call {update.call_id} ignored")
        return
    if call.is_terminal:
        if call.result is None and update.result is not None:
            message.tool_calls[update.call_id] = call.model_copy(update={"result": update.result})
        return
    message.tool_calls[update.call_id] = call.model_copy(
        update={"result": update.result, "status": "completed"}
    )


def merge_step(existing: Optional[Step], incoming: Step) -> Step:
    """Merge a step's start and finish views into one record; finish wins."""
    if existing is None:
        return incoming
    if existing.phase == "finish" and incoming.phase == "start":
        return Step.model_validate(_overlay(existing, incoming, fill_only=True))
    merged = _overlay(existing, incoming, fill_only=False)
    merged["phase"] = "finish" if "finish" in (existing.phase, incoming.phase) else "start"
    return Step.model_validate(merged)


def _account_step(message: Message, step: Step) -> None:
    """Add a finished step's tokens and cost to the message, once per step id."""
    if step.phase != "finish" or step.id in message.accounted_step_ids:
        return
    if step.tokens is not None:
        message.tokens = (message.tokens or TokenUsage()).plus(step.tokens)
    if step.cost is not None:
        message.cost = (message.cost or 0.0) + step.cost
    message.accounted_step_ids.append(step.id)


def apply_conversion(message: Message, result: PartConversionResult) -> Message:
    """Fold one conversion result into ``message`` in place and return it."""
    if result.text is not None or result.text_delta:
        _merge_text(message, result)

    if result.reasoning is not None:
        existing = _find(message.reasoning, result.reasoning.id)
        _upsert(message.reasoning, merge_reasoning(existing, result.reasoning))
        _track_part(message, "reasoning", result.reasoning.id)

    if result.tool_call is not None:
        call_id = result.tool_call.tool_call_id
        message.tool_calls[call_id] = merge_tool_call(message.tool_calls.get(call_id), result.tool_call)
        _track_part(message, "tool", call_id)

    if result.tool_result is not None:
        _apply_tool_result(message, result.tool_result)

    if result.file is not None:
        _upsert(message.files, result.file)
        _track_part(message, "file", result.file.id)

    if result.step is not None:
        merged_step = merge_step(_find(message.steps, result.step.id), result.step)
        _upsert(message.steps, merged_step)
        _track_part(message, "step", merged_step.id)
        _account_step(message, merged_step)

    if result.patch is not None:
        _upsert(message.patches, result.patch)
        _track_part(message, "patch", result.patch.id)

    if result.subtask is not None:
        _upsert(message.subtasks, result.subtask)
        _track_part(message, "subtask", result.subtask.id)

    if result.retry is not None:
        existing_retry = _find(message.retries, result.retry.id)
        # Keep the first-seen time of a redelivered retry
        retry = result.retry
        if existing_retry is not None:
            retry = retry.model_copy(update={"created_at": existing_retry.created_at})
        _upsert(message.retries, retry)
        _track_part(message, "retry", retry.id)

    if result.agent is not None:
        message.agent = result.agent

    if result.is_compacted is not None:
        message.is_compacted = result.is_compacted

    return message


_REMOVABLE_LISTS = {
    "reasoning": ("reasoning", "reasoning"),
    "file": ("files", "file"),
    "step-start": ("steps", "step"),
    "step-finish": ("steps", "step"),
    "patch": ("patches", "patch"),
    "subtask": ("subtasks", "subtask"),
    "retry": ("retries", "retry"),
}


def remove_part(message: Message, part_id: str, part_type: Optional[str]) -> Message:
    """Remove one part from ``message`` in place and return it.

    Text cannot be structurally removed, so removing a text part clears the
    message text to an empty string.
    """
    if part_type == "text":
        message.text = ""
        message.content_parts = [part for part in message.content_parts if part.kind != "text"]
    elif part_type in ("tool", "tool-invocation"):
        removed = [
            call_id
            for call_id, call in message.tool_calls.items()
            if call_id == part_id or call.part_id == part_id
        ]
        for call_id in removed:
            del message.tool_calls[call_id]
        message.content_parts = [
            part for part in message.content_parts if not (part.kind == "tool" and part.ref in removed)
        ]
    elif part_type in _REMOVABLE_LISTS:
        field_name, kind = _REMOVABLE_LISTS[part_type]
        items = getattr(message, field_name)
        setattr(message, field_name, [item for item in items if item.id != part_id])
        message.content_parts = [
            part for part in message.content_parts if not (part.kind == kind and part.ref == part_id)
        ]
    else:
        logger.warning(f"Unknown part type for removal: {part_type}")
    return message


def _union_by_id(existing: List[Keyed], incoming: List[Keyed], merge=None) -> List[Keyed]:
    merged = list(existing)
    for item in incoming:
        current = _find(merged, getattr(item, "id"))
        if current is None:
            merged.append(item)
        elif merge is not None:
            _upsert(merged, merge(current, item))
    return merged


def merge_messages(existing: Message, incoming: Message) -> Message:
    """Merge two versions of the same message into a new one.

    List fields are unioned by id, the longer text is kept (never both
    concatenated) and tokens/cost are added only for finished steps the
    existing version has not accounted for yet.
    """
    merged = existing.model_copy(deep=True)
    incoming = incoming.model_copy(deep=True)

    merged.text = _longer(merged.text, incoming.text)

    merged.reasoning = _union_by_id(merged.reasoning, incoming.reasoning, merge_reasoning)
    merged.files = _union_by_id(merged.files, incoming.files)
    merged.patches = _union_by_id(merged.patches, incoming.patches)
    merged.subtasks = _union_by_id(merged.subtasks, incoming.subtasks)
    merged.retries = _union_by_id(merged.retries, incoming.retries)
    merged.steps = _union_by_id(merged.steps, incoming.steps, merge_step)

    for call_id, call in incoming.tool_calls.items():
        merged.tool_calls[call_id] = merge_tool_call(merged.tool_calls.get(call_id), call)

    next_order = max(merged.part_order_counter, incoming.part_order_counter)
    for part in incoming.ordered_parts():
        current = _content_part(merged, part.kind, part.ref)
        if current is None:
            merged.content_parts.append(part.model_copy(update={"order": next_order}))
            next_order += 1
        elif part.text is not None:
            current.text = _longer(current.text or "", part.text)
    merged.part_order_counter = next_order

    unaccounted = [
        step_id for step_id in incoming.accounted_step_ids if step_id not in merged.accounted_step_ids
    ]
    if unaccounted:
        for step_id in unaccounted:
            step = _find(incoming.steps, step_id)
            if step is None:
                continue
            if step.tokens is not None:
                merged.tokens = (merged.tokens or TokenUsage()).plus(step.tokens)
            if step.cost is not None:
                merged.cost = (merged.cost or 0.0) + step.cost
            merged.accounted_step_ids.append(step_id)
    if merged.tokens is None and incoming.tokens is not None:
        merged.tokens = incoming.tokens
    if merged.cost is None and incoming.cost is not None:
        merged.cost = incoming.cost

    for name in ("session_id", "agent", "parent_id", "created_at", "completed_at", "model_id", "provider_id"):
        if getattr(merged, name) is None and getattr(incoming, name) is not None:
            setattr(merged, name, getattr(incoming, name))
    merged.is_compacted = merged.is_compacted or incoming.is_compacted

    return merged
