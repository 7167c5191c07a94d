"""Convert stored backend messages (history load) into conversation messages."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import pydantic as pd

from kestrel_chat.chat.merge import apply_conversion
from kestrel_chat.chat.part_converter import convert_raw_part, convert_tokens
from kestrel_chat.core.events import MessageInfoPayload
from kestrel_chat.core.models import Message, create_empty_message, from_epoch_ms


logger = logging.getLogger(__name__)


def convert_history_message(entry: Dict[str, Any]) -> Message:
    """Build a message from a stored ``{info, parts}`` entry.

    Parts go through the full-snapshot converter. Cost and tokens come from
    ``info`` when the backend reports them, since the stored totals are
    authoritative for finished messages.

    Raises:
        pydantic.ValidationError: If ``info`` lacks an id or a valid role.
    """
    info = MessageInfoPayload.model_validate(entry.get("info") or {})

    message = create_empty_message(info.id, info.role, session_id=info.session_id)
    if info.time is not None:
        if info.time.created is not None:
            message.created_at = from_epoch_ms(info.time.created)
        message.completed_at = from_epoch_ms(info.time.completed)

    if info.role == "user" and info.agent:
        message.agent = info.agent
    elif info.role == "assistant" and info.mode:
        message.agent = info.mode

    message.parent_id = info.parent_id
    message.model_id = info.model_id
    message.provider_id = info.provider_id

    for raw_part in entry.get("parts") or []:
        result = convert_raw_part(raw_part, snapshot=True)
        if result is not None:
            apply_conversion(message, result)

    if info.cost is not None:
        message.cost = info.cost
    if info.tokens is not None:
        message.tokens = convert_tokens(info.tokens)

    return message


def convert_history(entries: Iterable[Dict[str, Any]]) -> List[Message]:
    """Convert a history listing, skipping entries that cannot be read."""
    messages: List[Message] = []
    for entry in entries:
        try:
            messages.append(convert_history_message(entry))
        except pd.ValidationError as e:
            logger.warning(f"Skipping unreadable history entry: {e.error_count()} validation error(s)")
    return messages


def detect_model(messages: Iterable[Message]) -> Optional[Dict[str, str]]:
    """Model of the latest assistant message that reports both ids."""
    for message in reversed(list(messages)):
        if message.role == "assistant" and message.model_id and message.provider_id:
            return {"provider_id": message.provider_id, "model_id": message.model_id}
    return None


def detect_agent(messages: Iterable[Message]) -> Optional[str]:
    """Agent of the latest user message, else the latest assistant mode."""
    ordered = list(messages)
    for message in reversed(ordered):
        if message.role == "user" and message.agent:
            return message.agent
    for message in reversed(ordered):
        if message.role == "assistant" and message.agent:
            return message.agent
    return None
