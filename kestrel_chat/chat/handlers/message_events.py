"""Message event handlers.

Handles all message.* events:
- message.updated - message created or its metadata changed
- message.part.updated - streaming content update
- message.removed - message removed
- message.part.removed - one part of a message removed
"""

from __future__ import annotations

import logging

from kestrel_chat.chat.merge import apply_conversion, remove_part
from kestrel_chat.chat.part_converter import convert_raw_part
from kestrel_chat.core.actions import (
    AddMessage,
    HandlerContext,
    HandlerResult,
    RemoveMessage,
    ReplaceOptimisticId,
    UpdateMessage,
    handled,
    not_handled,
)
from kestrel_chat.core.events import (
    MessagePartRemovedProperties,
    MessagePartUpdatedProperties,
    MessageRemovedProperties,
    MessageUpdatedProperties,
)
from kestrel_chat.core.models import Message, create_empty_message, from_epoch_ms


logger = logging.getLogger(__name__)


def handle_message_updated(properties: MessageUpdatedProperties, context: HandlerContext) -> HandlerResult:
    """Create a message, or adopt the optimistic one for a user message."""
    info = properties.info

    if context.is_other_session(info.session_id):
        return not_handled()

    if context.has_message(info.id):
        return not_handled()

    if info.role == "user":
        optimistic = context.find_optimistic_message()
        if optimistic is not None:
            logger.debug(f"Replacing optimistic message {optimistic.id} with {info.id}")
            return handled(ReplaceOptimisticId(optimistic.id, info.id))

    created_at = from_epoch_ms(info.time.created) if info.time and info.time.created else None
    message = create_empty_message(
        info.id,
        info.role,
        session_id=info.session_id or context.session_id,
        created_at=created_at,
    )
    if info.role == "user" and info.agent:
        message.agent = info.agent
    elif info.role == "assistant" and info.mode:
        message.agent = info.mode
    message.parent_id = info.parent_id
    message.model_id = info.model_id
    message.provider_id = info.provider_id

    return handled(AddMessage(message))


def handle_message_part_updated(
    properties: MessagePartUpdatedProperties, context: HandlerContext
) -> HandlerResult:
    """Merge a streamed part into its message, synthesizing the message if needed."""
    message_id = properties.target_message_id
    if not message_id:
        logger.warning("message.part.updated missing messageID")
        return not_handled()

    if context.is_other_session(properties.part_session_id):
        return not_handled()

    result = convert_raw_part(properties.part, properties.delta)
    if result is None:
        return not_handled()

    if not context.has_message(message_id):
        # Part arrived before its message.updated; only the agent streams parts that early
        message = create_empty_message(
            message_id,
            "assistant",
            session_id=properties.part_session_id or context.session_id,
        )
        return handled(AddMessage(apply_conversion(message, result)))

    def updater(message: Message) -> Message:
        return apply_conversion(message, result)

    return handled(UpdateMessage(message_id, updater))


def handle_message_removed(properties: MessageRemovedProperties, context: HandlerContext) -> HandlerResult:
    if context.is_other_session(properties.session_id):
        return not_handled()

    logger.debug(f"Message removed: {properties.message_id}")
    return handled(RemoveMessage(properties.message_id))


def handle_message_part_removed(
    properties: MessagePartRemovedProperties, context: HandlerContext
) -> HandlerResult:
    if context.is_other_session(properties.session_id):
        return not_handled()

    part_id = properties.part_id
    part_type = properties.part_type
    logger.debug(f"Message part removed: {properties.message_id} {part_type} {part_id}")

    def updater(message: Message) -> Message:
        return remove_part(message, part_id, part_type)

    return handled(UpdateMessage(properties.message_id, updater))
