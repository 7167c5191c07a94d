"""Event router: maps each backend event to exactly one handler.

Handlers are pure functions ``(properties, context) -> HandlerResult``.
Properties are validated against the model registered for the event type
before the handler runs; invalid payloads, unknown event types and handler
failures all degrade to a logged not-handled result.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List

from kestrel_chat.chat.handlers.file_events import handle_file_edited, handle_file_watcher_updated
from kestrel_chat.chat.handlers.message_events import (
    handle_message_part_removed,
    handle_message_part_updated,
    handle_message_removed,
    handle_message_updated,
)
from kestrel_chat.chat.handlers.permission_events import (
    handle_permission_replied,
    handle_permission_updated,
)
from kestrel_chat.chat.handlers.session_events import (
    handle_session_compacted,
    handle_session_created,
    handle_session_deleted,
    handle_session_diff,
    handle_session_error,
    handle_session_idle,
    handle_session_status,
    handle_session_updated,
)
from kestrel_chat.core.actions import Action, HandlerContext, HandlerResult, not_handled
from kestrel_chat.core.events import Events, RawEvent, is_informational, parse_event_properties


logger = logging.getLogger(__name__)

Handler = Callable[[Any, HandlerContext], HandlerResult]

HANDLERS: Dict[str, Handler] = {
    Events.SESSION_CREATED: handle_session_created,
    Events.SESSION_UPDATED: handle_session_updated,
    Events.SESSION_STATUS: handle_session_status,
    Events.SESSION_IDLE: handle_session_idle,
    Events.SESSION_ERROR: handle_session_error,
    Events.SESSION_DELETED: handle_session_deleted,
    Events.SESSION_COMPACTED: handle_session_compacted,
    Events.SESSION_DIFF: handle_session_diff,
    Events.MESSAGE_UPDATED: handle_message_updated,
    Events.MESSAGE_PART_UPDATED: handle_message_part_updated,
    Events.MESSAGE_REMOVED: handle_message_removed,
    Events.MESSAGE_PART_REMOVED: handle_message_part_removed,
    Events.PERMISSION_UPDATED: handle_permission_updated,
    Events.PERMISSION_REPLIED: handle_permission_replied,
    Events.FILE_EDITED: handle_file_edited,
    Events.FILE_WATCHER_UPDATED: handle_file_watcher_updated,
}


def handle_event(event: RawEvent, context: HandlerContext) -> HandlerResult:
    """Route one event to its handler and return the handler's result."""
    event_type = event.type
    handler = HANDLERS.get(event_type)

    if handler is None:
        if is_informational(event_type):
            logger.debug(f"Informational event: {event_type}")
        else:
            logger.warning(f"Unknown event type: {event_type}")
        return not_handled()

    parsed = parse_event_properties(event_type, event.properties)
    if parsed.is_err():
        logger.warning(f"Dropping malformed event: {getattr(parsed, 'error', event_type)}")
        return not_handled()
    properties = parsed.unwrap() if parsed.is_ok() else event.properties

    try:
        result = handler(properties, context)
    except Exception as e:
        logger.exception(f"Handler for {event_type} failed: {e}")
        return not_handled()

    logger.debug(f"{event_type}: handled={result.handled} actions={[type(a).__name__ for a in result.actions]}")
    return result


def handle_events(events: Iterable[RawEvent], context: HandlerContext) -> HandlerResult:
    """Route a batch of events against one context and combine their actions.

    Every event sees the same snapshot, so events that depend on an earlier
    event's effect (a part for a message created in the same batch) should
    be routed one at a time instead.
    """
    actions: List[Action] = []
    any_handled = False
    for event in events:
        result = handle_event(event, context)
        actions.extend(result.actions)
        any_handled = any_handled or result.handled
    return HandlerResult(actions=tuple(actions), handled=any_handled)
