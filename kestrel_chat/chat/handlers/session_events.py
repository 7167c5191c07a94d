"""Session event handlers.

Handles all session.* events:
- session.created - child session spawned (e.g. by a task tool)
- session.updated - session info changed (title, status)
- session.status - explicit idle/busy/retry status
- session.idle - processing complete
- session.error - the session failed
- session.deleted / session.compacted / session.diff - informational
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from kestrel_chat.core.actions import (
    Action,
    HandlerContext,
    HandlerResult,
    NotifySessionCreated,
    NotifySessionUpdated,
    SetError,
    SetRunning,
    SetSessionStatus,
    UpdateSessionActivity,
    handled,
    not_handled,
)
from kestrel_chat.core.events import (
    ErrorPayload,
    SessionErrorProperties,
    SessionIdProperties,
    SessionInfoPayload,
    SessionInfoProperties,
    SessionStatusProperties,
)
from kestrel_chat.core.models import SessionInfo
from kestrel_chat.core.session_status import SessionStatus, status_from_wire


logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "An error occurred"


def _session_info(payload: SessionInfoPayload) -> SessionInfo:
    return SessionInfo(
        id=payload.id,
        parent_id=payload.parent_id,
        title=payload.title,
        time=payload.time,
        status=payload.status.type if payload.status else None,
    )


def _status_actions(status: SessionStatus) -> List[Action]:
    if status.type == "idle":
        return [SetSessionStatus(status), SetRunning(False), UpdateSessionActivity(False)]
    if status.type == "busy":
        return [SetSessionStatus(status), SetRunning(True), UpdateSessionActivity(True)]
    # Retrying is still working, just not making progress
    return [SetSessionStatus(status), SetRunning(True)]


def _record_status(context: HandlerContext, session_id: Optional[str], status: SessionStatus) -> None:
    if session_id and context.status_registry is not None:
        context.status_registry.set(session_id, status)


def handle_session_created(properties: SessionInfoProperties, context: HandlerContext) -> HandlerResult:
    """Notify about child sessions only; top-level creation is owned by the caller."""
    info = properties.info
    if not info.parent_id:
        return not_handled()

    logger.info(f"Child session created: {info.id} (parent {info.parent_id})")
    return handled(NotifySessionCreated(_session_info(info)))


def handle_session_updated(properties: SessionInfoProperties, context: HandlerContext) -> HandlerResult:
    info = properties.info
    actions: List[Action] = []

    if info.status is not None and info.status.type == "idle":
        status = SessionStatus.idle()
        _record_status(context, info.id, status)
        if not context.is_other_session(info.id):
            actions.extend([SetSessionStatus(status), SetRunning(False)])

    logger.debug(f"Session updated: {info.id} {info.title!r}")
    actions.append(NotifySessionUpdated(_session_info(info)))
    return handled(*actions)


def handle_session_status(properties: SessionStatusProperties, context: HandlerContext) -> HandlerResult:
    """Drive the status machine from an explicit status event.

    The registry update runs before session filtering, so sub-session
    statuses are tracked even while viewing the parent.
    """
    wire = properties.status
    status = status_from_wire(
        wire.type,
        wire.attempt,
        wire.message,
        wire.next,
        fallback_ms=context.retry_fallback_ms,
    )
    if status is None:
        logger.warning(f"session.status with unknown status type: {wire.type!r}")
        return not_handled()

    _record_status(context, properties.session_id, status)

    if context.is_other_session(properties.session_id):
        return not_handled()

    return handled(*_status_actions(status))


def handle_session_idle(properties: SessionIdProperties, context: HandlerContext) -> HandlerResult:
    status = SessionStatus.idle()
    _record_status(context, properties.session_id, status)

    if context.is_other_session(properties.session_id):
        return not_handled()

    return handled(*_status_actions(status))


def extract_error_message(properties: SessionErrorProperties) -> str:
    """Human-readable message from a string error, a structured error or a message field."""
    error = properties.error
    if isinstance(error, str) and error:
        return error
    if isinstance(error, ErrorPayload):
        if error.data is not None and error.data.message:
            return error.data.message
        if error.name:
            return error.name
        return DEFAULT_ERROR_MESSAGE
    if properties.message:
        return properties.message
    return DEFAULT_ERROR_MESSAGE


def handle_session_error(properties: SessionErrorProperties, context: HandlerContext) -> HandlerResult:
    if context.is_other_session(properties.session_id):
        return not_handled()

    message = extract_error_message(properties)
    logger.error(f"Session error: {message}")
    return handled(SetError(message), SetRunning(False))


def handle_session_deleted(properties: SessionIdProperties, context: HandlerContext) -> HandlerResult:
    logger.info(f"Session deleted: {properties.session_id}")
    if properties.session_id and properties.session_id == context.session_id:
        logger.warning("Current session was deleted")
    if properties.session_id and context.status_registry is not None:
        context.status_registry.remove(properties.session_id)
    return handled()


def handle_session_compacted(properties: Dict[str, Any], context: HandlerContext) -> HandlerResult:
    logger.info(f"Session compacted: {properties.get('sessionID')}")
    return handled()


def handle_session_diff(properties: Dict[str, Any], context: HandlerContext) -> HandlerResult:
    logger.debug(f"Session diff: {properties.get('sessionID')}")
    return not_handled()
