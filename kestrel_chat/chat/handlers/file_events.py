"""File event handlers.

file.edited and file.watcher.updated are logged only; they produce no
actions on the conversation state.
"""

from __future__ import annotations

import logging

from kestrel_chat.core.actions import HandlerContext, HandlerResult, handled, not_handled
from kestrel_chat.core.events import FileEditedProperties, FileWatcherUpdatedProperties


logger = logging.getLogger(__name__)


def handle_file_edited(properties: FileEditedProperties, context: HandlerContext) -> HandlerResult:
    if context.is_other_session(properties.session_id):
        return not_handled()

    if not properties.path:
        logger.warning("file.edited missing path")
        return not_handled()

    diff = properties.diff
    if diff is not None:
        logger.info(f"File edited: {properties.path} (+{diff.additions} -{diff.deletions})")
    else:
        logger.info(f"File edited: {properties.path}")
    return handled()


def handle_file_watcher_updated(
    properties: FileWatcherUpdatedProperties, context: HandlerContext
) -> HandlerResult:
    if context.is_other_session(properties.session_id):
        return not_handled()

    if not properties.paths:
        return not_handled()

    logger.debug(f"File watcher {properties.event or 'change'}: {', '.join(properties.paths)}")
    return handled()
