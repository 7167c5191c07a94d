"""Permission event handlers.

Permission events are not filtered by session: a sub-session's approval
request has to stay visible while the parent session is being viewed.
"""

from __future__ import annotations

import logging

from kestrel_chat.core.actions import (
    AddPermission,
    HandlerContext,
    HandlerResult,
    RemovePermission,
    handled,
)
from kestrel_chat.core.events import PermissionRepliedProperties
from kestrel_chat.core.models import PermissionRequest


logger = logging.getLogger(__name__)


def handle_permission_updated(properties: PermissionRequest, context: HandlerContext) -> HandlerResult:
    logger.info(f"Permission requested: {properties.id} ({properties.type}) in {properties.session_id}")
    return handled(AddPermission(properties))


def handle_permission_replied(properties: PermissionRepliedProperties, context: HandlerContext) -> HandlerResult:
    logger.info(f"Permission replied: {properties.permission_id} -> {properties.response}")
    return handled(RemovePermission(properties.permission_id))
