"""Permission queue: pending human-approval requests, first in first out.

The queue exclusively owns its entries. Entries leave it only when answered
(locally or by another client) or explicitly removed; switching sessions
does not clear it.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from kestrel_chat.core.exceptions import PermissionResponseError
from kestrel_chat.core.models import (
    PERMISSION_RESPONSES,
    PendingPermission,
    PermissionRequest,
)


logger = logging.getLogger(__name__)

Responder = Callable[[PendingPermission, str], Awaitable[None]]
QueueListener = Callable[[Tuple[PendingPermission, ...]], None]


class PermissionQueue:
    """FIFO of pending permissions; the first entry is the current one."""

    def __init__(self) -> None:
        self._items: List[PendingPermission] = []
        self._listeners: List[QueueListener] = []

    @property
    def items(self) -> Tuple[PendingPermission, ...]:
        return tuple(self._items)

    @property
    def current(self) -> Optional[PendingPermission]:
        return self._items[0] if self._items else None

    def get(self, permission_id: str) -> Optional[PendingPermission]:
        for item in self._items:
            if item.id == permission_id:
                return item
        return None

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, permission_id: object) -> bool:
        return any(item.id == permission_id for item in self._items)

    def subscribe(self, listener: QueueListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.items
        for listener in list(self._listeners):
            listener(snapshot)

    def _replace(self, permission: PendingPermission) -> None:
        self._items = [permission if item.id == permission.id else item for item in self._items]
        self._notify()

    def add(self, permission: PermissionRequest) -> bool:
        """Append a request unless one with the same id is queued.

        Returns:
            True if the request was added.
        """
        if permission.id in self:
            logger.debug(f"Permission {permission.id} already queued")
            return False
        pending = PendingPermission.model_validate(
            {**permission.model_dump(exclude={"is_responding"}), "is_responding": False}
        )
        self._items = [*self._items, pending]
        self._notify()
        return True

    def remove(self, permission_id: str) -> bool:
        """Drop a request; removing an unknown id is a no-op."""
        if permission_id not in self:
            return False
        self._items = [item for item in self._items if item.id != permission_id]
        self._notify()
        return True

    def clear(self) -> None:
        self._items = []
        self._notify()

    async def respond(self, permission_id: str, response: str, responder: Responder) -> bool:
        """Answer a queued request through ``responder``.

        The entry is flagged as responding while the call runs and removed
        once it succeeds. On failure the flag is reset and the error is
        re-raised, leaving the entry answerable again.

        Returns:
            False if the request is not queued or already being answered.

        Raises:
            ValueError: If the response is not once, always or reject.
            PermissionResponseError: If the responder fails.
        """
        if response not in PERMISSION_RESPONSES:
            raise ValueError(f"Invalid permission response: {response}")

        permission = self.get(permission_id)
        if permission is None:
            logger.warning(f"Permission {permission_id} not found in queue")
            return False
        if permission.is_responding:
            logger.debug(f"Permission {permission_id} is already being answered")
            return False

        responding = permission.model_copy(update={"is_responding": True})
        self._replace(responding)

        try:
            await responder(responding, response)
        except Exception as e:
            current = self.get(permission_id)
            if current is not None:
                self._replace(current.model_copy(update={"is_responding": False}))
            logger.error(f"Failed to respond to permission {permission_id}: {e}")
            raise PermissionResponseError(
                f"Failed to respond to permission {permission_id}: {e}", permission_id
            ) from e

        # A permission.replied event may already have removed it
        self.remove(permission_id)
        return True
