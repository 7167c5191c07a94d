"""Session status state machine and the stores that track it across sessions.

A session is ``idle``, ``busy`` or ``retry``. Retry carries the attempt
number, a message and the epoch-ms time of the next attempt. Statuses are
driven by backend events only.

Two injectable stores live here:
- SessionStatusRegistry: status of every session seen on the stream,
  including sub-sessions, so a parent view can surface sub-agent activity.
- SessionActivityTracker: per-project busy flag with a staleness threshold.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Literal, Optional

import pydantic as pd

from kestrel_chat.core.models import now_ms


logger = logging.getLogger(__name__)

StatusType = Literal["idle", "busy", "retry"]

DEFAULT_RETRY_MESSAGE = "Retrying..."
DEFAULT_RETRY_FALLBACK_MS = 5000


class RetryInfo(pd.BaseModel):
    """Retry details shown while the backend waits to retry a provider call"""
    attempt: int = 1
    message: str = DEFAULT_RETRY_MESSAGE
    next_retry_at: float

    model_config = pd.ConfigDict(frozen=True)

    def seconds_until_retry(self, now: Optional[float] = None) -> int:
        """Whole seconds left before the next attempt, never negative."""
        current = now if now is not None else now_ms()
        return max(0, math.ceil((self.next_retry_at - current) / 1000))


class SessionStatus(pd.BaseModel):
    """Status of one session; retry info is present only when retrying"""
    type: StatusType = "idle"
    retry: Optional[RetryInfo] = None

    model_config = pd.ConfigDict(frozen=True)

    @pd.model_validator(mode="after")
    def _retry_only_when_retrying(self) -> SessionStatus:
        if self.type == "retry" and self.retry is None:
            raise ValueError("retry status requires retry info")
        if self.type != "retry" and self.retry is not None:
            raise ValueError(f"{self.type} status cannot carry retry info")
        return self

    @classmethod
    def idle(cls) -> SessionStatus:
        return cls(type="idle")

    @classmethod
    def busy(cls) -> SessionStatus:
        return cls(type="busy")

    @classmethod
    def retrying(cls, attempt: int, message: str, next_retry_at: float) -> SessionStatus:
        return cls(type="retry", retry=RetryInfo(attempt=attempt, message=message, next_retry_at=next_retry_at))

    @property
    def is_working(self) -> bool:
        """Busy and retry both mean the session is still doing work."""
        return self.type != "idle"


def status_from_wire(
    status_type: Optional[str],
    attempt: Optional[int] = None,
    message: Optional[str] = None,
    next_retry_at: Optional[float] = None,
    fallback_ms: int = DEFAULT_RETRY_FALLBACK_MS,
    now: Optional[float] = None,
) -> Optional[SessionStatus]:
    """Build a status from wire fields, filling retry defaults.

    Returns None for a missing or unknown status type.
    """
    if status_type == "idle":
        return SessionStatus.idle()
    if status_type == "busy":
        return SessionStatus.busy()
    if status_type == "retry":
        current = now if now is not None else now_ms()
        return SessionStatus.retrying(
            attempt=attempt if attempt is not None else 1,
            message=message if message is not None else DEFAULT_RETRY_MESSAGE,
            next_retry_at=next_retry_at if next_retry_at is not None else current + fallback_ms,
        )
    return None


StatusListener = Callable[[str, SessionStatus], None]


class SessionStatusRegistry:
    """Status of every session seen on the stream, keyed by session id.

    Owned by the application and passed explicitly to whoever needs it;
    its lifetime is the application's, not the session view's.
    """

    def __init__(self) -> None:
        self._statuses: Dict[str, SessionStatus] = {}
        self._listeners: List[StatusListener] = []

    def set(self, session_id: str, status: SessionStatus) -> None:
        previous = self._statuses.get(session_id)
        self._statuses[session_id] = status
        if previous == status:
            return
        for listener in list(self._listeners):
            listener(session_id, status)

    def get(self, session_id: str) -> SessionStatus:
        return self._statuses.get(session_id, SessionStatus.idle())

    def is_working(self, session_id: str) -> bool:
        return self.get(session_id).is_working

    def working_sessions(self) -> List[str]:
        return [session_id for session_id, status in self._statuses.items() if status.is_working]

    def remove(self, session_id: str) -> None:
        self._statuses.pop(session_id, None)

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a change listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def clear(self) -> None:
        self._statuses.clear()

    def __len__(self) -> int:
        return len(self._statuses)


@dataclass(frozen=True)
class SessionActivity:
    is_busy: bool
    last_update: float
    session_id: Optional[str] = None


ActivityListener = Callable[[str, SessionActivity], None]


class SessionActivityTracker:
    """Busy flag per project, used for activity indicators outside the chat view.

    A busy flag that has not been refreshed within ``stale_after`` seconds
    reads as not busy, so a lost idle event cannot leave a spinner forever.
    """

    def __init__(self, stale_after: float = 10.0, clock: Callable[[], float] = time.monotonic):
        self.stale_after = stale_after
        self._clock = clock
        self._activity: Dict[str, SessionActivity] = {}
        self._listeners: List[ActivityListener] = []

    def set_activity(self, project_id: str, is_busy: bool, session_id: Optional[str] = None) -> None:
        activity = SessionActivity(is_busy=is_busy, last_update=self._clock(), session_id=session_id)
        self._activity[project_id] = activity
        for listener in list(self._listeners):
            listener(project_id, activity)

    def get(self, project_id: str) -> Optional[SessionActivity]:
        return self._activity.get(project_id)

    def is_busy(self, project_id: str) -> bool:
        activity = self._activity.get(project_id)
        if activity is None or not activity.is_busy:
            return False
        return self._clock() - activity.last_update <= self.stale_after

    def busy_projects(self) -> List[str]:
        return [project_id for project_id in self._activity if self.is_busy(project_id)]

    def subscribe(self, listener: ActivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def clear(self, project_id: Optional[str] = None) -> None:
        if project_id is None:
            self._activity.clear()
        else:
            self._activity.pop(project_id, None)
