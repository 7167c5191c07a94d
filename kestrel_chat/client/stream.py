"""Stream lifecycle manager for the backend event stream.

One owner task holds the subscription and moves through an explicit state
machine: disconnected -> connecting -> connected -> disconnected. After a
disconnect it waits a fixed delay and reconnects, unless it is stopping or
has used up its connect attempts. Events are handed to a synchronous
callback one at a time, so each event is fully routed and applied before
the next one is read.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncContextManager, AsyncIterator, Callable, Dict, Optional, Set

from kestrel_chat.core.events import RawEvent
from kestrel_chat.core.result import Err, Ok, Result


logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


VALID_TRANSITIONS: Dict[StreamState, Set[StreamState]] = {
    StreamState.DISCONNECTED: {StreamState.CONNECTING},
    StreamState.CONNECTING: {StreamState.CONNECTED, StreamState.DISCONNECTED},
    StreamState.CONNECTED: {StreamState.DISCONNECTED},
}

EventSource = Callable[[], AsyncContextManager[AsyncIterator[RawEvent]]]
EventCallback = Callable[[RawEvent], object]
StatusCallback = Callable[[StreamState, Optional[str]], None]


class StreamLifecycleManager:
    """Keeps at most one live event subscription and reconnects it.

    Args:
        source: Opens the subscription; the context yields an async iterator of events.
        on_event: Called synchronously for each event.
        reconnect_delay: Fixed seconds to wait before reconnecting.
        max_reconnect_attempts: Consecutive failed connects before giving up (0 = never).
        on_status: Called on every state change, with an error message when giving up.
    """

    def __init__(
        self,
        source: EventSource,
        on_event: EventCallback,
        reconnect_delay: float = 3.0,
        max_reconnect_attempts: int = 0,
        on_status: Optional[StatusCallback] = None,
    ):
        self._source = source
        self._on_event = on_event
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._on_status = on_status
        self._state = StreamState.DISCONNECTED
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self.gave_up = False
        self.connect_count = 0

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _transition(self, new_state: StreamState, error: Optional[str] = None) -> Result[None]:
        if new_state == self._state:
            return Ok(None)
        if new_state not in VALID_TRANSITIONS[self._state]:
            logger.error(f"Invalid stream transition: {self._state.value} -> {new_state.value}")
            return Err(
                f"Invalid stream transition: {self._state.value} -> {new_state.value}",
                code="INVALID_TRANSITION",
            )
        logger.debug(f"Stream {self._state.value} -> {new_state.value}")
        self._state = new_state
        if self._on_status is not None:
            self._on_status(new_state, error)
        return Ok(None)

    async def start(self) -> None:
        """Start the owner task; a no-op while one is already running or connecting."""
        if self.is_running:
            logger.debug("Event stream already running")
            return
        self._stopping = False
        self.gave_up = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the owner task and wait until the subscription is closed."""
        self._stopping = True
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._transition(StreamState.DISCONNECTED)

    async def restart(self) -> None:
        """Tear down the current subscription, then open a new one."""
        await self.stop()
        await self.start()

    async def wait(self) -> None:
        """Wait for the owner task to finish (it only finishes by stopping or giving up)."""
        task = self._task
        if task is not None:
            await asyncio.shield(task)

    def _dispatch(self, event: RawEvent) -> None:
        try:
            self._on_event(event)
        except Exception as e:
            logger.exception(f"Event callback failed for {event.type}: {e}")

    async def _run(self) -> None:
        failures = 0
        while not self._stopping:
            self._transition(StreamState.CONNECTING)
            connected = False
            try:
                async with self._source() as events:
                    connected = True
                    failures = 0
                    self.connect_count += 1
                    self._transition(StreamState.CONNECTED)
                    async for event in events:
                        self._dispatch(event)
                logger.info("Event stream ended")
            except asyncio.CancelledError:
                self._transition(StreamState.DISCONNECTED)
                raise
            except Exception as e:
                logger.warning(f"Event stream error: {e}")
            self._transition(StreamState.DISCONNECTED)

            if not connected:
                failures += 1
            if self._stopping:
                break
            if self.max_reconnect_attempts and failures >= self.max_reconnect_attempts:
                self.gave_up = True
                message = f"Event stream unavailable after {failures} attempts"
                logger.error(message)
                if self._on_status is not None:
                    self._on_status(StreamState.DISCONNECTED, message)
                break

            logger.info(f"Reconnecting event stream in {self.reconnect_delay}s")
            await asyncio.sleep(self.reconnect_delay)
