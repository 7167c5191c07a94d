"""Server-sent events decoding for the backend event stream.

Frames are assembled from ``event:``, ``data:`` and ``id:`` lines and
dispatched on a blank line. Each frame's JSON data becomes a RawEvent: the
type comes from the payload's ``type`` when present, else the frame's event
name, and the properties from the payload's ``properties`` when present,
else the whole payload.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from kestrel_chat.core.events import RawEvent


logger = logging.getLogger(__name__)

DEFAULT_EVENT_NAME = "message"


@dataclass
class SSEFrame:
    event: str = DEFAULT_EVENT_NAME
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


class SSEDecoder:
    """Incremental line-based decoder for a text/event-stream body"""

    def __init__(self) -> None:
        self._event: Optional[str] = None
        self._data: List[str] = []
        self._id: Optional[str] = None
        self._retry: Optional[int] = None
        self.last_event_id: Optional[str] = None

    def feed(self, line: str) -> Optional[SSEFrame]:
        """Consume one line; returns a frame when a blank line completes one."""
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch()

        if line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self._id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        else:
            logger.debug(f"Ignoring SSE field: {name}")
        return None

    def flush(self) -> Optional[SSEFrame]:
        """Dispatch a frame left open when the stream ends."""
        return self._dispatch()

    def _dispatch(self) -> Optional[SSEFrame]:
        if self._id is not None:
            self.last_event_id = self._id

        if not self._data:
            self._event = None
            self._id = None
            self._retry = None
            return None

        frame = SSEFrame(
            event=self._event or DEFAULT_EVENT_NAME,
            data="\n".join(self._data),
            id=self._id,
            retry=self._retry,
        )
        self._event = None
        self._data = []
        self._id = None
        self._retry = None
        return frame


def frame_to_event(frame: SSEFrame) -> Optional[RawEvent]:
    """Decode a frame's JSON payload into a RawEvent; None for unusable frames."""
    try:
        payload = json.loads(frame.data)
    except json.JSONDecodeError as e:
        logger.warning(f"Skipping SSE frame with invalid JSON: {e}")
        return None

    if not isinstance(payload, dict):
        logger.warning(f"Skipping SSE frame with non-object payload: {type(payload).__name__}")
        return None

    properties = payload.get("properties")
    if not isinstance(properties, dict):
        properties = payload

    data = {"properties": properties}
    if isinstance(payload.get("type"), str):
        data["type"] = payload["type"]
    return RawEvent(event_type=frame.event, data=data)


async def iter_frames(lines: AsyncIterator[str]) -> AsyncIterator[SSEFrame]:
    decoder = SSEDecoder()
    async for line in lines:
        frame = decoder.feed(line)
        if frame is not None:
            yield frame
    frame = decoder.flush()
    if frame is not None:
        yield frame


async def iter_events(lines: AsyncIterator[str]) -> AsyncIterator[RawEvent]:
    """Decode raw SSE lines into events, skipping frames that are not JSON objects."""
    async for frame in iter_frames(lines):
        event = frame_to_event(frame)
        if event is not None:
            yield event
