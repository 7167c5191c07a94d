"""Backend event names, the raw inbound event envelope and per-event payloads.

Events arrive as ``{eventType, data: {properties}}``. Every event type the
router acts on has a properties model here, keyed by event type, so that
required fields are checked once at the router boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Type, Union

import pydantic as pd

from kestrel_chat.core.models import PermissionRequest
from kestrel_chat.core.result import Err, Ok, Pass, Result
from kestrel_chat.core.wire import WireModel, WireTokens


logger = logging.getLogger(__name__)


class Events:
    """Event type names emitted by the agent backend"""

    SESSION_CREATED = "session.created"
    SESSION_UPDATED = "session.updated"
    SESSION_STATUS = "session.status"
    SESSION_IDLE = "session.idle"
    SESSION_ERROR = "session.error"
    SESSION_DELETED = "session.deleted"
    SESSION_COMPACTED = "session.compacted"
    SESSION_DIFF = "session.diff"

    MESSAGE_UPDATED = "message.updated"
    MESSAGE_PART_UPDATED = "message.part.updated"
    MESSAGE_REMOVED = "message.removed"
    MESSAGE_PART_REMOVED = "message.part.removed"

    PERMISSION_UPDATED = "permission.updated"
    PERMISSION_REPLIED = "permission.replied"

    FILE_EDITED = "file.edited"
    FILE_WATCHER_UPDATED = "file.watcher.updated"

    SERVER_CONNECTED = "server.connected"
    SERVER_HEARTBEAT = "server.heartbeat"
    SERVER_INSTANCE_DISPOSED = "server.instance.disposed"


# Event types that are known but carry nothing for the conversation state
INFORMATIONAL_EVENTS = frozenset(
    {
        Events.SERVER_CONNECTED,
        Events.SERVER_HEARTBEAT,
        Events.SERVER_INSTANCE_DISPOSED,
        "error",
        "vcs.branch.updated",
        "command.executed",
        "todo.updated",
    }
)
INFORMATIONAL_PREFIXES = ("pty.", "tool.execute.", "installation.", "lsp.", "tui.")


def is_informational(event_type: str) -> bool:
    return event_type in INFORMATIONAL_EVENTS or event_type.startswith(INFORMATIONAL_PREFIXES)


@dataclass(frozen=True)
class RawEvent:
    """Inbound event envelope as delivered by the push channel"""

    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        """Event type, preferring the type embedded in the payload."""
        embedded = self.data.get("type")
        if isinstance(embedded, str) and embedded:
            return embedded
        return self.event_type

    @property
    def properties(self) -> Dict[str, Any]:
        props = self.data.get("properties")
        return props if isinstance(props, dict) else {}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RawEvent":
        """Build an event from a ``{eventType, data}`` mapping, as stored in event logs."""
        data = payload.get("data")
        return cls(event_type=str(payload.get("eventType", "")), data=data if isinstance(data, dict) else {})


class StatusPayload(WireModel):
    type: Optional[str] = None
    attempt: Optional[int] = None
    message: Optional[str] = None
    next: Optional[float] = None


class SessionInfoPayload(WireModel):
    id: str
    parent_id: Optional[str] = pd.Field(default=None, alias="parentID")
    title: Optional[str] = None
    time: Dict[str, Any] = pd.Field(default_factory=dict)
    status: Optional[StatusPayload] = None


class SessionInfoProperties(WireModel):
    info: SessionInfoPayload


class SessionStatusProperties(WireModel):
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")
    status: StatusPayload


class SessionIdProperties(WireModel):
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")


class ErrorDataPayload(WireModel):
    message: Optional[str] = None


class ErrorPayload(WireModel):
    name: Optional[str] = None
    data: Optional[ErrorDataPayload] = None


class SessionErrorProperties(WireModel):
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")
    error: Optional[Union[str, ErrorPayload]] = None
    message: Optional[str] = None


class MessageTime(WireModel):
    created: Optional[float] = None
    completed: Optional[float] = None


class MessageInfoPayload(WireModel):
    id: str
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")
    role: Literal["user", "assistant"]
    time: Optional[MessageTime] = None
    agent: Optional[str] = None
    mode: Optional[str] = None
    parent_id: Optional[str] = pd.Field(default=None, alias="parentID")
    model_id: Optional[str] = pd.Field(default=None, alias="modelID")
    provider_id: Optional[str] = pd.Field(default=None, alias="providerID")
    cost: Optional[float] = None
    tokens: Optional[WireTokens] = None

    model_config = pd.ConfigDict(populate_by_name=True, extra="ignore", protected_namespaces=())


class MessageUpdatedProperties(WireModel):
    info: MessageInfoPayload


class MessagePartUpdatedProperties(WireModel):
    message_id: Optional[str] = pd.Field(default=None, alias="messageID")
    part: Dict[str, Any]
    delta: Optional[str] = None

    @property
    def target_message_id(self) -> Optional[str]:
        part_message_id = self.part.get("messageID")
        return self.message_id or (part_message_id if isinstance(part_message_id, str) else None)

    @property
    def part_session_id(self) -> Optional[str]:
        session_id = self.part.get("sessionID")
        return session_id if isinstance(session_id, str) else None


class MessageRemovedProperties(WireModel):
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")
    message_id: str = pd.Field(alias="messageID")


class MessagePartRemovedProperties(WireModel):
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")
    message_id: str = pd.Field(alias="messageID")
    part_id: str = pd.Field(alias="partID")
    part_type: Optional[str] = pd.Field(default=None, alias="partType")


class PermissionRepliedProperties(WireModel):
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")
    permission_id: str = pd.Field(alias="permissionID")
    response: Optional[str] = None


class FileDiffPayload(WireModel):
    additions: int = 0
    deletions: int = 0


class FileEditedProperties(WireModel):
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")
    path: Optional[str] = pd.Field(default=None, alias="file")
    diff: Optional[FileDiffPayload] = None

    @pd.model_validator(mode="before")
    @classmethod
    def _accept_path_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and "path" in data and "file" not in data:
            return {**data, "file": data["path"]}
        return data


class FileWatcherUpdatedProperties(WireModel):
    session_id: Optional[str] = pd.Field(default=None, alias="sessionID")
    paths: List[str] = pd.Field(default_factory=list)
    event: Optional[str] = None


EVENT_PROPERTY_MODELS: Dict[str, Type[pd.BaseModel]] = {
    Events.SESSION_CREATED: SessionInfoProperties,
    Events.SESSION_UPDATED: SessionInfoProperties,
    Events.SESSION_STATUS: SessionStatusProperties,
    Events.SESSION_IDLE: SessionIdProperties,
    Events.SESSION_ERROR: SessionErrorProperties,
    Events.SESSION_DELETED: SessionIdProperties,
    Events.MESSAGE_UPDATED: MessageUpdatedProperties,
    Events.MESSAGE_PART_UPDATED: MessagePartUpdatedProperties,
    Events.MESSAGE_REMOVED: MessageRemovedProperties,
    Events.MESSAGE_PART_REMOVED: MessagePartRemovedProperties,
    Events.PERMISSION_UPDATED: PermissionRequest,
    Events.PERMISSION_REPLIED: PermissionRepliedProperties,
    Events.FILE_EDITED: FileEditedProperties,
    Events.FILE_WATCHER_UPDATED: FileWatcherUpdatedProperties,
}


def parse_event_properties(event_type: str, properties: Dict[str, Any]) -> Result[pd.BaseModel]:
    """Validate event properties against the model registered for the event type.

    Returns:
        Ok with the typed properties, Pass when the event type has no model
        (its handler takes the raw mapping), or Err when required fields are
        missing or mistyped.
    """
    model = EVENT_PROPERTY_MODELS.get(event_type)
    if model is None:
        return Pass(f"no properties model for {event_type}")

    try:
        return Ok(model.model_validate(properties))
    except pd.ValidationError as e:
        missing = ", ".join(".".join(str(loc) for loc in err["loc"]) for err in e.errors())
        return Err(f"invalid {event_type} properties: {missing}", code="MALFORMED_EVENT")
