"""kestrel-chat - Core module exports"""

from .exceptions import (
    BackendError,
    KestrelChatError,
    MessageError,
    PermissionResponseError,
    SessionError,
    StreamError,
)
from .models import (
    ContentPart,
    FileAttachment,
    Message,
    PendingPermission,
    PermissionRequest,
    SessionInfo,
    TokenUsage,
    ToolCall,
)
from .result import Err, Ok, Pass, Result

__all__ = [
    # Errors
    "KestrelChatError",
    "SessionError",
    "MessageError",
    "PermissionResponseError",
    "BackendError",
    "StreamError",
    # Models
    "ContentPart",
    "FileAttachment",
    "Message",
    "PendingPermission",
    "PermissionRequest",
    "SessionInfo",
    "TokenUsage",
    "ToolCall",
    # Result
    "Result",
    "Ok",
    "Err",
    "Pass",
]
