"""kestrel-chat - Client-side event reconciliation for agent chat sessions"""

from kestrel_chat.chat.runtime import ChatRuntime
from kestrel_chat.core.models import Message, PermissionRequest, ToolCall
from kestrel_chat.core.session_status import SessionStatus

__version__ = "0.1.0"

__all__ = [
    "ChatRuntime",
    "Message",
    "PermissionRequest",
    "SessionStatus",
    "ToolCall",
    "__version__",
]
