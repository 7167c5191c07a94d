"""Domain-specific exceptions for kestrel_chat.

This module defines the exception hierarchy for errors raised by the
outbound side of the chat client: backend commands, permission responses
and the event stream transport. Inbound event handling never raises;
malformed events degrade to a not-handled result instead.
"""

from typing import Optional


class KestrelChatError(Exception):
    """Base exception for all kestrel_chat errors.

    All domain-specific exceptions should inherit from this class.
    """


class SessionError(KestrelChatError):
    """Exception raised when session operations fail.

    This includes errors when listing, creating or loading sessions
    and when aborting a running turn.
    """


class MessageError(KestrelChatError):
    """Exception raised when message operations fail.

    This includes errors when sending, editing, reverting or
    reloading messages within a session.
    """


class PermissionResponseError(KestrelChatError):
    """Exception raised when answering a permission request fails.

    The request stays in the queue with its responding flag reset,
    so the user can answer it again.
    """

    def __init__(self, message: str, permission_id: str):
        self.permission_id = permission_id
        super().__init__(message)


class BackendError(KestrelChatError):
    """Exception raised when the backend rejects or fails a request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_count: int = 0,
    ):
        self.message = message
        self.status_code = status_code
        self.retry_count = retry_count
        super().__init__(message)


class StreamError(KestrelChatError):
    """Exception raised when the event stream cannot be opened or breaks.

    The stream lifecycle manager treats this as a transport failure and
    reconnects after its fixed delay.
    """
