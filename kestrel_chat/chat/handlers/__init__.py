"""Backend event handlers and the router that dispatches to them."""

from kestrel_chat.chat.handlers.router import HANDLERS, handle_event, handle_events

__all__ = ["HANDLERS", "handle_event", "handle_events"]
