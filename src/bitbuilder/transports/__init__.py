"""Transport adapters."""

from bitbuilder.transports.base import BaseTransport, EventHandler
from bitbuilder.transports.duplex import DuplexTransport, SessionConfig, SignedUrlProvider
from bitbuilder.transports.frames import decode_frame
from bitbuilder.transports.request_response import CallableClient, ChatReply, RequestResponseTransport
from bitbuilder.transports.widget import Widget, WidgetTransport

__all__ = [
    "BaseTransport",
    "CallableClient",
    "ChatReply",
    "DuplexTransport",
    "EventHandler",
    "RequestResponseTransport",
    "SessionConfig",
    "SignedUrlProvider",
    "Widget",
    "WidgetTransport",
    "decode_frame",
]
