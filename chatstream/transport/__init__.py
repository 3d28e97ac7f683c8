"""Request transports."""

from chatstream.transport.base import Transport, TransportRequest
from chatstream.transport.http import HttpTransport

__all__ = ["HttpTransport", "Transport", "TransportRequest"]
