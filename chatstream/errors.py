"""
Exception hierarchy and error codes.

Every failure a task can hit falls into one of four kinds:

  - ``ValidationError``: bad input caught before any network call.
  - ``TransportError``: the HTTP exchange itself failed.
  - ``ProtocolError``: the server sent something that is not a usable JSON
    fragment.
  - ``APIError``: the server answered with an ``error`` object.

None of them are retried here.  Tasks translate the first three into a
``RequestFailed`` event tagged with an ``ErrorCode``; the last one becomes an
``ErrorReceived`` event carrying the parsed ``ErrorInfo``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatstream.llm.types import ErrorInfo


class ErrorCode:
    VALIDATION_ERROR = "validation_error"
    TRANSPORT_ERROR = "transport_error"
    PROTOCOL_ERROR = "protocol_error"
    API_ERROR = "api_error"


class ChatStreamError(RuntimeError):
    """Base class for all errors raised by chatstream."""

    code = "chatstream_error"


class ValidationError(ChatStreamError):
    code = ErrorCode.VALIDATION_ERROR


class TransportError(ChatStreamError):
    code = ErrorCode.TRANSPORT_ERROR


class ProtocolError(ChatStreamError):
    """A fragment could not be parsed or had an unexpected shape."""

    code = ErrorCode.PROTOCOL_ERROR

    def __init__(self, message: str, fragment: str = "") -> None:
        super().__init__(message)
        self.fragment = fragment


class APIError(ChatStreamError):
    """The server returned an ``error`` object instead of choices."""

    code = ErrorCode.API_ERROR

    def __init__(self, error: ErrorInfo) -> None:
        super().__init__(error.message or "API error")
        self.error = error
