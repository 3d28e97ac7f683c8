"""Abstract base class for request transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

# (content_so_far, bytes_sent, bytes_received)
ProgressCallback = Callable[[str, int, int], None]
# (content, was_successful)
CompleteCallback = Callable[[str, bool], None]


@dataclass
class TransportRequest:
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""


class Transport(ABC):
    """
    A transport carries one request to the server and reports back.

    Implementations must:
      - Return from ``process`` without waiting for the response.
      - Call ``on_progress`` with the *whole* body received so far, from a
        background thread, as data arrives (only when a callback is given).
      - Call ``on_complete`` exactly once when the exchange ends.
        ``was_successful`` is ``False`` only when no complete HTTP response
        was received; error statuses still deliver their body.
      - Never call ``on_complete`` after ``cancel``.
    """

    @abstractmethod
    def process(
        self,
        request: TransportRequest,
        on_progress: Optional[ProgressCallback],
        on_complete: CompleteCallback,
    ) -> bool:
        """
        Start the request.  Returns ``False`` if it could not be started, or
        raises ``TransportError`` when the cause is worth reporting.
        """
        ...

    @abstractmethod
    def cancel(self) -> None:
        """Abort an in-flight request."""
        ...

    def close(self) -> None:
        """Release any resources held by the transport."""
