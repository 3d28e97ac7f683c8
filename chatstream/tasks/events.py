"""
Task lifecycle events.

Every subscriber-visible step of a task is published as a ``TaskEvent``.
Events are immutable once created and carry a deep-copied snapshot of the
response as it was when the event was emitted, so subscribers can keep them
without racing later merges.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from chatstream.llm.types import ChatResponse


# ---------------------------------------------------------------------------
# Core event types
# ---------------------------------------------------------------------------

EVENT_REQUEST_SENT = "request_sent"
EVENT_REQUEST_FAILED = "request_failed"
EVENT_PROGRESS_STARTED = "progress_started"
EVENT_PROGRESS_UPDATED = "progress_updated"
EVENT_PROCESS_COMPLETED = "process_completed"
EVENT_ERROR_RECEIVED = "error_received"

ALL_EVENTS: tuple[str, ...] = (
    EVENT_REQUEST_SENT,
    EVENT_REQUEST_FAILED,
    EVENT_PROGRESS_STARTED,
    EVENT_PROGRESS_UPDATED,
    EVENT_PROCESS_COMPLETED,
    EVENT_ERROR_RECEIVED,
)

# Events that must not reach subscribers once a task has been stopped.
RESPONSE_EVENTS: frozenset[str] = frozenset({
    EVENT_PROGRESS_STARTED,
    EVENT_PROGRESS_UPDATED,
    EVENT_PROCESS_COMPLETED,
    EVENT_ERROR_RECEIVED,
})


@dataclass(frozen=True)
class TaskEvent:
    """
    A single lifecycle event of a task.

    Attributes
    ----------
    event_type:
        One of the ``EVENT_*`` names above.
    task_id:
        Id of the emitting task.
    response:
        Snapshot of the response at emission time.
    error_code:
        ``ErrorCode`` value for ``request_failed`` events.
    reason:
        Human-readable failure reason for ``request_failed`` events.
    """

    event_type: str
    task_id: int
    response: ChatResponse = field(default_factory=ChatResponse)
    error_code: str | None = None
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "task_id": self.task_id,
            "response": self.response.to_dict(),
            "error_code": self.error_code,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def request_sent_event(task_id: int, response: ChatResponse) -> TaskEvent:
    return TaskEvent(EVENT_REQUEST_SENT, task_id, response)


def request_failed_event(
    task_id: int,
    response: ChatResponse,
    error_code: str,
    reason: str,
) -> TaskEvent:
    """Create a ``request_failed`` event."""
    return TaskEvent(
        EVENT_REQUEST_FAILED,
        task_id,
        response,
        error_code=error_code,
        reason=reason,
    )


def progress_started_event(task_id: int, response: ChatResponse) -> TaskEvent:
    return TaskEvent(EVENT_PROGRESS_STARTED, task_id, response)


def progress_updated_event(task_id: int, response: ChatResponse) -> TaskEvent:
    return TaskEvent(EVENT_PROGRESS_UPDATED, task_id, response)


def process_completed_event(task_id: int, response: ChatResponse) -> TaskEvent:
    return TaskEvent(EVENT_PROCESS_COMPLETED, task_id, response)


def error_received_event(task_id: int, response: ChatResponse) -> TaskEvent:
    """Create an ``error_received`` event; ``response.error`` holds the details."""
    return TaskEvent(EVENT_ERROR_RECEIVED, task_id, response)
