"""Request tasks: lifecycle, events and foreground dispatch."""

from chatstream.tasks.base import (
    BaseTask,
    TaskState,
    is_task_active,
    is_task_ready_to_destroy,
    is_task_still_valid,
)
from chatstream.tasks.chat_request import ChatRequest
from chatstream.tasks.dispatch import (
    AsyncioDispatcher,
    EventDispatcher,
    ThreadDispatcher,
    default_dispatcher,
)
from chatstream.tasks.events import (
    EVENT_ERROR_RECEIVED,
    EVENT_PROCESS_COMPLETED,
    EVENT_PROGRESS_STARTED,
    EVENT_PROGRESS_UPDATED,
    EVENT_REQUEST_FAILED,
    EVENT_REQUEST_SENT,
    TaskEvent,
)

__all__ = [
    "AsyncioDispatcher",
    "BaseTask",
    "ChatRequest",
    "EventDispatcher",
    "TaskEvent",
    "TaskState",
    "ThreadDispatcher",
    "default_dispatcher",
    "is_task_active",
    "is_task_ready_to_destroy",
    "is_task_still_valid",
    # Event type constants
    "EVENT_ERROR_RECEIVED",
    "EVENT_PROCESS_COMPLETED",
    "EVENT_PROGRESS_STARTED",
    "EVENT_PROGRESS_UPDATED",
    "EVENT_REQUEST_FAILED",
    "EVENT_REQUEST_SENT",
]
