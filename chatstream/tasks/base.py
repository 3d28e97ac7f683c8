"""
Task base class -- the lifecycle shared by every request task.

    CREATED -> VALIDATING -> SENDING -> STREAMING* -> COMPLETED | FAILED
    VALIDATING | SENDING -> FAILED
    COMPLETED | FAILED -> DESTROYED      (stop() jumps straight here)

A task is single-use.  ``activate`` validates on the caller's thread and
hands the request to a background thread; the transport then reports progress
and completion from its own I/O thread.  Subscribers are called on the
task's ``EventDispatcher``, never on either of those threads.

One re-entrant lock guards the task's bookkeeping and its response.  The
progress path only *tries* to take it and drops the tick on contention; the
completion path waits for it.
"""

from __future__ import annotations

import atexit
import copy
import inspect
import itertools
import logging
import threading
import weakref
from enum import Enum
from typing import Any, Callable

from chatstream.config import CommonOptions
from chatstream.errors import ChatStreamError, ErrorCode, TransportError, ValidationError
from chatstream.llm.types import ChatResponse
from chatstream.tasks.dispatch import EventDispatcher, default_dispatcher
from chatstream.tasks.events import (
    ALL_EVENTS,
    RESPONSE_EVENTS,
    TaskEvent,
    request_failed_event,
    request_sent_event,
)
from chatstream.transport.base import Transport, TransportRequest
from chatstream.transport.http import HttpTransport

logger = logging.getLogger(__name__)

Subscriber = Callable[[TaskEvent], Any]

ANY_EVENT = "*"


class TaskState(Enum):
    CREATED = "created"
    VALIDATING = "validating"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    DESTROYED = "destroyed"


# ---------------------------------------------------------------------------
# Interpreter shutdown hook
# ---------------------------------------------------------------------------

_task_ids = itertools.count(1)
_live_tasks: weakref.WeakSet[BaseTask] = weakref.WeakSet()
_live_lock = threading.Lock()


def _stop_live_tasks() -> None:
    with _live_lock:
        tasks = list(_live_tasks)
    for task in tasks:
        task.stop()


atexit.register(_stop_live_tasks)


# ---------------------------------------------------------------------------
# Base task
# ---------------------------------------------------------------------------


class BaseTask:
    """
    Shared lifecycle for request tasks.

    Subclasses provide the request (``endpoint_url``,
    ``build_request_content``) and the response handling
    (``on_progress_updated``, ``on_progress_completed``).  Both response hooks
    are called with the task lock held.

    Parameters
    ----------
    common : CommonOptions
        Endpoint and credential settings.  Copied, so activation can
        normalise the endpoint without touching the caller's object.
    transport : Transport
        Transport to use.  Defaults to a fresh ``HttpTransport``.
    dispatcher : EventDispatcher
        Where subscribers run.  Defaults to the process-wide
        ``ThreadDispatcher``.
    """

    def __init__(
        self,
        common: CommonOptions | None = None,
        transport: Transport | None = None,
        dispatcher: EventDispatcher | None = None,
    ) -> None:
        self.task_id = next(_task_ids)
        self.common = copy.copy(common) if common is not None else CommonOptions()
        self._transport = transport
        self._dispatcher = dispatcher or default_dispatcher()

        self._lock = threading.RLock()
        self._state = TaskState.CREATED
        self._outcome: TaskState | None = None
        self._active = False
        self._ready_to_destroy = False
        self._cancelled = False
        self._finished = threading.Event()
        self._worker: threading.Thread | None = None

        self._subscribers: dict[str, list[Subscriber]] = {}
        self._subscribers_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, event_type: str, callback: Subscriber) -> None:
        """
        Register *callback* for *event_type* (or ``"*"`` for every event).

        Callbacks receive the ``TaskEvent``.  A callback may be a coroutine
        function; the dispatcher runs the coroutine it returns.
        """
        if event_type != ANY_EVENT and event_type not in ALL_EVENTS:
            raise ValueError(f"Unknown event type {event_type!r}")
        with self._subscribers_lock:
            self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: str, callback: Subscriber) -> None:
        with self._subscribers_lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def outcome(self) -> TaskState | None:
        """``COMPLETED`` or ``FAILED`` once the task has finished, else ``None``."""
        return self._outcome

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_ready_to_destroy(self) -> bool:
        return self._ready_to_destroy

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def snapshot(self) -> ChatResponse:
        """Copy of the task's response.  Empty for tasks without one."""
        return ChatResponse()

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the task is destroyed and every event it emitted has
        been delivered.  Must not be called from the dispatcher's context.
        """
        return self._finished.wait(timeout)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def activate(self) -> bool:
        """
        Validate and start the request.

        Returns ``False`` if the task was already activated or failed
        validation (in which case a ``request_failed`` event is emitted).
        """
        with self._lock:
            if self._state is not TaskState.CREATED:
                logger.warning(
                    "Task %d: can't be activated from state %s",
                    self.task_id,
                    self._state.value,
                )
                return False

            logger.info("Task %d: Activating task", self.task_id)
            self._active = True
            with _live_lock:
                _live_tasks.add(self)

            if not self.common.endpoint.endswith("/"):
                self.common.endpoint += "/"

            self._set_state(TaskState.VALIDATING)
            try:
                self.validate()
            except ValidationError as exc:
                logger.error("Task %d: Can't activate task: %s", self.task_id, exc)
                self._fail(exc.code, str(exc))
                return False

            self._worker = threading.Thread(
                target=self._send_request,
                name=f"chatstream-task-{self.task_id}",
                daemon=True,
            )
            self._worker.start()
        return True

    def stop(self) -> None:
        """Cancel an active task.  No response events are delivered afterwards."""
        with self._lock:
            if not self._active:
                return

            logger.info("Task %d: Stopping task", self.task_id)
            self._active = False
            self._cancelled = True

            if self._transport is not None:
                self._transport.cancel()

            self._set_ready_to_destroy()

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Raise ``ValidationError`` if the task can't be activated."""
        if not self.common.endpoint.strip("/"):
            raise ValidationError("Invalid endpoint")
        if not self.common.resolve_api_key():
            raise ValidationError("Invalid API Key")

    def can_bind_progress(self) -> bool:
        return True

    def endpoint_url(self) -> str:
        raise NotImplementedError

    def build_request_content(self) -> str:
        raise NotImplementedError

    def on_progress_updated(self, content: str, bytes_sent: int, bytes_received: int) -> None:
        pass

    def on_progress_completed(self, content: str, was_successful: bool) -> None:
        pass

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def _make_transport(self) -> Transport:
        return HttpTransport(timeout=self.common.timeout_seconds)

    def _initialize_request(self) -> TransportRequest:
        logger.debug("Task %d: Initializing request object", self.task_id)
        if self._transport is None:
            self._transport = self._make_transport()
        return TransportRequest(
            url=self.endpoint_url(),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.common.resolve_api_key()}",
            },
        )

    def _send_request(self) -> None:
        with self._lock:
            if not self._active:
                return

            self._set_state(TaskState.SENDING)
            try:
                request = self._initialize_request()
                request.body = self.build_request_content()
            except ChatStreamError as exc:
                logger.error("Task %d: Failed to build request: %s", self.task_id, exc)
                self._fail(exc.code, str(exc))
                return

            on_progress = self._handle_progress if self.can_bind_progress() else None

            logger.info("Task %d: Sending request to %s", self.task_id, request.url)
            try:
                started = self._transport.process(request, on_progress, self._handle_complete)
            except TransportError as exc:
                logger.error("Task %d: Can't start the request: %s", self.task_id, exc)
                self._fail(exc.code, str(exc))
                return
            except Exception:
                logger.exception("Task %d: Transport raised while starting", self.task_id)
                started = False

            if not started:
                logger.error("Task %d: Failed to initialize the request process", self.task_id)
                self._fail(ErrorCode.TRANSPORT_ERROR, "Failed to initialize the request process")
                return

            logger.info("Task %d: Request sent", self.task_id)
            self._emit(request_sent_event(self.task_id, self.snapshot()))

    def _handle_progress(self, content: str, bytes_sent: int, bytes_received: int) -> None:
        if not self._lock.acquire(blocking=False):
            logger.debug("Task %d: Response busy, skipping progress tick", self.task_id)
            return
        try:
            if not self._active:
                return
            if self._state is TaskState.SENDING:
                self._set_state(TaskState.STREAMING)
            self.on_progress_updated(content, bytes_sent, bytes_received)
        except Exception:
            logger.exception("Task %d: Progress handler failed", self.task_id)
        finally:
            self._lock.release()

    def _handle_complete(self, content: str, was_successful: bool) -> None:
        with self._lock:
            if not self._active:
                return
            try:
                self.on_progress_completed(content, was_successful)
            except Exception as exc:
                logger.exception("Task %d: Completion handler failed", self.task_id)
                self._fail(ErrorCode.PROTOCOL_ERROR, str(exc))
            finally:
                self._set_ready_to_destroy()

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _set_state(self, state: TaskState) -> None:
        logger.debug("Task %d: %s -> %s", self.task_id, self._state.value, state.value)
        self._state = state

    def _complete(self) -> None:
        self._outcome = TaskState.COMPLETED
        self._set_state(TaskState.COMPLETED)

    def _mark_failed(self) -> None:
        self._outcome = TaskState.FAILED
        self._set_state(TaskState.FAILED)

    def _fail(self, error_code: str, reason: str) -> None:
        self._mark_failed()
        self._emit(request_failed_event(self.task_id, self.snapshot(), error_code, reason))
        self._set_ready_to_destroy()

    def _set_ready_to_destroy(self) -> None:
        with self._lock:
            if self._ready_to_destroy:
                return

            logger.info("Task %d: Setting task as ready to destroy", self.task_id)
            self._ready_to_destroy = True
            self._active = False

            if self._transport is not None:
                self._transport.close()
                self._transport = None

            with _live_lock:
                _live_tasks.discard(self)

            self._set_state(TaskState.DESTROYED)
            # Queued behind this task's events, so wait() returns after them.
            self._dispatcher.post(self._finished.set)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, event: TaskEvent) -> None:
        self._dispatcher.post(self._deliver, event)

    def _deliver(self, event: TaskEvent) -> None:
        if self._cancelled and event.event_type in RESPONSE_EVENTS:
            logger.debug(
                "Task %d: Dropping %s after stop", self.task_id, event.event_type
            )
            return

        with self._subscribers_lock:
            callbacks = list(self._subscribers.get(event.event_type, ()))
            callbacks += self._subscribers.get(ANY_EVENT, ())

        for callback in callbacks:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    self._dispatcher.schedule(result)
            except Exception:
                logger.exception(
                    "Task %d: Subscriber for %s failed", self.task_id, event.event_type
                )


# ---------------------------------------------------------------------------
# Status helpers
# ---------------------------------------------------------------------------


def is_task_active(task: BaseTask | None) -> bool:
    return task is not None and task.is_active


def is_task_ready_to_destroy(task: BaseTask | None) -> bool:
    return task is not None and task.is_ready_to_destroy


def is_task_still_valid(task: BaseTask | None) -> bool:
    return task is not None and not task.is_ready_to_destroy
