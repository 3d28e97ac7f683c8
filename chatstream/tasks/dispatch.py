"""
Foreground event delivery.

Tasks never call subscribers from their I/O threads.  They post work to an
``EventDispatcher``, which runs it in order on its own execution context:

  - ``ThreadDispatcher``: one daemon thread draining a FIFO queue.  The
    default for plain scripts and the CLI.
  - ``AsyncioDispatcher``: the thread running an asyncio event loop, via
    ``call_soon_threadsafe``.  Coroutine subscribers become loop tasks.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class EventDispatcher(ABC):
    """Runs posted callables in FIFO order on a foreground context."""

    @abstractmethod
    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        ...

    @abstractmethod
    def schedule(self, awaitable: Awaitable[Any]) -> None:
        """Run an awaitable returned by a coroutine subscriber."""
        ...

    def is_dispatch_thread(self) -> bool:
        return False


_STOP = object()


class ThreadDispatcher(EventDispatcher):
    """Delivers on a single background thread, started on first use."""

    def __init__(self, name: str = "chatstream-events") -> None:
        self._name = name
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        self._ensure_started()
        self._queue.put((fn, args))

    def schedule(self, awaitable: Awaitable[Any]) -> None:
        # Called from the dispatch thread itself; finishing the coroutine
        # before the next item keeps delivery ordered.
        asyncio.run(_await(awaitable))

    def is_dispatch_thread(self) -> bool:
        return threading.current_thread() is self._thread

    def flush(self, timeout: float | None = None) -> bool:
        """Wait until everything posted so far has run."""
        if self.is_dispatch_thread():
            raise RuntimeError("flush() called from the dispatch thread")
        done = threading.Event()
        self.post(done.set)
        return done.wait(timeout)

    def shutdown(self, timeout: float | None = None) -> None:
        with self._start_lock:
            thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._queue.put((_STOP, ()))
        thread.join(timeout)

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._run, name=self._name, daemon=True
                )
                self._thread.start()

    def _run(self) -> None:
        while True:
            fn, args = self._queue.get()
            try:
                if fn is _STOP:
                    return
                fn(*args)
            except Exception:
                logger.exception("Event dispatch callback failed")
            finally:
                self._queue.task_done()


class AsyncioDispatcher(EventDispatcher):
    """
    Delivers on an asyncio event loop.

    Parameters
    ----------
    loop:
        Target loop.  Defaults to the loop running in the constructing
        coroutine.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._loop_thread: threading.Thread | None = None
        self._pending: set[asyncio.Task] = set()

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        self._loop.call_soon_threadsafe(self._invoke, fn, args)

    def schedule(self, awaitable: Awaitable[Any]) -> None:
        task = self._loop.create_task(_await(awaitable))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def is_dispatch_thread(self) -> bool:
        return threading.current_thread() is self._loop_thread

    def _invoke(self, fn: Callable[..., Any], args: tuple) -> None:
        self._loop_thread = threading.current_thread()
        try:
            fn(*args)
        except Exception:
            logger.exception("Event dispatch callback failed")


async def _await(awaitable: Awaitable[Any]) -> Any:
    try:
        return await awaitable
    except Exception:
        logger.exception("Async event subscriber failed")
        return None


_default_dispatcher: ThreadDispatcher | None = None
_default_lock = threading.Lock()


def default_dispatcher() -> ThreadDispatcher:
    """Process-wide dispatcher used by tasks that are not given one."""
    global _default_dispatcher
    with _default_lock:
        if _default_dispatcher is None:
            _default_dispatcher = ThreadDispatcher()
        return _default_dispatcher
