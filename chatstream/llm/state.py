"""
The guarded response accumulator shared by a task's I/O callbacks and its
event emission.

One lock covers every merge pass and every snapshot.  The progress path uses
``try_locked`` and gives up on contention; the completion path uses
``locked`` and waits.
"""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Iterator, Sequence

from chatstream.errors import ProtocolError
from chatstream.llm.merger import ResponseMerger
from chatstream.llm.types import ChatResponse


class AggregationState:
    """
    Owns a ``ChatResponse`` and the lock that guards it.

    Parameters
    ----------
    lock:
        Lock to guard the response with.  Tasks pass their own so that the
        task's bookkeeping and the response share one critical section.
    merger:
        Merge strategy.  Defaults to ``ResponseMerger()``.
    """

    def __init__(
        self,
        lock: threading.RLock | None = None,
        merger: ResponseMerger | None = None,
    ) -> None:
        self._lock = lock if lock is not None else threading.RLock()
        self._merger = merger or ResponseMerger()
        self._response = ChatResponse()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @contextmanager
    def locked(self) -> Iterator[ChatResponse]:
        with self._lock:
            yield self._response

    @contextmanager
    def try_locked(self) -> Iterator[ChatResponse | None]:
        """Yield the response if the lock is free right now, else ``None``."""
        acquired = self._lock.acquire(blocking=False)
        try:
            yield self._response if acquired else None
        finally:
            if acquired:
                self._lock.release()

    def reset(self) -> None:
        with self._lock:
            self._response = ChatResponse()

    def snapshot(self) -> ChatResponse:
        """Deep copy of the response, safe to hand to other threads."""
        with self._lock:
            return copy.deepcopy(self._response)

    # Lock must be held by the caller for the two merge helpers below.

    def merge_single(self, content: str) -> None:
        self._merger.merge_fragment(self._response, content)

    def merge_stream(
        self, deltas: Sequence[str], *, final: bool = False
    ) -> list[ProtocolError]:
        return self._merger.merge_stream(self._response, deltas, final=final)

    @property
    def success(self) -> bool:
        return self._response.success
