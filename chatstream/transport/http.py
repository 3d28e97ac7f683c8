"""
HTTP transport built on ``httpx``.

Runs the exchange on its own background thread and reports the accumulated
body after every received chunk, which is how server-sent events reach the
task while the response is still open.  No retries: a failed exchange is
reported once through ``on_complete``.
"""

from __future__ import annotations

import itertools
import logging
import socket
import threading
from typing import Optional

import httpx

from chatstream.errors import TransportError
from chatstream.transport.base import (
    CompleteCallback,
    ProgressCallback,
    Transport,
    TransportRequest,
)

logger = logging.getLogger(__name__)

_thread_ids = itertools.count(1)


class HttpTransport(Transport):
    """
    Single-use transport for one request.

    ``cancel`` shuts down the response's socket, so a worker blocked on a
    stalled stream wakes up at once.  A request cancelled before the
    response headers arrive stops as soon as they do.

    Parameters
    ----------
    timeout:
        httpx timeout in seconds, used when the transport creates its own
        client.
    client:
        An existing ``httpx.Client``.  The caller keeps ownership and must
        close it; otherwise a client is created per request and closed when
        the exchange ends.
    """

    def __init__(
        self,
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._thread: threading.Thread | None = None
        self._cancelled = threading.Event()
        self._response: httpx.Response | None = None
        self._response_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Transport interface
    # ------------------------------------------------------------------

    def process(
        self,
        request: TransportRequest,
        on_progress: Optional[ProgressCallback],
        on_complete: CompleteCallback,
    ) -> bool:
        if self._thread is not None:
            logger.error("Transport already processed a request")
            return False

        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)

        self._thread = threading.Thread(
            target=self._run,
            args=(request, on_progress, on_complete),
            name=f"chatstream-http-{next(_thread_ids)}",
            daemon=True,
        )
        try:
            self._thread.start()
        except RuntimeError as exc:
            if self._owns_client:
                self._client.close()
            raise TransportError(f"Can't start HTTP worker: {exc}") from exc
        return True

    def cancel(self) -> None:
        self._cancelled.set()
        with self._response_lock:
            response = self._response
        if response is not None:
            _abort(response)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(
        self,
        request: TransportRequest,
        on_progress: Optional[ProgressCallback],
        on_complete: CompleteCallback,
    ) -> None:
        assert self._client is not None
        buffer = ""
        bytes_sent = len(request.body.encode("utf-8"))
        completed = False

        try:
            with self._client.stream(
                request.method,
                request.url,
                content=request.body,
                headers=request.headers,
            ) as response:
                with self._response_lock:
                    self._response = response
                logger.debug("HTTP %d from %s", response.status_code, request.url)
                for text in response.iter_text():
                    if self._cancelled.is_set():
                        break
                    if not text:
                        continue
                    buffer += text
                    if on_progress is not None:
                        on_progress(buffer, bytes_sent, response.num_bytes_downloaded)
                completed = not self._cancelled.is_set()
        except httpx.HTTPError as exc:
            if self._cancelled.is_set():
                logger.debug("Cancelled request to %s ended with %s", request.url, exc)
            else:
                logger.warning("HTTP request to %s failed: %s", request.url, exc)
        finally:
            with self._response_lock:
                self._response = None
            if self._owns_client and self._client is not None:
                self._client.close()

        if self._cancelled.is_set():
            logger.info("Request to %s cancelled", request.url)
            return

        on_complete(buffer, completed)


def _abort(response: httpx.Response) -> None:
    """Shut down the socket under *response* so a blocked read returns."""
    stream = response.extensions.get("network_stream")
    sock = stream.get_extra_info("socket") if stream is not None else None
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as exc:
        # Already closed by the worker.
        logger.debug("Socket shutdown on cancel failed: %s", exc)
