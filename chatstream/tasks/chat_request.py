"""
Chat completion task.

Sends a conversation to a chat (or legacy completion) endpoint and turns the
reply into events:

  - non-streaming: one merge of the final body, then ``progress_started``
    and ``process_completed``.
  - streaming: every progress tick re-merges the whole buffer; the first
    successful one emits ``progress_started``, later ones emit
    ``progress_updated``; the final body emits ``process_completed``.

A server ``error`` object ends the task with ``error_received`` instead of
``process_completed``.
"""

from __future__ import annotations

import logging
from typing import Sequence

from chatstream.config import ChatOptions, ChatStreamConfig, CommonOptions
from chatstream.errors import ErrorCode, ProtocolError, ValidationError
from chatstream.llm.models import ModelCatalog
from chatstream.llm.request_builder import RequestBuilder
from chatstream.llm.segmenter import split_deltas
from chatstream.llm.state import AggregationState
from chatstream.llm.types import ChatResponse, ErrorInfo, FunctionDeclaration, Message, Role
from chatstream.tasks.base import BaseTask
from chatstream.tasks.dispatch import EventDispatcher
from chatstream.tasks.events import (
    error_received_event,
    process_completed_event,
    progress_started_event,
    progress_updated_event,
)
from chatstream.transport.base import Transport

logger = logging.getLogger(__name__)


class ChatRequest(BaseTask):
    """
    One chat completion request.

    Build with ``send_message`` / ``send_messages`` (or ``from_config``),
    subscribe to events, then call ``activate``::

        task = ChatRequest.send_message("Capital of France?", common=common)
        task.subscribe(EVENT_PROCESS_COMPLETED, lambda ev: print(ev.response.content))
        task.activate()
    """

    def __init__(
        self,
        messages: Sequence[Message],
        functions: Sequence[FunctionDeclaration] | None = None,
        common: CommonOptions | None = None,
        options: ChatOptions | None = None,
        *,
        transport: Transport | None = None,
        dispatcher: EventDispatcher | None = None,
        catalog: ModelCatalog | None = None,
    ) -> None:
        super().__init__(common, transport, dispatcher)
        self.messages = list(messages)
        self.functions = list(functions or [])
        self.options = options or ChatOptions()
        self._catalog = catalog or ModelCatalog()
        self._builder = RequestBuilder(self._catalog)
        self._aggregation = AggregationState(lock=self._lock)
        self._initialized = False

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def send_message(
        cls,
        message: str,
        functions: Sequence[FunctionDeclaration] | None = None,
        common: CommonOptions | None = None,
        options: ChatOptions | None = None,
        **kwargs,
    ) -> ChatRequest:
        """A request holding a single user message."""
        return cls.send_messages(
            [Message(Role.USER, message)], functions, common, options, **kwargs
        )

    @classmethod
    def send_messages(
        cls,
        messages: Sequence[Message],
        functions: Sequence[FunctionDeclaration] | None = None,
        common: CommonOptions | None = None,
        options: ChatOptions | None = None,
        **kwargs,
    ) -> ChatRequest:
        return cls(messages, functions, common, options, **kwargs)

    @classmethod
    def from_config(
        cls,
        config: ChatStreamConfig,
        messages: Sequence[Message],
        functions: Sequence[FunctionDeclaration] | None = None,
        **kwargs,
    ) -> ChatRequest:
        kwargs.setdefault("catalog", ModelCatalog(config.routes))
        return cls(messages, functions, config.common, config.chat, **kwargs)

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    @property
    def response(self) -> ChatResponse:
        return self.snapshot()

    def snapshot(self) -> ChatResponse:
        return self._aggregation.snapshot()

    def validate(self) -> None:
        super().validate()
        if not self.messages:
            raise ValidationError("Invalid Messages")

    def can_bind_progress(self) -> bool:
        return self.options.stream

    def endpoint_url(self) -> str:
        route = self._catalog.endpoint_for_model(
            self.options.model,
            self.common.azure,
            self.common.azure_api_version,
        )
        return f"{self.common.endpoint}{route}"

    def build_request_content(self) -> str:
        logger.debug("Task %d: Mounting content", self.task_id)
        return self._builder.build(self.messages, self.functions, self.options, self.common)

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def on_progress_updated(self, content: str, bytes_sent: int, bytes_received: int) -> None:
        if not content:
            return

        deltas = split_deltas(content)
        logger.debug(
            "Task %d: Progress updated; last delta: %s; bytes sent: %d; bytes received: %d",
            self.task_id,
            deltas[-1][:200],
            bytes_sent,
            bytes_received,
        )

        self._aggregation.merge_stream(deltas)

        if not self._aggregation.success:
            return

        snapshot = self._aggregation.snapshot()
        if not self._initialized:
            self._initialized = True
            self._emit(progress_started_event(self.task_id, snapshot))
        else:
            self._emit(progress_updated_event(self.task_id, snapshot))

    def on_progress_completed(self, content: str, was_successful: bool) -> None:
        if not was_successful or not content.strip():
            logger.error("Task %d: Request failed", self.task_id)
            reason = "Empty response" if was_successful else "Transport failure"
            self._fail(ErrorCode.TRANSPORT_ERROR, reason)
            return

        logger.info("Task %d: Process completed", self.task_id)
        logger.debug("Task %d: Content: %s", self.task_id, content)

        try:
            if self.options.stream:
                self._aggregation.merge_stream(split_deltas(content), final=True)
            else:
                self._aggregation.merge_single(content)
        except ProtocolError as exc:
            logger.error("Task %d: Malformed response: %s", self.task_id, exc)
            self._fail(exc.code, str(exc))
            return

        snapshot = self._aggregation.snapshot()
        if snapshot.success:
            if not self._initialized:
                self._initialized = True
                self._emit(progress_started_event(self.task_id, snapshot))
            self._complete()
            self._emit(process_completed_event(self.task_id, snapshot))
        elif snapshot.error == ErrorInfo():
            # Nothing but sentinels or blank frames was merged.
            logger.error("Task %d: Response held no fragments", self.task_id)
            self._fail(ErrorCode.PROTOCOL_ERROR, "Response held no fragments")
        else:
            logger.error(
                "Task %d: Request failed: %s (%s)",
                self.task_id,
                snapshot.error.message,
                snapshot.error.code,
            )
            self._mark_failed()
            self._emit(error_received_event(self.task_id, snapshot))
