"""
Request body construction for chat and legacy completion endpoints.

The body is a flat JSON object.  Chat models get the whole conversation in
``messages`` (and ``functions`` when any are declared); legacy completion
models only understand ``prompt``, so they get the last message's content.
"""

from __future__ import annotations

import json
import logging
from typing import Sequence

from chatstream.config import ChatOptions, CommonOptions
from chatstream.errors import ValidationError
from chatstream.llm.models import ModelCatalog, model_to_name
from chatstream.llm.types import FunctionDeclaration, Message

logger = logging.getLogger(__name__)


class RequestBuilder:
    """Builds the wire body for one request.  Holds no per-request state."""

    def __init__(self, catalog: ModelCatalog | None = None) -> None:
        self._catalog = catalog or ModelCatalog()

    def build_body(
        self,
        messages: Sequence[Message],
        functions: Sequence[FunctionDeclaration],
        options: ChatOptions,
        common: CommonOptions | None = None,
    ) -> dict:
        if not messages:
            raise ValidationError("Can't build request: no messages")

        body: dict = {
            "model": model_to_name(options.model),
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "n": options.choices,
            "presence_penalty": options.presence_penalty,
            "frequency_penalty": options.frequency_penalty,
            "stream": options.stream,
        }

        if common is not None and common.user:
            body["user"] = common.user

        if options.stop:
            body["stop"] = [str(s) for s in options.stop]

        if options.logit_bias:
            body["logit_bias"] = {
                str(token): bias for token, bias in options.logit_bias.items()
            }

        if self._catalog.supports_chat(options.model):
            logger.info(
                "Model %s supports the chat API; sending %d messages",
                body["model"],
                len(messages),
            )
            body["messages"] = [m.to_wire() for m in messages]
            if functions:
                for fn in functions:
                    fn.check_schema()
                body["functions"] = [fn.to_wire() for fn in functions]
        else:
            logger.info(
                "Model %s does not support the chat API; using last message as prompt",
                body["model"],
            )
            body["prompt"] = messages[-1].content

        return body

    def build(
        self,
        messages: Sequence[Message],
        functions: Sequence[FunctionDeclaration],
        options: ChatOptions,
        common: CommonOptions | None = None,
    ) -> str:
        """Return the serialized body."""
        content = json.dumps(self.build_body(messages, functions, options, common))
        logger.debug("Request content body:\n%s", content)
        return content
