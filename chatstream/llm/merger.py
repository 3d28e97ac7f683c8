"""
Merges response fragments into a ``ChatResponse``.

Each fragment is one JSON object.  Choices inside it are matched to existing
choices by ``index`` and merged according to the fragment's shape:

  - ``message``: a full message.  Role, content and function call replace.
  - ``delta``: an incremental update.  Content and function-call arguments
    append; role and function name replace.
  - ``text``: the legacy completion shape.  Text appends.

The caller must hold the response's lock for the duration of a merge.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Callable, Sequence

from chatstream.errors import ProtocolError
from chatstream.llm.segmenter import is_done_frame
from chatstream.llm.types import ChatChoice, ChatResponse, ErrorInfo, Role, Usage

logger = logging.getLogger(__name__)


class Shape(Enum):
    MESSAGE = "message"
    DELTA = "delta"
    TEXT = "text"
    UNKNOWN = "unknown"


def classify_choice(entry: dict) -> tuple[Shape, Any]:
    """Return the payload shape of a choice entry and the payload itself."""
    message = entry.get("message")
    if isinstance(message, dict):
        return Shape.MESSAGE, message
    delta = entry.get("delta")
    if isinstance(delta, dict):
        return Shape.DELTA, delta
    text = entry.get("text")
    if isinstance(text, str):
        return Shape.TEXT, text
    return Shape.UNKNOWN, None


def _merge_message(choice: ChatChoice, message: dict) -> None:
    role = message.get("role")
    if isinstance(role, str):
        choice.message.role = Role.USER if role == "user" else Role.ASSISTANT

    content = message.get("content")
    if isinstance(content, str):
        choice.message.content = content

    function_call = message.get("function_call")
    if isinstance(function_call, dict):
        name = function_call.get("name")
        if isinstance(name, str):
            choice.message.function_call.name = name
        arguments = function_call.get("arguments")
        if isinstance(arguments, str):
            choice.message.function_call.arguments = arguments


def _merge_delta(choice: ChatChoice, delta: dict) -> None:
    role = delta.get("role")
    content = delta.get("content")
    if isinstance(role, str):
        choice.message.role = Role.from_name(role)
    elif isinstance(content, str):
        choice.message.content += content

    function_call = delta.get("function_call")
    if isinstance(function_call, dict):
        name = function_call.get("name")
        if isinstance(name, str) and name:
            choice.message.function_call.name = name
        arguments = function_call.get("arguments")
        if isinstance(arguments, str):
            choice.message.function_call.arguments += arguments


def _merge_text(choice: ChatChoice, text: str) -> None:
    choice.message.role = Role.ASSISTANT
    choice.message.content += text


def _merge_nothing(choice: ChatChoice, payload: Any) -> None:
    pass


_STRATEGIES: dict[Shape, Callable[[ChatChoice, Any], None]] = {
    Shape.MESSAGE: _merge_message,
    Shape.DELTA: _merge_delta,
    Shape.TEXT: _merge_text,
    Shape.UNKNOWN: _merge_nothing,
}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


class ResponseMerger:
    """Applies fragments to a ``ChatResponse``.  Stateless between calls."""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def parse(self, fragment: str) -> dict:
        try:
            data = json.loads(fragment)
        except (json.JSONDecodeError, ValueError) as exc:
            raise ProtocolError(f"fragment is not valid JSON: {exc}", fragment) from exc
        if not isinstance(data, dict):
            raise ProtocolError(
                f"fragment is a JSON {type(data).__name__}, expected an object",
                fragment,
            )
        return data

    def merge_fragment(self, response: ChatResponse, fragment: str) -> None:
        """
        Merge one fragment into *response*.

        Raises ``ProtocolError``, leaving *response* untouched, if the
        fragment is not a JSON object or a choice carries a non-integer index.
        """
        if not fragment or not fragment.strip() or is_done_frame(fragment):
            return

        data = self.parse(fragment)
        entries = self._choice_entries(data, fragment)

        if self._check_error(data, response):
            response.success = False
            return

        response.success = True

        if data.get("id"):
            response.id = _as_text(data["id"])
        if data.get("object"):
            response.object = _as_text(data["object"])
        if data.get("created"):
            response.created = _as_int(data["created"])

        for index, entry in entries:
            self._merge_choice(response, index, entry)

        usage = data.get("usage")
        if isinstance(usage, dict):
            response.usage = Usage(
                prompt_tokens=_as_int(usage.get("prompt_tokens")),
                completion_tokens=_as_int(usage.get("completion_tokens")),
                total_tokens=_as_int(usage.get("total_tokens")),
            )

    def merge_stream(
        self,
        response: ChatResponse,
        fragments: Sequence[str],
        *,
        final: bool = False,
    ) -> list[ProtocolError]:
        """
        Rebuild the choices of *response* from every fragment seen so far.

        Streamed payloads carry the whole buffer received so far, so the
        choice list is cleared first and re-derived.  Unparseable fragments
        are skipped and returned.  With *final* set, a failure on the last
        fragment is raised instead.
        """
        response.choices.clear()
        skipped: list[ProtocolError] = []
        last = len(fragments) - 1
        for i, fragment in enumerate(fragments):
            try:
                self.merge_fragment(response, fragment)
            except ProtocolError as exc:
                if final and i == last:
                    raise
                logger.warning("Skipping fragment %d: %s", i, exc)
                skipped.append(exc)
        return skipped

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_error(self, data: dict, response: ChatResponse) -> bool:
        error = data.get("error")
        if not isinstance(error, dict):
            return False
        response.error = ErrorInfo(
            message=_as_text(error.get("message")),
            code=_as_text(error.get("code")),
            type=_as_text(error.get("type")),
        )
        return True

    def _choice_entries(self, data: dict, fragment: str) -> list[tuple[int, dict]]:
        """Pair each choice entry with its index.  Checked before any merge."""
        choices = data.get("choices")
        if not isinstance(choices, list):
            return []
        entries = []
        for entry in choices:
            if not isinstance(entry, dict):
                continue
            raw_index = entry.get("index", 0)
            if isinstance(raw_index, bool) or not isinstance(raw_index, int):
                raise ProtocolError(f"choice index {raw_index!r} is not an integer", fragment)
            entries.append((raw_index, entry))
        return entries

    def _merge_choice(self, response: ChatResponse, index: int, entry: dict) -> None:
        choice = response.choice_for(index)

        shape, payload = classify_choice(entry)
        _STRATEGIES[shape](choice, payload)

        choice.message.content = choice.message.content.lstrip("\n")

        finish_reason = entry.get("finish_reason")
        if isinstance(finish_reason, str):
            choice.finish_reason = finish_reason
