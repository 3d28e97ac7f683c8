"""Core types for chat requests and aggregated responses."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum

import jsonschema

from chatstream.errors import APIError, ValidationError


class Role(Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @classmethod
    def from_name(cls, name: str) -> Role:
        """Map a wire role name to a ``Role``.  Unknown names are assistants."""
        try:
            return cls(name.strip().lower())
        except ValueError:
            return cls.ASSISTANT


def normalize_schema(schema: dict | None) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    return s


@dataclass
class FunctionCall:
    """
    A function call requested by the model.

    In streaming mode *name* arrives once and *arguments* arrives in pieces
    that are appended until the JSON text is complete.
    """

    name: str = ""
    arguments: str = ""

    def parsed_arguments(self) -> dict:
        """Decode *arguments* as JSON.  Empty arguments decode to ``{}``."""
        return json.loads(self.arguments or "{}")


@dataclass
class Message:
    """A single message in a conversation."""

    role: Role
    content: str
    function_call: FunctionCall | None = None

    def to_wire(self) -> dict:
        m: dict = {"role": self.role.value, "content": self.content}
        if self.function_call is not None and self.function_call.name:
            m["function_call"] = {
                "name": self.function_call.name,
                "arguments": self.function_call.arguments,
            }
        return m


@dataclass
class FunctionDeclaration:
    """A function the model may ask the caller to invoke."""

    name: str
    description: str = ""
    parameters: dict = field(default_factory=dict)

    def check_schema(self) -> None:
        """Raise ``ValidationError`` if *parameters* is not a valid JSON schema."""
        schema = normalize_schema(self.parameters)
        try:
            jsonschema.validators.validator_for(schema).check_schema(schema)
        except jsonschema.SchemaError as e:
            raise ValidationError(
                f"Invalid parameters schema for function {self.name!r}: {e.message}"
            ) from e

    def to_wire(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": normalize_schema(self.parameters),
        }

    def validate_arguments(self, arguments: str) -> tuple[bool, str | None]:
        """Check a model-produced argument string against *parameters*."""
        try:
            instance = json.loads(arguments or "{}")
        except json.JSONDecodeError as e:
            return False, f"arguments are not valid JSON: {e}"
        try:
            jsonschema.validate(instance=instance, schema=normalize_schema(self.parameters))
            return True, None
        except jsonschema.ValidationError as e:
            return False, str(e.message)


@dataclass
class ChatChoice:
    index: int
    message: Message = field(default_factory=lambda: Message(Role.ASSISTANT, ""))
    finish_reason: str | None = None

    def __post_init__(self) -> None:
        if self.message.function_call is None:
            self.message.function_call = FunctionCall()


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ErrorInfo:
    message: str = ""
    code: str = ""
    type: str = ""


@dataclass
class ChatResponse:
    """
    The response being assembled for one request.

    *choices* is keyed by ``ChatChoice.index`` and ordered by first
    appearance of each index.  ``find_choice`` / ``choice_for`` are the only
    ways the merger touches it.
    """

    id: str = ""
    object: str = ""
    created: int = 0
    choices: list[ChatChoice] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    success: bool = False
    error: ErrorInfo = field(default_factory=ErrorInfo)

    def find_choice(self, index: int) -> ChatChoice | None:
        for choice in self.choices:
            if choice.index == index:
                return choice
        return None

    def choice_for(self, index: int) -> ChatChoice:
        """Return the choice for *index*, appending a new one on first sight."""
        choice = self.find_choice(index)
        if choice is None:
            choice = ChatChoice(index=index)
            self.choices.append(choice)
        return choice

    @property
    def content(self) -> str:
        """Content of the first choice, or ``""`` when there is none."""
        return self.choices[0].message.content if self.choices else ""

    def raise_for_error(self) -> None:
        if not self.success and (self.error.message or self.error.code):
            raise APIError(self.error)

    def to_dict(self) -> dict:
        d = asdict(self)
        for choice in d["choices"]:
            choice["message"]["role"] = choice["message"]["role"].value
        return d
