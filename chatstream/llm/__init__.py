"""LLM wire layer -- request bodies, stream segmentation, response merging."""

from chatstream.llm.merger import ResponseMerger
from chatstream.llm.models import ModelCatalog, model_supports_chat
from chatstream.llm.request_builder import RequestBuilder
from chatstream.llm.segmenter import split_deltas
from chatstream.llm.state import AggregationState
from chatstream.llm.types import (
    ChatChoice,
    ChatResponse,
    ErrorInfo,
    FunctionCall,
    FunctionDeclaration,
    Message,
    Role,
    Usage,
)

__all__ = [
    "AggregationState",
    "ChatChoice",
    "ChatResponse",
    "ErrorInfo",
    "FunctionCall",
    "FunctionDeclaration",
    "Message",
    "ModelCatalog",
    "RequestBuilder",
    "ResponseMerger",
    "Role",
    "Usage",
    "model_supports_chat",
    "split_deltas",
]
