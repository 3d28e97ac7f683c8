"""
Model catalog: which wire shape a model speaks and where to send it.

Chat models take a ``messages`` array at ``v1/chat/completions``.  The older
completion models only take a flat ``prompt`` at ``v1/completions``.  Azure
OpenAI addresses models as deployments and needs an ``api-version`` query
parameter.
"""

from __future__ import annotations

LEGACY_COMPLETION_MODELS: frozenset[str] = frozenset({
    "text-davinci-003",
    "text-davinci-002",
    "text-davinci-001",
    "text-curie-001",
    "text-babbage-001",
    "text-ada-001",
    "davinci",
    "curie",
    "babbage",
    "ada",
    "davinci-002",
    "babbage-002",
    "gpt-3.5-turbo-instruct",
})

CHAT_PATH = "v1/chat/completions"
COMPLETIONS_PATH = "v1/completions"


def model_to_name(model: str) -> str:
    return model.strip().lower()


def model_supports_chat(model: str) -> bool:
    return model_to_name(model) not in LEGACY_COMPLETION_MODELS


class ModelCatalog:
    """
    Resolves the endpoint path for a model.

    Parameters
    ----------
    routes:
        Per-model path overrides, e.g. ``{"my-local-model": "api/chat"}``.
        Overrides win over the built-in OpenAI/Azure paths.
    """

    def __init__(self, routes: dict[str, str] | None = None) -> None:
        self._routes = {model_to_name(k): v.lstrip("/") for k, v in (routes or {}).items()}

    def supports_chat(self, model: str) -> bool:
        return model_supports_chat(model)

    def endpoint_for_model(
        self,
        model: str,
        azure: bool = False,
        azure_api_version: str = "",
    ) -> str:
        name = model_to_name(model)
        if name in self._routes:
            return self._routes[name]

        chat = model_supports_chat(name)
        if azure:
            kind = "chat/completions" if chat else "completions"
            return f"openai/deployments/{name}/{kind}?api-version={azure_api_version}"
        return CHAT_PATH if chat else COMPLETIONS_PATH
