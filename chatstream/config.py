"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI flags
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------

@dataclass
class CommonOptions:
    endpoint: str = "https://api.openai.com"
    api_key: str = ""
    api_key_env: str = "OPENAI_API_KEY"
    user: str = ""
    azure: bool = False
    azure_api_version: str = "2023-05-15"
    timeout_seconds: float = 120.0

    def resolve_api_key(self) -> str:
        """Explicit key first, then the environment variable named by *api_key_env*."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env, "")
        return ""


@dataclass
class ChatOptions:
    model: str = "gpt-3.5-turbo"
    max_tokens: int = 2048
    temperature: float = 1.0
    top_p: float = 1.0
    choices: int = 1
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    stream: bool = True
    stop: list[str] = field(default_factory=list)
    logit_bias: dict[int, float] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Root config
# ---------------------------------------------------------------------------

@dataclass
class ChatStreamConfig:
    common: CommonOptions = field(default_factory=CommonOptions)
    chat: ChatOptions = field(default_factory=ChatOptions)
    routes: dict[str, str] = field(default_factory=dict)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = asdict(self)
        if d["common"]["api_key"]:
            d["common"]["api_key"] = d["common"]["api_key"][:6] + "..."
        return d


# ---------------------------------------------------------------------------
# Layering helpers
# ---------------------------------------------------------------------------

def _set_option(cfg: ChatStreamConfig, dotpath: str, value: Any) -> None:
    """Set ``section.option`` (e.g. ``chat.model``) on *cfg*."""
    section_name, _, option = dotpath.partition(".")
    section = getattr(cfg, section_name)
    if not hasattr(section, option):
        raise KeyError(f"Unknown option {dotpath!r}")
    setattr(section, option, value)


def _overlay(base: dict, layer: dict) -> dict:
    """Return *base* with *layer* laid over it; nested mappings merge key by key."""
    result = dict(base)
    for key, value in layer.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            result[key] = _overlay(current, value)
        else:
            result[key] = value
    return result


_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})


def _parse_env(text: str, target_type: type) -> Any:
    """Turn an environment variable's text into the option's type."""
    if target_type is bool:
        return text.strip().lower() in _TRUE_WORDS
    if target_type is list:
        # Stop sequences are comma separated.
        return [item.strip() for item in text.split(",") if item.strip()]
    return target_type(text)


def _section_from(cls: type, raw: Any) -> Any:
    """Instantiate an options dataclass from a YAML mapping; unknown keys are dropped."""
    if not isinstance(raw, dict):
        raise ValueError(f"{cls.__name__} section must be a mapping, got {type(raw).__name__}")
    known = {f.name for f in fields(cls)}
    section = cls(**{k: v for k, v in raw.items() if k in known})
    if isinstance(section, ChatOptions) and section.logit_bias:
        # YAML keys may come back as strings.
        section.logit_bias = {int(k): float(v) for k, v in section.logit_bias.items()}
    return section


def _read_yaml(config_path: str | Path | None) -> dict[str, Any]:
    if config_path is None:
        return {}
    path = Path(config_path).expanduser()
    if not path.is_file():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "CHATSTREAM_ENDPOINT":          ("common.endpoint", str),
    "CHATSTREAM_API_KEY":           ("common.api_key", str),
    "CHATSTREAM_API_KEY_ENV":       ("common.api_key_env", str),
    "CHATSTREAM_USER":              ("common.user", str),
    "CHATSTREAM_AZURE":             ("common.azure", bool),
    "CHATSTREAM_AZURE_API_VERSION": ("common.azure_api_version", str),
    "CHATSTREAM_TIMEOUT":           ("common.timeout_seconds", float),
    "CHATSTREAM_MODEL":             ("chat.model", str),
    "CHATSTREAM_MAX_TOKENS":        ("chat.max_tokens", int),
    "CHATSTREAM_TEMPERATURE":       ("chat.temperature", float),
    "CHATSTREAM_TOP_P":             ("chat.top_p", float),
    "CHATSTREAM_CHOICES":           ("chat.choices", int),
    "CHATSTREAM_STREAM":            ("chat.stream", bool),
    "CHATSTREAM_STOP":              ("chat.stop", list),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> ChatStreamConfig:
    """
    Resolve the client configuration.

    The YAML file supplies ``common``, ``chat``, ``routes`` and ``profiles``.
    A named profile is laid over the file's sections, then ``CHATSTREAM_*``
    environment variables, then *cli_overrides* (``"chat.model"``-style keys;
    ``None`` values mean "flag not given" and are skipped).  Missing files
    resolve to the defaults.

    Raises ``ValueError`` when the file or one of its sections is not a
    mapping, and ``KeyError`` for an override naming an unknown option.
    """
    raw = _read_yaml(config_path)

    profiles = raw.get("profiles") or {}
    if profile and profiles.get(profile):
        raw = _overlay(raw, profiles[profile])

    cfg = ChatStreamConfig(
        common=_section_from(CommonOptions, raw.get("common") or {}),
        chat=_section_from(ChatOptions, raw.get("chat") or {}),
        routes={str(k): str(v) for k, v in (raw.get("routes") or {}).items()},
        profiles=profiles,
    )

    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        text = os.environ.get(env_var)
        if text is not None:
            _set_option(cfg, dotpath, _parse_env(text, target_type))

    for dotpath, value in (cli_overrides or {}).items():
        if value is not None:
            _set_option(cfg, dotpath, value)

    return cfg
