"""Provider chain configuration.

The chain is read once at startup from a YAML file and is immutable after
that: every request shares the same ``ProviderChain`` instance.

File layout::

    providers:
      - name: groq
        kind: openai
        endpoint: https://api.groq.com/openai/v1/chat/completions
        api_key_env: GROQ_API_KEY
        default_model: llama-3.1-8b-instant
        models: [llama-3.1-8b-instant, llama-3.3-70b-versatile]
        supports_streaming: true
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chatgate.config.settings import settings
from chatgate.util.logger import logger
from chatgate.util.masking import mask_for_log


ProviderKind = Literal["openai", "ollama"]

_DEFAULT_PROVIDERS: list[dict[str, Any]] = [
    {
        "name": "groq",
        "kind": "openai",
        "endpoint": "https://api.groq.com/openai/v1/chat/completions",
        "api_key_env": "GROQ_API_KEY",
        "default_model": "llama-3.1-8b-instant",
        "models": ["llama-3.1-8b-instant", "llama-3.3-70b-versatile"],
        "supports_streaming": True,
    },
    {
        "name": "openrouter",
        "kind": "openai",
        "endpoint": "https://openrouter.ai/api/v1/chat/completions",
        "api_key_env": "OPENROUTER_API_KEY",
        "default_model": "meta-llama/llama-3.1-8b-instruct",
        "supports_streaming": True,
    },
    {
        "name": "ollama",
        "kind": "ollama",
        "endpoint": "http://127.0.0.1:11434/api/chat",
        "api_key_env": "",
        "default_model": "llama3.1:8b",
        "supports_streaming": True,
        "timeout_seconds": 60.0,
    },
]


class ProviderDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    kind: ProviderKind = "openai"
    endpoint: str
    api_key_env: str = ""
    api_key: str = Field(default="", repr=False)
    default_model: str
    models: tuple[str, ...] = ()
    supports_streaming: bool = False
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_tokens: int | None = None
    temperature: float | None = None

    @field_validator("name", "endpoint", "default_model")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("endpoint")
    @classmethod
    def _http_endpoint(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("endpoint must be an http(s) URL")
        return value

    @property
    def variants(self) -> tuple[str, ...]:
        """Selectable models, default first, without duplicates."""
        ordered = [self.default_model, *self.models]
        return tuple(dict.fromkeys(item for item in ordered if item))

    @property
    def requires_api_key(self) -> bool:
        return bool(self.api_key_env)


@dataclass(frozen=True)
class ProviderChain:
    providers: tuple[ProviderDescriptor, ...]

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for item in self.providers:
            key = item.name.lower()
            if key in seen:
                raise ValueError(f"duplicate provider name: {item.name!r}")
            seen.add(key)

    def __iter__(self) -> Iterator[ProviderDescriptor]:
        return iter(self.providers)

    def __len__(self) -> int:
        return len(self.providers)

    def names(self) -> list[str]:
        return [item.name for item in self.providers]

    def get(self, name: str) -> ProviderDescriptor | None:
        key = (name or "").strip().lower()
        for item in self.providers:
            if item.name.lower() == key:
                return item
        return None


def _resolve_chain_file(path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    app_root = Path(__file__).resolve().parents[2]
    candidates = [Path.cwd() / candidate, app_root / candidate]
    for item in candidates:
        if item.exists():
            return item.resolve()
    return candidates[-1].resolve()


def _build_descriptor(raw: dict[str, Any], environ: dict[str, str]) -> ProviderDescriptor:
    data = dict(raw)
    key_env = str(data.get("api_key_env") or "").strip()
    data["api_key_env"] = key_env
    if key_env and not data.get("api_key"):
        data["api_key"] = environ.get(key_env, "")
    if isinstance(data.get("models"), list):
        data["models"] = tuple(str(item) for item in data["models"])
    return ProviderDescriptor(**data)


def build_provider_chain(items: list[dict[str, Any]], environ: dict[str, str] | None = None) -> ProviderChain:
    env = dict(os.environ if environ is None else environ)
    descriptors: list[ProviderDescriptor] = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValueError(f"provider entry #{index} must be a mapping")
        try:
            descriptor = _build_descriptor(raw, env)
        except ValidationError as exc:
            raise ValueError(f"invalid provider entry #{index} ({raw.get('name')!r}): {exc}") from exc
        if descriptor.requires_api_key and not descriptor.api_key:
            logger.warning("provider api key missing name=%s env=%s", descriptor.name, descriptor.api_key_env)
        else:
            logger.info(
                "provider configured name=%s kind=%s model=%s variants=%d streaming=%s key=%s",
                descriptor.name,
                descriptor.kind,
                descriptor.default_model,
                len(descriptor.variants),
                descriptor.supports_streaming,
                mask_for_log(descriptor.api_key) or "-",
            )
        descriptors.append(descriptor)
    if not descriptors:
        raise ValueError("provider chain is empty")
    return ProviderChain(providers=tuple(descriptors))


def load_provider_chain(path: str | None = None, environ: dict[str, str] | None = None) -> ProviderChain:
    chain_path = _resolve_chain_file(path or settings.providers_path)
    items: list[dict[str, Any]] = _DEFAULT_PROVIDERS
    if chain_path.exists():
        raw = yaml.safe_load(chain_path.read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict) or not isinstance(raw.get("providers"), list):
            raise ValueError(f"provider chain file must define a 'providers' list: {chain_path}")
        items = raw["providers"]
        logger.info("provider chain loaded path=%s count=%d", chain_path, len(items))
    else:
        logger.info("provider chain file not found, using defaults path=%s", chain_path)
    return build_provider_chain(items, environ=environ)
