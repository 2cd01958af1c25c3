from __future__ import annotations

import os
from collections import Counter
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

KNOWN_PROVIDER_API_BASES: dict[str, str] = {
    "novita": "https://api.novita.ai/v3/openai",
    "siliconflow": "https://api.siliconflow.cn/v1",
    "groq": "https://api.groq.com/openai/v1",
    "xai": "https://api.x.ai/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
    "openai": "https://api.openai.com/v1",
}


class ConfigError(Exception):
    """Raised when the provider configuration cannot be read or decoded."""

    def __init__(self, message: str, *, path: str | Path | None = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None


def default_api_base(provider: str | None) -> str | None:
    if not provider:
        return None
    return KNOWN_PROVIDER_API_BASES.get(provider.strip().lower())


class ProviderEntry(BaseModel):
    """One routing target: a local alias mapped onto an upstream model."""

    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        coerce_numbers_to_str=True,
    )

    name: str = ""
    model: str = ""
    provider: str = ""
    api_base: str | None = Field(
        default=None,
        validation_alias=AliasChoices("apiBase", "baseUrl", "api_base"),
    )
    api_key: str | None = Field(
        default=None, validation_alias=AliasChoices("apiKey", "api_key")
    )
    api_key_env: str | None = Field(
        default=None, validation_alias=AliasChoices("apiKeyEnv", "api_key_env")
    )
    system_message: str | None = Field(
        default=None,
        validation_alias=AliasChoices("systemMessage", "system_message"),
    )
    modelfile: str | None = None
    parameters: str | None = None
    template: str | None = None

    @field_validator("name", "model", "provider", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        if value is None:
            return ""
        return value

    @property
    def alias(self) -> str:
        return self.name

    @property
    def upstream_model(self) -> str:
        return self.model

    def resolved_api_base(self) -> str | None:
        if self.api_base and self.api_base.strip():
            return self.api_base.strip()
        return default_api_base(self.provider)

    def resolved_api_key(self) -> str:
        if self.api_key_env:
            env_value = os.getenv(self.api_key_env, "").strip()
            if env_value:
                return env_value
        return self.api_key or ""


class ProxyConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    models: list[ProviderEntry] = Field(default_factory=list)

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("Expected 'models' to be a list of provider entries.")
        return value

    def routable_models(self) -> list[ProviderEntry]:
        """Entries that carry an alias; the rest can never be looked up."""
        return [entry for entry in self.models if entry.name]

    def unnamed_count(self) -> int:
        return sum(1 for entry in self.models if not entry.name)

    def duplicate_aliases(self) -> list[str]:
        counts = Counter(entry.name for entry in self.routable_models())
        return sorted(alias for alias, count in counts.items() if count > 1)


def resolve_config_path(config_path: str | Path) -> Path:
    return Path(config_path).expanduser()


def load_proxy_config(config_path: str | Path) -> ProxyConfig:
    path = resolve_config_path(config_path)
    try:
        raw_bytes = path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Failed to read config '{path}': {exc}", path=path) from exc

    try:
        raw = yaml.safe_load(raw_bytes) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config '{path}': {exc}", path=path) from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Expected YAML object in '{path}'.", path=path)

    try:
        return ProxyConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config '{path}': {exc}", path=path) from exc
