from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    config_path: str = "~/.continue/config.yaml"
    host: str = "127.0.0.1"
    port: int = 11434
    max_port_attempts: int = 20
    debug: bool = False
    config_watch_enabled: bool = True
    config_watch_interval_seconds: float = 1.0
    upstream_connect_timeout_seconds: float = 10.0
    upstream_read_timeout_seconds: float | None = None
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 10.0
    inject_system_message: bool = False
    observability_tracing_enabled: bool = False
    observability_service_name: str = "ollama-relay"
    observability_otlp_endpoint: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="OLLAMA_RELAY_",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
