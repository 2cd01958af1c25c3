from __future__ import annotations

import logging
from pathlib import Path

from ollama_relay.config import ConfigError, load_proxy_config, resolve_config_path
from ollama_relay.registry import ProviderRegistry, RegistrySnapshot

logger = logging.getLogger("uvicorn.error")


class ConfigLoader:
    """Decodes the config file and publishes it into a registry.

    Startup and hot reload both go through :meth:`load`. The file is decoded
    completely before the registry is touched, so a failed load leaves the
    current snapshot in place.
    """

    def __init__(self, path: str | Path, registry: ProviderRegistry) -> None:
        self.path = resolve_config_path(path)
        self.registry = registry

    def load(self) -> RegistrySnapshot:
        try:
            config = load_proxy_config(self.path)
        except ConfigError as exc:
            logger.warning(
                "config_load_failed path=%s generation=%d error=%s",
                self.path,
                self.registry.generation,
                exc,
            )
            raise

        skipped = config.unnamed_count()
        if skipped:
            logger.warning(
                "config_entries_skipped path=%s count=%d reason=missing_name",
                self.path,
                skipped,
            )

        duplicates = config.duplicate_aliases()
        if duplicates:
            logger.warning(
                "config_duplicate_aliases path=%s aliases=%s first_match_wins=true",
                self.path,
                ",".join(duplicates),
            )

        snapshot = self.registry.install(config.routable_models())
        logger.info(
            "config_loaded path=%s providers=%d generation=%d",
            self.path,
            len(snapshot),
            snapshot.generation,
        )
        return snapshot
