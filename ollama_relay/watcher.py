from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from ollama_relay.loader import ConfigLoader

FileSignature = tuple[int, int]


@dataclass(slots=True)
class ConfigWatcherStatus:
    enabled: bool
    interval_seconds: float
    last_check_epoch: float | None = None
    last_reload_epoch: float | None = None
    last_error: str | None = None
    reload_count: int = 0
    failed_reload_count: int = 0


class ConfigWatcher:
    def __init__(
        self,
        *,
        loader: ConfigLoader,
        logger: logging.Logger | None = None,
        enabled: bool = True,
        interval_seconds: float = 1.0,
    ) -> None:
        self._loader = loader
        self._logger = logger
        self._enabled = enabled
        self._interval_seconds = max(0.05, float(interval_seconds))
        self._signature: FileSignature | None = self._read_signature()
        self._task: asyncio.Task[None] | None = None
        self._status = ConfigWatcherStatus(
            enabled=enabled,
            interval_seconds=self._interval_seconds,
        )

    @property
    def status(self) -> ConfigWatcherStatus:
        return self._status

    async def start(self) -> None:
        if not self._enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="config-watcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def check_once(self) -> bool:
        """Reload the config when the file changed since the last check.

        Returns True when a new snapshot was installed.
        """
        self._status.last_check_epoch = time.time()
        signature = self._read_signature()
        if signature is None or signature == self._signature:
            return False
        self._signature = signature

        snapshot = await asyncio.to_thread(self._loader.load)
        self._status.last_reload_epoch = time.time()
        self._status.reload_count += 1
        self._status.last_error = None
        if self._logger is not None:
            self._logger.info(
                "config_reloaded path=%s providers=%d generation=%d",
                self._loader.path,
                len(snapshot),
                snapshot.generation,
            )
        return True

    async def _run(self) -> None:
        while True:
            try:
                await self.check_once()
            except Exception as exc:
                self._status.failed_reload_count += 1
                self._status.last_error = str(exc)
                if self._logger is not None:
                    self._logger.warning(
                        "config_reload_failed path=%s error=%s",
                        self._loader.path,
                        str(exc),
                    )
            await asyncio.sleep(self._interval_seconds)

    def _read_signature(self) -> FileSignature | None:
        try:
            stat = self._loader.path.stat()
        except OSError:
            return None
        return (stat.st_mtime_ns, stat.st_size)
