from __future__ import annotations

import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from threading import Lock

from ollama_relay.config import ProviderEntry


@dataclass(frozen=True, slots=True)
class RegistrySnapshot:
    entries: tuple[ProviderEntry, ...]
    generation: int
    loaded_at: float
    _index: dict[str, ProviderEntry] = field(repr=False, compare=False)

    @classmethod
    def build(
        cls,
        entries: Iterable[ProviderEntry],
        *,
        generation: int,
        loaded_at: float | None = None,
    ) -> RegistrySnapshot:
        ordered = tuple(entries)
        index: dict[str, ProviderEntry] = {}
        for entry in ordered:
            # first entry wins when an alias repeats
            index.setdefault(entry.name, entry)
        return cls(
            entries=ordered,
            generation=generation,
            loaded_at=time.time() if loaded_at is None else loaded_at,
            _index=index,
        )

    def lookup(self, alias: str) -> ProviderEntry | None:
        if not alias:
            return None
        return self._index.get(alias)

    def __len__(self) -> int:
        return len(self.entries)


class ProviderRegistry:
    """Holds the current provider snapshot.

    Readers take the current snapshot reference without locking and keep
    working against it for the rest of the request. Writers build the next
    snapshot first and only hold the lock for the reference swap, so a reader
    observes either the previous or the next snapshot, never a mix.
    """

    def __init__(self, entries: Iterable[ProviderEntry] | None = None) -> None:
        self._write_lock = Lock()
        self._snapshot = RegistrySnapshot.build(entries or (), generation=0)

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    def install(self, entries: Iterable[ProviderEntry]) -> RegistrySnapshot:
        ordered = tuple(entries)
        with self._write_lock:
            snapshot = RegistrySnapshot.build(
                ordered, generation=self._snapshot.generation + 1
            )
            self._snapshot = snapshot
        return snapshot

    def lookup(self, alias: str) -> ProviderEntry | None:
        return self._snapshot.lookup(alias)

    def list(self) -> tuple[ProviderEntry, ...]:
        return self._snapshot.entries
