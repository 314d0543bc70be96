"""Model catalog with an injectable three-state cache."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from headless_agents.runtime.backends import GEMINI_BACKEND_ID

logger = logging.getLogger(__name__)

CatalogLoader = Callable[[], Iterable[Mapping[str, Any]]]


@dataclass(slots=True, frozen=True)
class ModelCatalogEntry:
    """One selectable model."""

    id: str
    name: str
    provider: str
    context_window: int | None = None
    reasoning: bool | None = None
    input: tuple[str, ...] | None = None


class CatalogCacheState(str, Enum):
    ABSENT = "absent"
    POPULATED = "populated"
    STALE = "stale"


@dataclass(slots=True)
class ModelCatalogCache:
    """Explicit cache value; construct one per catalog (or per test)."""

    state: CatalogCacheState = CatalogCacheState.ABSENT
    entries: tuple[ModelCatalogEntry, ...] = ()
    error_logged: bool = False

    def get(self) -> tuple[ModelCatalogEntry, ...] | None:
        if self.state is CatalogCacheState.POPULATED:
            return self.entries
        return None

    def store(self, entries: tuple[ModelCatalogEntry, ...]) -> None:
        self.entries = entries
        self.state = CatalogCacheState.POPULATED

    def mark_stale(self, entries: tuple[ModelCatalogEntry, ...] = ()) -> None:
        self.entries = entries
        self.state = CatalogCacheState.STALE

    def clear(self) -> None:
        self.entries = ()
        self.state = CatalogCacheState.ABSENT


def _gemini_entry(model_id: str, name: str, context_window: int) -> ModelCatalogEntry:
    return ModelCatalogEntry(
        id=model_id,
        name=name,
        provider=GEMINI_BACKEND_ID,
        context_window=context_window,
        input=("text", "image"),
    )


BUILTIN_CATALOG_ENTRIES: tuple[ModelCatalogEntry, ...] = (
    _gemini_entry("gemini-3-pro-preview", "Gemini 3 Pro", 2_097_152),
    _gemini_entry("gemini-3-flash-preview", "Gemini 3 Flash", 1_048_576),
    _gemini_entry("gemini-2.5-pro", "Gemini 2.5 Pro", 2_097_152),
    _gemini_entry("gemini-2.5-flash", "Gemini 2.5 Flash", 1_048_576),
    _gemini_entry("gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite", 1_048_576),
    _gemini_entry("auto-gemini-3", "Auto Gemini 3", 2_097_152),
    _gemini_entry("auto-gemini-2.5", "Auto Gemini 2.5", 2_097_152),
)


@dataclass(slots=True)
class ModelCatalog:
    """Discovered models merged with the built-in Gemini CLI entries.

    An empty discovery or a loader error leaves the cache ``stale`` so the
    next call retries discovery; the built-in entries are returned either way.
    """

    loader: CatalogLoader
    cache: ModelCatalogCache = field(default_factory=ModelCatalogCache)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def load(self, *, use_cache: bool = True) -> list[ModelCatalogEntry]:
        with self._lock:
            if not use_cache:
                self.cache.clear()
            cached = self.cache.get()
            if cached is not None:
                return list(cached)

            try:
                discovered = [
                    entry for entry in map(_entry_from_mapping, self.loader()) if entry is not None
                ]
            except Exception as error:  # noqa: BLE001
                if not self.cache.error_logged:
                    self.cache.error_logged = True
                    logger.warning("Failed to load model catalog: %s", error)
                entries = _with_builtin_entries([])
                self.cache.mark_stale(entries)
                return list(entries)

            entries = _with_builtin_entries(discovered)
            if discovered:
                self.cache.store(entries)
            else:
                self.cache.mark_stale(entries)
            return list(entries)


def json_file_loader(path: Path | None) -> CatalogLoader:
    """Loader reading a JSON array of model entries; a missing path yields nothing."""

    def load() -> list[Mapping[str, Any]]:
        if path is None or not path.exists():
            return []
        payload = json.loads(path.read_text("utf-8"))
        if not isinstance(payload, list):
            raise ValueError(f"Model catalog file must contain a JSON array: {path}")
        return [item for item in payload if isinstance(item, Mapping)]

    return load


def find_model_in_catalog(
    catalog: Iterable[ModelCatalogEntry],
    provider: str,
    model_id: str,
) -> ModelCatalogEntry | None:
    normalized_provider = provider.strip().lower()
    normalized_model = model_id.strip().lower()
    for entry in catalog:
        if entry.provider.lower() == normalized_provider and entry.id.lower() == normalized_model:
            return entry
    return None


def model_supports_vision(entry: ModelCatalogEntry | None) -> bool:
    return entry is not None and entry.input is not None and "image" in entry.input


def _with_builtin_entries(
    discovered: list[ModelCatalogEntry],
) -> tuple[ModelCatalogEntry, ...]:
    models = list(discovered)
    known = {(entry.provider, entry.id) for entry in models}
    models.extend(
        entry for entry in BUILTIN_CATALOG_ENTRIES if (entry.provider, entry.id) not in known
    )
    models.sort(key=lambda entry: (entry.provider.lower(), entry.name.lower()))
    return tuple(models)


def _entry_from_mapping(raw: Mapping[str, Any]) -> ModelCatalogEntry | None:
    model_id = str(raw.get("id") or "").strip()
    provider = str(raw.get("provider") or "").strip()
    if not model_id or not provider:
        return None
    name = str(raw.get("name") or model_id).strip() or model_id

    context_window = raw.get("contextWindow", raw.get("context_window"))
    if isinstance(context_window, bool) or not isinstance(context_window, int):
        context_window = None
    elif context_window <= 0:
        context_window = None

    reasoning = raw.get("reasoning")
    input_kinds = raw.get("input")
    return ModelCatalogEntry(
        id=model_id,
        name=name,
        provider=provider,
        context_window=context_window,
        reasoning=reasoning if isinstance(reasoning, bool) else None,
        input=tuple(str(kind) for kind in input_kinds) if isinstance(input_kinds, list) else None,
    )
