"""Long-lived summary cache keyed by paper, provider and model."""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from json import JSONDecodeError
from pathlib import Path

from models import SummaryResult
from ttl_cache import TTLCache

SUMMARY_CACHE_PATH = os.getenv("SUMMARY_CACHE_PATH", ".paper_reader_summaries.json")
SUMMARY_CACHE_TTL_SECONDS = 30 * 24 * 60 * 60
SUMMARY_CACHE_MAX_SIZE = 50

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _CachedSummary:
    paper_id: str
    provider: str
    model: str
    summary: SummaryResult


def summary_cache_key(paper_id: str, provider: str, model: str) -> str:
    return f"{paper_id}:{provider}:{model}"


class SummaryCache:
    """TTLCache of summaries, mirrored to a JSON file.

    The same paper summarized by another provider or model is a separate
    entry. With ``path=None`` the cache lives in memory only. File problems
    are logged and never fail a summary.
    """

    def __init__(
        self,
        path: str | Path | None = SUMMARY_CACHE_PATH,
        ttl_seconds: float = SUMMARY_CACHE_TTL_SECONDS,
        capacity: int = SUMMARY_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path) if path else None
        self._clock = clock
        self._cache: TTLCache[_CachedSummary] = TTLCache(ttl_seconds, capacity, clock=clock)
        self._load()

    def get(self, paper_id: str, provider: str, model: str) -> SummaryResult | None:
        size_before = len(self._cache)
        cached = self._cache.get(summary_cache_key(paper_id, provider, model))
        if cached is None:
            if len(self._cache) != size_before:
                # The lookup evicted an expired entry.
                self._save()
            return None
        LOGGER.info("Summary cache hit for paper_id=%s", paper_id)
        return cached.summary

    def set(self, paper_id: str, provider: str, model: str, summary: SummaryResult) -> None:
        self._cache.set(
            summary_cache_key(paper_id, provider, model),
            _CachedSummary(paper_id=paper_id, provider=provider, model=model, summary=summary),
        )
        self._save()
        LOGGER.info("Cached summary for paper_id=%s provider=%s model=%s", paper_id, provider, model)

    def has(self, paper_id: str, provider: str, model: str) -> bool:
        return self.get(paper_id, provider, model) is not None

    def clear(self) -> None:
        self._cache.clear()
        if self.path is not None:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("Could not remove summary cache file %s: %s", self.path, exc)
        LOGGER.info("Summary cache cleared")

    def stats(self) -> dict[str, int]:
        return self._cache.stats()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, JSONDecodeError) as exc:
            LOGGER.warning("Could not load summary cache from %s: %s", self.path, exc)
            return
        if not isinstance(raw, dict):
            LOGGER.warning("Ignoring summary cache %s: expected a JSON object", self.path)
            return

        loaded: list[tuple[float, _CachedSummary]] = []
        for record in raw.values():
            try:
                created_at = float(record["created_at"])
                cached = _CachedSummary(
                    paper_id=str(record["paper_id"]),
                    provider=str(record["provider"]),
                    model=str(record["model"]),
                    summary=SummaryResult.from_dict(record["summary"]),
                )
            except (KeyError, TypeError, ValueError, AttributeError):
                LOGGER.debug("Skipping unreadable summary cache record: %r", record)
                continue
            if self._clock() - created_at < self._cache.ttl_seconds:
                loaded.append((created_at, cached))

        # Oldest first, so eviction order survives a restart.
        loaded.sort(key=lambda item: item[0])
        for created_at, cached in loaded:
            key = summary_cache_key(cached.paper_id, cached.provider, cached.model)
            self._cache.set(key, cached, timestamp=created_at)
        LOGGER.info("Loaded %s cached summaries from %s", len(self._cache), self.path)

    def _save(self) -> None:
        if self.path is None:
            return

        data = {
            entry.key: {
                "paper_id": entry.value.paper_id,
                "provider": entry.value.provider,
                "model": entry.value.model,
                "summary": entry.value.summary.to_dict(),
                "created_at": entry.timestamp,
            }
            for entry in self._cache.entries()
        }

        try:
            self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Could not save summary cache to %s: %s", self.path, exc)
