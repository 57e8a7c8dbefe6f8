"""Collaborator-facing facade: paper pages, summaries, and cache accessors."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace

from arxiv_client import ArxivClient
from errors import RetrievalError
from models import PaperPage, SummaryResult
from streaming import ErrorCallback, StreamingSummarizer, UpdateCallback
from summarizer import SummarizerConfig, summarize
from summary_cache import SummaryCache
from ttl_cache import TTLCache

# Last good page per request, served (marked stale) when a fresh fetch fails.
STALE_PAGE_TTL_SECONDS = 24 * 60 * 60
STALE_PAGE_CAPACITY = 100

LOGGER = logging.getLogger(__name__)


class PaperReader:
    """Everything a UI needs from the core, behind one object."""

    def __init__(
        self,
        client: ArxivClient | None = None,
        summary_cache: SummaryCache | None = None,
        config: SummarizerConfig | None = None,
    ) -> None:
        self.client = client or ArxivClient()
        self.summary_cache = summary_cache if summary_cache is not None else SummaryCache()
        self.config = config or SummarizerConfig.from_env()
        self.streamer = StreamingSummarizer(self.config, self.summary_cache)
        self._last_good: TTLCache[PaperPage] = TTLCache(STALE_PAGE_TTL_SECONDS, STALE_PAGE_CAPACITY)

    def fetch_latest(self, offset: int = 0, count: int = 10) -> PaperPage:
        return self._page(
            f"latest:{offset}:{count}",
            lambda: self.client.latest_page(offset, count),
        )

    def search(self, query: str, offset: int = 0, count: int = 10) -> PaperPage:
        return self._page(
            f"search:{query.strip()}:{offset}:{count}",
            lambda: self.client.search_custom_page(query, offset, count),
        )

    def stream_summarize(
        self,
        paper_id: str,
        title: str,
        abstract: str,
        on_update: UpdateCallback,
        on_complete: UpdateCallback,
        on_error: ErrorCallback,
        full_text: str | None = None,
    ) -> None:
        self.streamer.stream_summarize(paper_id, title, abstract, on_update, on_complete, on_error, full_text)

    def summarize(self, paper_id: str, title: str, abstract: str, full_text: str | None = None) -> SummaryResult:
        """One-shot summary. Reads the summary cache but does not write to it,
        since the result may be the local fallback rather than the provider's.
        """
        cached = self.get_cached_summary(paper_id, self.config.provider, self.config.resolved_model)
        if cached is not None:
            return cached
        return summarize(title, abstract, self.config, full_text)

    def get_cached_summary(self, paper_id: str, provider: str, model: str) -> SummaryResult | None:
        return self.summary_cache.get(paper_id, provider, model)

    def cache_stats(self) -> dict[str, int]:
        return self.summary_cache.stats()

    def clear_summary_cache(self) -> None:
        self.summary_cache.clear()

    def _page(self, key: str, fetch: Callable[[], PaperPage]) -> PaperPage:
        try:
            page = fetch()
        except RetrievalError as exc:
            stale = self._last_good.get(key)
            if stale is None:
                raise
            LOGGER.warning("Serving stale page for %s after retrieval failure: %s", key, exc)
            return replace(stale, papers=list(stale.papers), stale=True)

        self._last_good.set(key, page)
        return page


_default_reader: PaperReader | None = None


def get_reader() -> PaperReader:
    """Process-wide reader, created on first use."""
    global _default_reader
    if _default_reader is None:
        _default_reader = PaperReader()
    return _default_reader


def fetch_latest(offset: int = 0, count: int = 10) -> PaperPage:
    return get_reader().fetch_latest(offset, count)


def search(query: str, offset: int = 0, count: int = 10) -> PaperPage:
    return get_reader().search(query, offset, count)


def stream_summarize(
    paper_id: str,
    title: str,
    abstract: str,
    on_update: UpdateCallback,
    on_complete: UpdateCallback,
    on_error: ErrorCallback,
    full_text: str | None = None,
) -> None:
    get_reader().stream_summarize(paper_id, title, abstract, on_update, on_complete, on_error, full_text)


def get_cached_summary(paper_id: str, provider: str, model: str) -> SummaryResult | None:
    return get_reader().get_cached_summary(paper_id, provider, model)


def cache_stats() -> dict[str, int]:
    return get_reader().cache_stats()


def clear_summary_cache() -> None:
    get_reader().clear_summary_cache()
