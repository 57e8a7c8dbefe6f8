"""arXiv export API gateway: throttled, retried, cached retrieval of papers."""

from __future__ import annotations

import logging
import os
import time
import xml.etree.ElementTree as ET
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from urllib.parse import quote, urlencode

import requests

from errors import (
    ConnectivityError,
    MalformedResponseError,
    RetrievalError,
    TransientOverloadError,
)
from filters import is_llm_paper
from models import Paper, PaperPage, SearchFilters
from throttle import ARXIV_THROTTLE, Throttle
from ttl_cache import TTLCache

ARXIV_API_URL = os.getenv("ARXIV_API_URL", "https://export.arxiv.org/api/query")
# Alternate routes to the same API, tried in order when the previous one is
# unreachable. An entry containing "{url}" is a relay and receives the fully
# encoded primary request URL in place of the placeholder.
ARXIV_FALLBACK_ENDPOINTS = [
    endpoint.strip()
    for endpoint in os.getenv(
        "ARXIV_FALLBACK_ENDPOINTS",
        "http://export.arxiv.org/api/query,https://corsproxy.io/?url={url}",
    ).split(",")
    if endpoint.strip()
]
REQUEST_TIMEOUT_SECONDS = 20
RETRY_DELAY_SECONDS = float(os.getenv("ARXIV_RETRY_DELAY_SECONDS", "5"))
MAX_RETRIES = int(os.getenv("ARXIV_MAX_RETRIES", "3"))
CACHE_TTL_SECONDS = float(os.getenv("ARXIV_CACHE_TTL_SECONDS", "300"))
CACHE_CAPACITY = 100
MAX_PAGE_SIZE = 10

# AI/ML categories every keyword search is restricted to.
TARGET_CATEGORIES: tuple[str, ...] = ("cs.CL", "cs.LG", "cs.AI", "cs.IR", "cs.CV")
DEFAULT_QUERY_TERMS: tuple[str, ...] = ('"large language model"', "LLM", "GPT", "transformer")

# First page of the latest feed: one category is much cheaper upstream than
# the full boolean query.
LATEST_CATEGORY = "cs.CL"
MIN_RELEVANT_LATEST = 5

_OVERLOAD_STATUS = 503
_ERROR_ENTRY_MARKER = "arxiv.org/api/errors"
_HEADERS = {"Accept": "application/atom+xml", "User-Agent": "paper-reader/0.1"}
_NS = {"atom": "http://www.w3.org/2005/Atom", "arxiv": "http://arxiv.org/schemas/atom"}

LOGGER = logging.getLogger(__name__)


class ArxivClient:
    """Retrieval gateway for the arXiv export API.

    Every dispatch goes through the shared throttle. HTTP 503 answers are
    retried on the same endpoint after a cooldown; unreachable endpoints
    advance to the next fallback immediately and only fall back on the
    cooldown loop once the last endpoint is reached. Both paths share one
    retry budget. Successful pages are cached by their query parameters.
    """

    def __init__(
        self,
        endpoints: Sequence[str] | None = None,
        throttle: Throttle | None = None,
        cache: TTLCache[PaperPage] | None = None,
        max_retries: int = MAX_RETRIES,
        retry_delay_seconds: float = RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.endpoints = list(endpoints) if endpoints is not None else [ARXIV_API_URL, *ARXIV_FALLBACK_ENDPOINTS]
        if not self.endpoints:
            raise ValueError("At least one arXiv endpoint is required")
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._throttle = throttle or ARXIV_THROTTLE
        self._cache = cache if cache is not None else TTLCache(CACHE_TTL_SECONDS, CACHE_CAPACITY)
        self._sleep = sleep
        self._endpoint_index = 0

    def search(
        self,
        query_terms: str | Sequence[str] | None = None,
        offset: int = 0,
        limit: int = 10,
        filters: SearchFilters | None = None,
    ) -> list[Paper]:
        """Search arXiv and return at most ``limit`` (capped at 10) papers.

        Raises:
            RetrievalError: on a non-retryable status, a malformed feed, or
                once the retry budget is exhausted.
        """
        return self.search_page(query_terms, offset, limit, filters).papers

    def search_page(
        self,
        query_terms: str | Sequence[str] | None = None,
        offset: int = 0,
        limit: int = 10,
        filters: SearchFilters | None = None,
    ) -> PaperPage:
        """Like ``search`` but keeps the upstream entry count for pagination."""
        filters = filters or SearchFilters()
        limit = min(filters.max_results or limit, MAX_PAGE_SIZE)
        params = {
            "search_query": build_search_query(query_terms, filters.category),
            "start": str(offset),
            "max_results": str(limit),
            "sortBy": filters.sort_by,
            "sortOrder": filters.sort_order,
        }

        cache_key = urlencode(params)
        cached = self._cached_page(cache_key)
        if cached is not None:
            return cached

        fetched = self._fetch_feed(params)
        categories = (filters.category,) if filters.category else TARGET_CATEGORIES
        papers = _conform_to_query(fetched, categories, filters.sort_by, filters.sort_order, limit)

        page = PaperPage(papers=papers, offset=offset, limit=limit, fetched=len(fetched))
        self._cache.set(cache_key, page)
        return replace(page, papers=list(papers))

    def fetch_latest(self, offset: int = 0, limit: int = 10) -> list[Paper]:
        """Newest LLM-related papers.

        The first page reads a single category and keeps the papers that pass
        the keyword relevance filter; when fewer than MIN_RELEVANT_LATEST pass,
        the unfiltered page is returned so over-filtering never empties it.
        Later pages run the regular keyword search sorted by submission date.
        """
        return self.latest_page(offset, limit).papers

    def latest_page(self, offset: int = 0, limit: int = 10) -> PaperPage:
        if offset > 0:
            return self.search_page(None, offset, limit, SearchFilters(sort_by="submittedDate", sort_order="descending"))

        limit = min(limit, MAX_PAGE_SIZE)
        params = {
            "search_query": f"cat:{LATEST_CATEGORY}",
            "start": "0",
            "max_results": str(limit),
            "sortBy": "submittedDate",
            "sortOrder": "descending",
        }
        cache_key = f"latest:{urlencode(params)}"
        cached = self._cached_page(cache_key)
        if cached is not None:
            return cached

        papers = self._fetch_feed(params)
        relevant = [paper for paper in papers if is_llm_paper(paper)]
        result = relevant if len(relevant) >= MIN_RELEVANT_LATEST else papers[:limit]
        LOGGER.info(
            "arXiv latest: fetched=%s relevant=%s returned=%s",
            len(papers),
            len(relevant),
            len(result),
        )

        page = PaperPage(papers=result, offset=0, limit=limit, fetched=len(papers))
        self._cache.set(cache_key, page)
        return replace(page, papers=list(result))

    def search_custom(self, query: str, offset: int = 0, limit: int = 10) -> list[Paper]:
        """Free-text search: the first three words, OR-joined, by relevance.

        Long boolean queries are the ones arXiv answers with 503, so user
        input is deliberately simplified.
        """
        return self.search_custom_page(query, offset, limit).papers

    def search_custom_page(self, query: str, offset: int = 0, limit: int = 10) -> PaperPage:
        terms = query.split()[:3]
        return self.search_page(
            terms or None,
            offset,
            limit,
            SearchFilters(sort_by="relevance", sort_order="descending"),
        )

    def get_paper(self, paper_id: str) -> Paper | None:
        """Fetch a single paper by arXiv id, or None if arXiv has no such entry."""
        params = {"id_list": paper_id, "max_results": "1"}
        cache_key = urlencode(params)
        page = self._cached_page(cache_key)
        if page is None:
            papers = self._fetch_feed(params)
            page = PaperPage(papers=papers, offset=0, limit=1, fetched=len(papers))
            self._cache.set(cache_key, page)
        return page.papers[0] if page.papers else None

    def _cached_page(self, cache_key: str) -> PaperPage | None:
        cached = self._cache.get(cache_key)
        if cached is None:
            return None
        LOGGER.info("arXiv cache hit: %s", cache_key)
        return replace(cached, papers=list(cached.papers))

    def _fetch_feed(self, params: dict[str, str]) -> list[Paper]:
        retries = 0
        try:
            while True:
                endpoint = self.endpoints[self._endpoint_index]
                url = _endpoint_url(endpoint, self.endpoints[0], params)

                self._throttle.acquire()
                LOGGER.info("Fetching arXiv feed: %s", url)
                try:
                    response = requests.get(url, headers=_HEADERS, timeout=REQUEST_TIMEOUT_SECONDS)
                except (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError) as exc:
                    error: RetrievalError = ConnectivityError(f"Could not reach arXiv endpoint {endpoint}: {exc}")
                    if self._endpoint_index < len(self.endpoints) - 1:
                        self._endpoint_index += 1
                        LOGGER.warning(
                            "%s; switching to fallback endpoint %s",
                            error,
                            self.endpoints[self._endpoint_index],
                        )
                        continue
                except requests.RequestException as exc:
                    raise RetrievalError(f"arXiv request failed: {exc}") from exc
                else:
                    if response.status_code == _OVERLOAD_STATUS:
                        error = TransientOverloadError("arXiv service unavailable (HTTP 503)", status=_OVERLOAD_STATUS)
                    elif response.status_code >= 400:
                        raise RetrievalError(
                            f"arXiv HTTP error: status {response.status_code}",
                            status=response.status_code,
                        )
                    else:
                        papers = parse_atom_feed(response.content)
                        LOGGER.info("arXiv feed parsed: %s entries from %s", len(papers), endpoint)
                        return papers

                if retries >= self.max_retries:
                    LOGGER.error("arXiv retry budget exhausted after %s retries: %s", retries, error)
                    raise error
                retries += 1
                LOGGER.warning(
                    "%s; retrying in %ss (retry %s/%s)",
                    error,
                    self.retry_delay_seconds,
                    retries,
                    self.max_retries,
                )
                self._sleep(self.retry_delay_seconds)
        finally:
            # Fallback use does not stick: the next request starts at the primary.
            self._endpoint_index = 0


def build_search_query(query_terms: str | Sequence[str] | None, category: str | None = None) -> str:
    """Compose the arXiv ``search_query`` boolean expression."""
    if query_terms is None:
        terms: Sequence[str] = DEFAULT_QUERY_TERMS
    elif isinstance(query_terms, str):
        terms = [query_terms]
    else:
        terms = query_terms
    keywords = " OR ".join(term.strip() for term in terms if term.strip()) or " OR ".join(DEFAULT_QUERY_TERMS)

    if category:
        return f"cat:{category} AND ({keywords})"
    categories = " OR ".join(f"cat:{cat}" for cat in TARGET_CATEGORIES)
    return f"({categories}) AND ({keywords})"


def parse_atom_feed(document: str | bytes) -> list[Paper]:
    """Parse an arXiv Atom feed into Paper records, in document order."""
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise MalformedResponseError(f"Unreadable arXiv feed: {exc}") from exc

    if root.tag != f"{{{_NS['atom']}}}feed":
        raise MalformedResponseError(f"Unexpected arXiv document root: {root.tag}")

    entries = root.findall("atom:entry", _NS)
    for entry in entries:
        # A rejected query comes back as HTTP 200 with a single error entry.
        if _ERROR_ENTRY_MARKER in _text(entry, "atom:id"):
            message = _clean(_text(entry, "atom:summary")) or _text(entry, "atom:id").strip()
            raise MalformedResponseError(f"arXiv rejected the query: {message}")

    return [_parse_entry(entry) for entry in entries]


def _endpoint_url(endpoint: str, primary: str, params: dict[str, str]) -> str:
    query = urlencode(params)
    if "{url}" in endpoint:
        return endpoint.replace("{url}", quote(f"{primary}?{query}", safe=""))
    return f"{endpoint}?{query}"


def arxiv_id(entry_id: str) -> str:
    """``http://arxiv.org/abs/2401.01234v1`` -> ``2401.01234v1``."""
    entry_id = entry_id.strip()
    if "/abs/" in entry_id:
        return entry_id.rsplit("/abs/", 1)[1]
    return entry_id


def _parse_entry(entry: ET.Element) -> Paper:
    paper_id = arxiv_id(_text(entry, "atom:id"))

    authors = [
        name
        for name in (_clean(author.findtext("atom:name", default="", namespaces=_NS)) for author in entry.findall("atom:author", _NS))
        if name
    ]
    categories = [cat.get("term", "") for cat in entry.findall("atom:category", _NS) if cat.get("term")]

    primary_el = entry.find("arxiv:primary_category", _NS)
    primary = primary_el.get("term", "") if primary_el is not None else ""
    pdf_url, abs_url = _resolve_links(entry, paper_id)

    return Paper(
        paper_id=paper_id,
        title=_clean(_text(entry, "atom:title")),
        abstract=_clean(_text(entry, "atom:summary")),
        authors=authors,
        published_at=_parse_datetime(_text(entry, "atom:published")),
        updated_at=_parse_datetime(_text(entry, "atom:updated")),
        primary_category=primary or (categories[0] if categories else ""),
        categories=categories,
        pdf_url=pdf_url,
        abs_url=abs_url,
    )


def _resolve_links(entry: ET.Element, paper_id: str) -> tuple[str, str]:
    typed_pdf = titled_pdf = abs_url = ""
    for link in entry.findall("atom:link", _NS):
        href = link.get("href") or ""
        if not href:
            continue
        if link.get("type") == "application/pdf":
            typed_pdf = typed_pdf or href
        elif link.get("title") == "pdf":
            titled_pdf = titled_pdf or href
        elif "/abs/" in href and not abs_url:
            abs_url = href

    pdf_url = typed_pdf or titled_pdf or (f"https://arxiv.org/pdf/{paper_id}" if paper_id else "")
    abs_url = abs_url or (f"https://arxiv.org/abs/{paper_id}" if paper_id else "")
    return pdf_url, abs_url


def _conform_to_query(
    papers: list[Paper],
    categories: Sequence[str],
    sort_by: str,
    sort_order: str,
    limit: int,
) -> list[Paper]:
    """Keep the page consistent with the query even if a relay ignored parts of it."""
    allowed = set(categories)
    kept = [paper for paper in papers if not paper.categories or allowed.intersection(paper.categories)]
    dropped = len(papers) - len(kept)
    if dropped:
        LOGGER.info("arXiv: dropped %s entries outside categories %s", dropped, sorted(allowed))

    if sort_by in ("submittedDate", "lastUpdatedDate"):
        def _key(paper: Paper) -> tuple[bool, datetime]:
            stamp = paper.published_at if sort_by == "submittedDate" else paper.updated_at
            return (stamp is not None, stamp or datetime.min.replace(tzinfo=UTC))

        kept.sort(key=_key, reverse=sort_order == "descending")

    return kept[:limit]


def _text(element: ET.Element, path: str) -> str:
    return element.findtext(path, default="", namespaces=_NS) or ""


def _clean(text: str) -> str:
    return " ".join(text.split())


def _parse_datetime(raw: str) -> datetime | None:
    if not raw:
        return None

    # arXiv returns RFC3339 timestamps with trailing Z.
    value = raw.strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
