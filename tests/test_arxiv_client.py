"""Tests for the arXiv retrieval gateway (arxiv_client.ArxivClient)."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest
import requests

from arxiv_client import ArxivClient, build_search_query, parse_atom_feed
from errors import (
    ConnectivityError,
    MalformedResponseError,
    RetrievalError,
    TransientOverloadError,
)
from models import PaperPage, SearchFilters
from throttle import Throttle
from ttl_cache import TTLCache

PRIMARY = "https://export.arxiv.org/api/query"
RELAY = "https://relay.example/fetch?url={url}"
SECONDARY = "https://mirror.example/api/query"

_BASE_DATE = datetime(2026, 2, 1, tzinfo=UTC)


def _entry(
    arxiv_id: str,
    title: str = "A Paper",
    summary: str = "An abstract.",
    published: datetime = _BASE_DATE,
    categories: tuple[str, ...] = ("cs.CL",),
    primary: str | None = None,
    links: str | None = None,
) -> str:
    stamp = published.strftime("%Y-%m-%dT%H:%M:%SZ")
    cats = "".join(f'<category term="{c}" scheme="http://arxiv.org/schemas/atom"/>' for c in categories)
    primary_el = f'<arxiv:primary_category term="{primary}" scheme="http://arxiv.org/schemas/atom"/>' if primary else ""
    if links is None:
        links = (
            f'<link href="http://arxiv.org/abs/{arxiv_id}" rel="alternate" type="text/html"/>'
            f'<link title="pdf" href="http://arxiv.org/pdf/{arxiv_id}" rel="related" type="application/pdf"/>'
        )
    return (
        f"<entry><id>http://arxiv.org/abs/{arxiv_id}</id>"
        f"<updated>{stamp}</updated><published>{stamp}</published>"
        f"<title>{title}</title><summary>{summary}</summary>"
        f"<author><name>Ada Lovelace</name></author>"
        f"{cats}{primary_el}{links}</entry>"
    )


def _feed(*entries: str) -> bytes:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<feed xmlns="http://www.w3.org/2005/Atom" xmlns:arxiv="http://arxiv.org/schemas/atom">'
        "<title>ArXiv Query</title>" + "".join(entries) + "</feed>"
    ).encode("utf-8")


def _mock_resp(status: int = 200, content: bytes = b"") -> MagicMock:
    mock = MagicMock()
    mock.status_code = status
    mock.content = content
    return mock


def _client(endpoints: list[str] | None = None, max_retries: int = 3) -> ArxivClient:
    return ArxivClient(
        endpoints=endpoints or [PRIMARY],
        throttle=Throttle(0),
        cache=TTLCache(300, 100),
        max_retries=max_retries,
        retry_delay_seconds=5,
        sleep=MagicMock(),
    )


def _called_urls(mock_get: MagicMock) -> list[str]:
    return [call.args[0] for call in mock_get.call_args_list]


def _query_params(url: str) -> dict[str, str]:
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


# ---------------------------------------------------------------------------
# Atom parsing
# ---------------------------------------------------------------------------

def test_parse_atom_feed_extracts_all_fields() -> None:
    entry = (
        "<entry><id>http://arxiv.org/abs/2602.01234v2</id>"
        "<updated>2026-02-03T10:00:00Z</updated><published>2026-02-01T09:54:57Z</published>"
        "<title>Scaling\n   Laws   for\n  Agents</title>"
        "<summary>  We study\n  scaling.  </summary>"
        "<author><name>Ada Lovelace</name></author><author><name>Alan Turing</name></author>"
        '<arxiv:primary_category term="cs.LG"/>'
        '<category term="cs.AI"/><category term="cs.LG"/>'
        '<link href="http://arxiv.org/abs/2602.01234v2" rel="alternate" type="text/html"/>'
        '<link title="pdf" href="http://arxiv.org/pdf/2602.01234v2" rel="related" type="application/pdf"/>'
        "</entry>"
    )

    papers = parse_atom_feed(_feed(entry))

    assert len(papers) == 1
    paper = papers[0]
    assert paper.paper_id == "2602.01234v2"
    assert paper.title == "Scaling Laws for Agents"
    assert paper.abstract == "We study scaling."
    assert paper.authors == ["Ada Lovelace", "Alan Turing"]
    assert paper.categories == ["cs.AI", "cs.LG"]
    assert paper.primary_category == "cs.LG"
    assert paper.pdf_url == "http://arxiv.org/pdf/2602.01234v2"
    assert paper.abs_url == "http://arxiv.org/abs/2602.01234v2"
    assert paper.published_at == datetime(2026, 2, 1, 9, 54, 57, tzinfo=UTC)
    assert paper.updated_at == datetime(2026, 2, 3, 10, 0, 0, tzinfo=UTC)


def test_parse_atom_feed_primary_defaults_to_first_category() -> None:
    papers = parse_atom_feed(_feed(_entry("2602.00001", categories=("cs.IR", "cs.CL"))))
    assert papers[0].primary_category == "cs.IR"


def test_parse_atom_feed_prefers_typed_pdf_then_titled_link() -> None:
    links = (
        '<link title="pdf" href="http://mirror/titled.pdf" rel="related"/>'
        '<link href="http://mirror/typed.pdf" rel="related" type="application/pdf"/>'
    )
    papers = parse_atom_feed(_feed(_entry("2602.00001", links=links)))
    assert papers[0].pdf_url == "http://mirror/typed.pdf"

    titled_only = '<link title="pdf" href="http://mirror/titled.pdf" rel="related"/>'
    papers = parse_atom_feed(_feed(_entry("2602.00001", links=titled_only)))
    assert papers[0].pdf_url == "http://mirror/titled.pdf"


def test_parse_atom_feed_synthesizes_links_from_id() -> None:
    papers = parse_atom_feed(_feed(_entry("2602.00007v1", links="")))

    assert papers[0].pdf_url == "https://arxiv.org/pdf/2602.00007v1"
    assert papers[0].abs_url == "https://arxiv.org/abs/2602.00007v1"


def test_parse_atom_feed_defaults_missing_fields() -> None:
    papers = parse_atom_feed(_feed("<entry><id>http://arxiv.org/abs/2602.00009</id></entry>"))

    paper = papers[0]
    assert paper.title == ""
    assert paper.abstract == ""
    assert paper.authors == []
    assert paper.categories == []
    assert paper.primary_category == ""
    assert paper.published_at is None


def test_parse_atom_feed_empty_feed_is_no_results() -> None:
    assert parse_atom_feed(_feed()) == []


@pytest.mark.parametrize("document", [b"<html><body>Bad gateway</body></html>", b"not xml at all <"])
def test_parse_atom_feed_rejects_non_feed_documents(document: bytes) -> None:
    with pytest.raises(MalformedResponseError):
        parse_atom_feed(document)


def test_parse_atom_feed_rejects_api_error_entry() -> None:
    error_entry = (
        "<entry><id>http://arxiv.org/api/errors#incorrect_id_format_for_1234</id>"
        "<title>Error</title><summary>incorrect id format for 1234</summary>"
        '<link href="http://arxiv.org/api/errors#incorrect_id_format_for_1234" rel="alternate" type="text/html"/>'
        "</entry>"
    )

    with pytest.raises(MalformedResponseError, match="incorrect id format for 1234"):
        parse_atom_feed(_feed(error_entry))


# ---------------------------------------------------------------------------
# Query composition
# ---------------------------------------------------------------------------

def test_build_search_query_defaults_to_llm_terms_within_target_categories() -> None:
    query = build_search_query(None)
    assert query == (
        "(cat:cs.CL OR cat:cs.LG OR cat:cs.AI OR cat:cs.IR OR cat:cs.CV) AND "
        '("large language model" OR LLM OR GPT OR transformer)'
    )


def test_build_search_query_pinned_category_replaces_category_set() -> None:
    assert build_search_query(["agents", "planning"], category="cs.AI") == "cat:cs.AI AND (agents OR planning)"


def test_search_caps_page_size_at_ten() -> None:
    client = _client()
    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_feed())) as mock_get:
        client.search("transformer", offset=20, limit=50)

    params = _query_params(_called_urls(mock_get)[0])
    assert params["max_results"] == "10"
    assert params["start"] == "20"
    assert params["sortBy"] == "submittedDate"
    assert params["sortOrder"] == "descending"


def test_search_custom_uses_first_three_words_by_relevance() -> None:
    client = _client()
    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_feed())) as mock_get:
        client.search_custom("  graph neural networks for molecules ")

    params = _query_params(_called_urls(mock_get)[0])
    assert params["search_query"].endswith("AND (graph OR neural OR networks)")
    assert params["sortBy"] == "relevance"


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------

def test_search_serves_repeat_queries_from_cache() -> None:
    client = _client()
    feed = _feed(_entry("2602.00001"))

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=feed)) as mock_get:
        first = client.search("transformer")
        second = client.search("transformer")

    assert mock_get.call_count == 1
    assert first == second


def test_search_different_offsets_are_different_cache_keys() -> None:
    client = _client()
    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_feed())) as mock_get:
        client.search("transformer", offset=0)
        client.search("transformer", offset=10)

    assert mock_get.call_count == 2


# ---------------------------------------------------------------------------
# Fallback routing and retry budget
# ---------------------------------------------------------------------------

def test_connectivity_failure_advances_through_fallbacks_in_order() -> None:
    client = _client(endpoints=[PRIMARY, RELAY, SECONDARY])
    responses = [
        requests.ConnectionError("dns failure"),
        requests.ConnectTimeout("relay down"),
        _mock_resp(content=_feed(_entry("2602.00001"))),
    ]

    with patch("arxiv_client.requests.get", side_effect=responses) as mock_get:
        papers = client.search("transformer")

    urls = _called_urls(mock_get)
    assert urls[0].startswith(PRIMARY + "?")
    assert urls[1].startswith("https://relay.example/fetch?url=https%3A%2F%2Fexport.arxiv.org%2Fapi%2Fquery%3F")
    assert urls[2].startswith(SECONDARY + "?")
    assert [p.paper_id for p in papers] == ["2602.00001"]
    # Switching endpoints is immediate, no cooldown.
    client._sleep.assert_not_called()


def test_successful_fallback_does_not_stick() -> None:
    client = _client(endpoints=[PRIMARY, SECONDARY])
    responses = [
        requests.ConnectionError("down"),
        _mock_resp(content=_feed()),
        _mock_resp(content=_feed()),
    ]

    with patch("arxiv_client.requests.get", side_effect=responses) as mock_get:
        client.search("transformer")
        client.search("diffusion")

    assert _called_urls(mock_get)[2].startswith(PRIMARY + "?")


def test_overload_fails_after_exactly_the_retry_budget() -> None:
    client = _client(max_retries=3)

    with patch("arxiv_client.requests.get", return_value=_mock_resp(status=503)) as mock_get:
        with pytest.raises(TransientOverloadError) as excinfo:
            client.search("transformer")

    assert mock_get.call_count == 1 + 3
    assert client._sleep.call_count == 3
    client._sleep.assert_called_with(5)
    assert excinfo.value.status == 503
    assert excinfo.value.kind == "overload"


def test_overload_retries_same_endpoint_then_succeeds() -> None:
    client = _client(endpoints=[PRIMARY, SECONDARY])
    responses = [_mock_resp(status=503), _mock_resp(content=_feed(_entry("2602.00001")))]

    with patch("arxiv_client.requests.get", side_effect=responses) as mock_get:
        papers = client.search("transformer")

    urls = _called_urls(mock_get)
    assert all(url.startswith(PRIMARY + "?") for url in urls)
    assert len(papers) == 1
    assert client._sleep.call_count == 1


def test_connectivity_exhausts_fallbacks_then_retries_last_endpoint() -> None:
    client = _client(endpoints=[PRIMARY, SECONDARY], max_retries=2)

    with patch("arxiv_client.requests.get", side_effect=requests.ConnectionError("offline")) as mock_get:
        with pytest.raises(ConnectivityError) as excinfo:
            client.search("transformer")

    urls = _called_urls(mock_get)
    assert len(urls) == 2 + 2
    assert urls[0].startswith(PRIMARY + "?")
    assert all(url.startswith(SECONDARY + "?") for url in urls[1:])
    assert client._sleep.call_count == 2
    assert excinfo.value.kind == "connectivity"
    assert excinfo.value.status is None


def test_endpoint_selection_resets_after_failed_search() -> None:
    client = _client(endpoints=[PRIMARY, SECONDARY], max_retries=0)

    with patch("arxiv_client.requests.get", side_effect=requests.ConnectionError("offline")):
        with pytest.raises(ConnectivityError):
            client.search("transformer")

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_feed())) as mock_get:
        client.search("transformer")

    assert _called_urls(mock_get)[0].startswith(PRIMARY + "?")


def test_client_error_status_is_not_retried() -> None:
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(status=400)) as mock_get:
        with pytest.raises(RetrievalError) as excinfo:
            client.search("transformer")

    assert mock_get.call_count == 1
    assert excinfo.value.status == 400
    assert not isinstance(excinfo.value, TransientOverloadError)
    client._sleep.assert_not_called()


def test_malformed_response_is_not_retried() -> None:
    client = _client(endpoints=[PRIMARY, SECONDARY])

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=b"<html>captcha</html>")) as mock_get:
        with pytest.raises(MalformedResponseError):
            client.search("transformer")

    assert mock_get.call_count == 1


def test_body_read_failure_is_treated_as_connectivity() -> None:
    client = _client(endpoints=[PRIMARY, SECONDARY])
    responses = [
        requests.exceptions.ChunkedEncodingError("connection dropped mid-body"),
        _mock_resp(content=_feed(_entry("2602.00001"))),
    ]

    with patch("arxiv_client.requests.get", side_effect=responses) as mock_get:
        papers = client.search("transformer")

    assert _called_urls(mock_get)[1].startswith(SECONDARY + "?")
    assert len(papers) == 1


def test_body_read_failure_exhausting_budget_raises_connectivity_error() -> None:
    client = _client(max_retries=1)

    with patch("arxiv_client.requests.get", side_effect=requests.exceptions.ChunkedEncodingError("cut")):
        with pytest.raises(ConnectivityError):
            client.search("transformer")


@pytest.mark.parametrize("exc", [
    requests.exceptions.TooManyRedirects("redirect loop"),
    requests.exceptions.ContentDecodingError("bad gzip"),
    requests.exceptions.InvalidURL("bad relay"),
])
def test_other_transport_failures_are_typed_and_not_retried(exc: Exception) -> None:
    client = _client(endpoints=[PRIMARY, SECONDARY])

    with patch("arxiv_client.requests.get", side_effect=exc) as mock_get:
        with pytest.raises(RetrievalError) as excinfo:
            client.search("transformer")

    assert mock_get.call_count == 1
    assert excinfo.value.__cause__ is exc
    client._sleep.assert_not_called()


def test_failed_search_is_not_cached() -> None:
    client = _client(max_retries=0)

    with patch("arxiv_client.requests.get", return_value=_mock_resp(status=503)):
        with pytest.raises(TransientOverloadError):
            client.search("transformer")

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_feed(_entry("2602.00001")))) as mock_get:
        papers = client.search("transformer")

    assert mock_get.call_count == 1
    assert len(papers) == 1


# ---------------------------------------------------------------------------
# Result shaping
# ---------------------------------------------------------------------------

def test_search_returns_first_page_of_matching_categories_in_date_order() -> None:
    """12 matching and 3 off-category entries -> the 10 newest matching ones."""
    matching = [
        _entry(f"2602.{i:05d}", title=f"Transformer {i}", published=_BASE_DATE + timedelta(days=(i * 7) % 12))
        for i in range(12)
    ]
    off_category = [
        _entry(f"2602.9{i:04d}", categories=("math.AP",), published=_BASE_DATE + timedelta(days=30))
        for i in range(3)
    ]
    feed = _feed(*off_category[:1], *matching[:6], *off_category[1:], *matching[6:])
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=feed)):
        papers = client.search("transformer", offset=0, limit=10)

    assert len(papers) == 10
    assert all("cs.CL" in p.categories for p in papers)
    stamps = [p.published_at for p in papers]
    assert stamps == sorted(stamps, reverse=True)
    # The two oldest matching entries fall off the page.
    assert min(stamps) == _BASE_DATE + timedelta(days=2)
    assert PaperPage(papers=papers, offset=0, limit=10, fetched=15).has_more is True


def test_search_with_pinned_category_keeps_only_that_category() -> None:
    feed = _feed(_entry("2602.00001", categories=("cs.AI",)), _entry("2602.00002", categories=("cs.CL",)))
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=feed)):
        papers = client.search("agents", filters=SearchFilters(category="cs.AI"))

    assert [p.paper_id for p in papers] == ["2602.00001"]


def test_relevance_sort_keeps_server_order() -> None:
    feed = _feed(
        _entry("2602.00001", published=_BASE_DATE),
        _entry("2602.00002", published=_BASE_DATE + timedelta(days=3)),
    )
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=feed)):
        papers = client.search("agents", filters=SearchFilters(sort_by="relevance"))

    assert [p.paper_id for p in papers] == ["2602.00001", "2602.00002"]


def test_search_page_counts_upstream_entries_before_filtering() -> None:
    entries = [_entry(f"2602.{i:05d}") for i in range(9)]
    entries.append(_entry("2602.99999", categories=("math.AP",)))
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_feed(*entries))) as mock_get:
        page = client.search_page("transformer", offset=20, limit=10)
        cached = client.search_page("transformer", offset=20, limit=10)

    assert mock_get.call_count == 1
    assert len(page.papers) == 9
    assert page.fetched == 10
    assert page.has_more is True
    assert page.next_offset == 30
    assert cached == page


def test_latest_page_counts_entries_before_relevance_filter() -> None:
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_latest_feed(relevant=6))):
        page = client.latest_page(0, 10)

    assert len(page.papers) == 6
    assert page.has_more is True


# ---------------------------------------------------------------------------
# Latest papers
# ---------------------------------------------------------------------------

def _latest_feed(relevant: int, total: int = 10) -> bytes:
    entries = []
    for i in range(total):
        if i < relevant:
            entries.append(_entry(f"2602.{i:05d}", title=f"Prompting a large language model {i}"))
        else:
            entries.append(_entry(f"2602.{i:05d}", title=f"Parsing syntax trees {i}", summary="Dependency parsing."))
    return _feed(*entries)


def test_fetch_latest_first_page_queries_single_category_and_filters() -> None:
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_latest_feed(relevant=6))) as mock_get:
        papers = client.fetch_latest(0, 10)

    params = _query_params(_called_urls(mock_get)[0])
    assert params["search_query"] == "cat:cs.CL"
    assert params["sortBy"] == "submittedDate"
    assert len(papers) == 6
    assert all("language model" in p.title for p in papers)


def test_fetch_latest_backfills_when_too_few_relevant() -> None:
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_latest_feed(relevant=2))):
        papers = client.fetch_latest(0, 10)

    assert len(papers) == 10


def test_fetch_latest_later_pages_use_keyword_search() -> None:
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_feed())) as mock_get:
        client.fetch_latest(10, 10)

    params = _query_params(_called_urls(mock_get)[0])
    assert params["start"] == "10"
    assert "LLM" in params["search_query"]
    assert params["sortBy"] == "submittedDate"


def test_fetch_latest_propagates_failures() -> None:
    client = _client(max_retries=0)

    with patch("arxiv_client.requests.get", return_value=_mock_resp(status=503)):
        with pytest.raises(TransientOverloadError):
            client.fetch_latest(0, 10)


# ---------------------------------------------------------------------------
# Single paper lookup
# ---------------------------------------------------------------------------

def test_get_paper_uses_id_list() -> None:
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_feed(_entry("2602.00042v1")))) as mock_get:
        paper = client.get_paper("2602.00042")

    params = _query_params(_called_urls(mock_get)[0])
    assert params["id_list"] == "2602.00042"
    assert paper is not None
    assert paper.paper_id == "2602.00042v1"


def test_get_paper_returns_none_when_not_found() -> None:
    client = _client()

    with patch("arxiv_client.requests.get", return_value=_mock_resp(content=_feed())):
        assert client.get_paper("0000.00000") is None
