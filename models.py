"""Shared typed models for retrieval and summarization."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class Paper:
    """Normalized arXiv record produced by the Atom parser."""

    paper_id: str
    title: str = ""
    abstract: str = ""
    authors: list[str] = field(default_factory=list)
    published_at: datetime | None = None
    updated_at: datetime | None = None
    primary_category: str = ""
    categories: list[str] = field(default_factory=list)
    pdf_url: str = ""
    abs_url: str = ""


@dataclass(frozen=True, slots=True)
class SummaryResult:
    """Structured paper summary; valid in a partially filled state."""

    title: str = ""
    key_points: list[str] = field(default_factory=list)
    methodology: str = ""
    findings: str = ""
    implications: str = ""
    overall_summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SummaryResult:
        return cls(
            title=str(data.get("title") or ""),
            key_points=[str(p) for p in data.get("key_points") or []],
            methodology=str(data.get("methodology") or ""),
            findings=str(data.get("findings") or ""),
            implications=str(data.get("implications") or ""),
            overall_summary=str(data.get("overall_summary") or ""),
        )


@dataclass(frozen=True, slots=True)
class SearchFilters:
    """Optional arXiv query constraints."""

    category: str | None = None
    sort_by: str = "submittedDate"  # relevance | lastUpdatedDate | submittedDate
    sort_order: str = "descending"  # ascending | descending
    max_results: int | None = None


@dataclass(frozen=True, slots=True)
class PaperPage:
    """One page of results as handed to the UI.

    ``stale`` is True when the fresh request failed and a previously
    retrieved page for the same request was served instead. ``fetched`` is
    the number of entries arXiv returned before client-side filtering, so a
    full upstream page still paginates when some entries were dropped.
    """

    papers: list[Paper]
    offset: int
    limit: int
    stale: bool = False
    fetched: int | None = None

    @property
    def has_more(self) -> bool:
        return self._upstream_count >= self.limit

    @property
    def next_offset(self) -> int:
        return self.offset + self._upstream_count

    @property
    def _upstream_count(self) -> int:
        return self.fetched if self.fetched is not None else len(self.papers)
