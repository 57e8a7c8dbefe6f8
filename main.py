"""CLI entrypoint: browse recent arXiv papers and summarize them."""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

# Module-level settings are read from the environment at import time.
load_dotenv()

from errors import RetrievalError, SummaryError  # noqa: E402
from models import PaperPage, SummaryResult  # noqa: E402
from service import PaperReader  # noqa: E402


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line flags."""
    parser = argparse.ArgumentParser(description="Browse recent arXiv papers and get structured AI summaries")
    subparsers = parser.add_subparsers(dest="command", required=True)

    latest = subparsers.add_parser("latest", help="List the newest LLM-related papers")
    latest.add_argument("--offset", type=int, default=0, help="Index of the first paper to show")
    latest.add_argument("--count", type=int, default=10, help="Papers per page (max 10)")

    search = subparsers.add_parser("search", help="Search papers by keywords")
    search.add_argument("query", help="Free-text query; only the first three words are used")
    search.add_argument("--offset", type=int, default=0, help="Index of the first paper to show")
    search.add_argument("--count", type=int, default=10, help="Papers per page (max 10)")

    summarize = subparsers.add_parser("summarize", help="Summarize one paper by arXiv id")
    summarize.add_argument("paper_id", help="arXiv id, e.g. 2401.01234")
    summarize.add_argument(
        "--no-stream",
        action="store_true",
        help="Use a single request instead of streaming (works with every provider)",
    )

    subparsers.add_parser("cache-stats", help="Show summary cache usage")
    subparsers.add_parser("clear-cache", help="Delete all cached summaries")
    return parser.parse_args(argv)


def print_page(page: PaperPage) -> None:
    if page.stale:
        print("(arXiv is unreachable; showing previously retrieved results)")
    if not page.papers:
        print("No papers found.")
        return

    for index, paper in enumerate(page.papers, start=page.offset + 1):
        published = paper.published_at.date().isoformat() if paper.published_at else "unknown date"
        authors = ", ".join(paper.authors[:3]) + (" et al." if len(paper.authors) > 3 else "")
        print(f"{index:>3}. [{paper.paper_id}] {paper.title}")
        print(f"     {authors} | {paper.primary_category} | {published}")
        print(f"     {paper.abs_url}")

    if page.has_more:
        print(f"More results: --offset {page.next_offset}")


def print_summary(summary: SummaryResult) -> None:
    print(f"\n# {summary.title}\n")
    if summary.key_points:
        print("Key points:")
        for point in summary.key_points:
            print(f"  - {point}")
    for heading, text in (
        ("Methodology", summary.methodology),
        ("Findings", summary.findings),
        ("Implications", summary.implications),
        ("Summary", summary.overall_summary),
    ):
        if text:
            print(f"\n{heading}:\n  {text}")


def run_summarize(reader: PaperReader, paper_id: str, stream: bool) -> int:
    """Fetch one paper and print its summary; returns a process exit code."""
    paper = reader.client.get_paper(paper_id)
    if paper is None:
        logging.error("No arXiv paper found for id=%s", paper_id)
        return 1

    if not stream:
        print_summary(reader.summarize(paper.paper_id, paper.title, paper.abstract))
        return 0

    failures: list[SummaryError] = []

    def on_update(partial: SummaryResult) -> None:
        filled = sum(bool(value) for value in (partial.methodology, partial.findings, partial.implications, partial.overall_summary))
        print(
            f"\rStreaming... {len(partial.key_points)} key points, {filled}/4 sections",
            end="",
            file=sys.stderr,
            flush=True,
        )

    def on_error(error: SummaryError) -> None:
        failures.append(error)

    reader.stream_summarize(paper.paper_id, paper.title, paper.abstract, on_update, print_summary, on_error)

    if failures:
        logging.error("Summary failed for paper_id=%s: %s", paper.paper_id, failures[0])
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Initialize logging and execute one command."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)
    reader = PaperReader()

    try:
        if args.command == "latest":
            print_page(reader.fetch_latest(args.offset, args.count))
        elif args.command == "search":
            print_page(reader.search(args.query, args.offset, args.count))
        elif args.command == "summarize":
            return run_summarize(reader, args.paper_id, stream=not args.no_stream)
        elif args.command == "cache-stats":
            stats = reader.cache_stats()
            print(f"Cached summaries: {stats['size']}/{stats['capacity']}")
        elif args.command == "clear-cache":
            reader.clear_summary_cache()
            print("Summary cache cleared.")
    except RetrievalError as exc:
        logging.error("arXiv retrieval failed (%s): %s", exc.kind, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
