"""Keyword relevance check for the latest-papers feed (no LLM calls)."""

from __future__ import annotations

from models import Paper

# Substrings that mark a paper as being about language models or their
# close neighbours. Matched case-insensitively against title + abstract.
_LLM_TOKENS: tuple[str, ...] = (
    "language model",
    "llm",
    "gpt",
    "transformer",
    "bert",
    "generative",
    "chatgpt",
    "claude",
    "gemini",
    "foundation model",
    "prompt",
    "fine-tuning",
    "rlhf",
    "multimodal",
    "rag",
)


def is_llm_paper(paper: Paper) -> bool:
    """Return True if the title or abstract mentions any LLM-related token.

    Plain substring matching, so short tokens such as "rag" also hit words
    like "storage"; the latest feed backfills when too few papers pass, which
    keeps the check permissive rather than precise.
    """
    text = f"{paper.title} {paper.abstract or ''}".lower()
    return any(tok in text for tok in _LLM_TOKENS)
