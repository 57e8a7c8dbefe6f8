"""Streaming summaries: SSE chat completions reconstructed into SummaryResult."""

from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable, Iterable, Iterator
from json import JSONDecodeError

import requests

from errors import ParseIncompleteError, PreconditionError, StreamTransportError, SummaryError
from models import SummaryResult
from partial_json import parse_summary
from summarizer import SYSTEM_PROMPT, SummarizerConfig, build_user_prompt
from summary_cache import SummaryCache

STREAMING_ENDPOINTS: dict[str, str] = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "moonshot": "https://api.moonshot.cn/v1/chat/completions",
}
# (connect, read) seconds; the read timeout bounds the gap between chunks.
STREAM_TIMEOUT_SECONDS = (10, 120)
# One reconstruction per display frame at most.
UPDATE_INTERVAL_SECONDS = float(os.getenv("STREAM_UPDATE_INTERVAL_SECONDS", str(1 / 60)))
_DONE_SENTINEL = "[DONE]"

LOGGER = logging.getLogger(__name__)

UpdateCallback = Callable[[SummaryResult], None]
ErrorCallback = Callable[[SummaryError], None]


class StreamingSummarizer:
    """Runs one streaming summary request per ``stream_summarize`` call.

    Results are reported through callbacks: ``on_update`` with the best
    partial summary so far (each call replaces the previous one),
    ``on_complete`` once with the final summary, or ``on_error`` once.
    Failures are never retried here; a partially billed request is the
    caller's decision to repeat.
    """

    def __init__(
        self,
        config: SummarizerConfig,
        cache: SummaryCache,
        update_interval_seconds: float = UPDATE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.cache = cache
        self.update_interval_seconds = update_interval_seconds
        self._clock = clock

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
        provider = self.config.provider
        model = self.config.resolved_model

        cached = self.cache.get(paper_id, provider, model)
        if cached is not None:
            on_complete(cached)
            return

        if not self.config.api_key:
            on_error(PreconditionError(f"No API key configured for provider {provider}"))
            return
        endpoint = STREAMING_ENDPOINTS.get(provider)
        if endpoint is None:
            on_error(PreconditionError(f"Streaming is not supported for provider {provider}"))
            return

        LOGGER.info("Streaming summary for paper_id=%s provider=%s model=%s", paper_id, provider, model)
        try:
            text = self._stream_text(endpoint, model, build_user_prompt(title, abstract, full_text), on_update)
        except StreamTransportError as exc:
            LOGGER.warning("Streaming failed for paper_id=%s: %s", paper_id, exc)
            on_error(exc)
            return

        summary = parse_summary(text)
        if summary is None:
            LOGGER.warning("Stream for paper_id=%s ended without a usable summary (%s chars)", paper_id, len(text))
            on_error(ParseIncompleteError(f"Could not parse a summary from {len(text)} characters of output"))
            return

        self.cache.set(paper_id, provider, model, summary)
        LOGGER.info("Streaming summary complete for paper_id=%s", paper_id)
        on_complete(summary)

    def _stream_text(
        self,
        endpoint: str,
        model: str,
        user_prompt: str,
        on_update: UpdateCallback,
    ) -> str:
        """POST the streaming request and return the full accumulated text.

        Reconstruction is coalesced: while fragments arrive faster than
        ``update_interval_seconds``, the intermediate buffers are not parsed.
        Updates fire on the leading edge only, so the state reached at the
        end of a burst is reported when the next fragment arrives after the
        interval, or by ``on_complete`` when the stream ends first.
        """
        payload = {
            "model": model,
            "temperature": self.config.temperature,
            "stream": True,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

        buffer: list[str] = []
        last_update: float | None = None
        try:
            response = requests.post(
                endpoint,
                headers=headers,
                json=payload,
                stream=True,
                timeout=STREAM_TIMEOUT_SECONDS,
            )
            try:
                if response.status_code >= 400:
                    raise StreamTransportError(
                        f"{self.config.provider} API error {response.status_code}: {response.text[:500]}"
                    )
                # SSE is UTF-8; without a charset requests would guess Latin-1.
                response.encoding = "utf-8"
                for fragment in iter_sse_content(response.iter_lines(decode_unicode=True)):
                    buffer.append(fragment)
                    now = self._clock()
                    if last_update is not None and now - last_update < self.update_interval_seconds:
                        continue
                    last_update = now
                    partial = parse_summary("".join(buffer))
                    if partial is not None:
                        on_update(partial)
            finally:
                response.close()
        except requests.RequestException as exc:
            raise StreamTransportError(f"{self.config.provider} stream interrupted: {exc}") from exc

        return "".join(buffer)


def iter_sse_content(lines: Iterable[str | bytes]) -> Iterator[str]:
    """Yield ``choices[0].delta.content`` from chat-completion SSE lines.

    Stops at the ``[DONE]`` sentinel; lines that are not data lines or do not
    decode are skipped.
    """
    for raw_line in lines:
        if not raw_line:
            continue
        line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
        line = line.strip()
        if not line.startswith("data:"):
            continue

        data = line[len("data:") :].strip()
        if data == _DONE_SENTINEL:
            return
        try:
            chunk = json.loads(data)
            content = chunk["choices"][0]["delta"].get("content")
        except (JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
            continue
        if content:
            yield content
