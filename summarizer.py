"""Summarizer configuration, shared prompt, and one-shot (non-streaming) summaries."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass

import anthropic
import requests
from openai import OpenAI

from models import SummaryResult
from partial_json import parse_summary

PROVIDER_DEFAULT_MODELS: dict[str, str] = {
    "openai": "gpt-4o-mini",
    "moonshot": "kimi-k2-turbo-preview",
    "anthropic": "claude-3-sonnet-20240229",
    "google": "gemini-pro",
    "local": "extractive",
}
PROVIDER_KEY_ENV: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "moonshot": "MOONSHOT_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}
# Providers that speak the OpenAI chat-completions protocol.
OPENAI_COMPATIBLE_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "moonshot": "https://api.moonshot.cn/v1",
}
GOOGLE_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
ANTHROPIC_MAX_TOKENS = 4096
REQUEST_TIMEOUT_SECONDS = 60
FULL_TEXT_CHAR_LIMIT = 8000

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert research paper summarizer. Your task is to analyze the given academic paper and provide a structured summary.

Please provide your summary in the following JSON format:
{
  "title": "Brief, clear title for the summary",
  "keyPoints": ["Key point 1", "Key point 2", "Key point 3"],
  "methodology": "Description of the methods used",
  "findings": "Main findings and results",
  "implications": "Implications and significance of this research",
  "overallSummary": "A concise 2-3 paragraph summary of the entire paper"
}

Focus on:
- Core contributions and innovations
- Technical approach and methodology
- Key results and their significance
- Practical applications and future directions

Be accurate, concise, and avoid hype. Use technical terminology appropriately.
Respond ONLY with the JSON object. No prose, no markdown."""

_KEY_SENTENCE_TOKENS: tuple[str, ...] = (
    "propose",
    "introduce",
    "develop",
    "achieve",
    "demonstrate",
    "show",
    "result",
    "method",
    "approach",
)


@dataclass(frozen=True, slots=True)
class SummarizerConfig:
    """Which generative provider to use and how."""

    provider: str = "local"
    api_key: str | None = None
    model: str | None = None
    temperature: float = 0.3

    @property
    def resolved_model(self) -> str:
        return self.model or PROVIDER_DEFAULT_MODELS.get(self.provider, PROVIDER_DEFAULT_MODELS["openai"])

    @classmethod
    def from_env(cls) -> SummarizerConfig:
        """Read SUMMARY_PROVIDER / SUMMARY_API_KEY / SUMMARY_MODEL / SUMMARY_TEMPERATURE.

        Without SUMMARY_API_KEY the provider's conventional variable
        (e.g. OPENAI_API_KEY) is used.
        """
        provider = os.getenv("SUMMARY_PROVIDER", "local").strip().lower() or "local"
        key_env = PROVIDER_KEY_ENV.get(provider)
        api_key = os.getenv("SUMMARY_API_KEY") or (os.getenv(key_env) if key_env else None)
        return cls(
            provider=provider,
            api_key=api_key.strip() if api_key else None,
            model=os.getenv("SUMMARY_MODEL") or None,
            temperature=float(os.getenv("SUMMARY_TEMPERATURE", "0.3")),
        )


def build_user_prompt(title: str, abstract: str, full_text: str | None = None) -> str:
    prompt = f"Title: {title}\n\nAbstract: {abstract or 'Not available.'}"
    if full_text:
        prompt += f"\n\nFull Text (first {FULL_TEXT_CHAR_LIMIT} chars): {full_text[:FULL_TEXT_CHAR_LIMIT]}"
    return prompt


def summarize(
    title: str,
    abstract: str,
    config: SummarizerConfig,
    full_text: str | None = None,
) -> SummaryResult:
    """Summarize one paper in a single request.

    Falls back to the local extractive summary when no API key is configured
    or the provider call fails, so a summary is always returned.
    """
    if config.provider == "local":
        return local_summary(title, abstract)
    if not config.api_key:
        LOGGER.warning("No API key for provider=%s, falling back to local summary", config.provider)
        return local_summary(title, abstract)

    user_prompt = build_user_prompt(title, abstract, full_text)
    LOGGER.info("Summarizing with provider=%s model=%s: %s", config.provider, config.resolved_model, title)

    try:
        if config.provider in OPENAI_COMPATIBLE_BASE_URLS:
            content = _call_openai_compatible(config, user_prompt)
        elif config.provider == "anthropic":
            content = _call_anthropic(config, user_prompt)
        elif config.provider == "google":
            content = _call_google(config, user_prompt)
        else:
            LOGGER.warning("Unknown provider=%s, falling back to local summary", config.provider)
            return local_summary(title, abstract)

        summary = parse_summary(content)
        if summary is None:
            raise RuntimeError("Provider response contained no summary fields")
        return summary
    except Exception as exc:  # any provider failure degrades to the local summary
        LOGGER.warning(
            "Summarization failed for provider=%s, falling back to local summary: %s",
            config.provider,
            exc,
        )
        return local_summary(title, abstract)


def local_summary(title: str, abstract: str) -> SummaryResult:
    """Heuristic extractive summary used when no AI provider is available."""
    sentences = [s.strip() for s in re.split(r"[.!?]+", abstract) if len(s.strip()) > 20]
    key_points = [s for s in sentences if any(tok in s.lower() for tok in _KEY_SENTENCE_TOKENS)][:3]
    if not key_points and sentences:
        key_points = [sentences[0]]

    return SummaryResult(
        title=title,
        key_points=key_points or ["See full abstract for details"],
        methodology="Methodology details are not available in local mode. Configure an AI provider for a full analysis.",
        findings="Detailed findings require full paper analysis. Configure an AI provider for comprehensive results.",
        implications="Implications analysis requires AI summarization. Configure an API key.",
        overall_summary=abstract if len(abstract) <= 300 else abstract[:300] + "...",
    )


def _call_openai_compatible(config: SummarizerConfig, user_prompt: str) -> str:
    client = OpenAI(api_key=config.api_key, base_url=OPENAI_COMPATIBLE_BASE_URLS[config.provider])
    response = client.chat.completions.create(
        model=config.resolved_model,
        temperature=config.temperature,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ],
    )

    content = response.choices[0].message.content
    if not content:
        raise RuntimeError(f"{config.provider} returned an empty response")
    return content


def _call_anthropic(config: SummarizerConfig, user_prompt: str) -> str:
    client = anthropic.Anthropic(api_key=config.api_key)
    LOGGER.debug("Calling Claude model=%s max_tokens=%s", config.resolved_model, ANTHROPIC_MAX_TOKENS)
    response = client.messages.create(
        model=config.resolved_model,
        max_tokens=ANTHROPIC_MAX_TOKENS,
        temperature=config.temperature,
        system=SYSTEM_PROMPT,
        messages=[{"role": "user", "content": f"{user_prompt}\n\nPlease respond with the JSON summary."}],
    )
    return response.content[0].text


def _call_google(config: SummarizerConfig, user_prompt: str) -> str:
    payload = {
        "contents": [{"parts": [{"text": f"{SYSTEM_PROMPT}\n\n{user_prompt}"}]}],
        "generationConfig": {
            "temperature": config.temperature,
            "responseMimeType": "application/json",
        },
    }
    response = requests.post(
        GOOGLE_API_URL.format(model=config.resolved_model),
        params={"key": config.api_key},
        json=payload,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    body = response.json()

    try:
        return body["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as exc:
        raise RuntimeError(f"Unexpected Google response shape: {body}") from exc
