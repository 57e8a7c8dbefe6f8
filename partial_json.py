"""Best-effort reconstruction of a SummaryResult from partial model output.

Providers emit well-formed JSON only once the answer is complete. While the
stream is still running, the buffer is a truncated document, so
``parse_summary`` first tries a strict parse of the outermost object and then
falls back to field-by-field regular expressions that accept a value whose
closing quote has not arrived yet.

The synonym table below is a compatibility contract: models answer with any
of these key names and all of them must keep mapping to the same field.
"""

from __future__ import annotations

import json
import re
import string
from json import JSONDecodeError
from typing import Any

from models import SummaryResult

# SummaryResult field -> accepted key names, in priority order.
_SCALAR_FIELDS: dict[str, tuple[str, ...]] = {
    "title": ("title",),
    "methodology": ("methodology", "methods"),
    "findings": ("findings", "results"),
    "implications": ("implications", "significance"),
    "overall_summary": ("overallSummary", "overall_summary", "summary", "abstract"),
}
_KEY_POINT_NAMES: tuple[str, ...] = ("keyPoints", "key_points")

# Body of a JSON string: anything but a quote or backslash, or a complete escape.
_STRING_BODY = r'(?:[^"\\]|\\.)*'


def _key_prefix(name: str) -> str:
    return r'(?<!\\)"' + re.escape(name) + r'"\s*:\s*'


_SCALAR_PATTERNS: dict[str, re.Pattern[str]] = {
    name: re.compile(_key_prefix(name) + '"(' + _STRING_BODY + ")", re.DOTALL)
    for names in _SCALAR_FIELDS.values()
    for name in names
}
_LIST_PATTERNS: dict[str, re.Pattern[str]] = {
    name: re.compile(_key_prefix(name) + r'\[((?:"' + _STRING_BODY + r'"|[^"\]])*)', re.DOTALL)
    for name in _KEY_POINT_NAMES
}
_COMPLETE_STRING = re.compile('"(' + _STRING_BODY + ')"', re.DOTALL)
_SURROGATE = re.compile("[\ud800-\udfff]")

_ESCAPES = {'"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t"}


def parse_summary(text: str) -> SummaryResult | None:
    """Return the best summary recoverable from ``text``, or None if nothing is.

    Every call starts from scratch on the whole buffer; callers replace their
    previous result with the new one rather than merging.
    """
    if not text:
        return None

    complete = _parse_complete(text)
    if complete is not None:
        return complete
    return _parse_partial(text)


def normalize_summary(data: dict[str, Any]) -> SummaryResult | None:
    """Map a decoded JSON object onto SummaryResult using the synonym table.

    Returns None when the object carries none of the known fields.
    """
    values = {field: _first_text(data, names) for field, names in _SCALAR_FIELDS.items()}
    key_points = _coerce_points(next((data[name] for name in _KEY_POINT_NAMES if data.get(name)), None))

    if not any(values.values()) and not key_points:
        return None
    return SummaryResult(key_points=key_points, **values)


def _parse_complete(text: str) -> SummaryResult | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None

    try:
        data = json.loads(text[start : end + 1])
    except JSONDecodeError:
        return None

    if not isinstance(data, dict):
        return None
    return normalize_summary(data)


def _parse_partial(text: str) -> SummaryResult | None:
    values: dict[str, str] = {}
    for field, names in _SCALAR_FIELDS.items():
        values[field] = ""
        for name in names:
            match = _SCALAR_PATTERNS[name].search(text)
            if match is None:
                continue
            value = _unescape(match.group(1))
            if value:
                values[field] = value
                break

    key_points: list[str] = []
    for name in _KEY_POINT_NAMES:
        match = _LIST_PATTERNS[name].search(text)
        if match is None:
            continue
        # Only strings whose closing quote has arrived count as points.
        key_points = [_unescape(item.group(1)) for item in _COMPLETE_STRING.finditer(match.group(1))]
        if key_points:
            break

    if not any(values.values()) and not key_points:
        return None
    return SummaryResult(key_points=key_points, **values)


def _first_text(data: dict[str, Any], names: tuple[str, ...]) -> str:
    for name in names:
        value = data.get(name)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return ""


def _coerce_points(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [item if isinstance(item, str) else json.dumps(item) for item in value]
    return [str(value)]


def _unescape(raw: str) -> str:
    """Decode JSON string escapes, dropping an escape cut off at the end."""
    out: list[str] = []
    i = 0
    n = len(raw)
    while i < n:
        char = raw[i]
        if char != "\\":
            out.append(char)
            i += 1
            continue
        if i + 1 >= n:
            break
        code = raw[i + 1]
        if code == "u":
            digits = raw[i + 2 : i + 6]
            is_hex = all(c in string.hexdigits for c in digits)
            if len(digits) == 4 and is_hex:
                out.append(chr(int(digits, 16)))
                i += 6
                continue
            if is_hex and i + 2 + len(digits) >= n:
                break
            out.append(code)
            i += 2
            continue
        out.append(_ESCAPES.get(code, code))
        i += 2

    text = "".join(out)
    try:
        # Characters outside the BMP arrive as two \u escapes (a surrogate pair).
        return text.encode("utf-16", "surrogatepass").decode("utf-16")
    except UnicodeDecodeError:
        return _SURROGATE.sub("", text)
