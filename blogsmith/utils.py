"""
Shared helpers: timestamps, JSON-file persistence, HTML text metrics,
slug generation, and tolerant JSON extraction from model output.
"""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger("blogsmith.utils")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SLUG_MAX_LENGTH = 60

_TRANSLITERATION = {
    "a": "àáâãäå",
    "e": "èéêë",
    "i": "ìíîï",
    "o": "òóôõö",
    "u": "ùúûü",
    "y": "ýÿ",
    "n": "ñ",
    "c": "ç",
}
_TRANSLIT_TABLE = str.maketrans(
    {ch: base for base, chars in _TRANSLITERATION.items() for ch in chars}
)

_TAG_RE = re.compile(r"<[^>]+>")
_URL_RE = re.compile(r"https?://[^\s<>\"]+")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")


# ---------------------------------------------------------------------------
# Time & persistence
# ---------------------------------------------------------------------------


def now_iso() -> str:
    """Return the current UTC timestamp in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp, treating naive values as UTC.

    Accepts the trailing ``Z`` form produced by JavaScript clients.
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from *path*, returning *default* when the file is missing or corrupt."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (FileNotFoundError, json.JSONDecodeError):
        return default


def save_json(path: Path, data: Any) -> None:
    """Write *data* as pretty-printed JSON to *path* (atomic replace)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, default=str, ensure_ascii=False)
    tmp.replace(path)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def strip_html(html: str) -> str:
    """Remove all tags and collapse whitespace."""
    text = _TAG_RE.sub(" ", html)
    return re.sub(r"\s+", " ", text).strip()


def count_words(html: str) -> int:
    """Count words in an HTML fragment, stripping tags first."""
    text = strip_html(html)
    return len(text.split()) if text else 0


def extract_urls(text: str) -> List[str]:
    """Return the unique http(s) URLs in *text*, in first-seen order."""
    seen: Dict[str, None] = {}
    for url in _URL_RE.findall(text):
        seen.setdefault(url, None)
    return list(seen)


def generate_slug(text: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """Convert text to a lowercase, hyphenated URL slug.

    Accented Latin letters are transliterated, everything else that is not
    a word character, space or hyphen is dropped.
    """
    slug = text.lower().translate(_TRANSLIT_TABLE)
    # Remaining accents (e.g. "ō") decompose to their base letter
    slug = unicodedata.normalize("NFKD", slug).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:max_length].strip("-")


def truncate(text: str, limit: int) -> str:
    """Cut *text* to at most *limit* characters, ending with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


# ---------------------------------------------------------------------------
# JSON extraction from model output
# ---------------------------------------------------------------------------


def extract_json_block(text: str) -> str:
    """Strip markdown fences and return the outermost ``{...}`` span."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z]*\s*\n?", "", cleaned)
        cleaned = re.sub(r"\n?```\s*$", "", cleaned).strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        return cleaned[start : end + 1]
    return cleaned


def repair_json(text: str) -> str:
    """Fix the JSON mistakes models commonly make.

    Inside string values: unescaped quotes are escaped and raw newlines are
    collapsed into spaces. Trailing commas before ``}`` or ``]`` are removed.
    A quote counts as closing only when the next non-space character is a
    JSON delimiter.
    """
    out: List[str] = []
    in_string = False
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if not in_string:
            if ch == '"':
                in_string = True
            out.append(ch)
            i += 1
            continue

        if ch == "\\" and i + 1 < n:
            out.append(text[i : i + 2])
            i += 2
            continue
        if ch in "\r\n":
            if out and out[-1] != " ":
                out.append(" ")
            i += 1
            continue
        if ch == '"':
            j = i + 1
            while j < n and text[j] in " \t\r\n":
                j += 1
            if j >= n or text[j] in ",:}]":
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
            i += 1
            continue
        out.append(ch)
        i += 1

    return _TRAILING_COMMA_RE.sub(r"\1", "".join(out))


def parse_model_json(text: str) -> Dict[str, Any]:
    """Parse a JSON object out of a model response.

    Tries the extracted block as-is, then after :func:`repair_json`.

    Raises
    ------
    ValueError
        If no JSON object can be recovered.
    """
    block = extract_json_block(text)
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        try:
            data = json.loads(repair_json(block))
        except json.JSONDecodeError as exc:
            logger.warning("Failed to extract JSON from response (%d chars)", len(text))
            raise ValueError(f"Unparseable JSON in model response: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Model response JSON is not an object")
    return data
