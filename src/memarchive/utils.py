"""Shared utilities."""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

import orjson

TOKEN_RE = re.compile(r"[a-z0-9_\-]+")
SLUG_RE = re.compile(r"[^a-z0-9]+")

STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "do", "does", "for",
    "from", "how", "in", "is", "it", "of", "on", "or", "the", "this", "to",
    "was", "what", "when", "where", "which", "who", "why", "with",
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_dumps_pretty(obj: Any) -> bytes:
    return orjson.dumps(obj, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS) + b"\n"


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_str(dt: datetime) -> str:
    """UTC timestamp in the YYYY-MM-DDTHH:MM:SSZ form used in frontmatter."""
    return as_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso(s: str) -> datetime:
    """Parse an ISO 8601 timestamp or bare date. Raises ValueError."""
    text = str(s).strip()
    if not text:
        raise ValueError("empty timestamp")
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
        d = date.fromisoformat(text)
        return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def tokenize(text: str) -> list[str]:
    """Lowercase content tokens, stopwords removed, order-preserving and deduped."""
    out: list[str] = []
    seen: set[str] = set()
    for tok in TOKEN_RE.findall((text or "").lower()):
        tok = tok.strip("-_")
        if not tok or tok in STOPWORDS or tok in seen:
            continue
        seen.add(tok)
        out.append(tok)
    return out


def token_set(text: str) -> set[str]:
    tokens = set(tokenize(text))
    # Hyphenated keywords also match on their parts.
    for tok in list(tokens):
        if "-" in tok:
            tokens.update(p for p in tok.split("-") if p and p not in STOPWORDS)
    return tokens


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def slugify(text: str, max_len: int = 48) -> str:
    slug = SLUG_RE.sub("-", (text or "").lower()).strip("-")
    return slug[:max_len].rstrip("-") or "section"


def trim(value: str, max_chars: int = 200) -> str:
    text = (value or "").strip()
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3].rstrip() + "..."


def estimate_tokens(text: str, chars_per_token: int = 4) -> int:
    return -(-len(text) // max(1, chars_per_token))


def chunk_text(text: str, max_chars: int = 2000) -> list[str]:
    """Split text into chunks no longer than max_chars, preferring paragraph breaks."""
    if len(text) <= max_chars:
        return [text]
    chunks = []
    start = 0
    while start < len(text):
        end = start + max_chars
        if end < len(text):
            for sep in ["\n\n", "\n", ". ", " "]:
                idx = text.rfind(sep, start + max_chars // 2, end)
                if idx != -1:
                    end = idx + len(sep)
                    break
        chunks.append(text[start:end].strip())
        start = end
    return [c for c in chunks if c]
