"""YAML frontmatter codec for memory files.

A memory file is a YAML header delimited by ``---`` lines followed by a
Markdown body. Older header generations (no ``id``, no importance or
abstraction level, source-file links under ``related_files``) are read as
compatible subsets.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import yaml

from memarchive.exceptions import ValidationError
from memarchive.types import AbstractionLevel, Importance, MemoryDocument, MemoryKind
from memarchive.utils import iso_str, parse_iso

REQUIRED_FIELDS = ("type", "keywords", "summary", "created", "last_updated")


class FrontmatterError(ValueError):
    """The text has no parsable YAML header."""


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    content = text.lstrip()
    if not content.startswith("---"):
        raise FrontmatterError("missing opening '---'")
    rest = content[3:]
    if rest.startswith("\n"):
        rest = rest[1:]
    end = rest.find("\n---")
    if end == -1:
        raise FrontmatterError("missing closing '---'")
    header = rest[:end]
    body = rest[end + 4:]
    try:
        meta = yaml.safe_load(header)
    except (yaml.YAMLError, ValueError) as e:
        raise FrontmatterError(f"invalid YAML: {e}") from e
    if not isinstance(meta, dict):
        raise FrontmatterError("header is not a mapping")
    return meta, body.lstrip("\n").rstrip()


def document_from_metadata(
    meta: dict[str, Any],
    body: str,
    kind_hint: MemoryKind | None = None,
    id_hint: str | None = None,
) -> MemoryDocument:
    """Build a MemoryDocument from a parsed header. Raises ValidationError."""
    issues = [f"missing required field '{name}'" for name in REQUIRED_FIELDS if meta.get(name) in (None, "")]

    kind = None
    raw_kind = meta.get("type")
    if raw_kind is not None:
        try:
            kind = MemoryKind(str(raw_kind).strip().lower())
        except ValueError:
            issues.append(f"unknown type '{raw_kind}'")
    if kind is not None and kind_hint is not None and kind != kind_hint:
        issues.append(f"type '{kind.value}' stored under {kind_hint.value}/")

    timestamps: dict[str, datetime | None] = {}
    for name in ("created", "last_updated", "expires"):
        value = meta.get(name)
        if value in (None, ""):
            timestamps[name] = None
            continue
        try:
            timestamps[name] = _coerce_timestamp(value)
        except ValueError:
            issues.append(f"malformed timestamp '{name}': {value!r}")

    importance = _enum_field(meta, "importance", Importance, issues)
    level = _enum_field(meta, "abstraction_level", AbstractionLevel, issues)

    keywords = meta.get("keywords") or []
    if not isinstance(keywords, list):
        issues.append("keywords must be a list")
        keywords = []
    related = meta.get("related") or []
    if not isinstance(related, list):
        issues.append("related must be a list")
        related = []
    related_files = meta.get("related_files") or []
    if not isinstance(related_files, list):
        issues.append("related_files must be a list")
        related_files = []
    observations = meta.get("observations") or {}
    if not isinstance(observations, dict) or not all(
        isinstance(v, int) and not isinstance(v, bool) for v in observations.values()
    ):
        issues.append("observations must map pattern keys to counts")
        observations = {}

    doc_id = str(meta.get("id") or id_hint or "").strip()
    if not doc_id:
        issues.append("missing required field 'id'")

    if issues:
        raise ValidationError(f"invalid memory header for '{doc_id or '?'}'", issues)

    return MemoryDocument(
        id=doc_id,
        kind=kind,
        keywords=[str(k) for k in keywords],
        summary=str(meta.get("summary", "")).strip(),
        related_ids=sorted({_related_id(r) for r in related if str(r).strip()}),
        related_files=[str(f) for f in related_files],
        importance=importance,
        abstraction_level=level,
        created=timestamps["created"],
        last_updated=timestamps["last_updated"],
        expires=timestamps["expires"],
        observations={str(k): int(v) for k, v in observations.items()},
        body=body,
    )


def parse_document(
    text: str,
    kind_hint: MemoryKind | None = None,
    id_hint: str | None = None,
) -> MemoryDocument:
    meta, body = split_frontmatter(text)
    return document_from_metadata(meta, body, kind_hint=kind_hint, id_hint=id_hint)


def format_document(doc: MemoryDocument) -> str:
    meta: dict[str, Any] = {
        "id": doc.id,
        "type": doc.kind.value,
        "keywords": list(doc.keywords),
        "summary": doc.summary,
    }
    if doc.related_ids:
        meta["related"] = sorted(doc.related_ids)
    if doc.related_files:
        meta["related_files"] = list(doc.related_files)
    if doc.importance is not None:
        meta["importance"] = doc.importance.value
    if doc.abstraction_level is not None:
        meta["abstraction_level"] = doc.abstraction_level.value
    meta["created"] = iso_str(doc.created)
    meta["last_updated"] = iso_str(doc.last_updated)
    if doc.expires is not None:
        meta["expires"] = iso_str(doc.expires)
    if doc.observations:
        meta["observations"] = dict(sorted(doc.observations.items()))
    header = yaml.safe_dump(
        meta,
        sort_keys=False,
        default_flow_style=None,
        allow_unicode=True,
        width=10_000,
    )
    body = doc.body.strip()
    return f"---\n{header}---\n\n{body}\n" if body else f"---\n{header}---\n"


def _coerce_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return parse_iso(str(value))


def _enum_field(meta: dict[str, Any], name: str, enum_cls, issues: list[str]):
    raw = meta.get(name)
    if raw in (None, ""):
        return None
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        issues.append(f"unknown {name} '{raw}'")
        return None


def _related_id(raw: Any) -> str:
    """Relations may be written as file paths (semantic/x.md)."""
    text = str(raw).strip()
    if text.startswith("semantic/"):
        text = text[len("semantic/"):]
    if text.endswith(".md"):
        text = text[:-3]
    return text
