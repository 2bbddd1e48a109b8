"""Clue Index: the derived navigation view over every memory document.

The index is regenerated from the document store on every archive session and
never patched in place. Serialization is deterministic (sorted keys, sorted
entries, no generation timestamp) so two rebuilds of an unchanged store are
byte-identical.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from memarchive.config import Config, IndexConfig
from memarchive.storage.document_store import DocumentStore, atomic_write
from memarchive.types import MemoryDocument, MemoryKind
from memarchive.utils import estimate_tokens, iso_str, json_dumps_pretty, json_loads, tokenize, trim

INDEX_VERSION = 1
MAX_GROUP_KEYWORDS = 12


@dataclass
class ClueEntry:
    id: str
    kind: str
    path: str
    keywords: list[str]
    summary: str
    abstraction_level: str | None = None
    importance: str | None = None
    last_updated: str = ""
    expires: str | None = None

    @classmethod
    def from_document(cls, doc: MemoryDocument) -> "ClueEntry":
        return cls(
            id=doc.id,
            kind=doc.kind.value,
            path=doc.rel_path,
            keywords=list(doc.keywords),
            summary=doc.summary,
            abstraction_level=doc.effective_level.value if doc.is_semantic else None,
            importance=doc.effective_importance.value if doc.is_semantic else None,
            last_updated=iso_str(doc.last_updated),
            expires=iso_str(doc.expires) if doc.expires else None,
        )


@dataclass
class ClueGroup:
    label: str
    kind: str
    member_paths: list[str]
    keywords: list[str]
    summary: str


@dataclass
class ClueIndex:
    entries: dict[str, ClueEntry] = field(default_factory=dict)  # keyed by path
    groups: list[ClueGroup] = field(default_factory=list)
    quarantined: list[str] = field(default_factory=list)

    @property
    def compacted(self) -> bool:
        return bool(self.groups)

    def paths(self) -> list[str]:
        out = set(self.entries)
        for g in self.groups:
            out.update(g.member_paths)
        return sorted(out)

    def lookup(self, keyword: str) -> list[str]:
        """Paths reachable from a keyword, in either the full or the compacted form."""
        needle = keyword.strip().lower()
        hits = {
            path for path, e in self.entries.items()
            if needle in {k.lower() for k in e.keywords}
        }
        for g in self.groups:
            if needle in {k.lower() for k in g.keywords}:
                hits.update(g.member_paths)
        return sorted(hits)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": INDEX_VERSION,
            "entries": {p: e.__dict__ for p, e in sorted(self.entries.items())},
            "groups": [g.__dict__ for g in sorted(self.groups, key=lambda g: g.label)],
            "quarantined": sorted(self.quarantined),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClueIndex":
        return cls(
            entries={p: ClueEntry(**e) for p, e in (data.get("entries") or {}).items()},
            groups=[ClueGroup(**g) for g in data.get("groups") or []],
            quarantined=list(data.get("quarantined") or []),
        )

    def serialize(self) -> bytes:
        return json_dumps_pretty(self.to_dict())

    def token_estimate(self, chars_per_token: int = 4) -> int:
        return estimate_tokens(self.serialize().decode("utf-8"), chars_per_token)

    def render_markdown(self) -> str:
        """Human-readable clue listing for prompts and operators."""
        out: list[str] = []
        for kind, title in (("semantic", "### Semantic Memories (Concepts)"),
                            ("episodic", "### Episodic Memories (Events)")):
            lines: list[str] = []
            for entry in sorted(self.entries.values(), key=lambda e: e.path):
                if entry.kind != kind:
                    continue
                suffix = f" (expires: {entry.expires})" if entry.expires else ""
                lines.append(f"- [{', '.join(entry.keywords)}] → {entry.path}{suffix}")
                lines.append(f"  desc: {entry.summary}")
            for group in sorted(self.groups, key=lambda g: g.label):
                if group.kind != kind:
                    continue
                lines.append(f"- [{', '.join(group.keywords)}] → {', '.join(group.member_paths)}")
                lines.append(f"  desc: {group.summary}")
            if lines:
                out.append(title)
                out.extend(lines)
                out.append("")
        if not out:
            return "No memories yet.\n"
        return "\n".join(out)


def rebuild(store: DocumentStore) -> ClueIndex:
    """Full recomputation from every current, valid document."""
    scan = store.scan()
    index = ClueIndex()
    for doc in scan.documents:
        entry = ClueEntry.from_document(doc)
        index.entries[entry.path] = entry
    root = store.config.data_dir
    index.quarantined = sorted(
        q.path.relative_to(root).as_posix() if root in q.path.parents else str(q.path)
        for q in scan.quarantined
    )
    return index


def compact(index: ClueIndex, budget: int, chars_per_token: int = 4,
            summary_chars: int = 240) -> ClueIndex:
    """Group entries until the serialized index fits ``budget`` tokens.

    Every member keeps at least one of its own keywords in its group, so each
    document stays reachable through ``lookup``.
    """
    if index.compacted or index.token_estimate(chars_per_token) <= budget:
        return index
    entries = list(index.entries.values())
    df = Counter(k.lower() for e in entries for k in set(e.keywords))

    fine = _group(entries, df, summary_chars, coarse=False)
    candidate = ClueIndex(groups=fine, quarantined=list(index.quarantined))
    if candidate.token_estimate(chars_per_token) <= budget:
        return candidate
    coarse = _group(entries, df, summary_chars, coarse=True)
    return ClueIndex(groups=coarse, quarantined=list(index.quarantined))


def _dominant_keyword(entry: ClueEntry, df: Counter) -> str:
    keywords = [k.lower() for k in entry.keywords if k.strip()]
    if not keywords:
        tokens = tokenize(entry.id.replace("/", " "))
        return tokens[0] if tokens else entry.id
    return sorted(keywords, key=lambda k: (-df[k], k))[0]


def _group(entries: list[ClueEntry], df: Counter, summary_chars: int, coarse: bool) -> list[ClueGroup]:
    buckets: dict[tuple[str, str, str], list[ClueEntry]] = {}
    for e in entries:
        level = e.abstraction_level or "episodic"
        key = (e.kind, level, "" if coarse else _dominant_keyword(e, df))
        buckets.setdefault(key, []).append(e)

    groups = []
    for (kind, level, keyword), members in sorted(buckets.items()):
        members.sort(key=lambda e: e.path)
        required = sorted({_dominant_keyword(e, df) for e in members})
        pool = Counter(k.lower() for e in members for k in e.keywords)
        extras = [k for k, _ in sorted(pool.items(), key=lambda kv: (-kv[1], kv[0])) if k not in required]
        keywords = required + extras[: max(0, MAX_GROUP_KEYWORDS - len(required))]
        label = f"{kind}/{level}" if coarse else f"{kind}/{level}:{keyword}"
        summary = trim("; ".join(e.summary for e in members), summary_chars)
        groups.append(ClueGroup(
            label=label,
            kind=kind,
            member_paths=[e.path for e in members],
            keywords=keywords,
            summary=summary,
        ))
    return groups


def write_index(index: ClueIndex, path: Path) -> None:
    atomic_write(path, index.serialize().decode("utf-8"))


def load_index(path: Path) -> ClueIndex | None:
    try:
        data = json_loads(path.read_bytes())
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return ClueIndex.from_dict(data)
    except TypeError:
        return None


class ClueIndexer:
    """Builds, compacts and publishes the clue index for one store."""

    def __init__(self, store: DocumentStore, config: Config | None = None) -> None:
        self.store = store
        self.config = config or store.config

    @property
    def index_config(self) -> IndexConfig:
        return self.config.index

    def build(self) -> ClueIndex:
        index = rebuild(self.store)
        return compact(
            index,
            budget=self.index_config.token_budget,
            chars_per_token=self.index_config.chars_per_token,
            summary_chars=self.index_config.group_summary_chars,
        )

    def publish(self) -> ClueIndex:
        index = self.build()
        write_index(index, self.config.index_path)
        return index

    def load(self) -> ClueIndex | None:
        return load_index(self.config.index_path)

    def current(self) -> ClueIndex:
        """The published index, or an in-memory rebuild when none exists."""
        return self.load() or self.build()


def kind_of(path: str) -> MemoryKind:
    return MemoryKind(path.split("/", 1)[0])


def id_of(path: str) -> str:
    return path.split("/", 1)[1][:-3] if path.endswith(".md") else path.split("/", 1)[1]
