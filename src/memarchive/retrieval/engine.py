"""Retrieval: route a query through the clue index and synthesize an answer.

Semantic documents answer "what is currently true" and form the findings.
Episodic documents only ever contribute to the separate history list, and
expansion never walks from an episodic entry into the findings, so removing
every episodic file leaves the findings of any query unchanged.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from memarchive.config import RetrievalConfig
from memarchive.consolidation.sections import parse_sections
from memarchive.exceptions import NotFound, StructuralCorruption, ValidationError
from memarchive.index.clues import ClueIndexer, id_of, kind_of
from memarchive.retrieval.keyword import Candidate, KeywordSearch
from memarchive.storage.document_store import DocumentStore
from memarchive.types import Freshness, MemoryDocument, MemoryKind, Synthesis, SynthesisItem
from memarchive.utils import as_utc, token_set, trim, utcnow

logger = logging.getLogger(__name__)

EXPANSION_DECAY = 0.5


def freshness(doc: MemoryDocument, now: datetime, stale_after_days: int = 30) -> tuple[Freshness, str]:
    """EXPIRED wins over STALE; otherwise the document is FRESH as of its last update."""
    now = as_utc(now)
    if doc.expires is not None and doc.expires < now:
        return Freshness.EXPIRED, doc.expires.date().isoformat()
    updated = doc.last_updated.date().isoformat()
    if now - doc.last_updated > timedelta(days=stale_after_days):
        return Freshness.STALE, updated
    return Freshness.FRESH, updated


def extract_excerpt(doc: MemoryDocument, query_tokens: set[str], max_chars: int = 600) -> str:
    """Summary plus the sections (or lines) that mention the query."""
    parts = [doc.summary]
    for section in parse_sections(doc.body):
        heading_hit = bool(query_tokens & token_set(section.heading))
        lines = [ln for ln in section.text.splitlines() if ln.strip()]
        if heading_hit:
            chosen = lines
        else:
            chosen = [ln for ln in lines if query_tokens & token_set(ln)]
        if not chosen:
            continue
        if section.heading:
            parts.append(f"{section.heading}:")
        parts.extend(ln.strip() for ln in chosen)
    return trim("\n".join(parts), max_chars)


class RetrievalEngine:
    """Read-only query path. Never takes the archive lock."""

    def __init__(
        self,
        store: DocumentStore,
        indexer: ClueIndexer | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.store = store
        self.indexer = indexer or ClueIndexer(store)
        self.config = config or RetrievalConfig()

    def retrieve(
        self,
        query: str,
        now: datetime | None = None,
        top_k: int | None = None,
        min_relevance: float | None = None,
    ) -> Synthesis:
        """Answer 'what does the store know about ``query``' as of ``now``."""
        now = as_utc(now) if now else utcnow()
        top_k = self.config.top_k if top_k is None else top_k
        if min_relevance is None:
            min_relevance = self.config.min_relevance
        synthesis = Synthesis(query=query)
        tokens = token_set(query)
        if not tokens:
            return synthesis

        search = KeywordSearch(self.indexer.current())
        ranked = search.search(query, min_relevance=min_relevance)
        semantic = [c for c in ranked if c.kind == MemoryKind.SEMANTIC.value][:top_k]
        episodic = [c for c in ranked if c.kind == MemoryKind.EPISODIC.value][:top_k]

        findings = self._load_and_expand(semantic, tokens, now, expand=True)
        history = self._load_and_expand(episodic, tokens, now, expand=False)
        synthesis.findings = sorted(findings, key=lambda i: (-i.score, i.id))
        synthesis.history = sorted(history, key=lambda i: (-i.score, i.id))
        return synthesis

    def _load(self, kind: MemoryKind, doc_id: str) -> MemoryDocument | None:
        try:
            return self.store.get(kind, doc_id)
        except NotFound:
            # Index may lag behind a session in progress.
            logger.debug("indexed %s/%s no longer exists", kind.value, doc_id)
        except (StructuralCorruption, ValidationError) as e:
            logger.warning("skipping unreadable %s/%s: %s", kind.value, doc_id, e)
        return None

    def _item(self, doc: MemoryDocument, tokens: set[str], now: datetime,
              score: float, via: str | None = None) -> SynthesisItem:
        tag, date = freshness(doc, now, self.config.stale_after_days)
        return SynthesisItem(
            id=doc.id,
            kind=doc.kind,
            freshness=tag,
            date=date,
            excerpt=extract_excerpt(doc, tokens, self.config.excerpt_chars),
            score=round(score, 4),
            via=via,
        )

    def _load_and_expand(self, candidates: list[Candidate], tokens: set[str],
                         now: datetime, expand: bool) -> list[SynthesisItem]:
        items: list[SynthesisItem] = []
        visited: set[str] = set()
        frontier: list[tuple[MemoryDocument, float]] = []
        for cand in candidates:
            if cand.path in visited:
                continue
            visited.add(cand.path)
            doc = self._load(kind_of(cand.path), id_of(cand.path))
            if doc is None:
                continue
            items.append(self._item(doc, tokens, now, cand.score))
            frontier.append((doc, cand.score))

        if not expand:
            return items
        for _ in range(max(0, self.config.max_hops)):
            next_frontier: list[tuple[MemoryDocument, float]] = []
            for parent, parent_score in frontier:
                for rid in parent.related_ids:
                    path = f"{MemoryKind.SEMANTIC.value}/{rid}.md"
                    if path in visited:
                        continue
                    visited.add(path)
                    doc = self._load(MemoryKind.SEMANTIC, rid)
                    if doc is None:
                        continue
                    score = parent_score * EXPANSION_DECAY
                    items.append(self._item(doc, tokens, now, score, via=parent.id))
                    next_frontier.append((doc, score))
            frontier = next_frontier
        return items
