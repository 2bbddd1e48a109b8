"""Plasticity: apply oracle-proposed knowledge units to the semantic store.

Each unit is merged into the document it matches (by id, or by strong
keyword/summary overlap) or becomes a new document. Relations are added in
symmetric pairs after every unit has been placed, so a unit may relate to a
document created later in the same proposal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from memarchive.config import ConsolidationConfig
from memarchive.consolidation.sections import Section, merge_sections, parse_sections, render_sections
from memarchive.exceptions import ReferentialViolation, ValidationError
from memarchive.governance.audit import AuditLog
from memarchive.governance.guardian import Guardian
from memarchive.storage.document_store import DocumentStore, normalize_id
from memarchive.storage.frontmatter import format_document
from memarchive.types import (
    IMPORTANCE_RANK,
    PREFERENCES_ID,
    AbstractionLevel,
    ConsolidationSignals,
    ContradictionSignal,
    MemoryDocument,
    MemoryKind,
    OracleProposal,
    PreferenceUnit,
    SemanticUnit,
)
from memarchive.utils import as_utc, estimate_tokens, jaccard, slugify, token_set, utcnow

logger = logging.getLogger(__name__)

PREFERENCES_HEADING = "Preferences"
MIN_SHARED_KEYWORDS = 2


@dataclass
class WriteDecision:
    action: str  # CREATE | MERGE
    target_id: str = ""
    reason: str = ""
    candidates: list[str] = field(default_factory=list)


@dataclass
class PlasticityResult:
    touched: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    dropped_relations: list[tuple[str, str]] = field(default_factory=list)
    signals: ConsolidationSignals = field(default_factory=ConsolidationSignals)

    def touch(self, doc_id: str) -> None:
        if doc_id not in self.touched:
            self.touched.append(doc_id)


def link_pair(a: MemoryDocument, b: MemoryDocument) -> bool:
    """Add the A-B relation in both directions. Returns True if either side changed."""
    if a.id == b.id:
        return False
    left = a.add_related(b.id)
    right = b.add_related(a.id)
    return left or right


def document_tokens(doc: MemoryDocument, chars_per_token: int = 4) -> int:
    return estimate_tokens(format_document(doc), chars_per_token)


class Plasticity:
    """Always-on write path of an archive session."""

    def __init__(
        self,
        store: DocumentStore,
        audit: AuditLog,
        config: ConsolidationConfig | None = None,
        chars_per_token: int = 4,
    ) -> None:
        self.store = store
        self.audit = audit
        self.config = config or ConsolidationConfig()
        self.chars_per_token = chars_per_token

    # --- Matching ---

    def decide(self, unit: SemanticUnit, docs: dict[str, MemoryDocument]) -> WriteDecision:
        """Pick the document a unit belongs to, or decide to create one."""
        unit_id = normalize_id(unit.id) if unit.id else ""
        unit_kw = token_set(" ".join(unit.keywords))
        unit_summary = token_set(unit.summary)

        scored: list[tuple[float, str]] = []
        for doc_id, doc in docs.items():
            if doc_id == PREFERENCES_ID:
                continue
            doc_kw = token_set(" ".join(doc.keywords))
            kw = jaccard(unit_kw, doc_kw)
            sm = jaccard(unit_summary, token_set(doc.summary))
            summary_match = sm >= self.config.summary_match_threshold
            keyword_match = kw >= self.config.match_threshold and len(unit_kw & doc_kw) >= MIN_SHARED_KEYWORDS
            # A unit naming a new id only joins another document on summary identity.
            if summary_match or (keyword_match and (not unit_id or unit_id in docs)):
                scored.append((max(kw, sm), doc_id))
        scored.sort(key=lambda s: (-s[0], s[1]))
        candidates = [doc_id for _, doc_id in scored]

        if unit_id and unit_id in docs:
            others = [c for c in candidates if c != unit_id]
            return WriteDecision("MERGE", unit_id, "id_match", [unit_id, *others])
        if candidates:
            score, best = scored[0]
            return WriteDecision("MERGE", best, f"overlap={score:.3f}", candidates)
        return WriteDecision("CREATE", reason="no_match")

    # --- Apply ---

    def apply(self, proposal: OracleProposal, now: datetime | None = None) -> PlasticityResult:
        now = as_utc(now) if now else utcnow()
        result = PlasticityResult()
        docs = self.store.load_all(MemoryKind.SEMANTIC)
        pending: list[tuple[str, list[str]]] = []

        for unit in proposal.semantic_units:
            decision = self.decide(unit, docs)
            try:
                if decision.action == "CREATE":
                    doc = self._create(unit, docs, now)
                    result.created.append(doc.id)
                else:
                    doc, changed = self._merge(unit, docs[decision.target_id], now, result.signals)
                    if changed:
                        result.updated.append(doc.id)
            except ValidationError as e:
                self.audit.log("rejected", "semantic", unit.id or unit.summary, "; ".join(e.issues) or str(e))
                logger.warning("unit rejected at write time: %s", e)
                continue
            docs[doc.id] = doc
            result.touch(doc.id)
            if len(decision.candidates) > 1:
                result.signals.extend(ConsolidationSignals(redundant=[sorted(decision.candidates)]))
            pending.append((doc.id, unit.related_ids))

        self._apply_relations(pending, docs, now, result)

        if proposal.preference_units:
            prefs = self.apply_preferences(proposal.preference_units, now)
            if prefs is not None:
                docs[prefs.id] = prefs
                result.touch(prefs.id)

        for doc_id in result.touched:
            doc = docs.get(doc_id)
            if doc is None or doc_id == PREFERENCES_ID:
                continue
            if document_tokens(doc, self.chars_per_token) > self.config.max_document_tokens:
                result.signals.extend(ConsolidationSignals(overgrown=[doc_id]))

        result.signals.extend(proposal.consolidation_signals)
        return result

    def _new_id(self, unit: SemanticUnit, docs: dict[str, MemoryDocument]) -> str:
        base = normalize_id(unit.id) if unit.id else slugify(unit.summary)
        candidate = base
        n = 2
        while candidate in docs or self.store.exists(MemoryKind.SEMANTIC, candidate):
            candidate = f"{base}-{n}"
            n += 1
        return candidate

    def _create(self, unit: SemanticUnit, docs: dict[str, MemoryDocument], now: datetime) -> MemoryDocument:
        doc = MemoryDocument(
            id=self._new_id(unit, docs),
            kind=MemoryKind.SEMANTIC,
            keywords=_dedupe(unit.keywords),
            summary=unit.summary.strip(),
            importance=unit.importance,
            abstraction_level=unit.abstraction_level,
            created=now,
            last_updated=now,
            body=unit.content.strip() or unit.summary.strip(),
        )
        written = self.store.put(doc)
        self.audit.log_write("semantic", written.id, "created by plasticity")
        return written

    def _merge(
        self,
        unit: SemanticUnit,
        existing: MemoryDocument,
        now: datetime,
        signals: ConsolidationSignals,
    ) -> tuple[MemoryDocument, bool]:
        doc = existing.model_copy(deep=True)
        incoming = parse_sections(unit.content) if unit.content.strip() else []
        outcome = merge_sections(
            parse_sections(doc.body),
            incoming,
            replaces=unit.replaces,
            conflict_fn=Guardian.polarity_conflict,
        )
        for conflict in outcome.conflicts:
            signals.contradictions.append(ContradictionSignal(
                document_id=doc.id,
                section=conflict.heading,
                new_text=conflict.new_text,
                reason="replaces" if unit.replaces else "polarity",
            ))

        changed = outcome.changed
        if outcome.changed:
            doc.body = render_sections(outcome.sections)
        changed = doc.add_keywords(unit.keywords) or changed
        if unit.importance is not None and (
            doc.importance is None or IMPORTANCE_RANK[unit.importance] > IMPORTANCE_RANK[doc.importance]
        ):
            doc.importance = unit.importance
            changed = True
        if not changed:
            return existing, False
        doc.last_updated = now
        written = self.store.put(doc)
        self.audit.log_write("semantic", written.id, "merged by plasticity")
        return written, True

    def _apply_relations(
        self,
        pending: list[tuple[str, list[str]]],
        docs: dict[str, MemoryDocument],
        now: datetime,
        result: PlasticityResult,
    ) -> None:
        dirty: set[str] = set()
        for source_id, related in pending:
            for raw in related:
                target_id = normalize_id(raw)
                if not target_id or target_id == source_id:
                    continue
                if target_id not in docs:
                    violation = ReferentialViolation(source_id, target_id)
                    self.audit.log_violation("semantic", source_id, str(violation))
                    result.dropped_relations.append((source_id, target_id))
                    continue
                if link_pair(docs[source_id], docs[target_id]):
                    dirty.update((source_id, target_id))
        for doc_id in sorted(dirty):
            doc = docs[doc_id]
            doc.last_updated = max(doc.last_updated, now)
            docs[doc_id] = self.store.put(doc)
            self.audit.log_write("semantic", doc_id, "relation added")
            result.touch(doc_id)

    # --- Preferences ---

    def apply_preferences(self, units: list[PreferenceUnit], now: datetime | None = None) -> MemoryDocument | None:
        """Explicit values overwrite with a ``previously`` note; implicit ones are counted first.

        Returns the written preferences document, or None when nothing changed.
        """
        now = as_utc(now) if now else utcnow()
        if self.store.exists(MemoryKind.SEMANTIC, PREFERENCES_ID):
            doc = self.store.get(MemoryKind.SEMANTIC, PREFERENCES_ID)
        else:
            doc = MemoryDocument(
                id=PREFERENCES_ID,
                kind=MemoryKind.SEMANTIC,
                keywords=["preferences", "user"],
                summary="User preferences and observed working habits",
                abstraction_level=AbstractionLevel.SCHEMA,
                created=now,
                last_updated=now,
            )
        prefs = parse_preferences(doc.body)
        changed = False
        for unit in units:
            key = " ".join(unit.key.split()).strip()
            value = " ".join(unit.value.split()).strip()
            if not key or not value:
                continue
            if not unit.explicit:
                count = doc.observations.get(key, 0) + 1
                doc.observations[key] = count
                changed = True
                if count < self.config.preference_promotion_count:
                    continue
            changed = _set_preference(prefs, key, value, now) or changed
        if not changed:
            return None
        doc.body = render_preferences(prefs)
        doc.last_updated = now
        written = self.store.put(doc)
        self.audit.log_write("semantic", PREFERENCES_ID, "preferences updated")
        return written


def parse_preferences(body: str) -> dict[str, dict]:
    """``- **key**: value`` lines with indented ``previously`` notes beneath them."""
    prefs: dict[str, dict] = {}
    current: dict | None = None
    for section in parse_sections(body):
        if section.key != PREFERENCES_HEADING.lower():
            continue
        for line in section.text.splitlines():
            stripped = line.strip()
            if stripped.startswith("- **") and "**:" in stripped:
                key, _, value = stripped[4:].partition("**:")
                current = {"value": value.strip(), "history": []}
                prefs[key.strip()] = current
            elif stripped.startswith("- previously:") and current is not None:
                current["history"].append(stripped[2:].strip())
    return prefs


def render_preferences(prefs: dict[str, dict]) -> str:
    lines = []
    for key in sorted(prefs):
        entry = prefs[key]
        lines.append(f"- **{key}**: {entry['value']}")
        for note in entry["history"]:
            lines.append(f"  - {note}")
    return render_sections([Section(heading=PREFERENCES_HEADING, text="\n".join(lines))])


def _set_preference(prefs: dict[str, dict], key: str, value: str, now: datetime) -> bool:
    entry = prefs.get(key)
    if entry is None:
        prefs[key] = {"value": value, "history": []}
        return True
    if entry["value"] == value:
        return False
    entry["history"].insert(0, f"previously: {entry['value']} (until {now.date().isoformat()})")
    entry["value"] = value
    return True


def _dedupe(keywords: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for k in keywords:
        k = k.strip()
        if k and k.lower() not in seen:
            seen.add(k.lower())
            out.append(k)
    return out
