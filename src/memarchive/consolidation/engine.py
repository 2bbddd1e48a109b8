"""Opportunistic consolidation: redundancy merge, contradiction repair, overgrowth split, link repair.

The engine only acts on problem signatures (from plasticity, the oracle, or a
store-wide ``check``). Every operation keeps the union of knowledge: merges
fold the absorbed documents into the survivor before deleting them, and splits
move sections verbatim into linked fact documents.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator

from memarchive.config import ConsolidationConfig
from memarchive.consolidation.plasticity import document_tokens, link_pair
from memarchive.consolidation.sections import Section, find_section, merge_sections, parse_sections, render_sections
from memarchive.exceptions import NotFound, ReferentialViolation, StructuralCorruption, ValidationError
from memarchive.governance.audit import AuditLog
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
)
from memarchive.utils import as_utc, chunk_text, slugify, tokenize, trim, utcnow

logger = logging.getLogger(__name__)

MAX_HEADING_KEYWORDS = 3
MAX_SHRINK_ROUNDS = 5
MIN_FACT_CHARS = 200
SUMMARY_CHARS = 160
HEADER_SLACK_CHARS = 32
LISTING_SUMMARY_CHARS = 80


@dataclass
class CheckReport:
    oversized: list[str] = field(default_factory=list)
    asymmetric: list[tuple[str, str]] = field(default_factory=list)
    dangling: list[tuple[str, str]] = field(default_factory=list)
    quarantined: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.oversized or self.asymmetric or self.dangling or self.quarantined)

    def signals(self) -> ConsolidationSignals:
        return ConsolidationSignals(overgrown=list(self.oversized))


@dataclass
class ConsolidationReport:
    merged: dict[str, list[str]] = field(default_factory=dict)  # survivor -> absorbed ids
    renamed: dict[str, str] = field(default_factory=dict)  # absorbed -> survivor
    repaired: list[str] = field(default_factory=list)
    split: dict[str, list[str]] = field(default_factory=dict)  # original -> fact ids
    links_added: int = 0
    dropped_edges: list[tuple[str, str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.merged or self.repaired or self.split or self.links_added or self.dropped_edges)

    def resolve(self, doc_id: str) -> str:
        seen: set[str] = set()
        while doc_id in self.renamed and doc_id not in seen:
            seen.add(doc_id)
            doc_id = self.renamed[doc_id]
        return doc_id


class ConsolidationEngine:
    """Enforces the store-wide invariants on demand."""

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

    # --- Entry points ---

    def run(self, signals: ConsolidationSignals, now: datetime | None = None) -> ConsolidationReport:
        """Act on the given signals, then heal links. A consistent store sees no writes."""
        now = as_utc(now) if now else utcnow()
        signals = signals.model_copy(deep=True)
        report = ConsolidationReport()

        for group in signals.redundant:
            ids = sorted({report.resolve(normalize_id(i)) for i in group})
            survivor = self.merge_redundant(ids, now, report)
            if survivor is not None:
                signals.extend(ConsolidationSignals(overgrown=[survivor]))

        for signal in signals.contradictions:
            target = report.resolve(normalize_id(signal.document_id))
            if self.repair_contradiction(signal.model_copy(update={"document_id": target}), now):
                report.repaired.append(target)

        for doc_id in signals.overgrown:
            doc_id = report.resolve(normalize_id(doc_id))
            if doc_id in report.split:
                continue
            facts = self.split_overgrown(doc_id, now)
            if facts:
                report.split[doc_id] = facts

        added, dropped = self.repair_links(now)
        report.links_added += added
        report.dropped_edges.extend(dropped)
        return report

    def consolidate(self, now: datetime | None = None) -> ConsolidationReport:
        """Store-wide pass used outside archive sessions."""
        return self.run(self.check().signals(), now)

    def check(self) -> CheckReport:
        scan = self.store.scan()
        report = CheckReport(quarantined=sorted(str(q.path) for q in scan.quarantined))
        semantic = scan.by_id(MemoryKind.SEMANTIC)
        for doc_id, doc in sorted(semantic.items()):
            if doc_id != PREFERENCES_ID and self._oversized(doc):
                report.oversized.append(doc_id)
            for rid in doc.related_ids:
                other = semantic.get(rid)
                if other is None:
                    report.dangling.append((doc_id, rid))
                elif doc_id not in other.related_ids:
                    report.asymmetric.append((doc_id, rid))
        for doc_id, doc in sorted(scan.by_id(MemoryKind.EPISODIC).items()):
            for rid in doc.related_ids:
                if rid not in semantic:
                    report.dangling.append((f"episodic/{doc_id}", rid))
        return report

    # --- Redundancy ---

    def merge_redundant(self, ids: list[str], now: datetime, report: ConsolidationReport | None = None) -> str | None:
        """Fold every document in ``ids`` into the richest one and rewrite references."""
        docs = [d for d in (self._load(i) for i in ids if i != PREFERENCES_ID) if d is not None]
        if len(docs) < 2:
            return None
        docs.sort(key=lambda d: (-len(d.body), d.created, d.id))
        survivor, absorbed = docs[0], docs[1:]
        absorbed_ids = {d.id for d in absorbed}

        sections = parse_sections(survivor.body)
        for other in absorbed:
            sections = merge_sections(sections, parse_sections(other.body)).sections
            survivor.add_keywords(other.keywords)
            for rid in other.related_ids:
                survivor.add_related(rid)
            survivor.related_files = sorted({*survivor.related_files, *other.related_files})
            if IMPORTANCE_RANK[other.effective_importance] > IMPORTANCE_RANK[survivor.effective_importance]:
                survivor.importance = other.importance
        survivor.related_ids = [r for r in survivor.related_ids if r not in absorbed_ids]
        survivor.body = render_sections(sections)
        survivor.last_updated = now
        self.store.put(survivor)

        for other in absorbed:
            self.store.delete(MemoryKind.SEMANTIC, other.id)
            self.audit.log_delete("semantic", other.id, f"absorbed into {survivor.id}")
        self._rewrite_references(absorbed_ids, survivor.id, now)
        self.audit.log("merge", "semantic", survivor.id, f"absorbed {', '.join(sorted(absorbed_ids))}")
        logger.info("merged %s into %s", sorted(absorbed_ids), survivor.id)

        if report is not None:
            report.merged.setdefault(survivor.id, []).extend(sorted(absorbed_ids))
            for old in absorbed_ids:
                report.renamed[old] = survivor.id
        return survivor.id

    def _rewrite_references(self, old_ids: set[str], new_id: str, now: datetime) -> None:
        for kind in (MemoryKind.SEMANTIC, MemoryKind.EPISODIC):
            for doc in self.store.load_all(kind).values():
                if not old_ids & set(doc.related_ids):
                    continue
                for old in old_ids:
                    doc.remove_related(old)
                doc.add_related(new_id)
                doc.last_updated = max(doc.last_updated, now)
                self.store.put(doc)
                self.audit.log_write(kind.value, doc.id, f"reference rewritten to {new_id}")

    # --- Contradiction ---

    def repair_contradiction(self, signal: ContradictionSignal, now: datetime) -> bool:
        """Replace the contradicted section and leave an inline old -> new note."""
        doc = self._load(signal.document_id)
        new_text = signal.new_text.strip()
        if doc is None or not new_text:
            return False
        sections = parse_sections(doc.body)
        target = find_section(sections, signal.section)
        if target is None and not signal.section and sections:
            target = sections[0]
        if target is None:
            sections.append(Section(heading=signal.section or "Update", text=new_text))
            old_text = ""
        else:
            if target.text.strip().startswith(new_text):
                return False
            old_text = target.text
            target.text = new_text
        if old_text:
            note = (
                f"_Revised {now.date().isoformat()}: was \"{_one_line(old_text)}\""
                f" -> now \"{_one_line(new_text)}\"._"
            )
            target.text = f"{new_text}\n\n{note}"
        doc.body = render_sections(sections)
        doc.last_updated = now
        self.store.put(doc)
        self.audit.log("contradiction", "semantic", doc.id, signal.reason or f"section '{signal.section}' rewritten")
        return True

    # --- Overgrowth ---

    def split_overgrown(self, doc_id: str, now: datetime) -> list[str]:
        """Split into a pattern document (keeping ``doc_id``) plus linked fact documents.

        Facts hang off the pattern. When the pattern cannot list them all
        within the size bound, intermediate pattern documents group them.
        Returns the new ids, facts first.
        """
        doc = self._load(doc_id)
        if doc is None or doc.id == PREFERENCES_ID or not self._oversized(doc):
            return []

        sections = parse_sections(doc.body)
        preamble = ""
        if sections and not sections[0].heading:
            preamble = sections.pop(0).text
        budget = self._fact_body_budget(doc)
        if len(preamble) > budget // 3:
            sections.insert(0, Section(heading="Overview", text=preamble))
            preamble = ""
        if not sections:
            return []

        existing = set(self.store.list(MemoryKind.SEMANTIC))
        facts = self._pack_facts(doc, sections, budget, now, set(existing))
        rounds = 0
        while any(self._oversized(f) for f in facts) and rounds < MAX_SHRINK_ROUNDS:
            rounds += 1
            budget = max(MIN_FACT_CHARS, int(budget * 0.8))
            facts = self._pack_facts(doc, sections, budget, now, set(existing))
        taken = existing | {f.id for f in facts}

        pattern = doc.model_copy(deep=True)
        pattern.abstraction_level = AbstractionLevel.PATTERN
        pattern.last_updated = now
        groups = self._attach(pattern, facts, preamble or doc.summary, now, taken)

        for new_doc in (*facts, *groups, pattern):
            if self._oversized(new_doc):
                logger.warning("split of %s left %s above the size bound", doc.id, new_doc.id)
        for fact in facts:
            self.store.put(fact)
            self.audit.log_write("semantic", fact.id, f"split from {doc.id}")
        for group in groups:
            self.store.put(group)
            self.audit.log_write("semantic", group.id, f"groups split facts of {doc.id}")
        self.store.put(pattern)
        self.audit.log("split", "semantic", doc.id, f"into {', '.join(f.id for f in facts)}")
        logger.info("split %s into %d fact and %d group documents", doc.id, len(facts), len(groups))
        return [f.id for f in facts] + [g.id for g in groups]

    def _oversized(self, doc: MemoryDocument) -> bool:
        return document_tokens(doc, self.chars_per_token) > self.config.max_document_tokens

    def _fact_body_budget(self, doc: MemoryDocument) -> int:
        """Characters left for a fact body once its header is accounted for."""
        shell = MemoryDocument(
            id="x" * (len(doc.id) + 56),
            kind=MemoryKind.SEMANTIC,
            keywords=[*doc.keywords, *(["x" * 16] * MAX_HEADING_KEYWORDS)],
            summary="x" * SUMMARY_CHARS,
            importance=doc.importance,
            abstraction_level=AbstractionLevel.FACT,
            related_ids=["x" * (len(doc.id) + 16)],
            related_files=list(doc.related_files),
            created=doc.created,
            last_updated=doc.last_updated,
        )
        header_chars = len(format_document(shell)) + HEADER_SLACK_CHARS
        return max(MIN_FACT_CHARS, self.config.max_document_tokens * self.chars_per_token - header_chars)

    def _pack_facts(self, doc: MemoryDocument, sections: list[Section], budget: int,
                    now: datetime, taken: set[str]) -> list[MemoryDocument]:
        """Consecutive sections share a fact while they fit; long sections are chunked."""
        facts: list[MemoryDocument] = []
        pending: list[Section] = []
        for section in sections:
            if len(section.render()) > budget:
                if pending:
                    facts.append(self._fact(doc, pending, now, taken))
                    pending = []
                chunk_chars = max(1, budget - len(section.heading) - 16)
                chunks = chunk_text(section.text, chunk_chars) or [section.text]
                for n, chunk in enumerate(chunks, start=1):
                    heading = section.heading if len(chunks) == 1 else f"{section.heading} ({n})"
                    facts.append(self._fact(doc, [Section(heading=heading, text=chunk)], now, taken))
                continue
            if pending and len(render_sections([*pending, section])) > budget:
                facts.append(self._fact(doc, pending, now, taken))
                pending = []
            pending.append(section)
        if pending:
            facts.append(self._fact(doc, pending, now, taken))
        return facts

    def _fact(self, doc: MemoryDocument, sections: list[Section], now: datetime,
              taken: set[str]) -> MemoryDocument:
        headings = [s.heading for s in sections]
        fact_id = _unique_id(f"{doc.id}-{slugify(headings[0])}", taken)
        taken.add(fact_id)
        return MemoryDocument(
            id=fact_id,
            kind=MemoryKind.SEMANTIC,
            keywords=_fact_keywords(doc.keywords, " ".join(headings)),
            summary=trim(f"{doc.summary}: {', '.join(headings)}", SUMMARY_CHARS),
            importance=doc.importance,
            abstraction_level=AbstractionLevel.FACT,
            related_files=list(doc.related_files),
            created=now,
            last_updated=now,
            body=render_sections(sections),
        )

    def _attach(self, pattern: MemoryDocument, children: list[MemoryDocument], intro: str,
                now: datetime, taken: set[str]) -> list[MemoryDocument]:
        """List and link ``children`` under ``pattern``, adding group patterns until it fits."""
        groups: list[MemoryDocument] = []
        numbers = itertools.count(1)
        level = children
        while len(level) > 1 and not self._hub_fits(pattern, level, intro):
            packed = self._group(pattern, level, now, taken, numbers)
            if len(packed) >= len(level):
                break
            groups.extend(packed)
            level = packed
        _set_hub(pattern, level, intro)
        return groups

    def _group(self, pattern: MemoryDocument, children: list[MemoryDocument], now: datetime,
               taken: set[str], numbers: Iterator[int]) -> list[MemoryDocument]:
        out: list[MemoryDocument] = []
        current: list[MemoryDocument] = []
        shell = self._group_shell(pattern, next(numbers), now, taken)
        for child in children:
            if current and not self._hub_fits(shell, [*current, child], shell.summary):
                _close_group(shell, current)
                out.append(shell)
                shell = self._group_shell(pattern, next(numbers), now, taken)
                current = []
            current.append(child)
        _close_group(shell, current)
        out.append(shell)
        return out

    def _group_shell(self, pattern: MemoryDocument, number: int, now: datetime,
                     taken: set[str]) -> MemoryDocument:
        group_id = _unique_id(f"{pattern.id}-part-{number}", taken)
        taken.add(group_id)
        return MemoryDocument(
            id=group_id,
            kind=MemoryKind.SEMANTIC,
            keywords=list(pattern.keywords),
            summary=trim(f"{pattern.summary} (part {number})", SUMMARY_CHARS),
            importance=pattern.importance,
            abstraction_level=AbstractionLevel.PATTERN,
            related_files=list(pattern.related_files),
            # Stands in for the link to its own parent while sizing.
            related_ids=[pattern.id],
            created=now,
            last_updated=now,
        )

    def _hub_fits(self, hub: MemoryDocument, children: list[MemoryDocument], intro: str) -> bool:
        trial = hub.model_copy(deep=True)
        trial.body = _hub_body(intro, children)
        trial.related_ids = sorted({*trial.related_ids, *(c.id for c in children)})
        return not self._oversized(trial)

    # --- Links ---

    def repair_links(self, now: datetime | None = None) -> tuple[int, list[tuple[str, str]]]:
        """Restore symmetry and drop dangling edges. Returns (edges added, edges dropped)."""
        now = as_utc(now) if now else utcnow()
        semantic = self.store.load_all(MemoryKind.SEMANTIC)
        dirty: set[str] = set()
        added = 0
        dropped: list[tuple[str, str]] = []
        for doc_id in sorted(semantic):
            doc = semantic[doc_id]
            for rid in list(doc.related_ids):
                other = semantic.get(rid)
                if other is None:
                    doc.remove_related(rid)
                    dropped.append((doc_id, rid))
                    self.audit.log_violation("semantic", doc_id, str(ReferentialViolation(doc_id, rid)))
                    dirty.add(doc_id)
                elif other.add_related(doc_id):
                    added += 1
                    dirty.add(rid)
        for doc_id in sorted(dirty):
            doc = semantic[doc_id]
            doc.last_updated = max(doc.last_updated, now)
            self.store.put(doc)
            self.audit.log_write("semantic", doc_id, "links repaired")

        for doc in self.store.load_all(MemoryKind.EPISODIC).values():
            missing = [r for r in doc.related_ids if r not in semantic]
            if not missing:
                continue
            for rid in missing:
                doc.remove_related(rid)
                dropped.append((f"episodic/{doc.id}", rid))
                self.audit.log_violation("episodic", doc.id, str(ReferentialViolation(doc.id, rid)))
            doc.last_updated = max(doc.last_updated, now)
            self.store.put(doc)
        return added, dropped

    def _load(self, doc_id: str) -> MemoryDocument | None:
        try:
            return self.store.get(MemoryKind.SEMANTIC, doc_id)
        except NotFound:
            logger.debug("consolidation target %s no longer exists", doc_id)
        except (StructuralCorruption, ValidationError) as e:
            logger.warning("consolidation skipped unreadable %s: %s", doc_id, e)
        return None


def _unique_id(base: str, taken: set[str]) -> str:
    candidate = base
    n = 2
    while candidate in taken:
        candidate = f"{base}-{n}"
        n += 1
    return candidate


def _fact_keywords(parent: list[str], heading: str) -> list[str]:
    out = list(parent)
    lowered = {k.lower() for k in out}
    extra = [t for t in tokenize(heading) if t not in lowered and not t.isdigit()]
    return out + extra[:MAX_HEADING_KEYWORDS]


def _one_line(text: str, max_chars: int = 160) -> str:
    return trim(" ".join(text.split()).replace('"', "'"), max_chars)


def _hub_body(intro: str, children: list[MemoryDocument]) -> str:
    listing = "\n".join(f"- {c.id}: {trim(c.summary, LISTING_SUMMARY_CHARS)}" for c in children)
    return render_sections([
        Section(heading="", text=intro),
        Section(heading="Details", text=listing),
    ])


def _set_hub(hub: MemoryDocument, children: list[MemoryDocument], intro: str) -> None:
    hub.body = _hub_body(intro, children)
    for child in children:
        link_pair(hub, child)


def _close_group(group: MemoryDocument, children: list[MemoryDocument]) -> None:
    # The sizing placeholder goes; the real parent link is added when the group is attached.
    group.related_ids = []
    _set_hub(group, children, group.summary)
