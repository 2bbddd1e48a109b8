from __future__ import annotations

from datetime import datetime, timedelta, timezone

from memarchive.config import Config, ConsolidationConfig
from memarchive.consolidation.engine import ConsolidationEngine
from memarchive.governance.audit import AuditLog
from memarchive.storage.document_store import DocumentStore
from memarchive.types import AbstractionLevel, ConsolidationSignals, ContradictionSignal, MemoryDocument, MemoryKind

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
EARLIER = NOW - timedelta(days=3)


def _engine(tmp_path, **overrides) -> ConsolidationEngine:
    cfg = Config()
    cfg.data_dir = tmp_path
    store = DocumentStore(cfg)
    return ConsolidationEngine(store, AuditLog(cfg.audit_path), ConsolidationConfig(**overrides))


def _doc(doc_id: str, keywords: list[str], summary: str, body: str, **kwargs) -> MemoryDocument:
    return MemoryDocument(
        id=doc_id,
        kind=kwargs.pop("kind", MemoryKind.SEMANTIC),
        keywords=keywords,
        summary=summary,
        created=EARLIER,
        last_updated=EARLIER,
        body=body,
        **kwargs,
    )


def _snapshot(root) -> dict[str, bytes]:
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*.md"))
    }


def test_redundancy_merge_rewrites_every_reference(tmp_path):
    engine = _engine(tmp_path)
    store = engine.store
    store.put(_doc(
        "jwt-refresh", ["jwt", "refresh"], "JWT refresh token rotation",
        "Refresh tokens rotate on every use.\nThe old refresh token is revoked immediately on rotation.",
    ))
    store.put(_doc(
        "jwt-rotation", ["jwt", "rotation"], "Token rotation policy",
        "Refresh tokens rotate on every use.\nRotation is enforced by the auth service.",
        related_ids=["auth-overview"],
    ))
    store.put(_doc("auth-overview", ["auth"], "Authentication overview", "Login, refresh and logout.",
                   related_ids=["jwt-rotation"]))
    store.put(_doc("2026-10-16", ["jwt"], "Session log for 2026-10-16",
                   "## 10:00:00 Rotated keys\n\n- **Action**: Rotated keys\n- **Trigger**: audit",
                   kind=MemoryKind.EPISODIC, related_ids=["jwt-rotation"]))

    report = engine.run(ConsolidationSignals(redundant=[["jwt-rotation", "jwt-refresh"]]), now=NOW)

    assert report.merged == {"jwt-refresh": ["jwt-rotation"]}
    assert store.list(MemoryKind.SEMANTIC) == ["auth-overview", "jwt-refresh"]
    survivor = store.get(MemoryKind.SEMANTIC, "jwt-refresh")
    assert survivor.body.count("Refresh tokens rotate on every use.") == 1
    assert "Rotation is enforced by the auth service." in survivor.body
    assert survivor.keywords == ["jwt", "refresh", "rotation"]
    assert survivor.related_ids == ["auth-overview"]
    assert survivor.created == EARLIER
    assert store.get(MemoryKind.SEMANTIC, "auth-overview").related_ids == ["jwt-refresh"]
    assert store.get(MemoryKind.EPISODIC, "2026-10-16").related_ids == ["jwt-refresh"]
    assert [row["target_id"] for row in engine.audit.recent(action="delete")] == ["jwt-rotation"]
    assert engine.check().clean


def test_overgrown_document_splits_into_pattern_and_linked_facts(tmp_path):
    engine = _engine(tmp_path, max_document_tokens=300)
    store = engine.store

    def _section(topic: str) -> str:
        return " ".join(f"{topic} rule {i} keeps the gateway predictable." for i in range(9))

    body = (
        "Caching strategy for the API gateway.\n\n"
        f"## Caching\n\n{_section('Caching')}\n\n"
        f"## Invalidation\n\n{_section('Invalidation')}\n\n"
        f"## Monitoring\n\n{_section('Monitoring')}"
    )
    store.put(_doc("big-fact", ["cache", "gateway"], "API gateway caching", body, related_ids=["neighbour"]))
    store.put(_doc("neighbour", ["metrics"], "Gateway metrics", "Latency histograms.", related_ids=["big-fact"]))
    assert engine.check().oversized == ["big-fact"]

    report = engine.run(ConsolidationSignals(overgrown=["big-fact"]), now=NOW)

    facts = report.split["big-fact"]
    assert set(facts) == {"big-fact-caching", "big-fact-invalidation", "big-fact-monitoring"}
    pattern = store.get(MemoryKind.SEMANTIC, "big-fact")
    assert pattern.abstraction_level == AbstractionLevel.PATTERN
    neighbour = store.get(MemoryKind.SEMANTIC, "neighbour")
    for fact_id in facts:
        fact = store.get(MemoryKind.SEMANTIC, fact_id)
        assert fact.abstraction_level == AbstractionLevel.FACT
        assert fact.related_ids == ["big-fact"]
        assert fact_id in pattern.related_ids
    assert "neighbour" in pattern.related_ids
    assert "Invalidation rule 3 keeps the gateway predictable." in store.get(
        MemoryKind.SEMANTIC, "big-fact-invalidation").body
    assert "big-fact" in neighbour.related_ids

    after = engine.check()
    assert after.oversized == []
    assert after.asymmetric == []
    assert after.dangling == []


def test_split_of_many_sections_keeps_every_document_within_bound(tmp_path):
    engine = _engine(tmp_path, max_document_tokens=300)
    store = engine.store
    sections = [
        f"## Topic {i}\n\n" + " ".join(
            f"Topic {i} rule {j} keeps the gateway cache predictable." for j in range(7)
        )
        for i in range(30)
    ]
    body = "Operational notes for the API gateway caching layer.\n\n" + "\n\n".join(sections)
    store.put(_doc("big", ["cache", "gateway"], "Operational notes for the API gateway caching layer", body,
                   related_ids=["neighbour"]))
    store.put(_doc("neighbour", ["metrics"], "Gateway metrics", "Latency histograms.", related_ids=["big"]))

    report = engine.run(ConsolidationSignals(overgrown=["big"]), now=NOW)

    new_ids = report.split["big"]
    assert any("-part-" in i for i in new_ids)
    after = engine.check()
    assert after.oversized == []
    assert after.asymmetric == []
    assert after.dangling == []

    docs = store.load_all(MemoryKind.SEMANTIC)
    assert "big" in docs["neighbour"].related_ids
    assert docs["big"].abstraction_level == AbstractionLevel.PATTERN
    for doc_id in new_ids:
        assert len(docs[doc_id].related_ids) < 30

    # Every fact is reachable from the pattern and every original line survives.
    seen, frontier = {"big"}, ["big"]
    while frontier:
        current = frontier.pop()
        for rid in docs[current].related_ids:
            if rid not in seen and rid != "neighbour":
                seen.add(rid)
                frontier.append(rid)
    assert set(new_ids) <= seen
    fact_text = "\n".join(docs[i].body for i in new_ids if docs[i].abstraction_level == AbstractionLevel.FACT)
    for i in (0, 14, 29):
        assert f"Topic {i} rule 6 keeps the gateway cache predictable." in fact_text

    assert not engine.consolidate(now=NOW + timedelta(days=1)).changed


def test_contradiction_rewrites_section_with_provenance_note(tmp_path):
    engine = _engine(tmp_path)
    store = engine.store
    store.put(_doc("session-policy", ["sessions"], "Session expiry policy",
                   "## Policy\n\nSessions expire after 30 minutes.\n\n## Storage\n\nSessions live in Redis."))
    signal = ContradictionSignal(document_id="session-policy", section="Policy", new_text="Sessions never expire.")

    report = engine.run(ConsolidationSignals(contradictions=[signal]), now=NOW)

    assert report.repaired == ["session-policy"]
    body = store.get(MemoryKind.SEMANTIC, "session-policy").body
    assert "## Policy\n\nSessions never expire." in body
    assert '_Revised 2026-10-19: was "Sessions expire after 30 minutes." -> now "Sessions never expire."._' in body
    assert "Sessions live in Redis." in body

    again = engine.run(ConsolidationSignals(contradictions=[signal]), now=NOW + timedelta(days=1))
    assert again.repaired == []
    assert store.get(MemoryKind.SEMANTIC, "session-policy").body == body


def test_repair_links_restores_symmetry_and_drops_dangling_edges(tmp_path):
    engine = _engine(tmp_path)
    store = engine.store
    store.put(_doc("a", ["alpha"], "Alpha", "A.", related_ids=["b", "ghost"]))
    store.put(_doc("b", ["beta"], "Beta", "B."))

    check = engine.check()
    assert check.asymmetric == [("a", "b")]
    assert check.dangling == [("a", "ghost")]

    added, dropped = engine.repair_links(now=NOW)
    assert added == 1
    assert dropped == [("a", "ghost")]
    assert store.get(MemoryKind.SEMANTIC, "a").related_ids == ["b"]
    assert store.get(MemoryKind.SEMANTIC, "b").related_ids == ["a"]
    assert len(engine.audit.recent(action="violation")) == 1
    assert engine.check().clean


def test_consolidation_is_a_no_op_on_a_consistent_store(tmp_path):
    engine = _engine(tmp_path)
    store = engine.store
    store.put(_doc("a", ["alpha"], "Alpha", "A.", related_ids=["b"]))
    store.put(_doc("b", ["beta"], "Beta", "B.", related_ids=["a"]))
    store.put(_doc("2026-10-16", ["alpha"], "Session log", "## 10:00:00 Did a\n\n- **Action**: Did a",
                   kind=MemoryKind.EPISODIC, related_ids=["a"]))
    before = _snapshot(tmp_path)

    report = engine.consolidate(now=NOW)

    assert not report.changed
    assert _snapshot(tmp_path) == before
    assert engine.audit.recent() == []


def test_signals_for_missing_documents_are_ignored(tmp_path):
    engine = _engine(tmp_path)
    engine.store.put(_doc("a", ["alpha"], "Alpha", "A."))
    report = engine.run(ConsolidationSignals(
        redundant=[["a", "gone"]],
        overgrown=["gone"],
        contradictions=[ContradictionSignal(document_id="gone", new_text="x")],
    ), now=NOW)
    assert not report.changed
