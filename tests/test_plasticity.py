from __future__ import annotations

from datetime import datetime, timedelta, timezone

from memarchive.config import Config, ConsolidationConfig
from memarchive.consolidation.plasticity import Plasticity, parse_preferences
from memarchive.governance.audit import AuditLog
from memarchive.storage.document_store import DocumentStore
from memarchive.types import (
    PREFERENCES_ID,
    AbstractionLevel,
    MemoryDocument,
    MemoryKind,
    OracleProposal,
    PreferenceUnit,
    SemanticUnit,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _plasticity(tmp_path, **overrides) -> Plasticity:
    cfg = Config()
    cfg.data_dir = tmp_path
    store = DocumentStore(cfg)
    return Plasticity(store, AuditLog(cfg.audit_path), ConsolidationConfig(**overrides))


def _proposal(*units: SemanticUnit) -> OracleProposal:
    return OracleProposal(semantic_units=list(units))


def test_new_unit_creates_document_at_proposed_level(tmp_path):
    p = _plasticity(tmp_path)
    result = p.apply(_proposal(SemanticUnit(
        keywords=["postgres", "migrations"],
        summary="Schema migrations run with Alembic",
        abstraction_level=AbstractionLevel.PATTERN,
        content="Every schema change ships as an Alembic revision.",
    )), now=NOW)

    assert result.created == ["schema-migrations-run-with-alembic"]
    doc = p.store.get(MemoryKind.SEMANTIC, "schema-migrations-run-with-alembic")
    assert doc.abstraction_level == AbstractionLevel.PATTERN
    assert doc.created == NOW
    assert doc.body == "Every schema change ships as an Alembic revision."


def test_same_fact_in_different_words_lands_in_one_document(tmp_path):
    p = _plasticity(tmp_path)
    p.apply(_proposal(SemanticUnit(
        keywords=["jwt", "refresh"],
        summary="JWT refresh flow",
        content="Access tokens are refreshed with a rotating refresh token.",
    )), now=NOW)
    later = NOW + timedelta(hours=3)
    second = p.apply(_proposal(SemanticUnit(
        keywords=["jwt", "refresh", "token"],
        summary="How JWT tokens get refreshed",
        content=(
            "Access tokens are refreshed with a rotating refresh token.\n"
            "Refresh happens 60 seconds before expiry."
        ),
    )), now=later)

    assert p.store.list(MemoryKind.SEMANTIC) == ["jwt-refresh-flow"]
    assert second.updated == ["jwt-refresh-flow"]
    doc = p.store.get(MemoryKind.SEMANTIC, "jwt-refresh-flow")
    assert doc.body.count("Access tokens are refreshed with a rotating refresh token.") == 1
    assert "Refresh happens 60 seconds before expiry." in doc.body
    assert doc.keywords == ["jwt", "refresh", "token"]
    assert doc.created == NOW
    assert doc.last_updated == later


def test_reasserting_known_fact_writes_nothing(tmp_path):
    p = _plasticity(tmp_path)
    unit = SemanticUnit(id="jwt-refresh", keywords=["jwt"], summary="JWT refresh flow", content="Tokens rotate.")
    p.apply(_proposal(unit), now=NOW)
    result = p.apply(_proposal(unit), now=NOW + timedelta(days=1))

    assert result.touched == ["jwt-refresh"]
    assert result.updated == []
    assert p.store.get(MemoryKind.SEMANTIC, "jwt-refresh").last_updated == NOW


def test_relations_are_added_in_both_directions(tmp_path):
    p = _plasticity(tmp_path)
    p.apply(_proposal(
        SemanticUnit(id="a-doc", keywords=["redis"], summary="Redis usage", related_ids=["b-doc"]),
        SemanticUnit(id="b-doc", keywords=["postgres"], summary="Postgres usage"),
    ), now=NOW)

    a = p.store.get(MemoryKind.SEMANTIC, "a-doc")
    b = p.store.get(MemoryKind.SEMANTIC, "b-doc")
    assert a.related_ids == ["b-doc"]
    assert b.related_ids == ["a-doc"]


def test_dangling_relation_is_dropped_and_audited(tmp_path):
    p = _plasticity(tmp_path)
    result = p.apply(_proposal(
        SemanticUnit(id="a-doc", keywords=["redis"], summary="Redis usage", related_ids=["ghost"]),
    ), now=NOW)

    assert result.dropped_relations == [("a-doc", "ghost")]
    assert p.store.get(MemoryKind.SEMANTIC, "a-doc").related_ids == []
    violations = p.audit.recent(action="violation")
    assert len(violations) == 1
    assert "ghost" in violations[0]["detail"]


def test_polarity_flip_becomes_contradiction_signal(tmp_path):
    p = _plasticity(tmp_path)
    p.store.put(MemoryDocument(
        id="session-policy",
        kind=MemoryKind.SEMANTIC,
        keywords=["sessions"],
        summary="Session expiry policy",
        created=NOW,
        last_updated=NOW,
        body="## Policy\n\nSessions expire after 30 minutes.",
    ))
    result = p.apply(_proposal(SemanticUnit(
        id="session-policy",
        keywords=["sessions"],
        summary="Session expiry policy",
        content="## Policy\n\nSessions never expire.",
    )), now=NOW + timedelta(days=1))

    assert len(result.signals.contradictions) == 1
    signal = result.signals.contradictions[0]
    assert signal.document_id == "session-policy"
    assert signal.section == "Policy"
    assert signal.new_text == "Sessions never expire."
    assert "Sessions expire after 30 minutes." in p.store.get(MemoryKind.SEMANTIC, "session-policy").body


def test_unit_matching_several_documents_flags_redundancy(tmp_path):
    p = _plasticity(tmp_path)
    for doc_id in ("jwt-refresh", "jwt-rotation"):
        p.store.put(MemoryDocument(
            id=doc_id,
            kind=MemoryKind.SEMANTIC,
            keywords=["jwt", "rotation"],
            summary="Refresh token rotation",
            created=NOW,
            last_updated=NOW,
            body="Refresh tokens rotate on every use.",
        ))
    result = p.apply(_proposal(SemanticUnit(
        keywords=["jwt", "rotation"], summary="Refresh token rotation", content="Rotation is enforced.",
    )), now=NOW)

    assert result.signals.redundant == [["jwt-refresh", "jwt-rotation"]]
    assert result.signals.present


def test_oversized_document_flags_overgrowth(tmp_path):
    p = _plasticity(tmp_path, max_document_tokens=100)
    result = p.apply(_proposal(SemanticUnit(
        id="big-note",
        keywords=["gateway"],
        summary="Gateway notes",
        content="\n".join(f"Gateway rule {i} routes traffic by header." for i in range(20)),
    )), now=NOW)
    assert result.signals.overgrown == ["big-note"]


def test_explicit_preference_overwrites_and_keeps_history(tmp_path):
    p = _plasticity(tmp_path)
    p.apply_preferences([PreferenceUnit(key="indentation", value="tabs")], now=NOW)
    doc = p.apply_preferences([PreferenceUnit(key="indentation", value="spaces")], now=NOW + timedelta(days=2))

    assert doc is not None
    assert doc.id == PREFERENCES_ID
    assert doc.effective_level == AbstractionLevel.SCHEMA
    assert "- **indentation**: spaces" in doc.body
    assert "  - previously: tabs (until 2026-10-21)" in doc.body
    prefs = parse_preferences(doc.body)
    assert prefs["indentation"]["value"] == "spaces"

    assert p.apply_preferences([PreferenceUnit(key="indentation", value="spaces")], now=NOW) is None


def test_implicit_pattern_is_promoted_on_second_observation(tmp_path):
    p = _plasticity(tmp_path)
    observed = PreferenceUnit(key="test-runner", value="pytest", explicit=False)

    first = p.apply_preferences([observed], now=NOW)
    assert first is not None
    assert first.observations == {"test-runner": 1}
    assert "test-runner" not in parse_preferences(first.body)

    second = p.apply_preferences([observed], now=NOW + timedelta(days=1))
    assert second.observations == {"test-runner": 2}
    assert "- **test-runner**: pytest" in second.body

    stored = p.store.get(MemoryKind.SEMANTIC, PREFERENCES_ID)
    assert stored.observations == {"test-runner": 2}


def test_concepts_sharing_one_keyword_stay_separate(tmp_path):
    p = _plasticity(tmp_path)
    p.apply(_proposal(SemanticUnit(
        id="auth-flow", keywords=["jwt"], summary="JWT authentication flow", content="Tokens refresh.",
    )), now=NOW)

    named = p.apply(_proposal(SemanticUnit(
        id="jwt-signing", keywords=["jwt", "signing"], summary="JWT signing keys use RS256",
        content="Keys rotate quarterly.",
    )), now=NOW)
    unnamed = p.apply(_proposal(SemanticUnit(
        keywords=["jwt", "audience"], summary="Audience claim validation", content="aud must match the API.",
    )), now=NOW)

    assert named.created == ["jwt-signing"]
    assert unnamed.created == ["audience-claim-validation"]
    assert p.store.list(MemoryKind.SEMANTIC) == ["audience-claim-validation", "auth-flow", "jwt-signing"]
    assert p.store.get(MemoryKind.SEMANTIC, "auth-flow").body == "Tokens refresh."
