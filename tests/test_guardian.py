from __future__ import annotations

import pytest

from memarchive.consolidation.sections import merge_sections, parse_sections, render_sections
from memarchive.exceptions import ValidationError
from memarchive.governance.guardian import Guardian
from memarchive.types import AbstractionLevel, OracleProposal, SemanticUnit


def test_parse_proposal_accepts_camel_case_keys():
    proposal, rejected = Guardian().parse_proposal({
        "semanticUnits": [{
            "id": "auth-flow",
            "keywords": ["jwt"],
            "summary": "JWT authentication flow",
            "abstractionLevel": "pattern",
            "relatedIds": ["session-store"],
            "body": "Tokens refresh every 15 minutes.",
        }],
        "episodicDraft": {"action": "Documented auth", "trigger": "review"},
        "consolidationSignals": {"overgrown": ["auth-flow"]},
    })

    assert rejected == []
    unit = proposal.semantic_units[0]
    assert unit.abstraction_level == AbstractionLevel.PATTERN
    assert unit.related_ids == ["session-store"]
    assert unit.content == "Tokens refresh every 15 minutes."
    assert proposal.episodic_draft.action == "Documented auth"
    assert proposal.consolidation_signals.overgrown == ["auth-flow"]


def test_preference_units_can_arrive_inline():
    proposal, rejected = Guardian().parse_proposal({
        "semantic_units": [{"unit_type": "preference", "key": "editor", "value": "vim", "explicit": False}],
        "preference_units": [{"key": "indentation", "value": "spaces"}],
    })
    assert rejected == []
    assert proposal.semantic_units == []
    assert [(p.key, p.explicit) for p in proposal.preference_units] == [("editor", False), ("indentation", True)]


def test_invalid_units_are_rejected_one_by_one():
    proposal, rejected = Guardian().parse_proposal({
        "semantic_units": [
            {"keywords": ["jwt"], "summary": "JWT flow"},
            {"keywords": [], "summary": "No routing keywords"},
            {"keywords": ["x"], "summary": "Bad relation", "related_ids": ["../escape"]},
            "not a mapping",
        ],
    })
    assert [u.summary for u in proposal.semantic_units] == ["JWT flow"]
    assert [r.split(":")[0] for r in rejected] == ["semantic_units[1]", "semantic_units[2]", "semantic_units[3]"]


def test_episodic_draft_must_be_narrative():
    guardian = Guardian()
    proposal, rejected = guardian.parse_proposal({
        "episodic_draft": {"action": "Fixed bug", "trigger": "ci", "context": "```python\nprint(1)\n```"},
    })
    assert proposal.episodic_draft is None
    assert len(rejected) == 1
    assert "structured content" in rejected[0]

    _, rejected = guardian.parse_proposal({
        "episodic_draft": {"action": "Fixed bug", "trigger": "ci", "analysis": "why it broke"},
    })
    assert rejected[0].startswith("episodic_draft")


def test_non_mapping_output_is_refused():
    with pytest.raises(ValidationError):
        Guardian().parse_proposal(["not", "a", "proposal"])


def test_proposal_objects_pass_through():
    original = OracleProposal(semantic_units=[SemanticUnit(keywords=["jwt"], summary="JWT flow")])
    proposal, rejected = Guardian().parse_proposal(original)
    assert rejected == []
    assert proposal.semantic_units[0].summary == "JWT flow"


def test_polarity_conflict():
    assert Guardian.polarity_conflict("Sessions expire.", "Sessions never expire.")
    assert not Guardian.polarity_conflict("Sessions expire.", "Sessions expire after an hour.")


def test_merge_sections_never_repeats_a_line():
    existing = parse_sections("Intro line.\n\n## Setup\n\nInstall deps.\nRun migrations.")
    incoming = parse_sections("## Setup\n\nRun migrations.\nSeed fixtures.\n\n## Usage\n\nCall the API.")
    outcome = merge_sections(existing, incoming)

    assert outcome.changed
    body = render_sections(outcome.sections)
    assert body == (
        "Intro line.\n\n"
        "## Setup\n\nInstall deps.\nRun migrations.\nSeed fixtures.\n\n"
        "## Usage\n\nCall the API."
    )
    assert not merge_sections(outcome.sections, incoming).changed


def test_merge_sections_reports_replacements_as_conflicts():
    existing = parse_sections("## Policy\n\nSessions expire after 30 minutes.")
    incoming = parse_sections("## Policy\n\nSessions expire after 2 hours.")
    outcome = merge_sections(existing, incoming, replaces=True)

    assert not outcome.changed
    assert [(c.heading, c.new_text) for c in outcome.conflicts] == [("Policy", "Sessions expire after 2 hours.")]
    assert outcome.sections[0].text == "Sessions expire after 30 minutes."
