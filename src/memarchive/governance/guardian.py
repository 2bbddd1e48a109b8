"""Guardian: validation rules for oracle output before it touches the store."""

from __future__ import annotations

from typing import Any

import pydantic

from memarchive.config import SessionConfig
from memarchive.exceptions import ValidationError
from memarchive.storage.document_store import ID_RE, normalize_id
from memarchive.types import (
    ConsolidationSignals,
    EpisodicDraft,
    OracleProposal,
    PreferenceUnit,
    SemanticUnit,
)

NARRATIVE_FIELDS = ("action", "trigger", "context", "attempts", "outcome")


class Guardian:
    """Validates oracle proposals; invalid units are rejected one by one."""

    def __init__(self, config: SessionConfig | None = None) -> None:
        self.config = config or SessionConfig()

    def parse_proposal(self, raw: Any) -> tuple[OracleProposal, list[str]]:
        """Coerce raw oracle output into an OracleProposal.

        Returns (proposal, rejected) where rejected lists one message per
        dropped unit. Raises ValidationError when the payload is not a
        proposal at all.
        """
        if isinstance(raw, OracleProposal):
            raw = raw.model_dump()
        if not isinstance(raw, dict):
            raise ValidationError(
                "oracle output must be a mapping",
                [f"got {type(raw).__name__}"],
            )

        rejected: list[str] = []
        proposal = OracleProposal()

        units = raw.get("semantic_units") or raw.get("semanticUnits") or []
        if not isinstance(units, list):
            raise ValidationError("semantic_units must be a list", [repr(type(units))])
        for i, unit_raw in enumerate(units):
            try:
                if not isinstance(unit_raw, dict):
                    raise ValidationError("unit is not a mapping", [f"unit is {type(unit_raw).__name__}"])
                payload = {k: v for k, v in unit_raw.items() if k != "unit_type"}
                if unit_raw.get("unit_type") == "preference":
                    proposal.preference_units.append(PreferenceUnit.model_validate(payload))
                    continue
                unit = SemanticUnit.model_validate(payload)
                self.gate_semantic_unit(unit)
                proposal.semantic_units.append(unit)
            except pydantic.ValidationError as e:
                rejected.append(f"semantic_units[{i}]: {_pydantic_issues(e)}")
            except ValidationError as e:
                rejected.append(f"semantic_units[{i}]: {'; '.join(e.issues) or e}")

        for i, pref_raw in enumerate(raw.get("preference_units") or []):
            try:
                proposal.preference_units.append(PreferenceUnit.model_validate(pref_raw))
            except pydantic.ValidationError as e:
                rejected.append(f"preference_units[{i}]: {_pydantic_issues(e)}")

        draft_raw = raw.get("episodic_draft", raw.get("episodicDraft"))
        if draft_raw is not None:
            try:
                draft = EpisodicDraft.model_validate(draft_raw)
                self.gate_episodic_draft(draft)
                proposal.episodic_draft = draft
            except pydantic.ValidationError as e:
                rejected.append(f"episodic_draft: {_pydantic_issues(e)}")
            except ValidationError as e:
                rejected.append(f"episodic_draft: {'; '.join(e.issues)}")

        signals_raw = raw.get("consolidation_signals", raw.get("consolidationSignals"))
        if signals_raw:
            try:
                proposal.consolidation_signals = ConsolidationSignals.model_validate(signals_raw)
            except pydantic.ValidationError as e:
                rejected.append(f"consolidation_signals: {_pydantic_issues(e)}")

        return proposal, rejected

    def validate_semantic_unit(self, unit: SemanticUnit) -> list[str]:
        issues = []
        if not unit.summary.strip():
            issues.append("Summary must not be empty")
        if not [k for k in unit.keywords if k.strip()]:
            issues.append("At least one keyword is required for routing")
        if unit.id is not None and not ID_RE.match(normalize_id(unit.id)):
            issues.append(f"Invalid id '{unit.id}'")
        for rid in unit.related_ids:
            if not ID_RE.match(normalize_id(rid)):
                issues.append(f"Invalid related id '{rid}'")
        return issues

    def validate_episodic_draft(self, draft: EpisodicDraft) -> list[str]:
        """Episodic entries are narrative only; explanations belong in semantic documents."""
        issues = []
        if not draft.action.strip():
            issues.append("action must not be empty")
        if not draft.trigger.strip():
            issues.append("trigger must not be empty")
        limit = int(self.config.max_episodic_field_chars)
        for name in NARRATIVE_FIELDS:
            value = getattr(draft, name)
            if len(value) > limit:
                issues.append(f"{name} exceeds {limit} characters; move durable detail to a semantic document")
            if "```" in value or any(ln.lstrip().startswith("#") for ln in value.splitlines()):
                issues.append(f"{name} contains structured content; episodic entries are narrative only")
        return issues

    def gate_semantic_unit(self, unit: SemanticUnit) -> None:
        issues = self.validate_semantic_unit(unit)
        if issues:
            raise ValidationError(f"Unit blocked by governance: {'; '.join(issues)}", issues)

    def gate_episodic_draft(self, draft: EpisodicDraft) -> None:
        issues = self.validate_episodic_draft(draft)
        if issues:
            raise ValidationError(f"Episodic draft blocked by governance: {'; '.join(issues)}", issues)

    @staticmethod
    def polarity_conflict(a: str, b: str) -> bool:
        neg_terms = {"not", "never", "no", "none", "cannot", "can't", "won't", "false", "don't", "doesn't"}
        a_tokens = {t.strip(".,!?;:`").lower() for t in a.split()}
        b_tokens = {t.strip(".,!?;:`").lower() for t in b.split()}
        a_neg = bool(a_tokens & neg_terms)
        b_neg = bool(b_tokens & neg_terms)
        return a_neg != b_neg


def _pydantic_issues(err: pydantic.ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ())) or 'value'}: {e.get('msg', '')}"
        for e in err.errors()
    )
