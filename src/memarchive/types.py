"""Core data types for memarchive."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from memarchive.utils import utcnow

PREFERENCES_ID = "user-preferences"


class MemoryKind(str, Enum):
    SEMANTIC = "semantic"
    EPISODIC = "episodic"


class Importance(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


IMPORTANCE_RANK = {
    Importance.LOW: 0,
    Importance.NORMAL: 1,
    Importance.HIGH: 2,
    Importance.CRITICAL: 3,
}


class AbstractionLevel(str, Enum):
    SCHEMA = "schema"
    PATTERN = "pattern"
    FACT = "fact"


class Freshness(str, Enum):
    FRESH = "FRESH"
    STALE = "STALE"
    EXPIRED = "EXPIRED"


class MemoryDocument(BaseModel):
    """A single semantic or episodic memory file."""

    id: str
    kind: MemoryKind
    keywords: list[str] = Field(default_factory=list)
    summary: str = ""
    related_ids: list[str] = Field(default_factory=list)
    related_files: list[str] = Field(default_factory=list)
    importance: Importance | None = None
    abstraction_level: AbstractionLevel | None = None
    created: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    expires: datetime | None = None
    observations: dict[str, int] = Field(default_factory=dict)
    body: str = ""

    @property
    def is_semantic(self) -> bool:
        return self.kind == MemoryKind.SEMANTIC

    @property
    def effective_importance(self) -> Importance:
        return self.importance or Importance.NORMAL

    @property
    def effective_level(self) -> AbstractionLevel:
        if self.id == PREFERENCES_ID:
            return AbstractionLevel.SCHEMA
        return self.abstraction_level or AbstractionLevel.FACT

    @property
    def rel_path(self) -> str:
        return f"{self.kind.value}/{self.id}.md"

    def add_related(self, doc_id: str) -> bool:
        if doc_id == self.id or doc_id in self.related_ids:
            return False
        self.related_ids = sorted({*self.related_ids, doc_id})
        return True

    def remove_related(self, doc_id: str) -> bool:
        if doc_id not in self.related_ids:
            return False
        self.related_ids = [r for r in self.related_ids if r != doc_id]
        return True

    def add_keywords(self, keywords: list[str]) -> bool:
        existing = {k.lower() for k in self.keywords}
        added = [k for k in keywords if k and k.lower() not in existing]
        if not added:
            return False
        self.keywords = [*self.keywords, *added]
        return True


# --- Oracle output contract ---


class SemanticUnit(BaseModel):
    """One knowledge update proposed by the extraction oracle."""

    model_config = ConfigDict(populate_by_name=True)

    id: str | None = None
    keywords: list[str] = Field(default_factory=list)
    summary: str = ""
    abstraction_level: AbstractionLevel = Field(
        default=AbstractionLevel.FACT,
        validation_alias=AliasChoices("abstraction_level", "abstractionLevel", "kind"),
    )
    importance: Importance | None = None
    content: str = Field(default="", validation_alias=AliasChoices("content", "body"))
    related_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("related_ids", "relatedIds", "related"),
    )
    replaces: bool = False


class PreferenceUnit(BaseModel):
    """A user preference, stated explicitly or observed as a behaviour."""

    key: str
    value: str
    explicit: bool = True


class EpisodicDraft(BaseModel):
    """Narrative-only account of a session. Extra fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    action: str
    trigger: str
    context: str = ""
    attempts: str = ""
    outcome: str = ""
    keywords: list[str] = Field(default_factory=list)


class ContradictionSignal(BaseModel):
    document_id: str
    section: str = ""
    new_text: str
    reason: str = ""


class ConsolidationSignals(BaseModel):
    redundant: list[list[str]] = Field(default_factory=list)
    contradictions: list[ContradictionSignal] = Field(default_factory=list)
    overgrown: list[str] = Field(default_factory=list)

    @property
    def present(self) -> bool:
        return bool(self.redundant or self.contradictions or self.overgrown)

    def extend(self, other: "ConsolidationSignals") -> None:
        for group in other.redundant:
            if sorted(group) not in [sorted(g) for g in self.redundant]:
                self.redundant.append(list(group))
        self.contradictions.extend(other.contradictions)
        for doc_id in other.overgrown:
            if doc_id not in self.overgrown:
                self.overgrown.append(doc_id)


class OracleProposal(BaseModel):
    semantic_units: list[SemanticUnit] = Field(default_factory=list)
    preference_units: list[PreferenceUnit] = Field(default_factory=list)
    episodic_draft: EpisodicDraft | None = None
    consolidation_signals: ConsolidationSignals = Field(default_factory=ConsolidationSignals)


# --- Retrieval output ---


class SynthesisItem(BaseModel):
    id: str
    kind: MemoryKind
    freshness: Freshness
    date: str
    excerpt: str
    score: float = 0.0
    via: str | None = None

    def tag(self) -> str:
        return f"{self.freshness.value} {self.date}"


class Synthesis(BaseModel):
    query: str
    findings: list[SynthesisItem] = Field(default_factory=list)
    history: list[SynthesisItem] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.findings and not self.history

    def render(self) -> str:
        if self.empty:
            return "No relevant memories found."
        lines: list[str] = []
        for heading, items in (("Findings", self.findings), ("History", self.history)):
            if not items:
                continue
            lines.append(f"## {heading}")
            for item in items:
                via = f" (via {item.via})" if item.via else ""
                lines.append(f"- {item.kind.value}/{item.id} [{item.tag()}]{via}")
                for excerpt_line in item.excerpt.splitlines():
                    lines.append(f"  {excerpt_line}")
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"


class AuditEvent(BaseModel):
    action: str
    target_type: str
    target_id: str
    detail: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)
