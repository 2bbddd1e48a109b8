"""Archive session: one full, linear update cycle against the store.

IDLE -> ROUTING -> PLASTICITY -> CONSOLIDATION (only on signals) -> LOGGING
-> REINDEXING -> DONE. Any failure moves the session to ABORTED and skips the
remaining states; documents already written stay valid because every write is
an atomic replace, and the index is only published as the last step.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from memarchive.config import Config
from memarchive.consolidation.engine import ConsolidationEngine, ConsolidationReport
from memarchive.consolidation.plasticity import Plasticity
from memarchive.consolidation.sections import Section, find_section, parse_sections, render_sections
from memarchive.exceptions import Busy, NotFound, OracleTimeout, StructuralCorruption, ValidationError
from memarchive.governance.audit import AuditLog
from memarchive.governance.guardian import Guardian
from memarchive.index.clues import ClueIndexer
from memarchive.oracle import ExtractionOracle
from memarchive.retrieval.engine import RetrievalEngine
from memarchive.session.lock import ArchiveLock
from memarchive.storage.document_store import DocumentStore
from memarchive.types import (
    PREFERENCES_ID,
    ConsolidationSignals,
    EpisodicDraft,
    MemoryDocument,
    MemoryKind,
    Synthesis,
)
from memarchive.utils import as_utc, trim, utcnow

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "IDLE"
    ROUTING = "ROUTING"
    PLASTICITY = "PLASTICITY"
    CONSOLIDATION = "CONSOLIDATION"
    LOGGING = "LOGGING"
    REINDEXING = "REINDEXING"
    DONE = "DONE"
    ABORTED = "ABORTED"


@dataclass
class ArchiveResult:
    state: SessionState = SessionState.IDLE
    history: list[SessionState] = field(default_factory=lambda: [SessionState.IDLE])
    touched: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    signals: ConsolidationSignals = field(default_factory=ConsolidationSignals)
    consolidation: ConsolidationReport | None = None
    episodic_id: str | None = None
    context: Synthesis | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.state == SessionState.DONE


class ArchiveSession:
    """Runs one archive cycle. Create a fresh instance per transcript."""

    def __init__(
        self,
        config: Config,
        store: DocumentStore,
        audit: AuditLog,
        indexer: ClueIndexer,
        retrieval: RetrievalEngine,
        plasticity: Plasticity,
        consolidation: ConsolidationEngine,
        guardian: Guardian,
    ) -> None:
        self.config = config
        self.store = store
        self.audit = audit
        self.indexer = indexer
        self.retrieval = retrieval
        self.plasticity = plasticity
        self.consolidation = consolidation
        self.guardian = guardian
        self.result = ArchiveResult()

    @property
    def state(self) -> SessionState:
        return self.result.state

    def _enter(self, state: SessionState) -> None:
        self.result.state = state
        self.result.history.append(state)
        logger.debug("archive session -> %s", state.value)

    def run(
        self,
        raw_input: str,
        oracle: ExtractionOracle,
        timeout: float | None = None,
        now: datetime | None = None,
    ) -> ArchiveResult:
        """Raises Busy before any work if another session holds the lock."""
        now = as_utc(now) if now else utcnow()
        if not (raw_input or "").strip():
            self._enter(SessionState.DONE)
            return self.result

        lock = ArchiveLock(
            self.config.lock_path,
            timeout=self.config.session.lock_timeout,
            poll_interval=self.config.session.lock_poll_interval,
        )
        try:
            lock.acquire()
        except Busy as e:
            self.audit.log("busy", "session", "archive", str(e))
            raise
        try:
            self.audit.log("session_start", "session", "archive", trim(raw_input, 120))
            self._run_locked(raw_input, oracle, timeout, now)
        except Exception as e:
            self.result.error = str(e)
            self._enter(SessionState.ABORTED)
            self.audit.log("session_aborted", "session", "archive", f"{type(e).__name__}: {e}")
            logger.warning("archive session aborted: %s", e)
            raise
        finally:
            lock.release()
        self.audit.log(
            "session_done", "session", "archive",
            f"touched {len(self.result.touched)} documents",
            metadata={"touched": self.result.touched, "episodic": self.result.episodic_id},
        )
        return self.result

    def _run_locked(self, raw_input: str, oracle: ExtractionOracle,
                    timeout: float | None, now: datetime) -> None:
        session_cfg = self.config.session

        self._enter(SessionState.ROUTING)
        self.result.context = self.retrieval.retrieve(
            raw_input, now=now, top_k=session_cfg.routing_top_k, min_relevance=0.0,
        )

        self._enter(SessionState.PLASTICITY)
        raw = self._call_oracle(oracle, raw_input, self.result.context,
                                session_cfg.oracle_timeout if timeout is None else timeout)
        proposal, rejected = self.guardian.parse_proposal(raw)
        for message in rejected:
            self.audit.log("rejected", "proposal", "oracle", message)
        self.result.rejected = rejected
        applied = self.plasticity.apply(proposal, now)
        self.result.created = applied.created
        self.result.updated = applied.updated
        self.result.signals = applied.signals
        touched = list(applied.touched)

        if applied.signals.present and self.config.consolidation.enabled:
            self._enter(SessionState.CONSOLIDATION)
            report = self.consolidation.run(applied.signals, now)
            self.result.consolidation = report
            touched = _dedupe([report.resolve(t) for t in touched])
            for original, facts in report.split.items():
                if original in touched:
                    touched.extend(f for f in facts if f not in touched)
        self.result.touched = [t for t in touched if self.store.exists(MemoryKind.SEMANTIC, t)]

        self._enter(SessionState.LOGGING)
        if self.result.touched:
            self.result.episodic_id = self._log_episode(proposal.episodic_draft, self.result.touched, now)

        self._enter(SessionState.REINDEXING)
        self.indexer.publish()
        self._enter(SessionState.DONE)

    def _call_oracle(self, oracle: ExtractionOracle, raw_input: str,
                     context: Synthesis, timeout: float) -> Any:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="memarchive-oracle")
        future = executor.submit(oracle.propose, raw_input, context)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeout:
            future.cancel()
            raise OracleTimeout(f"extraction oracle did not answer within {timeout:g}s") from None
        finally:
            # A timed-out oracle is abandoned; its result is never applied.
            executor.shutdown(wait=False)

    def _log_episode(self, draft: EpisodicDraft | None, touched: list[str], now: datetime) -> str:
        """Append one narrative entry to today's bucket, pointing at the touched documents."""
        if draft is None:
            draft = EpisodicDraft(
                action=f"Updated knowledge: {', '.join(touched)}",
                trigger="archive session",
            )
        bucket_id = now.date().isoformat()
        if self.store.exists(MemoryKind.EPISODIC, bucket_id):
            doc = self.store.get(MemoryKind.EPISODIC, bucket_id)
        else:
            doc = MemoryDocument(
                id=bucket_id,
                kind=MemoryKind.EPISODIC,
                summary=f"Session log for {bucket_id}",
                created=now,
                last_updated=now,
                expires=now + timedelta(days=self.config.session.episodic_expiry_days),
            )

        sections = parse_sections(doc.body)
        heading = f"{now.strftime('%H:%M:%S')} {trim(draft.action.splitlines()[0], 60)}"
        base, n = heading, 2
        while find_section(sections, heading) is not None:
            heading = f"{base} ({n})"
            n += 1
        sections.append(Section(heading=heading, text=_narrative(draft, touched)))
        doc.body = render_sections(sections)

        keywords = list(draft.keywords)
        if not keywords:
            for doc_id in touched:
                if doc_id == PREFERENCES_ID:
                    continue
                try:
                    keywords.extend(self.store.get(MemoryKind.SEMANTIC, doc_id).keywords[:2])
                except (NotFound, StructuralCorruption, ValidationError) as e:
                    logger.debug("no keywords borrowed from %s: %s", doc_id, e)
        doc.add_keywords(keywords)
        for doc_id in touched:
            doc.add_related(doc_id)
        doc.last_updated = max(doc.last_updated, now)
        self.store.put(doc)
        self.audit.log_write("episodic", bucket_id, heading)
        return bucket_id


def _narrative(draft: EpisodicDraft, touched: list[str]) -> str:
    lines = [
        f"- **Action**: {_flat(draft.action)}",
        f"- **Trigger**: {_flat(draft.trigger)}",
    ]
    for label, value in (("Context", draft.context), ("Attempts", draft.attempts), ("Outcome", draft.outcome)):
        if value.strip():
            lines.append(f"- **{label}**: {_flat(value)}")
    lines.append(f"- **See**: {', '.join(touched)}")
    return "\n".join(lines)


def _flat(text: str) -> str:
    return " ".join(text.split())


def _dedupe(ids: list[str]) -> list[str]:
    out: list[str] = []
    for i in ids:
        if i not in out:
            out.append(i)
    return out
