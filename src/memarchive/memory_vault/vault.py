"""Memory Vault: wires store, index, retrieval, consolidation and sessions for one root."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from memarchive.config import Config
from memarchive.consolidation.engine import CheckReport, ConsolidationEngine, ConsolidationReport
from memarchive.consolidation.plasticity import Plasticity
from memarchive.governance.audit import AuditLog
from memarchive.governance.guardian import Guardian
from memarchive.index.clues import ClueIndex, ClueIndexer
from memarchive.oracle import ExtractionOracle
from memarchive.retrieval.engine import RetrievalEngine
from memarchive.session.archive import ArchiveResult, ArchiveSession
from memarchive.session.lock import ArchiveLock
from memarchive.storage.document_store import DocumentStore
from memarchive.types import MemoryDocument, MemoryKind, Synthesis


class MemoryVault:
    """Central entry point for one memory root."""

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or Config()
        self.config.ensure_dirs()

        self.store = DocumentStore(self.config)
        self.audit = AuditLog(self.config.audit_path)
        self.guardian = Guardian(self.config.session)
        self.indexer = ClueIndexer(self.store, self.config)
        self.retrieval = RetrievalEngine(self.store, self.indexer, self.config.retrieval)
        chars_per_token = self.config.index.chars_per_token
        self.plasticity = Plasticity(self.store, self.audit, self.config.consolidation, chars_per_token)
        self.consolidation = ConsolidationEngine(self.store, self.audit, self.config.consolidation, chars_per_token)

    @classmethod
    def open(cls, data_dir: Path | str | None = None) -> "MemoryVault":
        return cls(Config.load(data_dir))

    # --- Read path ---

    def retrieve(self, query: str, now: datetime | None = None) -> Synthesis:
        return self.retrieval.retrieve(query, now=now)

    def get(self, kind: MemoryKind, doc_id: str) -> MemoryDocument:
        return self.store.get(kind, doc_id)

    def clues(self) -> ClueIndex:
        return self.indexer.current()

    def check(self) -> CheckReport:
        return self.consolidation.check()

    # --- Write path ---

    def session(self) -> ArchiveSession:
        return ArchiveSession(
            config=self.config,
            store=self.store,
            audit=self.audit,
            indexer=self.indexer,
            retrieval=self.retrieval,
            plasticity=self.plasticity,
            consolidation=self.consolidation,
            guardian=self.guardian,
        )

    def archive(self, raw_input: str, oracle: ExtractionOracle,
                timeout: float | None = None, now: datetime | None = None) -> ArchiveResult:
        return self.session().run(raw_input, oracle, timeout=timeout, now=now)

    def _lock(self) -> ArchiveLock:
        return ArchiveLock(
            self.config.lock_path,
            timeout=self.config.session.lock_timeout,
            poll_interval=self.config.session.lock_poll_interval,
        )

    def reindex(self) -> ClueIndex:
        with self._lock():
            index = self.indexer.publish()
        self.audit.log("reindex", "index", self.config.store.index_filename, f"{len(index.paths())} documents")
        return index

    def consolidate(self, now: datetime | None = None) -> ConsolidationReport:
        """Operator-triggered store-wide consolidation, followed by a reindex."""
        with self._lock():
            report = self.consolidation.consolidate(now)
            self.indexer.publish()
        return report

    # --- Status ---

    def status(self) -> dict[str, Any]:
        scan = self.store.scan()
        index = self.indexer.load()
        return {
            "data_dir": str(self.config.data_dir),
            "semantic": len(scan.by_id(MemoryKind.SEMANTIC)),
            "episodic": len(scan.by_id(MemoryKind.EPISODIC)),
            "quarantined": [str(q.path) for q in scan.quarantined],
            "index_published": index is not None,
            "index_compacted": bool(index and index.compacted),
            "index_tokens": index.token_estimate(self.config.index.chars_per_token) if index else 0,
            "recent_audit": self.audit.recent(limit=5),
        }
