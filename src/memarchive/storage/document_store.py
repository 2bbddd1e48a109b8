"""File-backed document store for semantic and episodic memories."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from memarchive.config import Config
from memarchive.exceptions import NotFound, StructuralCorruption, ValidationError
from memarchive.storage.frontmatter import (
    FrontmatterError,
    format_document,
    parse_document,
)
from memarchive.types import PREFERENCES_ID, MemoryDocument, MemoryKind

logger = logging.getLogger(__name__)

ID_RE = re.compile(r"^[a-z0-9][a-z0-9._-]*(/[a-z0-9][a-z0-9._-]*)*$")


def normalize_id(raw: str) -> str:
    """Canonical document id: trimmed, no namespace prefix, no .md suffix."""
    text = str(raw or "").strip().strip("/")
    for prefix in ("semantic/", "episodic/"):
        if text.startswith(prefix):
            text = text[len(prefix):]
    if text.endswith(".md"):
        text = text[:-3]
    return text


@dataclass
class QuarantinedFile:
    path: Path
    reason: str
    issues: list[str] = field(default_factory=list)


@dataclass
class ScanResult:
    documents: list[MemoryDocument] = field(default_factory=list)
    quarantined: list[QuarantinedFile] = field(default_factory=list)

    def by_id(self, kind: MemoryKind) -> dict[str, MemoryDocument]:
        return {d.id: d for d in self.documents if d.kind == kind}


class DocumentStore:
    """Atomic get/put/delete/list over ``semantic/`` and ``episodic/``."""

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or Config()
        self.config.ensure_dirs()

    # --- Paths ---

    def namespace_dir(self, kind: MemoryKind) -> Path:
        if kind == MemoryKind.SEMANTIC:
            return self.config.semantic_dir
        return self.config.episodic_dir

    def path_for(self, kind: MemoryKind, doc_id: str) -> Path:
        return self.namespace_dir(kind) / f"{normalize_id(doc_id)}.md"

    # --- Reads ---

    def get(self, kind: MemoryKind, doc_id: str) -> MemoryDocument:
        """Load one document. Raises NotFound, StructuralCorruption or ValidationError."""
        doc_id = normalize_id(doc_id)
        path = self.path_for(kind, doc_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFound(kind.value, doc_id) from None
        except UnicodeDecodeError as e:
            raise StructuralCorruption(path, f"not valid UTF-8: {e.reason} at byte {e.start}") from e
        return self._parse(path, text, kind, doc_id)

    def exists(self, kind: MemoryKind, doc_id: str) -> bool:
        return self.path_for(kind, doc_id).is_file()

    def list(self, kind: MemoryKind) -> list[str]:
        root = self.namespace_dir(kind)
        if not root.exists():
            return []
        ids = [
            p.relative_to(root).with_suffix("").as_posix()
            for p in root.rglob("*.md")
            if p.is_file()
        ]
        return sorted(ids)

    def scan(self, kind: MemoryKind | None = None) -> ScanResult:
        """Enumerate every document; invalid files are quarantined, never fatal."""
        result = ScanResult()
        kinds = [kind] if kind is not None else [MemoryKind.SEMANTIC, MemoryKind.EPISODIC]
        for k in kinds:
            for doc_id in self.list(k):
                path = self.path_for(k, doc_id)
                try:
                    result.documents.append(self.get(k, doc_id))
                except StructuralCorruption as e:
                    logger.warning("quarantined %s: %s", path, e.reason)
                    result.quarantined.append(QuarantinedFile(path=path, reason=e.reason))
                except ValidationError as e:
                    logger.warning("quarantined %s: %s", path, "; ".join(e.issues))
                    result.quarantined.append(
                        QuarantinedFile(path=path, reason=str(e), issues=list(e.issues))
                    )
                except NotFound:
                    # Removed between listing and reading.
                    continue
        return result

    def load_all(self, kind: MemoryKind) -> dict[str, MemoryDocument]:
        return self.scan(kind).by_id(kind)

    def is_empty(self) -> bool:
        return not self.list(MemoryKind.SEMANTIC) and not self.list(MemoryKind.EPISODIC)

    # --- Writes ---

    def put(self, doc: MemoryDocument) -> MemoryDocument:
        """Validate and atomically write a document. ``created`` is never changed once stored."""
        doc = doc.model_copy(deep=True)
        doc.id = normalize_id(doc.id)
        doc.body = doc.body.strip()
        issues = validate_document(doc)
        if issues:
            raise ValidationError(f"refusing to write '{doc.id}'", issues)

        path = self.path_for(doc.kind, doc.id)
        if path.exists():
            try:
                stored = self.get(doc.kind, doc.id)
            except (NotFound, StructuralCorruption, ValidationError):
                stored = None
            if stored is not None and stored.created != doc.created:
                doc.created = stored.created
                if doc.last_updated < doc.created:
                    doc.last_updated = doc.created

        atomic_write(path, format_document(doc))
        return doc

    def delete(self, kind: MemoryKind, doc_id: str) -> bool:
        path = self.path_for(kind, doc_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        _prune_empty_dirs(path.parent, self.namespace_dir(kind))
        return True

    # --- Internals ---

    @staticmethod
    def _parse(path: Path, text: str, kind: MemoryKind, doc_id: str) -> MemoryDocument:
        try:
            doc = parse_document(text, kind_hint=kind, id_hint=doc_id)
        except FrontmatterError as e:
            raise StructuralCorruption(path, str(e)) from e
        if doc.id != doc_id:
            raise ValidationError(
                f"id mismatch in {path}",
                [f"header id '{doc.id}' does not match file name '{doc_id}'"],
            )
        return doc


def validate_document(doc: MemoryDocument) -> list[str]:
    """Field constraints for a document about to be written."""
    issues: list[str] = []
    if not ID_RE.match(doc.id or ""):
        issues.append(f"invalid id '{doc.id}'")
    if not doc.summary.strip():
        issues.append("summary must not be empty")
    for name in ("created", "last_updated"):
        if not isinstance(getattr(doc, name), datetime):
            issues.append(f"malformed timestamp '{name}'")
    if doc.expires is not None and not isinstance(doc.expires, datetime):
        issues.append("malformed timestamp 'expires'")
    if not issues and doc.last_updated < doc.created:
        issues.append("last_updated precedes created")
    if doc.kind == MemoryKind.SEMANTIC:
        if doc.expires is not None:
            issues.append("expires is only valid on episodic documents")
        if doc.observations and doc.id != PREFERENCES_ID:
            issues.append("observations are only valid on the preferences document")
    else:
        if doc.importance is not None or doc.abstraction_level is not None:
            issues.append("importance/abstraction_level are only valid on semantic documents")
        if doc.observations:
            issues.append("observations are only valid on the preferences document")
    if doc.id in doc.related_ids:
        issues.append("a document cannot relate to itself")
    return issues


def atomic_write(path: Path, text: str) -> None:
    """Write via a sibling temp file and os.replace so readers see old or new, never partial."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fp: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="wb",
            delete=False,
            dir=str(path.parent),
            prefix=f".{path.name}.tmp.",
        ) as f:
            tmp_fp = Path(f.name)
            f.write(text.encode("utf-8"))
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_fp), str(path))
        tmp_fp = None
    finally:
        if tmp_fp is not None and tmp_fp.exists():
            tmp_fp.unlink()


def _prune_empty_dirs(start: Path, stop: Path) -> None:
    current = start
    while current != stop and stop in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent
