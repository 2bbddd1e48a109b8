"""memarchive exception taxonomy."""

from __future__ import annotations

from pathlib import Path


class MemoryArchiveError(Exception):
    """Base class for every error raised by the memory store."""


class ValidationError(MemoryArchiveError):
    """A document or oracle proposal violates the field constraints."""

    def __init__(self, message: str, issues: list[str] | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])


class NotFound(MemoryArchiveError):
    """The requested document id does not exist."""

    def __init__(self, kind: str, doc_id: str) -> None:
        super().__init__(f"{kind} document not found: {doc_id}")
        self.kind = kind
        self.doc_id = doc_id


class Busy(MemoryArchiveError):
    """Another archive session holds the writer lock."""


class OracleTimeout(MemoryArchiveError):
    """The extraction oracle exceeded its time budget."""


class ReferentialViolation(MemoryArchiveError):
    """A relation points at a document that does not exist."""

    def __init__(self, source_id: str, target_id: str) -> None:
        super().__init__(f"dangling relation {source_id} -> {target_id}")
        self.source_id = source_id
        self.target_id = target_id


class StructuralCorruption(MemoryArchiveError):
    """A document on disk cannot be parsed."""

    def __init__(self, path: Path | str, reason: str) -> None:
        super().__init__(f"unparsable document {path}: {reason}")
        self.path = Path(path)
        self.reason = reason
