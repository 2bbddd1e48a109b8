"""Document persistence."""

from memarchive.storage.document_store import DocumentStore, QuarantinedFile, ScanResult

__all__ = ["DocumentStore", "QuarantinedFile", "ScanResult"]
