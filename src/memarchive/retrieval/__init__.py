"""Retrieval components."""

from memarchive.retrieval.engine import RetrievalEngine
from memarchive.retrieval.keyword import KeywordSearch

__all__ = ["RetrievalEngine", "KeywordSearch"]
