"""Clue index."""

from memarchive.index.clues import ClueIndex, ClueIndexer, compact, rebuild

__all__ = ["ClueIndex", "ClueIndexer", "compact", "rebuild"]
