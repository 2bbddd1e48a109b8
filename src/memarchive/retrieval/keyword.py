"""Keyword/summary overlap scoring against the clue index."""

from __future__ import annotations

from dataclasses import dataclass

from memarchive.index.clues import ClueIndex
from memarchive.types import IMPORTANCE_RANK, Importance
from memarchive.utils import token_set

KEYWORD_WEIGHT = 0.7
SUMMARY_WEIGHT = 0.3


@dataclass
class Candidate:
    path: str
    kind: str
    score: float


def overlap_score(query_tokens: set[str], keywords: list[str], summary: str) -> float:
    """Share of query tokens found in the keywords (weighted higher) and the summary."""
    if not query_tokens:
        return 0.0
    kw_tokens = token_set(" ".join(keywords))
    sum_tokens = token_set(summary)
    kw = len(query_tokens & kw_tokens) / len(query_tokens)
    sm = len(query_tokens & sum_tokens) / len(query_tokens)
    return KEYWORD_WEIGHT * kw + SUMMARY_WEIGHT * sm


class KeywordSearch:
    """Ranks index entries (or compacted groups) by overlap with a query."""

    def __init__(self, index: ClueIndex) -> None:
        self.index = index

    def search(self, query: str, min_relevance: float = 0.0) -> list[Candidate]:
        tokens = token_set(query)
        scores: dict[str, Candidate] = {}
        for path, entry in self.index.entries.items():
            score = overlap_score(tokens, entry.keywords, entry.summary)
            if score > 0 and score >= min_relevance:
                # Importance only breaks near-ties.
                rank = IMPORTANCE_RANK.get(Importance(entry.importance), 1) if entry.importance else 1
                scores[path] = Candidate(path, entry.kind, score + 0.001 * rank)
        for group in self.index.groups:
            score = overlap_score(tokens, group.keywords, group.summary)
            if score <= 0 or score < min_relevance:
                continue
            for path in group.member_paths:
                current = scores.get(path)
                if current is None or current.score < score:
                    scores[path] = Candidate(path, group.kind, score)
        return sorted(scores.values(), key=lambda c: (-c.score, c.path))

    def top(self, query: str, kind: str, limit: int, min_relevance: float = 0.0) -> list[Candidate]:
        return [c for c in self.search(query, min_relevance) if c.kind == kind][:limit]
