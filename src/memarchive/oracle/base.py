"""The extraction oracle turns a raw transcript into proposed knowledge updates.

The core treats it as an opaque capability: anything with a ``propose`` method
returning an ``OracleProposal`` (or a plain mapping of the same shape) will do.
"""

from __future__ import annotations

from collections import deque
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from memarchive.types import OracleProposal, Synthesis
from memarchive.utils import json_loads


@runtime_checkable
class ExtractionOracle(Protocol):
    def propose(self, raw_input: str, context: Synthesis) -> OracleProposal | dict[str, Any]:
        ...


class ScriptedOracle:
    """Returns queued proposals in order; records what it was asked."""

    def __init__(self, *proposals: OracleProposal | dict[str, Any]) -> None:
        self._queue: deque[OracleProposal | dict[str, Any]] = deque(proposals)
        self.calls: list[tuple[str, Synthesis]] = []

    def propose(self, raw_input: str, context: Synthesis) -> OracleProposal | dict[str, Any]:
        self.calls.append((raw_input, context))
        if not self._queue:
            return OracleProposal()
        return self._queue.popleft()


class JsonFileOracle:
    """Reads a ready-made proposal from a JSON file (replays, external extractors)."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def propose(self, raw_input: str, context: Synthesis) -> Any:
        return json_loads(self.path.read_bytes())
