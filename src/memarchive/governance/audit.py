"""Audit log: append-only JSONL trail of every store mutation."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any

from memarchive.types import AuditEvent
from memarchive.utils import iso_str, json_dumps, json_loads

logger = logging.getLogger(__name__)


class AuditLog:
    """Records writes, repairs and quarantines to ``audit.jsonl``."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def log(self, action: str, target_type: str, target_id: str,
            detail: str = "", metadata: dict[str, Any] | None = None) -> AuditEvent:
        event = AuditEvent(
            action=action,
            target_type=target_type,
            target_id=target_id,
            detail=detail,
            metadata=metadata or {},
        )
        record = {
            "action": event.action,
            "target_type": event.target_type,
            "target_id": event.target_id,
            "detail": event.detail,
            "created_at": iso_str(event.created_at),
            "metadata": event.metadata,
        }
        line = json_dumps(record) + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # O_APPEND keeps concurrent single-line writes whole.
            fd = os.open(str(self.path), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
            try:
                os.write(fd, line.encode("utf-8"))
            finally:
                os.close(fd)
        return event

    def log_write(self, target_type: str, target_id: str, detail: str = "") -> AuditEvent:
        return self.log("write", target_type, target_id, detail)

    def log_delete(self, target_type: str, target_id: str, detail: str = "") -> AuditEvent:
        return self.log("delete", target_type, target_id, detail)

    def log_violation(self, target_type: str, target_id: str, detail: str) -> AuditEvent:
        logger.warning("%s %s: %s", target_type, target_id, detail)
        return self.log("violation", target_type, target_id, detail)

    def recent(self, limit: int = 50, action: str | None = None) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        rows: list[dict[str, Any]] = []
        for raw in self.path.read_text(encoding="utf-8").splitlines():
            if not raw.strip():
                continue
            try:
                row = json_loads(raw)
            except ValueError:
                continue
            if action is None or row.get("action") == action:
                rows.append(row)
        return rows[-limit:]
