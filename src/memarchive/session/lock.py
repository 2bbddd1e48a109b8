"""Single-writer lock for archive sessions."""

from __future__ import annotations

import fcntl
import os
import time
from pathlib import Path

from memarchive.exceptions import Busy


class ArchiveLock:
    """Exclusive advisory lock on ``.archive.lock`` with a bounded wait.

    Readers never take it. Each instance opens its own descriptor, so two
    sessions in the same process contend exactly like two processes do.
    """

    def __init__(self, path: Path | str, timeout: float = 10.0, poll_interval: float = 0.05) -> None:
        self.path = Path(path)
        self.timeout = float(timeout)
        self.poll_interval = max(0.001, float(poll_interval))
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_CREAT | os.O_RDWR, 0o600)
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise Busy(
                        f"memory store is busy (lock: {self.path}); another archive session is running"
                    ) from None
                time.sleep(self.poll_interval)
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def __enter__(self) -> "ArchiveLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()
