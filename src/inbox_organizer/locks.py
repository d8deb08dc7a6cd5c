import fcntl
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Optional


class AdvisoryLock:
    """Non-blocking exclusive lock on a file, polled for a short timeout.

    Contenders that fail to acquire within the timeout are expected to give
    up their run rather than wait.
    """

    def __init__(self, lock_path: Path, *, owner: Optional[str] = None) -> None:
        self.lock_path = lock_path
        self.owner = owner or f"pid-{os.getpid()}"
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def try_acquire(self, timeout_ms: int = 100, poll_ms: int = 10) -> bool:
        if self._handle is not None:
            return True
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.lock_path.open("a+", encoding="utf-8")
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    return False
                time.sleep(poll_ms / 1000)
        handle.seek(0)
        handle.truncate()
        handle.write(_lock_payload(self.owner))
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            fcntl.flock(handle, fcntl.LOCK_UN)
        finally:
            handle.close()

    def __enter__(self) -> "AdvisoryLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False


def _lock_payload(owner: str) -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"owner={owner}\ncreated_at={ts}\n"
