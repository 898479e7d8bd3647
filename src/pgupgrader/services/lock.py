"""Advisory lock that binds a data directory to a single upgrade run."""

import hashlib
import os
import tempfile
from typing import Optional

try:
    import fcntl
except ImportError:  # pragma: no cover - platform specific
    fcntl = None

from pgupgrader.errors import ValidationError
from pgupgrader.errors_catalog import actionable_error


class DataDirLock:
    """Exclusive, non-blocking lock keyed on the data directory's canonical path.

    The lock file lives outside the data directory so backups stay byte-identical.
    """

    def __init__(self, data_dir: str, logger, lock_dir: Optional[str] = None):
        self.data_dir = os.path.realpath(data_dir)
        self.logger = logger
        digest = hashlib.sha256(self.data_dir.encode("utf-8")).hexdigest()[:16]
        self.lock_path = os.path.join(lock_dir or tempfile.gettempdir(), f"pgupgrader-{digest}.lock")
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self):
        if self._handle is not None:
            return
        handle = open(self.lock_path, "a+", encoding="utf-8")
        if fcntl is not None:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except (BlockingIOError, OSError) as exc:
                handle.close()
                raise ValidationError(actionable_error("run_locked", path=self.data_dir)) from exc
        else:
            self.logger.warning("Advisory locking is unavailable on this platform.")

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()} {self.data_dir}\n")
        handle.flush()
        self._handle = handle
        self.logger.debug("Acquired lock %s", self.lock_path)

    def release(self):
        if self._handle is None:
            return
        try:
            if fcntl is not None:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
            self.logger.debug("Released lock %s", self.lock_path)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
