"""Per-spec advisory locks with an expiry policy for abandoned lock files."""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import TYPE_CHECKING

from filelock import SoftFileLock, Timeout

from specx.audit.log import EVENT_LOCK_STOLEN
from specx.errors import LockTimeoutError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from specx.audit.log import AuditLog

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


class OwnedSoftFileLock(SoftFileLock):
    """Soft lock that stamps an owner token and only deletes its own file.

    If the file was replaced by another writer after an expiry steal, release
    closes the handle and leaves the newer holder's file in place.
    """

    @property
    def owner_token(self) -> str:
        return f"{os.getpid()}:{threading.get_ident()}:{id(self):x}"

    def _acquire(self) -> None:
        super()._acquire()
        fd = self._context.lock_file_fd
        if fd is not None:
            os.write(fd, self.owner_token.encode("utf-8"))

    def _release(self) -> None:
        fd = self._context.lock_file_fd
        self._context.lock_file_fd = None
        if fd is not None:
            os.close(fd)
        path = Path(self.lock_file)
        try:
            owned = self.owner_token in path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        if not owned:
            logger.warning("Lock file %s now belongs to another writer; leaving it in place", path)
            return
        with suppress(OSError):
            path.unlink()


class SpecLockManager:
    """Serializes writers per spec. Reentrant within one thread.

    Held locks are refreshed before every wait and every write, so a live
    holder never looks abandoned as long as `stale_after` exceeds `timeout`.
    """

    def __init__(
        self,
        lock_dir: Path,
        *,
        timeout: float = 5.0,
        stale_after: float = 10.0,
        audit: AuditLog | None = None,
    ) -> None:
        if stale_after <= timeout:
            raise ValueError(f"stale_after must exceed timeout ({stale_after} <= {timeout})")
        self.lock_dir = lock_dir
        self.timeout = timeout
        self.stale_after = stale_after
        self.audit = audit
        self._locks: dict[str, OwnedSoftFileLock] = {}
        self._guard = threading.Lock()

    def lock_path(self, spec_id: str) -> Path:
        return self.lock_dir / f"{_UNSAFE_NAME.sub('_', spec_id)}.lock"

    def _lock_for(self, spec_id: str) -> OwnedSoftFileLock:
        with self._guard:
            lock = self._locks.get(spec_id)
            if lock is None:
                self.lock_dir.mkdir(parents=True, exist_ok=True)
                lock = OwnedSoftFileLock(str(self.lock_path(spec_id)), timeout=self.timeout)
                self._locks[spec_id] = lock
            return lock

    @contextmanager
    def hold(self, spec_id: str) -> Iterator[None]:
        lock = self._lock_for(spec_id)
        self._acquire(spec_id, lock)
        try:
            yield
        finally:
            lock.release()

    def is_held(self, spec_id: str) -> bool:
        return self._lock_for(spec_id).is_locked

    def refresh(self) -> None:
        """Bump the mtime of every lock the calling thread holds."""
        with self._guard:
            held = [spec_id for spec_id, lock in self._locks.items() if lock.is_locked]
        for spec_id in held:
            path = self.lock_path(spec_id)
            try:
                os.utime(path)
            except FileNotFoundError:
                logger.warning("Lock file for spec %s disappeared while held", spec_id)

    def _acquire(self, spec_id: str, lock: OwnedSoftFileLock) -> None:
        if not lock.is_locked:
            self._steal_if_stale(spec_id)
        self.refresh()
        try:
            lock.acquire(timeout=self.timeout)
            return
        except Timeout:
            if not self._steal_if_stale(spec_id):
                raise self._timeout_error(spec_id) from None

        # One retry after removing an abandoned lock file.
        self.refresh()
        try:
            lock.acquire(timeout=self.timeout)
        except Timeout:
            raise self._timeout_error(spec_id) from None

    def _steal_if_stale(self, spec_id: str) -> bool:
        path = self.lock_path(spec_id)
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return False
        if age <= self.stale_after:
            return False

        path.unlink(missing_ok=True)
        logger.warning("Removed stale lock for spec %s (age %.1fs)", spec_id, age)
        if self.audit is not None:
            self.audit.record(
                EVENT_LOCK_STOLEN,
                {
                    "spec_id": spec_id,
                    "lock_path": str(path),
                    "age_seconds": round(age, 3),
                    "stale_after_seconds": self.stale_after,
                },
            )
        return True

    def _timeout_error(self, spec_id: str) -> LockTimeoutError:
        return LockTimeoutError(
            f"Timed out after {self.timeout:.1f}s waiting for the lock on spec `{spec_id}`",
            detail={
                "spec_id": spec_id,
                "lock_path": str(self.lock_path(spec_id)),
                "timeout_seconds": self.timeout,
            },
        )
