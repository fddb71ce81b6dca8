"""Bounded-wait mutual exclusion for multi-row batch mutations.

Every ``stockbook-cli`` run is its own process working on the same workbook
file, so the lock lives on disk: a ``filelock.FileLock`` on a ``.lock`` file
next to the workbook. An in-process ``threading.Lock`` sits in front of it so
one coordinator is never re-entered by a second caller in the same process.

Only batch operations take the lock, and only for one fixed-size chunk at a
time. Every acquisition returns a :class:`LockToken`; the token must be handed
back to :meth:`LockCoordinator.release`.
"""

from __future__ import annotations

import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from . import log
from .constants import DEFAULT_LOCK_TIMEOUT_MS
from .errors import LockTimeout

LOCK_SUFFIX = ".lock"


def lock_path_for(data_file: Union[str, Path]) -> Path:
    """Return the lock file used to guard ``data_file``."""

    data_file = Path(data_file)
    return data_file.with_name(data_file.name + LOCK_SUFFIX)


@dataclass(frozen=True)
class LockToken:
    """Proof of ownership handed out by :meth:`LockCoordinator.acquire`."""

    value: str


class LockCoordinator:
    """Single named mutex with bounded-wait acquisition, shared across processes."""

    def __init__(
        self,
        name: str,
        lock_path: Union[str, Path],
        *,
        default_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
    ) -> None:
        self.name = name
        self.lock_path = Path(lock_path)
        self.default_timeout_ms = default_timeout_ms
        self._local_lock = threading.Lock()
        self._file_lock = FileLock(str(self.lock_path), thread_local=False)
        self._owner: Optional[LockToken] = None

    @property
    def locked(self) -> bool:
        return self._local_lock.locked()

    def acquire(self, timeout_ms: Optional[int] = None) -> LockToken:
        """Wait up to ``timeout_ms`` for the lock.

        Raises:
            LockTimeout: If the lock is still held by someone else, in this
                process or another one, when the wait expires.
        """

        wait_ms = self.default_timeout_ms if timeout_ms is None else timeout_ms
        wait_s = max(wait_ms, 0) / 1000
        started = time.monotonic()
        if not self._local_lock.acquire(timeout=wait_s):
            raise self._timeout(wait_ms)
        remaining = max(0.0, wait_s - (time.monotonic() - started))
        try:
            self._file_lock.acquire(timeout=remaining, poll_interval=0.01)
        except FileLockTimeout:
            self._local_lock.release()
            raise self._timeout(wait_ms) from None
        except BaseException:
            self._local_lock.release()
            raise
        token = LockToken(uuid.uuid4().hex)
        self._owner = token
        log.debug("Acquired lock '%s' (%s)", self.name, self.lock_path)
        return token

    def release(self, token: LockToken) -> None:
        """Release the lock held under ``token``.

        Raises:
            ValueError: If ``token`` does not own the lock.
        """

        if self._owner is None or token != self._owner:
            raise ValueError(f"Token does not own lock '{self.name}'")
        self._owner = None
        try:
            self._file_lock.release()
        finally:
            self._local_lock.release()
        log.debug("Released lock '%s'", self.name)

    @contextmanager
    def hold(self, timeout_ms: Optional[int] = None) -> Iterator[LockToken]:
        token = self.acquire(timeout_ms)
        try:
            yield token
        finally:
            self.release(token)

    def _timeout(self, wait_ms: int) -> LockTimeout:
        log.warning("Timed out after %dms waiting for lock '%s'", wait_ms, self.name)
        return LockTimeout(
            f"Could not acquire lock '{self.name}' within {wait_ms}ms",
            details={"lock": self.name, "timeout_ms": wait_ms},
        )
