"""Per-event locking for cluster mutations.

Assignment, re-clustering, tag appends and claims all read cluster state,
compute new counters or tag lists and write them back. Two such sequences on
the same event must not interleave, so every mutation of an event's cluster
set runs while holding that event's lock. Events are independent of each
other and may be processed in parallel.
"""

import threading
import time
import weakref
import logging
from contextlib import contextmanager
from typing import Optional

from ..errors import LockTimeout

logger = logging.getLogger(__name__)


class EventLock:
    """Re-entrant lock guarding the cluster set of one event.

    The owning thread may acquire it again, so processing a photo (which
    holds the lock) can call the assigner (which takes it too).

    Attributes:
        event_id: Event the lock guards
        timeout: Maximum time to wait for lock acquisition (seconds)
    """

    def __init__(self, event_id: str, timeout: float = 30.0):
        self.event_id = event_id
        self.timeout = timeout
        self._lock = threading.RLock()
        self._depth = 0

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """Acquire the lock.

        Args:
            timeout: Override of the default wait (seconds)

        Returns:
            True if lock acquired successfully

        Raises:
            LockTimeout: If lock cannot be acquired within timeout
        """
        wait = self.timeout if timeout is None else timeout
        start_time = time.monotonic()

        if not self._lock.acquire(timeout=wait):
            raise LockTimeout(
                f"Could not acquire lock for event {self.event_id} "
                f"within {wait} seconds"
            )

        self._depth += 1
        if self._depth == 1:
            waited = time.monotonic() - start_time
            logger.debug(f"Lock acquired: event {self.event_id} ({waited:.3f}s)")
        return True

    def release(self):
        """Release the lock."""
        self._depth -= 1
        if self._depth == 0:
            logger.debug(f"Lock released: event {self.event_id}")
        self._lock.release()

    def is_locked(self) -> bool:
        """Check whether some thread currently holds the lock."""
        return self._depth > 0

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False  # Don't suppress exceptions

    def __repr__(self) -> str:
        status = "locked" if self.is_locked() else "unlocked"
        return f"EventLock({self.event_id}, status={status})"


class EventLocks:
    """Registry handing out one EventLock per event id.

    Locks are held weakly: a lock nobody holds or references is dropped, so
    the registry does not grow with every event id it has seen. While any
    thread holds or waits on a lock, every caller gets that same lock.

    Attributes:
        timeout: Default wait for every lock created by the registry
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._locks = weakref.WeakValueDictionary()
        self._registry_lock = threading.Lock()

    def get(self, event_id: str) -> EventLock:
        """Get the lock of an event, creating it on first use."""
        with self._registry_lock:
            lock = self._locks.get(event_id)
            if lock is None:
                lock = EventLock(event_id, timeout=self.timeout)
                self._locks[event_id] = lock
            return lock

    @contextmanager
    def hold(self, event_id: str, timeout: Optional[float] = None):
        """Context manager holding one event's lock.

        Usage:
            with locks.hold(event_id):
                # Safe to mutate the event's clusters
                pass

        Args:
            event_id: Event to lock
            timeout: Override of the default wait (seconds)

        Yields:
            EventLock instance

        Raises:
            LockTimeout: If lock cannot be acquired
        """
        lock = self.get(event_id)
        lock.acquire(timeout=timeout)
        try:
            yield lock
        finally:
            lock.release()

    def __len__(self) -> int:
        return len(self._locks)

    def __repr__(self) -> str:
        return f"EventLocks(events={len(self._locks)}, timeout={self.timeout})"
