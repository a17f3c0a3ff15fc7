"""Per-resource mutual exclusion for the writers of a single process."""

from contextlib import contextmanager
import logging
import threading

from errors import ResourceBusy

logger = logging.getLogger(__name__)


class ResourceLocks:
    """Hands out one lock per resource id; acquisition is bounded by a timeout.

    Row-level locks in the database serialize writers across processes; this
    registry covers backends (SQLite) where SELECT FOR UPDATE is a no-op.
    """

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._locks = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, resource_id) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = self._locks[resource_id] = threading.Lock()
            return lock

    @contextmanager
    def acquire(self, resource_id):
        lock = self._lock_for(resource_id)
        if not lock.acquire(timeout=self.timeout):
            logger.warning(f"Lock timeout on resource {resource_id} after {self.timeout}s")
            raise ResourceBusy(resource_id)
        try:
            yield
        finally:
            lock.release()
