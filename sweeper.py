"""Background reclamation of holds whose TTL elapsed without confirmation."""

import logging
import threading

from models import utcnow

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically cancels expired holds without blocking request threads.

    Shares the store (and therefore its resource locks) with the request
    handlers; reads already ignore expired holds, so the sweep only makes
    their state physical.
    """

    def __init__(self, db, interval: float = 60, clock=utcnow):
        self.db = db
        self.interval = interval
        self.clock = clock
        self._stop = threading.Event()
        self._thread = None

    def run_once(self) -> int:
        return self.db.expire_holds(self.clock())

    def _run(self):
        while not self._stop.is_set():
            try:
                cleaned = self.run_once()
                if cleaned > 0:
                    logger.info(f"Background sweep: {cleaned} holds released")
            except Exception:
                logger.exception("Background sweep error")
            self._stop.wait(self.interval)
        logger.info("Expiry sweeper terminated gracefully.")

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        # Daemon thread so a stuck sweep never holds up interpreter shutdown
        self._thread = threading.Thread(target=self._run, name='expiry-sweeper', daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        """Signal the loop to exit and wait briefly for it."""
        if self._thread is None:
            return
        if not self._stop.is_set():
            logger.info("Stopping expiry sweeper...")
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
