"""
Expiry Sweeper

Background thread that periodically fails PENDING changes older than the
configured TTL.
"""

import threading
from typing import Optional

from changegate.approval.approval_engine import ApprovalWorkflowEngine
from changegate.logging.logger import get_logger


class ExpirySweeper:
    """
    Runs ApprovalWorkflowEngine.expire_stale on an interval until stopped.
    """

    def __init__(
        self,
        engine: ApprovalWorkflowEngine,
        interval_seconds: float = 60.0,
        component_id: str = "engine"
    ):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.logger = get_logger(f"{__name__}.{component_id}", component_id=component_id)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self) -> int:
        """Run a single sweep and return the number of expired changes"""
        try:
            return self.engine.expire_stale()
        except Exception as e:
            # A failed sweep must not kill the thread; the next one retries
            self.logger.error(f"Expiry sweep failed: {e}", exc_info=True)
            return 0

    def _run(self):
        self.logger.info(f"Expiry sweeper started (every {self.interval_seconds}s)")
        while not self._stop_event.wait(self.interval_seconds):
            self.sweep_once()
        self.logger.info("Expiry sweeper stopped")

    def start(self) -> threading.Thread:
        """Start sweeping in a daemon thread"""
        if self._thread and self._thread.is_alive():
            return self._thread

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="expiry-sweeper", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = 5.0):
        """Signal the thread to stop and wait for it"""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
