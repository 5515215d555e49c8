"""Periodic cycle runner with graceful shutdown."""

import logging
import signal
import threading
from typing import Optional

from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class CycleWorker:
    """Runs orchestrator cycles on a fixed interval until told to stop.

    SIGTERM/SIGINT set the shared cancellation event, so an in-flight poll
    stops at its next tick and the current cycle winds down.
    """

    def __init__(self, orchestrator: Orchestrator, install_signals: bool = True):
        self.orchestrator = orchestrator
        self.stop_event: threading.Event = orchestrator.cancel
        self.cycles = 0

        # Setup signal handlers for graceful shutdown
        if install_signals:
            signal.signal(signal.SIGTERM, self._handle_shutdown)
            signal.signal(signal.SIGINT, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signal gracefully."""
        logger.info("Received signal %s, finishing current cycle...", signum)
        self.stop_event.set()

    @property
    def running(self) -> bool:
        return not self.stop_event.is_set()

    def run(self, interval: float = 300.0, max_cycles: Optional[int] = None) -> None:
        """Run cycles every ``interval`` seconds."""
        logger.info("Cycle worker started (interval %ss)", interval)
        while self.running:
            try:
                report = self.orchestrator.run_cycle()
                logger.info("Cycle %d: %d due, %d failed", self.cycles + 1, report.due, report.failed)
            except Exception:
                # A broken store should not kill the daemon; retry next interval
                logger.exception("Cycle failed")
            self.cycles += 1
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            self.stop_event.wait(interval)

        logger.info("Cycle worker stopped after %d cycle(s)", self.cycles)
