"""Background loop that keeps every meter's balance current."""
from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from .engine import SweepReport
from .service import MeterService

logger = logging.getLogger(__name__)


class SweepWorker:
    def __init__(self, service: MeterService, interval_seconds: int) -> None:
        self.service = service
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()

    def run_once(self) -> Optional[SweepReport]:
        try:
            return self.service.sweep()
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Unexpected error in sweep cycle: %s", exc)
            return None

    def stop(self) -> None:
        self._stop.set()

    def run_forever(self) -> None:
        interval = self.interval_seconds
        if interval <= 0:
            logger.info("Periodic sweep disabled; waiting for shutdown")
            self._stop.wait()
            return
        logger.info("Starting sweep loop with interval %s seconds", interval)
        try:
            while not self._stop.is_set():
                start = time.time()
                self.run_once()
                elapsed = time.time() - start
                self._stop.wait(max(interval - elapsed, 0))
        except KeyboardInterrupt:
            logger.info("Sweep loop stopped via keyboard interrupt")
