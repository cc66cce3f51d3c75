"""Stage timing for collection runs."""

import logging
import time
from typing import Dict, Optional


class PerformanceTracker:
    """Records the duration of named stages within one collection pass"""

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger('collector.performance')
        self.timings: Dict[str, float] = {}
        self._started: Dict[str, float] = {}

    def start(self, stage: str):
        self._started[stage] = time.perf_counter()

    def end(self, stage: str) -> Optional[float]:
        started = self._started.pop(stage, None)
        if started is None:
            return None
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.timings[stage] = elapsed_ms
        return elapsed_ms

    def summary(self) -> Dict[str, float]:
        return {stage: round(ms, 1) for stage, ms in self.timings.items()}

    def log_summary(self):
        if not self.timings:
            return
        total = sum(self.timings.values())
        parts = ", ".join(f"{stage}={ms:.0f}ms" for stage, ms in self.timings.items())
        self.logger.info(f"Collection timings: {parts} (sum {total:.0f}ms)")

    def reset(self):
        self.timings.clear()
        self._started.clear()
