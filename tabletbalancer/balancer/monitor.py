"""
Balancer run monitoring.

Keeps a bounded history of run summaries and aggregate counters.
"""

from collections import deque
from typing import Deque, Dict, List, Optional

from tabletbalancer.utils.logging import get_logger

logger = get_logger(__name__)


class BalancerMonitor:
    """
    Aggregates RunSummary objects across runs.
    """

    def __init__(self, history_size: int = 100):
        """
        Initialize monitor.

        Args:
            history_size: Number of recent runs to keep
        """
        self._history: Deque = deque(maxlen=history_size)
        self.total_runs = 0
        self.skipped_runs = 0
        self.idle_runs = 0
        self.totals: Dict[str, int] = {
            "adds": 0,
            "removals": 0,
            "stepdowns": 0,
            "failed": 0,
            "deferred": 0,
            "anomalies": 0,
        }

    def record(self, summary) -> None:
        """
        Record a finished run.

        Args:
            summary: RunSummary of the run
        """
        self.total_runs += 1

        if summary.skipped:
            self.skipped_runs += 1
            return

        self._history.append(summary)

        if summary.dispatched == 0 and summary.deferred == 0:
            self.idle_runs += 1

        self.totals["adds"] += summary.adds
        self.totals["removals"] += summary.removals
        self.totals["stepdowns"] += summary.stepdowns
        self.totals["failed"] += summary.failed
        self.totals["deferred"] += summary.deferred
        self.totals["anomalies"] += summary.anomalies

    def last_run(self) -> Optional[object]:
        """Get the most recent completed run, if any."""
        return self._history[-1] if self._history else None

    def history(self) -> List:
        return list(self._history)

    def get_summary(self) -> Dict:
        """
        Get aggregate counters.

        Returns:
            Summary dict
        """
        last = self.last_run()
        return {
            "total_runs": self.total_runs,
            "skipped_runs": self.skipped_runs,
            "idle_runs": self.idle_runs,
            **self.totals,
            "last_run": last.to_dict() if last else None,
        }
