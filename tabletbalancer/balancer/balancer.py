"""
Cluster balancer run loop.

One run takes a snapshot, evaluates every tablet of every table in a stable
order, admits candidate actions against the global budgets most urgent
first, and dispatches them. Runs never overlap.
"""

import asyncio
import itertools
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from tabletbalancer.balancer.dispatcher import ActionDispatcher
from tabletbalancer.balancer.monitor import BalancerMonitor
from tabletbalancer.balancer.options import BalancerOptions
from tabletbalancer.balancer.placement import (
    CandidateAction,
    PlacementEvaluator,
    TabletCondition,
    TabletEvaluation,
)
from tabletbalancer.balancer.state import ClusterLoadSnapshot, LoadStateTracker
from tabletbalancer.cluster.metadata import PendingTaskKind
from tabletbalancer.cluster.provider import ClusterStateProvider
from tabletbalancer.utils.logging import bind_run_context, clear_run_context, get_logger

logger = get_logger(__name__)


class RunPhase(str, Enum):
    """Phases of a balancer run."""

    IDLE = "idle"
    START = "start"
    SNAPSHOT = "snapshot"
    ITERATE = "iterate"
    SELECT = "select"
    DISPATCH = "dispatch"
    DONE = "done"


@dataclass
class RunSummary:
    """
    Outcome of one balancer run.

    Attributes:
        run_id: Sequence number of the run
        skipped: Another run was active, nothing was done
        adds: Add actions dispatched
        removals: Remove actions dispatched
        stepdowns: Leader moves dispatched
        failed: Actions the dispatcher did not accept
        deferred: Candidates left for a later run by the budgets
        suppressed: Tablets held back by an outstanding task
        anomalies: Tablets skipped as inconsistent
        tablets_evaluated: Tablets looked at
        conditions: Tablet count per most urgent condition
        duration_ms: Run duration
    """
    run_id: int
    skipped: bool = False
    adds: int = 0
    removals: int = 0
    stepdowns: int = 0
    failed: int = 0
    deferred: int = 0
    suppressed: int = 0
    anomalies: int = 0
    tablets_evaluated: int = 0
    conditions: Dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def dispatched(self) -> int:
        return self.adds + self.removals + self.stepdowns

    def to_dict(self) -> dict:
        return {**asdict(self), "dispatched": self.dispatched}


class _Budget:
    """Remaining admissions per action kind for one run."""

    def __init__(self, snapshot: ClusterLoadSnapshot, options: BalancerOptions):
        pending = snapshot.pending
        self.adds = max(0, options.max_concurrent_adds - pending.count(PendingTaskKind.ADD))
        self.removals = max(0, options.max_concurrent_removals - pending.count(PendingTaskKind.REMOVE))
        self.leader_moves = max(
            0, options.max_concurrent_leader_moves - pending.count(PendingTaskKind.STEPDOWN)
        )

    def _slot(self, action: CandidateAction) -> Optional[str]:
        if action.kind == PendingTaskKind.ADD:
            return "adds"
        if action.kind == PendingTaskKind.REMOVE:
            return "removals"
        if action.condition == TabletCondition.LEADER_IMBALANCED:
            return "leader_moves"
        return None

    def available(self, action: CandidateAction) -> bool:
        slot = self._slot(action)
        return slot is None or getattr(self, slot) > 0

    def consume(self, action: CandidateAction) -> None:
        slot = self._slot(action)
        if slot is not None:
            setattr(self, slot, getattr(self, slot) - 1)


class ClusterBalancer:
    """
    Replica placement balancer.

    Responsibilities:
    - Drain blacklisted servers
    - Keep every tablet at its replication factor and placement
    - Keep leaders in affinity zones
    - Optionally even out replica and leader load
    """

    def __init__(
        self,
        provider: ClusterStateProvider,
        dispatcher: ActionDispatcher,
        options: Optional[BalancerOptions] = None,
        monitor: Optional[BalancerMonitor] = None,
    ):
        """
        Initialize balancer.

        Args:
            provider: Cluster state provider
            dispatcher: Action dispatcher
            options: Balancer options
            monitor: Run history sink
        """
        self.provider = provider
        self.dispatcher = dispatcher
        self.options = options or BalancerOptions()
        self.monitor = monitor or BalancerMonitor()
        self.tracker = LoadStateTracker(provider)

        self.phase = RunPhase.IDLE
        self._run_lock = asyncio.Lock()
        self._run_ids = itertools.count(1)

        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

        logger.info(
            "ClusterBalancer initialized",
            max_concurrent_adds=self.options.max_concurrent_adds,
            max_concurrent_removals=self.options.max_concurrent_removals,
            allow_limit_starting_tablets=self.options.allow_limit_starting_tablets,
            allow_limit_over_replicated_tablets=self.options.allow_limit_over_replicated_tablets,
        )

    # Background loop

    async def start(self) -> None:
        """Start running periodically."""
        if self._running:
            return

        self._running = True
        self._loop_task = asyncio.create_task(self._balance_loop())

        logger.info("ClusterBalancer started", interval_ms=self.options.interval_ms)

    async def stop(self) -> None:
        """Stop the periodic loop; an active run finishes first."""
        self._running = False

        if self._loop_task:
            async with self._run_lock:
                self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        logger.info("ClusterBalancer stopped")

    def is_running(self) -> bool:
        return self._running

    def is_run_active(self) -> bool:
        return self._run_lock.locked()

    async def _balance_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.options.interval_ms / 1000)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in balancer loop", error=str(e))
                await asyncio.sleep(self.options.interval_ms / 1000)

    # One run

    async def run_once(self) -> RunSummary:
        """
        Run one balancing pass.

        Returns:
            Run summary; a pass requested while another is active returns
            immediately with skipped=True
        """
        run_id = next(self._run_ids)

        if self._run_lock.locked():
            logger.debug("Balancer run already active, skipping", run_id=run_id)
            summary = RunSummary(run_id=run_id, skipped=True)
            self.monitor.record(summary)
            return summary

        async with self._run_lock:
            bind_run_context(run_id)
            try:
                summary = await self._run(run_id)
            finally:
                clear_run_context()

        self.monitor.record(summary)
        return summary

    async def _run(self, run_id: int) -> RunSummary:
        start_time = time.time()
        summary = RunSummary(run_id=run_id)

        self.phase = RunPhase.START

        self.phase = RunPhase.SNAPSHOT
        snapshot = self.tracker.build()

        if not snapshot.servers:
            logger.info("No live servers, nothing to balance")
            return self._finish(summary, start_time)

        evaluator = PlacementEvaluator(snapshot, self.options)

        self.phase = RunPhase.ITERATE
        evaluations = self._evaluate_all(evaluator, snapshot, summary)

        self.phase = RunPhase.SELECT
        ordered = self._order(evaluator, evaluations)

        self.phase = RunPhase.DISPATCH
        await self._admit_and_dispatch(evaluator, snapshot, ordered, summary)

        self._finish(summary, start_time)

        logger.info(
            "Balancer run complete",
            adds=summary.adds,
            removals=summary.removals,
            stepdowns=summary.stepdowns,
            failed=summary.failed,
            deferred=summary.deferred,
            anomalies=summary.anomalies,
            duration_ms=summary.duration_ms,
        )

        return summary

    def _finish(self, summary: RunSummary, start_time: float) -> RunSummary:
        summary.duration_ms = int((time.time() - start_time) * 1000)
        self.phase = RunPhase.DONE
        return summary

    def _evaluate_all(
        self,
        evaluator: PlacementEvaluator,
        snapshot: ClusterLoadSnapshot,
        summary: RunSummary,
    ) -> List[TabletEvaluation]:
        """Classify every tablet, tables and tablets in ID order."""
        evaluations = []

        for table_id in snapshot.sorted_tables():
            for tablet in snapshot.sorted_tablets(table_id):
                summary.tablets_evaluated += 1

                try:
                    evaluation = evaluator.evaluate(tablet)
                except Exception as e:
                    summary.anomalies += 1
                    logger.warning(
                        "Tablet evaluation failed, skipping",
                        table_id=table_id,
                        tablet_id=tablet.tablet_id,
                        error=str(e),
                    )
                    continue

                if evaluation.is_anomaly:
                    summary.anomalies += 1
                    logger.warning(
                        "Skipping inconsistent tablet",
                        table_id=table_id,
                        tablet_id=tablet.tablet_id,
                        reason=evaluation.skip_reason,
                    )
                    continue

                condition = evaluation.condition.value
                summary.conditions[condition] = summary.conditions.get(condition, 0) + 1

                if evaluation.suppressed:
                    summary.suppressed += 1

                if evaluation.candidate is not None:
                    evaluations.append(evaluation)

        return evaluations

    def _order(
        self,
        evaluator: PlacementEvaluator,
        evaluations: List[TabletEvaluation],
    ) -> List[TabletEvaluation]:
        """Sort candidates most urgent first, then by table and tablet ID."""
        return sorted(
            evaluations,
            key=lambda e: (
                evaluator.rank(e.candidate.condition),
                e.tablet.table_id,
                e.tablet.tablet_id,
            ),
        )

    async def _admit_and_dispatch(
        self,
        evaluator: PlacementEvaluator,
        snapshot: ClusterLoadSnapshot,
        ordered: List[TabletEvaluation],
        summary: RunSummary,
    ) -> None:
        """
        Dispatch candidates in order while the budgets allow.

        Each tablet is re-evaluated first so its target reflects the actions
        accepted before it in this run. Only accepted actions use up budget;
        a failed dispatch leaves its slot to the next candidate.
        """
        budget = _Budget(snapshot, self.options)

        for evaluation in ordered:
            action = evaluator.evaluate(evaluation.tablet).candidate
            if action is None:
                continue

            if not budget.available(action):
                summary.deferred += 1
                continue

            result = await self.dispatcher.dispatch(action, snapshot.pending)
            if not result.accepted:
                summary.failed += 1
                continue

            budget.consume(action)
            self._record(snapshot, action)

            if action.kind == PendingTaskKind.ADD:
                summary.adds += 1
            elif action.kind == PendingTaskKind.REMOVE:
                summary.removals += 1
            else:
                summary.stepdowns += 1

    def _record(self, snapshot: ClusterLoadSnapshot, action: CandidateAction) -> None:
        if action.kind == PendingTaskKind.ADD:
            snapshot.record_add(action.tablet, action.server_id, action.creates_over_replication)
        elif action.kind == PendingTaskKind.REMOVE:
            snapshot.record_remove(action.tablet, action.server_id, action.new_leader)
        else:
            snapshot.record_leader_move(action.tablet, action.server_id)
