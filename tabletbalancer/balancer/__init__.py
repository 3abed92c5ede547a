"""
Replica placement balancer.

Observes cluster state, decides corrective replica and leader moves, and
dispatches them under global concurrency budgets.
"""

from tabletbalancer.balancer.balancer import ClusterBalancer, RunPhase, RunSummary
from tabletbalancer.balancer.dispatcher import (
    ActionDispatcher,
    CatalogDispatcher,
    DispatchResult,
    RecordingDispatcher,
    ReplicaChangeRequest,
)
from tabletbalancer.balancer.monitor import BalancerMonitor
from tabletbalancer.balancer.options import BalancerOptions
from tabletbalancer.balancer.placement import (
    CandidateAction,
    PlacementEvaluator,
    TabletCondition,
    TabletEvaluation,
    condition_priority,
)
from tabletbalancer.balancer.state import (
    ClusterLoadSnapshot,
    LoadStateTracker,
    PendingTaskMap,
)

__all__ = [
    # Run loop
    "ClusterBalancer",
    "RunPhase",
    "RunSummary",
    "BalancerOptions",
    "BalancerMonitor",
    # State
    "ClusterLoadSnapshot",
    "LoadStateTracker",
    "PendingTaskMap",
    # Evaluation
    "CandidateAction",
    "PlacementEvaluator",
    "TabletCondition",
    "TabletEvaluation",
    "condition_priority",
    # Dispatch
    "ActionDispatcher",
    "CatalogDispatcher",
    "DispatchResult",
    "RecordingDispatcher",
    "ReplicaChangeRequest",
]
