"""
Placement evaluation for a single tablet.

Classifies a tablet against its table's placement policy, the blacklist and
the leader affinity zones, and proposes at most one corrective action.
Evaluation is pure: it only reads the load snapshot.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from tabletbalancer.balancer.options import BalancerOptions
from tabletbalancer.balancer.state import ClusterLoadSnapshot
from tabletbalancer.cluster.metadata import (
    PendingTaskKind,
    PlacementBlock,
    PlacementPolicy,
    TabletMetadata,
    TabletState,
)


class TabletCondition(str, Enum):
    """Classification of a tablet."""

    BLACKLIST_VIOLATING = "blacklist_violating"
    PLACEMENT_VIOLATING = "placement_violating"
    UNDER_REPLICATED = "under_replicated"
    OVER_REPLICATED = "over_replicated"
    LEADER_MISPLACED = "leader_misplaced"
    LOAD_IMBALANCED = "load_imbalanced"
    LEADER_IMBALANCED = "leader_imbalanced"
    BALANCED = "balanced"


def condition_priority(placement_before_replication: bool = True) -> List[TabletCondition]:
    """
    Get conditions ordered most urgent first.

    Args:
        placement_before_replication: Rank placement violations above
            under-replication

    Returns:
        Ordered conditions, BALANCED last
    """
    placement_and_replication = [
        TabletCondition.PLACEMENT_VIOLATING,
        TabletCondition.UNDER_REPLICATED,
    ]
    if not placement_before_replication:
        placement_and_replication.reverse()

    return [
        TabletCondition.BLACKLIST_VIOLATING,
        *placement_and_replication,
        TabletCondition.OVER_REPLICATED,
        TabletCondition.LEADER_MISPLACED,
        TabletCondition.LOAD_IMBALANCED,
        TabletCondition.LEADER_IMBALANCED,
        TabletCondition.BALANCED,
    ]


@dataclass
class CandidateAction:
    """
    A proposed change to one tablet.

    Attributes:
        tablet: Tablet to change
        kind: Add, remove or stepdown
        server_id: Replica to add or remove, or the leader to move to
        condition: Condition the action addresses
        new_leader: Leader to hand over to when removing the leader
        creates_over_replication: The add deliberately exceeds the
            replication factor (load move)
    """
    tablet: TabletMetadata
    kind: PendingTaskKind
    server_id: str
    condition: TabletCondition
    new_leader: Optional[str] = None
    creates_over_replication: bool = False

    @property
    def tablet_id(self) -> str:
        return self.tablet.tablet_id

    @property
    def table_id(self) -> str:
        return self.tablet.table_id

    @property
    def is_add(self) -> bool:
        return self.kind == PendingTaskKind.ADD

    @property
    def should_remove(self) -> bool:
        return self.kind == PendingTaskKind.REMOVE

    @property
    def should_remove_leader(self) -> bool:
        return self.should_remove and self.tablet.is_leader(self.server_id)

    @property
    def target_server(self) -> str:
        """Server the replica change is addressed to."""
        if self.kind == PendingTaskKind.STEPDOWN:
            return self.tablet.leader
        return self.server_id

    @property
    def leader_target(self) -> Optional[str]:
        """Server that ends up leading, if the action moves leadership."""
        if self.kind == PendingTaskKind.STEPDOWN:
            return self.server_id
        return self.new_leader


@dataclass
class TabletEvaluation:
    """
    Result of evaluating one tablet.

    Attributes:
        tablet: Evaluated tablet
        conditions: Conditions present, most urgent first
        candidate: Proposed action, if any
        suppressed: A pending task of the required kind blocked the action
        skip_reason: Set when the tablet is inconsistent and was skipped
    """
    tablet: TabletMetadata
    conditions: List[TabletCondition] = field(default_factory=list)
    candidate: Optional[CandidateAction] = None
    suppressed: bool = False
    skip_reason: Optional[str] = None

    @property
    def condition(self) -> TabletCondition:
        """Most urgent condition, BALANCED if none."""
        return self.conditions[0] if self.conditions else TabletCondition.BALANCED

    @property
    def is_anomaly(self) -> bool:
        return self.skip_reason is not None


class PlacementEvaluator:
    """
    Classifies tablets and proposes corrective actions.

    Add targets are the least-loaded eligible servers, ties broken by a
    server filling a missing placement block, then per-table load, then
    server ID. Removal sources prefer blacklisted replicas, then misplaced
    ones, then avoid the leader, then the most-loaded.
    """

    def __init__(self, snapshot: ClusterLoadSnapshot, options: BalancerOptions):
        """
        Initialize evaluator.

        Args:
            snapshot: Load snapshot for the run
            options: Balancer options
        """
        self.snapshot = snapshot
        self.options = options
        self.priority = condition_priority(options.placement_before_replication)

        self._handlers: Dict[TabletCondition, Callable[[TabletMetadata], Optional[CandidateAction]]] = {
            TabletCondition.BLACKLIST_VIOLATING: self._fix_blacklist,
            TabletCondition.PLACEMENT_VIOLATING: self._fix_placement,
            TabletCondition.UNDER_REPLICATED: self._fix_under_replication,
            TabletCondition.OVER_REPLICATED: self._fix_over_replication,
            TabletCondition.LEADER_MISPLACED: self._fix_leader_placement,
            TabletCondition.LOAD_IMBALANCED: self._load_move,
            TabletCondition.LEADER_IMBALANCED: self._leader_move,
        }

    def rank(self, condition: TabletCondition) -> int:
        """Get a condition's position in the priority order."""
        return self.priority.index(condition)

    def evaluate(self, tablet: TabletMetadata) -> TabletEvaluation:
        """
        Evaluate one tablet.

        The most urgent condition with a feasible action supplies the
        candidate. A pending task of that action's kind suppresses it and
        stops evaluation, so lower-priority actions never jump ahead.

        Args:
            tablet: Tablet to evaluate

        Returns:
            Tablet evaluation
        """
        skip_reason = self.check_consistency(tablet)
        if skip_reason:
            return TabletEvaluation(tablet=tablet, skip_reason=skip_reason)

        evaluation = TabletEvaluation(tablet=tablet, conditions=self.classify(tablet))

        for condition in evaluation.conditions:
            candidate = self._handlers[condition](tablet)
            if candidate is None:
                continue

            if self.snapshot.pending.has(tablet.tablet_id, candidate.kind):
                evaluation.suppressed = True
            else:
                evaluation.candidate = candidate
            break

        return evaluation

    def check_consistency(self, tablet: TabletMetadata) -> Optional[str]:
        """
        Check that a tablet can be reasoned about.

        Returns:
            Reason to skip the tablet, or None
        """
        if tablet.table_id not in self.snapshot.tables:
            return "unknown table"

        if tablet.leader is not None and not tablet.is_replica(tablet.leader):
            return "leader is not a replica"

        if not self.snapshot.live_replicas(tablet):
            return "no live replicas"

        return None

    def classify(self, tablet: TabletMetadata) -> List[TabletCondition]:
        """
        Get every condition the tablet exhibits, most urgent first.

        Load and leader balancing are only considered for tablets with no
        other condition.
        """
        policy = self.snapshot.policy_for(tablet.table_id)
        live = self.snapshot.live_replicas(tablet)
        found: Set[TabletCondition] = set()

        if any(self.snapshot.is_blacklisted(r) for r in live):
            found.add(TabletCondition.BLACKLIST_VIOLATING)

        if self._missing_blocks(policy, live) or self._misplaced_replicas(policy, live):
            found.add(TabletCondition.PLACEMENT_VIOLATING)

        if len(live) < policy.num_replicas:
            found.add(TabletCondition.UNDER_REPLICATED)
        elif len(live) > policy.num_replicas:
            found.add(TabletCondition.OVER_REPLICATED)

        if self._leader_misplaced(tablet, live):
            found.add(TabletCondition.LEADER_MISPLACED)

        if not found:
            if self._load_move(tablet) is not None:
                found.add(TabletCondition.LOAD_IMBALANCED)
            if self._leader_move(tablet) is not None:
                found.add(TabletCondition.LEADER_IMBALANCED)

        return [c for c in self.priority if c in found]

    # Placement blocks

    def _block_count(self, block: PlacementBlock, replicas: Set[str]) -> int:
        return sum(1 for r in replicas if block.contains(self.snapshot.locality(r)))

    def _missing_blocks(self, policy: PlacementPolicy, live: Set[str]) -> List[PlacementBlock]:
        return [
            block for block in policy.placement_blocks
            if self._block_count(block, live) < block.min_num_replicas
        ]

    def _misplaced_replicas(self, policy: PlacementPolicy, live: Set[str]) -> Set[str]:
        """Replicas outside every allowed block or inside a block over its max."""
        misplaced = {r for r in live if not policy.allows(self.snapshot.locality(r))}

        for block in policy.placement_blocks:
            if block.max_num_replicas is None:
                continue
            if self._block_count(block, live) > block.max_num_replicas:
                misplaced |= {r for r in live if block.contains(self.snapshot.locality(r))}

        return misplaced

    def _breaks_block_minimum(self, policy: PlacementPolicy, live: Set[str], server_id: str) -> bool:
        locality = self.snapshot.locality(server_id)
        return any(
            self._block_count(block, live) - 1 < block.min_num_replicas
            for block in policy.blocks_for(locality)
        )

    # Server selection

    def _add_targets(self, tablet: TabletMetadata, policy: PlacementPolicy) -> List[str]:
        live = self.snapshot.live_replicas(tablet)
        full = [
            block for block in policy.placement_blocks
            if block.max_num_replicas is not None
            and self._block_count(block, live) >= block.max_num_replicas
        ]
        return [
            server_id for server_id in self.snapshot.servers
            if not self.snapshot.is_blacklisted(server_id)
            and not tablet.is_replica(server_id)
            and policy.allows(self.snapshot.locality(server_id))
            and not any(block.contains(self.snapshot.locality(server_id)) for block in full)
        ]

    def _pick_add_target(
        self,
        tablet: TabletMetadata,
        missing: List[PlacementBlock],
        require_block: bool = False,
    ) -> Optional[str]:
        policy = self.snapshot.policy_for(tablet.table_id)
        targets = self._add_targets(tablet, policy)

        def fills_missing(server_id: str) -> bool:
            locality = self.snapshot.locality(server_id)
            return any(block.contains(locality) for block in missing)

        if require_block:
            targets = [s for s in targets if fills_missing(s)]

        if not targets:
            return None

        return min(
            targets,
            key=lambda s: (
                self.snapshot.replica_load(s),
                0 if fills_missing(s) else 1,
                self.snapshot.table_load(tablet.table_id, s),
                s,
            ),
        )

    def _pick_removal(self, tablet: TabletMetadata, pool: Set[str]) -> Optional[str]:
        if not pool:
            return None

        policy = self.snapshot.policy_for(tablet.table_id)
        live = self.snapshot.live_replicas(tablet)
        misplaced = self._misplaced_replicas(policy, live)

        return min(
            pool,
            key=lambda s: (
                0 if self.snapshot.is_blacklisted(s) else 1,
                0 if s in misplaced else 1,
                1 if tablet.is_leader(s) else 0,
                1 if self._breaks_block_minimum(policy, live, s) else 0,
                -self.snapshot.replica_load(s),
                s,
            ),
        )

    def _pick_leader(self, tablet: TabletMetadata, exclude: Set[str]) -> Optional[str]:
        """Pick a new leader, preferring affinity zones and fewer leaders."""
        eligible = [
            r for r in self.snapshot.live_replicas(tablet)
            if r not in exclude and self.snapshot.can_lead(r)
        ]
        in_zone = [r for r in eligible if self.snapshot.in_affinity_zone(r)]
        if in_zone:
            eligible = in_zone

        if not eligible:
            return None

        return min(eligible, key=lambda r: (self.snapshot.leader_load(r), r))

    def _leader_misplaced(self, tablet: TabletMetadata, live: Set[str]) -> bool:
        leader = tablet.leader
        if leader is None or leader not in live:
            return False

        others = [r for r in live if r != leader and self.snapshot.can_lead(r)]
        if not others:
            return False

        if leader in self.snapshot.leader_blacklist:
            return True

        if self.snapshot.affinity_zones and not self.snapshot.in_affinity_zone(leader):
            return any(self.snapshot.in_affinity_zone(r) for r in others)

        return False

    def _add(self, tablet: TabletMetadata, condition: TabletCondition, **kwargs) -> Optional[CandidateAction]:
        if self.options.allow_limit_starting_tablets and tablet.state == TabletState.STARTING:
            return None

        policy = self.snapshot.policy_for(tablet.table_id)
        missing = self._missing_blocks(policy, self.snapshot.live_replicas(tablet))
        target = self._pick_add_target(tablet, missing, **kwargs)
        if target is None:
            return None

        return CandidateAction(
            tablet=tablet,
            kind=PendingTaskKind.ADD,
            server_id=target,
            condition=condition,
        )

    def _remove(self, tablet: TabletMetadata, condition: TabletCondition, pool: Set[str]) -> Optional[CandidateAction]:
        source = self._pick_removal(tablet, pool)
        if source is None:
            return None

        new_leader = None
        if tablet.is_leader(source):
            new_leader = self._pick_leader(tablet, exclude={source})

        return CandidateAction(
            tablet=tablet,
            kind=PendingTaskKind.REMOVE,
            server_id=source,
            condition=condition,
            new_leader=new_leader,
        )

    # Condition handlers

    def _fix_blacklist(self, tablet: TabletMetadata) -> Optional[CandidateAction]:
        live = self.snapshot.live_replicas(tablet)
        blacklisted = {r for r in live if self.snapshot.is_blacklisted(r)}

        # Never drop the last copy that survives decommission.
        if blacklisted == live:
            return self._add(tablet, TabletCondition.BLACKLIST_VIOLATING)

        return self._remove(tablet, TabletCondition.BLACKLIST_VIOLATING, blacklisted)

    def _fix_placement(self, tablet: TabletMetadata) -> Optional[CandidateAction]:
        policy = self.snapshot.policy_for(tablet.table_id)
        live = self.snapshot.live_replicas(tablet)

        if self._missing_blocks(policy, live):
            candidate = self._add(tablet, TabletCondition.PLACEMENT_VIOLATING, require_block=True)
            if candidate is not None:
                return candidate

        misplaced = self._misplaced_replicas(policy, live)
        if not misplaced:
            return None

        # A misplaced copy is only dropped once a replacement is in place.
        if len(live) <= policy.num_replicas:
            return self._add(tablet, TabletCondition.PLACEMENT_VIOLATING)

        if len(live) <= 1:
            return None

        return self._remove(tablet, TabletCondition.PLACEMENT_VIOLATING, misplaced)

    def _fix_under_replication(self, tablet: TabletMetadata) -> Optional[CandidateAction]:
        return self._add(tablet, TabletCondition.UNDER_REPLICATED)

    def _fix_over_replication(self, tablet: TabletMetadata) -> Optional[CandidateAction]:
        live = self.snapshot.live_replicas(tablet)
        return self._remove(tablet, TabletCondition.OVER_REPLICATED, live)

    def _fix_leader_placement(self, tablet: TabletMetadata) -> Optional[CandidateAction]:
        target = self._pick_leader(tablet, exclude={tablet.leader})
        if target is None:
            return None

        if (
            self.snapshot.affinity_zones
            and not self.snapshot.in_affinity_zone(target)
            and tablet.leader not in self.snapshot.leader_blacklist
        ):
            return None

        return CandidateAction(
            tablet=tablet,
            kind=PendingTaskKind.STEPDOWN,
            server_id=target,
            condition=TabletCondition.LEADER_MISPLACED,
        )

    def _balancing_allowed(self, tablet: TabletMetadata) -> bool:
        if self.snapshot.pending.kinds(tablet.tablet_id):
            return False
        if (
            self.options.allow_limit_over_replicated_tablets
            and tablet.tablet_id in self.snapshot.over_replicated
        ):
            return False
        return True

    def _load_move(self, tablet: TabletMetadata) -> Optional[CandidateAction]:
        """Add a replica on an underloaded server so the busiest one can shed it."""
        if not self.options.balance_replica_load or not self._balancing_allowed(tablet):
            return None

        if self.options.allow_limit_starting_tablets and tablet.state == TabletState.STARTING:
            return None

        if (
            self.options.allow_limit_over_replicated_tablets
            and len(self.snapshot.over_replicated) >= self.options.max_over_replicated_tablets
        ):
            return None

        policy = self.snapshot.policy_for(tablet.table_id)
        sources = [
            r for r in self.snapshot.live_replicas(tablet)
            if not tablet.is_leader(r) and not self.snapshot.is_blacklisted(r)
        ]
        if not sources:
            return None

        source = max(sources, key=lambda r: (self.snapshot.replica_load(r), r))
        source_blocks = policy.blocks_for(self.snapshot.locality(source))

        targets = [
            s for s in self._add_targets(tablet, policy)
            if not policy.placement_blocks
            or any(b.contains(self.snapshot.locality(s)) for b in source_blocks)
        ]
        if not targets:
            return None

        target = min(targets, key=lambda s: (self.snapshot.replica_load(s), s))
        gap = self.snapshot.replica_load(source) - self.snapshot.replica_load(target)
        if gap < self.options.min_load_variance:
            return None

        return CandidateAction(
            tablet=tablet,
            kind=PendingTaskKind.ADD,
            server_id=target,
            condition=TabletCondition.LOAD_IMBALANCED,
            creates_over_replication=True,
        )

    def _leader_move(self, tablet: TabletMetadata) -> Optional[CandidateAction]:
        """Move a leader from a server leading notably more tablets."""
        if not self.options.balance_leader_load or not self._balancing_allowed(tablet):
            return None

        leader = tablet.leader
        if leader is None or not self.snapshot.is_live(leader):
            return None

        target = self._pick_leader(tablet, exclude={leader})
        if target is None:
            return None

        if self.snapshot.in_affinity_zone(leader) and not self.snapshot.in_affinity_zone(target):
            return None

        gap = self.snapshot.leader_load(leader) - self.snapshot.leader_load(target)
        if gap < self.options.min_leader_variance:
            return None

        return CandidateAction(
            tablet=tablet,
            kind=PendingTaskKind.STEPDOWN,
            server_id=target,
            condition=TabletCondition.LEADER_IMBALANCED,
        )
