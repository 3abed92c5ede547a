"""Tests for placement evaluation."""

from tabletbalancer.balancer.options import BalancerOptions
from tabletbalancer.balancer.placement import (
    PlacementEvaluator,
    TabletCondition,
    condition_priority,
)
from tabletbalancer.balancer.state import LoadStateTracker
from tabletbalancer.cluster.metadata import (
    Locality,
    PendingTaskKind,
    PlacementBlock,
    PlacementPolicy,
    TabletState,
)
from tabletbalancer.cluster.provider import InMemoryClusterState


def make_state(servers=("s1", "s2", "s3", "s4"), num_replicas=3, locality="") -> InMemoryClusterState:
    state = InMemoryClusterState(placement=PlacementPolicy(num_replicas=num_replicas))
    for server_id in servers:
        state.add_server(server_id, locality)
    state.add_table("table-1")
    return state


def evaluate(state, tablet_id, **options):
    snapshot = LoadStateTracker(state).build()
    evaluator = PlacementEvaluator(snapshot, BalancerOptions(**options))
    return evaluator.evaluate(snapshot.find_tablet(tablet_id))


class TestConditionPriority:
    """Test condition ordering."""
    
    def test_default_order(self):
        """Test the default most-urgent-first order."""
        assert condition_priority()[:5] == [
            TabletCondition.BLACKLIST_VIOLATING,
            TabletCondition.PLACEMENT_VIOLATING,
            TabletCondition.UNDER_REPLICATED,
            TabletCondition.OVER_REPLICATED,
            TabletCondition.LEADER_MISPLACED,
        ]
        assert condition_priority()[-1] == TabletCondition.BALANCED
    
    def test_replication_before_placement(self):
        """Test the placement/replication order can be swapped."""
        order = condition_priority(placement_before_replication=False)
        
        assert order.index(TabletCondition.UNDER_REPLICATED) < order.index(
            TabletCondition.PLACEMENT_VIOLATING
        )
        assert order[0] == TabletCondition.BLACKLIST_VIOLATING


class TestReplicationFactor:
    """Test under- and over-replication."""
    
    def test_under_replicated_adds_to_least_loaded(self):
        """Test the add goes to the least-loaded server without a replica."""
        state = make_state()
        state.add_tablet("A", "table-1", {"s1", "s2"}, leader="s1")
        state.add_tablet("B", "table-1", {"s1", "s2", "s3"}, leader="s2")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.UNDER_REPLICATED
        assert evaluation.candidate.kind == PendingTaskKind.ADD
        assert evaluation.candidate.server_id == "s4"
    
    def test_balanced_tablet_has_no_candidate(self):
        """Test a healthy tablet is balanced."""
        state = make_state()
        state.add_tablet("A", "table-1", {"s1", "s2"}, leader="s1")
        state.add_tablet("B", "table-1", {"s1", "s2", "s3"}, leader="s2")
        
        evaluation = evaluate(state, "B")
        
        assert evaluation.condition == TabletCondition.BALANCED
        assert evaluation.candidate is None
    
    def test_add_ties_broken_by_server_id(self):
        """Test equal load picks the lowest server ID."""
        state = make_state(servers=("s1", "s2", "s3", "s4", "s5"))
        state.add_tablet("A", "table-1", {"s1", "s2"}, leader="s1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.candidate.server_id == "s3"
    
    def test_add_uses_cluster_wide_load(self):
        """Test load on other tables steers the add."""
        state = make_state()
        state.add_table("table-2")
        state.add_tablet("A", "table-1", {"s1", "s2"}, leader="s1")
        state.add_tablet("X", "table-2", {"s3"}, leader="s3")
        state.table_map["table-2"].placement = PlacementPolicy(num_replicas=1)
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.candidate.server_id == "s4"
    
    def test_no_add_target(self):
        """Test under-replication with no spare server yields nothing."""
        state = make_state(servers=("s1", "s2"))
        state.add_tablet("A", "table-1", {"s1", "s2"}, leader="s1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.UNDER_REPLICATED
        assert evaluation.candidate is None
    
    def test_dead_replica_counts_as_missing(self):
        """Test a replica on a vanished server is replaced."""
        state = make_state()
        state.add_tablet("A", "table-1", {"s1", "s2", "gone"}, leader="s1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.UNDER_REPLICATED
        assert evaluation.candidate.server_id == "s3"
    
    def test_over_replicated_removes_most_loaded_non_leader(self):
        """Test removal avoids the leader and picks the busiest replica."""
        state = make_state()
        state.add_table("table-2", placement=PlacementPolicy(num_replicas=2))
        state.add_tablet("A", "table-1", {"s1", "s2", "s3", "s4"}, leader="s1")
        state.add_tablet("X", "table-2", {"s1", "s3"}, leader="s1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.OVER_REPLICATED
        assert evaluation.candidate.kind == PendingTaskKind.REMOVE
        assert evaluation.candidate.server_id == "s3"
        assert not evaluation.candidate.should_remove_leader
    
    def test_starting_tablet_not_given_adds(self):
        """Test starting tablets are left alone when limiting is on."""
        state = make_state()
        state.add_tablet("A", "table-1", {"s1"}, leader="s1", state=TabletState.STARTING)
        
        limited = evaluate(state, "A", allow_limit_starting_tablets=True)
        unlimited = evaluate(state, "A", allow_limit_starting_tablets=False)
        
        assert limited.candidate is None
        assert unlimited.candidate.kind == PendingTaskKind.ADD


class TestBlacklist:
    """Test decommissioned servers."""
    
    def test_remove_from_blacklisted(self):
        """Test the blacklisted replica is removed even if it leaves a gap."""
        state = make_state()
        state.add_tablet("C", "table-1", {"s1", "s2", "s3"}, leader="s2")
        state.blacklisted = {"s1"}
        
        evaluation = evaluate(state, "C")
        
        assert evaluation.condition == TabletCondition.BLACKLIST_VIOLATING
        assert evaluation.candidate.kind == PendingTaskKind.REMOVE
        assert evaluation.candidate.server_id == "s1"
    
    def test_blacklist_outranks_under_replication(self):
        """Test blacklist removal comes before the missing replica."""
        state = make_state()
        state.add_tablet("C", "table-1", {"s1", "s2"}, leader="s2")
        state.blacklisted = {"s1"}
        
        evaluation = evaluate(state, "C")
        
        assert evaluation.conditions[:2] == [
            TabletCondition.BLACKLIST_VIOLATING,
            TabletCondition.UNDER_REPLICATED,
        ]
        assert evaluation.candidate.kind == PendingTaskKind.REMOVE
        assert evaluation.candidate.server_id == "s1"
    
    def test_blacklisted_leader_hands_over(self):
        """Test removing a blacklisted leader names a new leader."""
        state = make_state()
        state.add_table("table-2")
        state.add_tablet("C", "table-1", {"s1", "s2", "s3"}, leader="s1")
        state.add_tablet("X", "table-2", {"s2", "s3", "s4"}, leader="s2")
        state.blacklisted = {"s1"}
        
        evaluation = evaluate(state, "C")
        
        assert evaluation.candidate.server_id == "s1"
        assert evaluation.candidate.should_remove_leader
        assert evaluation.candidate.new_leader == "s3"
    
    def test_only_blacklisted_copies_adds_first(self):
        """Test the last surviving copy is not removed before an add."""
        state = make_state(num_replicas=1)
        state.add_tablet("C", "table-1", {"s1"}, leader="s1")
        state.blacklisted = {"s1"}
        
        evaluation = evaluate(state, "C")
        
        assert evaluation.condition == TabletCondition.BLACKLIST_VIOLATING
        assert evaluation.candidate.kind == PendingTaskKind.ADD
        assert evaluation.candidate.server_id == "s2"
    
    def test_blacklisted_server_never_add_target(self):
        """Test adds skip blacklisted servers."""
        state = make_state()
        state.add_tablet("A", "table-1", {"s1", "s2"}, leader="s1")
        state.blacklisted = {"s4"}
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.candidate.server_id == "s3"


class TestPlacementBlocks:
    """Test placement block constraints."""
    
    def make_zoned_state(self):
        state = InMemoryClusterState(placement=PlacementPolicy(
            num_replicas=3,
            placement_blocks=[
                PlacementBlock(Locality("aws", "us-west"), min_num_replicas=2),
                PlacementBlock(Locality("aws", "us-east"), min_num_replicas=1),
            ],
        ))
        state.add_server("w1", "aws.us-west.a")
        state.add_server("w2", "aws.us-west.b")
        state.add_server("w3", "aws.us-west.c")
        state.add_server("e1", "aws.us-east.a")
        state.add_server("x1", "aws.eu-west.a")
        state.add_table("table-1")
        state.add_table("table-2", placement=PlacementPolicy(num_replicas=1))
        # Extra load on e1 so it is not the least-loaded server.
        state.add_tablet("X", "table-2", {"e1"}, leader="e1")
        return state
    
    def test_missing_block_gets_add(self):
        """Test an add fills the missing block even if busier."""
        state = self.make_zoned_state()
        state.add_tablet("A", "table-1", {"w1", "w2"}, leader="w1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.PLACEMENT_VIOLATING
        assert evaluation.candidate.kind == PendingTaskKind.ADD
        assert evaluation.candidate.server_id == "e1"
    
    def test_replication_first_ignores_block(self):
        """Test swapped priority adds to the least-loaded server."""
        state = self.make_zoned_state()
        state.add_tablet("A", "table-1", {"w1", "w2"}, leader="w1")
        
        evaluation = evaluate(state, "A", placement_before_replication=False)
        
        assert evaluation.condition == TabletCondition.UNDER_REPLICATED
        assert evaluation.candidate.server_id == "w3"
    
    def test_replica_outside_blocks_removed(self):
        """Test a replica in a disallowed locality is removed."""
        state = self.make_zoned_state()
        state.add_tablet("A", "table-1", {"w1", "w2", "e1", "x1"}, leader="w1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.PLACEMENT_VIOLATING
        assert evaluation.candidate.kind == PendingTaskKind.REMOVE
        assert evaluation.candidate.server_id == "x1"
    
    def test_disallowed_server_never_add_target(self):
        """Test adds stay inside allowed blocks."""
        state = self.make_zoned_state()
        state.add_tablet("A", "table-1", {"w1", "e1"}, leader="w1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.candidate.server_id in {"w2", "w3"}
    
    def test_over_replication_keeps_block_minimum(self):
        """Test removal does not empty a block."""
        state = self.make_zoned_state()
        state.add_tablet("A", "table-1", {"w1", "w2", "w3", "e1"}, leader="w1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.OVER_REPLICATED
        assert evaluation.candidate.server_id in {"w2", "w3"}
    
    def make_capped_state(self):
        state = InMemoryClusterState(placement=PlacementPolicy(
            num_replicas=3,
            placement_blocks=[
                PlacementBlock(Locality("aws", "us-west"), min_num_replicas=1, max_num_replicas=1),
                PlacementBlock(Locality("aws", "us-east"), min_num_replicas=1),
            ],
        ))
        state.add_server("w1", "aws.us-west.a")
        state.add_server("w2", "aws.us-west.b")
        state.add_server("w3", "aws.us-west.c")
        state.add_server("e1", "aws.us-east.a")
        state.add_server("e2", "aws.us-east.b")
        state.add_table("table-1")
        return state
    
    def test_block_maximum_replaced_first(self):
        """Test a block above its maximum gets a copy elsewhere first."""
        state = self.make_capped_state()
        state.add_tablet("A", "table-1", {"w1", "w2", "e1"}, leader="e1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.PLACEMENT_VIOLATING
        assert evaluation.candidate.kind == PendingTaskKind.ADD
        assert evaluation.candidate.server_id == "e2"
    
    def test_block_maximum_trimmed(self):
        """Test an over-replicated tablet sheds a copy from the full block."""
        state = self.make_capped_state()
        state.add_tablet("A", "table-1", {"w1", "w2", "e1", "e2"}, leader="e1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.PLACEMENT_VIOLATING
        assert evaluation.candidate.kind == PendingTaskKind.REMOVE
        assert evaluation.candidate.server_id in {"w1", "w2"}
    
    def test_full_block_never_add_target(self):
        """Test adds skip a block already at its maximum."""
        state = self.make_capped_state()
        state.add_tablet("A", "table-1", {"w1", "e1"}, leader="e1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.UNDER_REPLICATED
        assert evaluation.candidate.server_id == "e2"
    
    def make_west_only_state(self, west_servers=("w1", "w2", "w3")):
        state = InMemoryClusterState(placement=PlacementPolicy(
            num_replicas=3,
            placement_blocks=[PlacementBlock(Locality("aws", "us-west"), min_num_replicas=1)],
        ))
        for index, server_id in enumerate(west_servers):
            state.add_server(server_id, f"aws.us-west.{index}")
        state.add_server("e1", "aws.us-east.a")
        state.add_table("table-1")
        return state
    
    def test_misplaced_replica_kept_while_under_replicated(self):
        """Test a misplaced copy is replaced before it is removed."""
        state = self.make_west_only_state()
        state.add_tablet("A", "table-1", {"w1", "e1"}, leader="w1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.conditions == [
            TabletCondition.PLACEMENT_VIOLATING,
            TabletCondition.UNDER_REPLICATED,
        ]
        assert evaluation.candidate.kind == PendingTaskKind.ADD
        assert evaluation.candidate.server_id == "w2"
    
    def test_misplaced_replica_kept_at_replication_factor(self):
        """Test a tablet at its replication factor adds before removing."""
        state = self.make_west_only_state()
        state.add_tablet("A", "table-1", {"w1", "w2", "e1"}, leader="w1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.candidate.kind == PendingTaskKind.ADD
        assert evaluation.candidate.server_id == "w3"
    
    def test_misplaced_replica_without_replacement(self):
        """Test nothing is removed when no allowed server can take a copy."""
        state = self.make_west_only_state(west_servers=("w1",))
        state.add_tablet("A", "table-1", {"w1", "e1"}, leader="w1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.PLACEMENT_VIOLATING
        assert evaluation.candidate is None


class TestLeaderPlacement:
    """Test leader affinity."""
    
    def make_affinity_state(self):
        state = make_state(servers=())
        state.add_server("e1", "aws.us-east.a")
        state.add_server("w1", "aws.us-west.a")
        state.add_server("w2", "aws.us-west.b")
        state.zones = {Locality("aws", "us-west")}
        return state
    
    def test_leader_moves_into_affinity_zone(self):
        """Test stepdown to the in-zone replica with fewest leaders."""
        state = self.make_affinity_state()
        state.add_tablet("A", "table-1", {"e1", "w1", "w2"}, leader="e1")
        state.add_tablet("B", "table-1", {"e1", "w1", "w2"}, leader="w1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.LEADER_MISPLACED
        assert evaluation.candidate.kind == PendingTaskKind.STEPDOWN
        assert evaluation.candidate.server_id == "w2"
        assert evaluation.candidate.target_server == "e1"
    
    def test_no_reachable_affinity_replica(self):
        """Test a leader stays put when no replica is in a zone."""
        state = self.make_affinity_state()
        state.add_server("e2", "aws.us-east.b")
        state.add_server("e3", "aws.us-east.c")
        state.add_tablet("A", "table-1", {"e1", "e2", "e3"}, leader="e1")
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.BALANCED
    
    def test_leader_blacklisted_replica_not_leader_target(self):
        """Test stepdown skips replicas that may not lead."""
        state = self.make_affinity_state()
        state.add_tablet("A", "table-1", {"e1", "w1", "w2"}, leader="e1")
        state.add_tablet("B", "table-1", {"e1", "w1", "w2"}, leader="w1")
        state.leader_blacklisted = {"w2"}
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.candidate.kind == PendingTaskKind.STEPDOWN
        assert evaluation.candidate.server_id == "w1"
    
    def test_leader_blacklist(self):
        """Test a leader on a leader-blacklisted server moves."""
        state = make_state()
        state.add_tablet("A", "table-1", {"s1", "s2", "s3"}, leader="s1")
        state.leader_blacklisted = {"s1"}
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.condition == TabletCondition.LEADER_MISPLACED
        assert evaluation.candidate.server_id == "s2"


class TestPendingSuppression:
    """Test pending tasks suppress duplicate candidates."""
    
    def test_pending_add_suppresses_add(self):
        """Test no second add while one is outstanding."""
        state = make_state()
        state.add_tablet("A", "table-1", {"s1"}, leader="s1")
        state.pending_add_tasks = {"A": "s2"}
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.candidate is None
        assert evaluation.suppressed
    
    def test_pending_add_does_not_unlock_stepdown(self):
        """Test a suppressed urgent action blocks lower priorities."""
        state = make_state(servers=())
        state.add_server("e1", "aws.us-east.a")
        state.add_server("w1", "aws.us-west.a")
        state.add_server("w2", "aws.us-west.b")
        state.zones = {Locality("aws", "us-west")}
        state.add_tablet("A", "table-1", {"e1", "w1"}, leader="e1")
        state.pending_add_tasks = {"A": "w2"}
        
        evaluation = evaluate(state, "A")
        
        assert TabletCondition.LEADER_MISPLACED in evaluation.conditions
        assert evaluation.candidate is None
    
    def test_other_kind_not_suppressed(self):
        """Test a pending stepdown does not block a removal."""
        state = make_state()
        state.add_tablet("C", "table-1", {"s1", "s2", "s3"}, leader="s2")
        state.blacklisted = {"s1"}
        state.pending_stepdown_tasks = {"C": "s3"}
        
        evaluation = evaluate(state, "C")
        
        assert evaluation.candidate.kind == PendingTaskKind.REMOVE


class TestConsistency:
    """Test inconsistent tablets are skipped."""
    
    def test_unknown_table(self):
        """Test tablet of an unknown table."""
        state = make_state()
        state.add_tablet("A", "missing", {"s1"})
        
        evaluation = evaluate(state, "A")
        
        assert evaluation.is_anomaly
        assert evaluation.skip_reason == "unknown table"
    
    def test_leader_not_a_replica(self):
        """Test leader outside the replica set."""
        state = make_state()
        state.add_tablet("A", "table-1", {"s1", "s2"}, leader="s3")
        
        assert evaluate(state, "A").skip_reason == "leader is not a replica"
    
    def test_no_live_replicas(self):
        """Test tablet whose replicas all vanished."""
        state = make_state()
        state.add_tablet("A", "table-1", {"gone-1", "gone-2"})
        
        assert evaluate(state, "A").skip_reason == "no live replicas"


class TestLoadBalancing:
    """Test optional replica and leader load balancing."""
    
    def make_skewed_state(self):
        state = make_state(num_replicas=2)
        for tablet_id in ("t-1", "t-2", "t-3"):
            state.add_tablet(tablet_id, "table-1", {"s1", "s2"}, leader="s1")
        return state
    
    def test_disabled_by_default(self):
        """Test skewed but valid placement is balanced by default."""
        evaluation = evaluate(self.make_skewed_state(), "t-1")
        
        assert evaluation.condition == TabletCondition.BALANCED
    
    def test_load_move(self):
        """Test a replica is added on an idle server."""
        evaluation = evaluate(
            self.make_skewed_state(),
            "t-1",
            balance_replica_load=True,
        )
        
        assert evaluation.condition == TabletCondition.LOAD_IMBALANCED
        assert evaluation.candidate.kind == PendingTaskKind.ADD
        assert evaluation.candidate.server_id == "s3"
        assert evaluation.candidate.creates_over_replication
    
    def test_load_move_capped_by_over_replicated(self):
        """Test load moves stop once enough tablets are over-replicated."""
        state = self.make_skewed_state()
        state.add_tablet("t-4", "table-1", {"s1", "s2", "s3"}, leader="s1")
        
        evaluation = evaluate(state, "t-1", balance_replica_load=True)
        
        assert evaluation.candidate is None
    
    def test_leader_move(self):
        """Test a leader moves off a server leading too many tablets."""
        evaluation = evaluate(
            self.make_skewed_state(),
            "t-1",
            balance_leader_load=True,
        )
        
        assert evaluation.condition == TabletCondition.LEADER_IMBALANCED
        assert evaluation.candidate.kind == PendingTaskKind.STEPDOWN
        assert evaluation.candidate.server_id == "s2"
