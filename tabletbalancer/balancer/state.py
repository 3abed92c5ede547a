"""
Per-run load state.

The tracker reads the provider once at the start of a run and produces a
ClusterLoadSnapshot. Only the run loop's own decisions are written back into
the snapshot; the provider is never consulted again during the run.
"""

from collections import defaultdict
from typing import Dict, Iterator, List, Optional, Set, Tuple

from tabletbalancer.cluster.metadata import (
    Locality,
    PendingTaskKind,
    PlacementPolicy,
    ServerDescriptor,
    TableMetadata,
    TabletMetadata,
)
from tabletbalancer.cluster.provider import ClusterStateProvider
from tabletbalancer.utils.logging import get_logger

logger = get_logger(__name__)


class PendingTaskMap:
    """
    In-flight tasks keyed by tablet ID.

    Holds at most one server per (tablet, kind).
    """

    def __init__(self):
        self._tasks: Dict[str, Dict[PendingTaskKind, str]] = {}

    def add(self, tablet_id: str, kind: PendingTaskKind, server_id: str) -> bool:
        """
        Record a task.

        Returns:
            False if a task of this kind is already pending for the tablet
        """
        tasks = self._tasks.setdefault(tablet_id, {})
        if kind in tasks:
            return False
        tasks[kind] = server_id
        return True

    def remove(self, tablet_id: str, kind: PendingTaskKind) -> Optional[str]:
        """Forget a task, returning its server ID."""
        tasks = self._tasks.get(tablet_id)
        if not tasks:
            return None
        server_id = tasks.pop(kind, None)
        if not tasks:
            del self._tasks[tablet_id]
        return server_id

    def has(self, tablet_id: str, kind: PendingTaskKind) -> bool:
        return kind in self._tasks.get(tablet_id, {})

    def get(self, tablet_id: str, kind: PendingTaskKind) -> Optional[str]:
        return self._tasks.get(tablet_id, {}).get(kind)

    def kinds(self, tablet_id: str) -> Set[PendingTaskKind]:
        return set(self._tasks.get(tablet_id, {}))

    def count(self, kind: PendingTaskKind) -> int:
        """Get the number of pending tasks of a kind across all tablets."""
        return sum(1 for tasks in self._tasks.values() if kind in tasks)

    def items(self) -> Iterator[Tuple[str, PendingTaskKind, str]]:
        for tablet_id, tasks in self._tasks.items():
            for kind, server_id in tasks.items():
                yield tablet_id, kind, server_id

    def __len__(self) -> int:
        return sum(len(tasks) for tasks in self._tasks.values())


class ClusterLoadSnapshot:
    """
    Read-only view of the cluster for one balancer run.

    Replica and leader counts cover every table, so servers are ranked by
    their whole-cluster load. Replicas on servers that are not live are not
    counted anywhere.
    """

    def __init__(
        self,
        servers: Dict[str, ServerDescriptor],
        tables: Dict[str, TableMetadata],
        tablets_by_table: Dict[str, Dict[str, TabletMetadata]],
        placement: PlacementPolicy,
        blacklist: Set[str],
        leader_blacklist: Set[str],
        affinity_zones: Set[Locality],
        pending: PendingTaskMap,
    ):
        self.servers = servers
        self.tables = tables
        self.tablets_by_table = tablets_by_table
        self.placement = placement
        self.blacklist = blacklist
        self.leader_blacklist = leader_blacklist
        self.affinity_zones = affinity_zones
        self.pending = pending

        self.replica_counts: Dict[str, int] = {server_id: 0 for server_id in servers}
        self.leader_counts: Dict[str, int] = {server_id: 0 for server_id in servers}
        self.table_replica_counts: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.over_replicated: Set[str] = set()

        self._count_load()

    def _count_load(self) -> None:
        for table_id, tablets in self.tablets_by_table.items():
            for tablet in tablets.values():
                for server_id in tablet.replicas:
                    if self.is_live(server_id):
                        self._adjust_replicas(table_id, server_id, 1)

                if tablet.leader and self.is_live(tablet.leader):
                    self.leader_counts[tablet.leader] += 1

                if table_id in self.tables:
                    policy = self.policy_for(table_id)
                    if len(self.live_replicas(tablet)) > policy.num_replicas:
                        self.over_replicated.add(tablet.tablet_id)

        for tablet_id, kind, server_id in self.pending.items():
            tablet = self.find_tablet(tablet_id)
            if tablet is None or not self.is_live(server_id):
                continue

            if kind == PendingTaskKind.ADD:
                self._adjust_replicas(tablet.table_id, server_id, 1)
            elif kind == PendingTaskKind.REMOVE:
                if tablet.is_replica(server_id):
                    self._adjust_replicas(tablet.table_id, server_id, -1)
            elif tablet.leader and tablet.leader != server_id:
                self._move_leader_count(tablet.leader, server_id)

    def _adjust_replicas(self, table_id: str, server_id: str, delta: int) -> None:
        self.replica_counts[server_id] = self.replica_counts.get(server_id, 0) + delta
        self.table_replica_counts[table_id][server_id] += delta

    def _move_leader_count(self, old_leader: str, new_leader: str) -> None:
        if old_leader in self.leader_counts:
            self.leader_counts[old_leader] -= 1
        if new_leader in self.leader_counts:
            self.leader_counts[new_leader] += 1

    # Queries

    def is_live(self, server_id: str) -> bool:
        return server_id in self.servers

    def is_blacklisted(self, server_id: str) -> bool:
        return server_id in self.blacklist

    def locality(self, server_id: str) -> Locality:
        return self.servers[server_id].locality

    def in_affinity_zone(self, server_id: str) -> bool:
        """Check if a live server sits in any affinity zone."""
        if not self.is_live(server_id):
            return False
        locality = self.locality(server_id)
        return any(zone.matches(locality) for zone in self.affinity_zones)

    def can_lead(self, server_id: str) -> bool:
        """Check if a server may hold a leader at all."""
        return (
            self.is_live(server_id)
            and not self.is_blacklisted(server_id)
            and server_id not in self.leader_blacklist
        )

    def policy_for(self, table_id: str) -> PlacementPolicy:
        """Get a table's placement policy, falling back to the cluster one."""
        table = self.tables.get(table_id)
        if table is not None and table.placement is not None:
            return table.placement
        return self.placement

    def live_replicas(self, tablet: TabletMetadata) -> Set[str]:
        return {r for r in tablet.replicas if self.is_live(r)}

    def replica_load(self, server_id: str) -> int:
        return self.replica_counts.get(server_id, 0)

    def leader_load(self, server_id: str) -> int:
        return self.leader_counts.get(server_id, 0)

    def table_load(self, table_id: str, server_id: str) -> int:
        return self.table_replica_counts[table_id][server_id]

    def find_tablet(self, tablet_id: str) -> Optional[TabletMetadata]:
        for tablets in self.tablets_by_table.values():
            if tablet_id in tablets:
                return tablets[tablet_id]
        return None

    def sorted_tables(self) -> List[str]:
        """Get table IDs that have tablets, in a stable order."""
        return sorted(self.tablets_by_table)

    def sorted_tablets(self, table_id: str) -> List[TabletMetadata]:
        tablets = self.tablets_by_table.get(table_id, {})
        return [tablets[tablet_id] for tablet_id in sorted(tablets)]

    # Planned changes made during this run

    def record_add(self, tablet: TabletMetadata, server_id: str, creates_over_replication: bool = False) -> None:
        self._adjust_replicas(tablet.table_id, server_id, 1)
        if creates_over_replication:
            self.over_replicated.add(tablet.tablet_id)

    def record_remove(self, tablet: TabletMetadata, server_id: str, new_leader: Optional[str] = None) -> None:
        self._adjust_replicas(tablet.table_id, server_id, -1)
        if new_leader is not None and tablet.is_leader(server_id):
            self._move_leader_count(server_id, new_leader)

    def record_leader_move(self, tablet: TabletMetadata, new_leader: str) -> None:
        if tablet.leader:
            self._move_leader_count(tablet.leader, new_leader)


class LoadStateTracker:
    """
    Builds the per-run load snapshot from a cluster state provider.
    """

    def __init__(self, provider: ClusterStateProvider):
        """
        Initialize tracker.

        Args:
            provider: Cluster state provider
        """
        self.provider = provider

    def build_pending(self, table_ids: List[str]) -> PendingTaskMap:
        """
        Collect pending tasks for the given tables.

        Args:
            table_ids: Tables to query

        Returns:
            Pending task map for the run
        """
        pending = PendingTaskMap()

        for table_id in table_ids:
            adds, removals, stepdowns = self.provider.pending_tasks(table_id)
            for kind, tasks in (
                (PendingTaskKind.ADD, adds),
                (PendingTaskKind.REMOVE, removals),
                (PendingTaskKind.STEPDOWN, stepdowns),
            ):
                for tablet_id, server_id in tasks.items():
                    pending.add(tablet_id, kind, server_id)

        return pending

    def build(self) -> ClusterLoadSnapshot:
        """
        Take the snapshot for one run.

        Returns:
            Cluster load snapshot
        """
        servers = self.provider.live_servers()
        tables = self.provider.tables()
        tablets_by_table = self.provider.tablets_by_table()

        table_ids = sorted(set(tables) | set(tablets_by_table))
        pending = self.build_pending(table_ids)

        snapshot = ClusterLoadSnapshot(
            servers=servers,
            tables=tables,
            tablets_by_table=tablets_by_table,
            placement=self.provider.placement_policy(),
            blacklist=self.provider.blacklist(),
            leader_blacklist=self.provider.leader_blacklist(),
            affinity_zones=self.provider.affinity_zones(),
            pending=pending,
        )

        logger.debug(
            "Built load snapshot",
            live_servers=len(servers),
            tables=len(table_ids),
            tablets=sum(len(t) for t in tablets_by_table.values()),
            pending=len(pending),
        )

        return snapshot
