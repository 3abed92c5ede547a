"""
In-memory catalog of tables, tablets and placement settings.

Owns everything the balancer reads besides server liveness, records pending
tasks for dispatched changes and applies them when they complete.
"""

import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from tabletbalancer.cluster.metadata import (
    Locality,
    PendingTaskKind,
    PlacementPolicy,
    TableMetadata,
    TabletMetadata,
    TabletState,
)
from tabletbalancer.errors import UnknownEntityError
from tabletbalancer.utils.logging import get_logger

logger = get_logger(__name__)

TabletToServerMap = Dict[str, str]


@dataclass
class PendingTask:
    """
    A dispatched tablet change that has not completed yet.

    Attributes:
        tablet_id: Tablet being changed
        kind: Add, remove or stepdown
        server_id: Server added, removed, or receiving leadership
        new_leader: Leader to hand over to before removing the current one
        created_at: Dispatch timestamp (ms)
    """
    tablet_id: str
    kind: PendingTaskKind
    server_id: str
    new_leader: Optional[str] = None
    created_at: int = 0

    def __post_init__(self):
        if self.created_at == 0:
            self.created_at = int(time.time() * 1000)


class Catalog:
    """
    Table and tablet catalog.

    Mutated by the control plane only; the balancer reads it through
    CatalogClusterState and writes only pending tasks through its dispatcher.
    """

    def __init__(self, placement_policy: Optional[PlacementPolicy] = None):
        """
        Initialize catalog.

        Args:
            placement_policy: Cluster-wide placement policy
        """
        self.placement_policy = placement_policy or PlacementPolicy()
        self.tables: Dict[str, TableMetadata] = {}
        self.tablets: Dict[str, TabletMetadata] = {}
        self.blacklist: Set[str] = set()
        self.leader_blacklist: Set[str] = set()
        self.affinity_zones: Set[Locality] = set()

        # tablet_id -> kind -> PendingTask
        self._pending: Dict[str, Dict[PendingTaskKind, PendingTask]] = {}

    # Tables and tablets

    def add_table(self, table: TableMetadata) -> None:
        """Add or replace a table."""
        self.tables[table.table_id] = table

        logger.info("Table added", table_id=table.table_id, name=table.name)

    def add_tablet(self, tablet: TabletMetadata) -> None:
        """
        Add or replace a tablet.

        Args:
            tablet: Tablet metadata; its table must already exist
        """
        if tablet.table_id not in self.tables:
            raise UnknownEntityError(f"unknown table {tablet.table_id}")

        self.tablets[tablet.tablet_id] = tablet

    def get_tablet(self, tablet_id: str) -> TabletMetadata:
        """Get a tablet or raise UnknownEntityError."""
        tablet = self.tablets.get(tablet_id)
        if tablet is None:
            raise UnknownEntityError(f"unknown tablet {tablet_id}")
        return tablet

    def tablets_for_table(self, table_id: str) -> List[TabletMetadata]:
        """Get the tablets of a table."""
        return [t for t in self.tablets.values() if t.table_id == table_id]

    def mark_tablet_running(self, tablet_id: str) -> None:
        """Move a tablet out of the starting state."""
        self.get_tablet(tablet_id).state = TabletState.RUNNING

    # Decommission and leader placement

    def blacklist_server(self, server_id: str) -> None:
        """Mark a server for decommission."""
        self.blacklist.add(server_id)

        logger.info("Server blacklisted", server_id=server_id)

    def unblacklist_server(self, server_id: str) -> None:
        """Clear a server's decommission mark."""
        self.blacklist.discard(server_id)

    def set_affinity_zones(self, zones: Iterable[Locality]) -> None:
        """Replace the leader affinity zones."""
        self.affinity_zones = set(zones)

    # Pending tasks

    def add_pending_task(self, task: PendingTask) -> bool:
        """
        Record a pending task.

        Args:
            task: Task to record

        Returns:
            False if a task of the same kind is already pending for the tablet
        """
        tasks = self._pending.setdefault(task.tablet_id, {})

        if task.kind in tasks:
            return False

        tasks[task.kind] = task
        return True

    def remove_pending_task(self, tablet_id: str, kind: PendingTaskKind) -> Optional[PendingTask]:
        """Drop a pending task without applying it."""
        tasks = self._pending.get(tablet_id, {})
        task = tasks.pop(kind, None)

        if not tasks:
            self._pending.pop(tablet_id, None)

        return task

    def get_pending_task(self, tablet_id: str, kind: PendingTaskKind) -> Optional[PendingTask]:
        """Get the pending task of a kind for a tablet."""
        return self._pending.get(tablet_id, {}).get(kind)

    def get_pending_tasks(
        self,
        table_id: str,
    ) -> Tuple[TabletToServerMap, TabletToServerMap, TabletToServerMap]:
        """
        Get pending tasks for a table's tablets.

        Args:
            table_id: Table ID

        Returns:
            (adds, removals, stepdowns), each tablet_id -> server_id
        """
        adds: TabletToServerMap = {}
        removals: TabletToServerMap = {}
        stepdowns: TabletToServerMap = {}
        by_kind = {
            PendingTaskKind.ADD: adds,
            PendingTaskKind.REMOVE: removals,
            PendingTaskKind.STEPDOWN: stepdowns,
        }

        for tablet_id, tasks in self._pending.items():
            tablet = self.tablets.get(tablet_id)
            if tablet is None or tablet.table_id != table_id:
                continue
            for kind, task in tasks.items():
                by_kind[kind][tablet_id] = task.server_id

        return adds, removals, stepdowns

    def pending_count(self) -> int:
        """Get the number of pending tasks across all tablets."""
        return sum(len(tasks) for tasks in self._pending.values())

    def complete_pending_task(self, tablet_id: str, kind: PendingTaskKind) -> bool:
        """
        Apply a pending task to tablet metadata and clear it.

        Args:
            tablet_id: Tablet ID
            kind: Task kind

        Returns:
            True if a task was applied
        """
        task = self.remove_pending_task(tablet_id, kind)
        if task is None:
            return False

        tablet = self.tablets.get(tablet_id)
        if tablet is None:
            return False

        if kind == PendingTaskKind.ADD:
            tablet.replicas.add(task.server_id)
        elif kind == PendingTaskKind.REMOVE:
            tablet.replicas.discard(task.server_id)
            if tablet.leader == task.server_id:
                tablet.leader = task.new_leader if task.new_leader in tablet.replicas else None
        else:
            if task.server_id in tablet.replicas:
                tablet.leader = task.server_id

        logger.info(
            "Pending task completed",
            tablet_id=tablet_id,
            kind=kind.value,
            server_id=task.server_id,
            replicas=sorted(tablet.replicas),
            leader=tablet.leader,
        )

        return True

    def complete_all_pending(self) -> int:
        """
        Apply every pending task.

        Returns:
            Number of tasks applied
        """
        completed = 0

        for tablet_id in list(self._pending):
            for kind in list(self._pending.get(tablet_id, {})):
                if self.complete_pending_task(tablet_id, kind):
                    completed += 1

        return completed

    @classmethod
    def from_dict(cls, data: dict) -> "Catalog":
        """
        Build a catalog from a plain description.

        Expected keys: placement, tables (with tablets), blacklist,
        leader_blacklist, affinity_zones.
        """
        catalog = cls(PlacementPolicy.from_dict(data.get("placement", {})))

        for table_data in data.get("tables", []):
            placement = table_data.get("placement")
            table = TableMetadata(
                table_id=str(table_data["table_id"]),
                name=table_data.get("name", ""),
                placement=PlacementPolicy.from_dict(placement) if placement else None,
            )
            catalog.add_table(table)

            for tablet_data in table_data.get("tablets", []):
                catalog.add_tablet(TabletMetadata(
                    tablet_id=str(tablet_data["tablet_id"]),
                    table_id=table.table_id,
                    replicas={str(r) for r in tablet_data.get("replicas", [])},
                    leader=tablet_data.get("leader"),
                    state=TabletState(tablet_data.get("state", "running")),
                ))

        catalog.blacklist = {str(s) for s in data.get("blacklist", [])}
        catalog.leader_blacklist = {str(s) for s in data.get("leader_blacklist", [])}
        catalog.affinity_zones = {Locality.parse(z) for z in data.get("affinity_zones", [])}

        return catalog
