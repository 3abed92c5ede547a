"""
Read-only cluster state queries used by the balancer.

One interface, two implementations: CatalogClusterState reads the live
catalog and server registry, InMemoryClusterState holds plain fixture data.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional, Set, Tuple

from tabletbalancer.cluster.catalog import Catalog, TabletToServerMap
from tabletbalancer.cluster.metadata import (
    Locality,
    PlacementPolicy,
    ServerDescriptor,
    TableMetadata,
    TabletMetadata,
)
from tabletbalancer.cluster.registry import ServerRegistry

TabletsByTable = Dict[str, Dict[str, TabletMetadata]]
PendingTaskMaps = Tuple[TabletToServerMap, TabletToServerMap, TabletToServerMap]


class ClusterStateProvider(ABC):
    """
    Point-in-time view of cluster state.

    No method has side effects. Empty results are valid state.
    """

    @abstractmethod
    def live_servers(self) -> Dict[str, ServerDescriptor]:
        """Get live servers keyed by server ID."""
        pass

    @abstractmethod
    def affinity_zones(self) -> Set[Locality]:
        """Get the localities leaders should prefer."""
        pass

    @abstractmethod
    def tablets_by_table(self) -> TabletsByTable:
        """Get tablets grouped by table: table_id -> tablet_id -> tablet."""
        pass

    @abstractmethod
    def tables(self) -> Dict[str, TableMetadata]:
        """Get tables keyed by table ID."""
        pass

    @abstractmethod
    def placement_policy(self) -> PlacementPolicy:
        """Get the cluster-wide placement policy."""
        pass

    @abstractmethod
    def blacklist(self) -> Set[str]:
        """Get IDs of servers being decommissioned."""
        pass

    @abstractmethod
    def pending_tasks(self, table_id: str) -> PendingTaskMaps:
        """
        Get in-flight tasks for a table.

        Args:
            table_id: Table ID

        Returns:
            (adds, removals, stepdowns), each tablet_id -> server_id
        """
        pass

    def leader_blacklist(self) -> Set[str]:
        """Get IDs of servers that must not hold leaders."""
        return set()


class InMemoryClusterState(ClusterStateProvider):
    """
    Cluster state held in plain attributes.

    Fields may be assigned directly; the add_* helpers exist for brevity.
    """

    def __init__(
        self,
        placement: Optional[PlacementPolicy] = None,
    ):
        self.servers: Dict[str, ServerDescriptor] = {}
        self.zones: Set[Locality] = set()
        self.table_map: Dict[str, TableMetadata] = {}
        self.tablet_map: Dict[str, TabletMetadata] = {}
        self.placement = placement or PlacementPolicy()
        self.blacklisted: Set[str] = set()
        self.leader_blacklisted: Set[str] = set()
        self.pending_add_tasks: TabletToServerMap = {}
        self.pending_remove_tasks: TabletToServerMap = {}
        self.pending_stepdown_tasks: TabletToServerMap = {}

    def add_server(self, server_id: str, locality: str = "") -> ServerDescriptor:
        server = ServerDescriptor(server_id=server_id, locality=Locality.parse(locality))
        self.servers[server_id] = server
        return server

    def add_table(
        self,
        table_id: str,
        placement: Optional[PlacementPolicy] = None,
    ) -> TableMetadata:
        table = TableMetadata(table_id=table_id, name=table_id, placement=placement)
        self.table_map[table_id] = table
        return table

    def add_tablet(
        self,
        tablet_id: str,
        table_id: str,
        replicas: Iterable[str],
        leader: Optional[str] = None,
        **kwargs,
    ) -> TabletMetadata:
        tablet = TabletMetadata(
            tablet_id=tablet_id,
            table_id=table_id,
            replicas=set(replicas),
            leader=leader,
            **kwargs,
        )
        self.tablet_map[tablet_id] = tablet
        return tablet

    def live_servers(self) -> Dict[str, ServerDescriptor]:
        return dict(self.servers)

    def affinity_zones(self) -> Set[Locality]:
        return set(self.zones)

    def tablets_by_table(self) -> TabletsByTable:
        result: TabletsByTable = {}
        for tablet in self.tablet_map.values():
            result.setdefault(tablet.table_id, {})[tablet.tablet_id] = tablet.copy()
        return result

    def tables(self) -> Dict[str, TableMetadata]:
        return dict(self.table_map)

    def placement_policy(self) -> PlacementPolicy:
        return self.placement

    def blacklist(self) -> Set[str]:
        return set(self.blacklisted)

    def leader_blacklist(self) -> Set[str]:
        return set(self.leader_blacklisted)

    def pending_tasks(self, table_id: str) -> PendingTaskMaps:
        def for_table(tasks: TabletToServerMap) -> TabletToServerMap:
            return {
                tablet_id: server_id
                for tablet_id, server_id in tasks.items()
                if tablet_id in self.tablet_map
                and self.tablet_map[tablet_id].table_id == table_id
            }

        return (
            for_table(self.pending_add_tasks),
            for_table(self.pending_remove_tasks),
            for_table(self.pending_stepdown_tasks),
        )


class CatalogClusterState(ClusterStateProvider):
    """
    Cluster state backed by the catalog and server registry.

    Every query returns copies, so the balancer never holds references the
    control plane mutates underneath it.
    """

    def __init__(self, catalog: Catalog, registry: ServerRegistry):
        """
        Initialize provider.

        Args:
            catalog: Table/tablet catalog
            registry: Server registry used for liveness
        """
        self.catalog = catalog
        self.registry = registry

    def live_servers(self) -> Dict[str, ServerDescriptor]:
        return {
            server_id: server.copy()
            for server_id, server in self.registry.get_live_servers().items()
        }

    def affinity_zones(self) -> Set[Locality]:
        return set(self.catalog.affinity_zones)

    def tablets_by_table(self) -> TabletsByTable:
        result: TabletsByTable = {}
        for tablet in self.catalog.tablets.values():
            result.setdefault(tablet.table_id, {})[tablet.tablet_id] = tablet.copy()
        return result

    def tables(self) -> Dict[str, TableMetadata]:
        return {table_id: table.copy() for table_id, table in self.catalog.tables.items()}

    def placement_policy(self) -> PlacementPolicy:
        return self.catalog.placement_policy.copy()

    def blacklist(self) -> Set[str]:
        return set(self.catalog.blacklist)

    def leader_blacklist(self) -> Set[str]:
        return set(self.catalog.leader_blacklist)

    def pending_tasks(self, table_id: str) -> PendingTaskMaps:
        return self.catalog.get_pending_tasks(table_id)
