"""
Cluster state consumed by the balancer.

Metadata types, the read-only provider interface and its implementations,
and the in-memory catalog and server registry backing production runs.
"""

from tabletbalancer.cluster.catalog import Catalog, PendingTask
from tabletbalancer.cluster.metadata import (
    Locality,
    PendingTaskKind,
    PlacementBlock,
    PlacementPolicy,
    ServerDescriptor,
    ServerState,
    TableMetadata,
    TabletMetadata,
    TabletState,
)
from tabletbalancer.cluster.provider import (
    CatalogClusterState,
    ClusterStateProvider,
    InMemoryClusterState,
)
from tabletbalancer.cluster.registry import ServerRegistry

__all__ = [
    # Metadata
    "Locality",
    "PlacementBlock",
    "PlacementPolicy",
    "ServerDescriptor",
    "ServerState",
    "TableMetadata",
    "TabletMetadata",
    "TabletState",
    # Providers
    "ClusterStateProvider",
    "InMemoryClusterState",
    "CatalogClusterState",
    # Backing stores
    "Catalog",
    "PendingTask",
    "PendingTaskKind",
    "ServerRegistry",
]
