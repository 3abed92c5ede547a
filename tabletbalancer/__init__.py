"""
tabletbalancer - replica placement balancer for a tablet-based storage cluster.

Continuously compares tablet replica placement against replication factors,
placement blocks, decommissioned servers and leader affinity zones, and
issues a throttled stream of add-replica, remove-replica and leader-move
commands until the cluster converges.
"""

__version__ = "0.1.0"

from tabletbalancer.balancer import BalancerOptions, ClusterBalancer, RunSummary
from tabletbalancer.cluster import (
    CatalogClusterState,
    ClusterStateProvider,
    InMemoryClusterState,
)

__all__ = [
    "BalancerOptions",
    "ClusterBalancer",
    "RunSummary",
    "ClusterStateProvider",
    "CatalogClusterState",
    "InMemoryClusterState",
]
