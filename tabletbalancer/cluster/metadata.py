"""
Cluster metadata consumed by the balancer.

Servers, tables, tablets and placement policies as read from the catalog.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Set


class ServerState(str, Enum):
    """Storage server operational states."""
    
    STARTING = "starting"      # Registered, no heartbeat yet
    RUNNING = "running"        # Heartbeating
    STOPPING = "stopping"      # Graceful shutdown
    STOPPED = "stopped"        # Stopped
    FAILED = "failed"          # Missed heartbeats


class PendingTaskKind(str, Enum):
    """Kinds of in-flight tablet changes."""

    ADD = "add"                # Add a replica
    REMOVE = "remove"          # Remove a replica
    STEPDOWN = "stepdown"      # Move the leader role


class TabletState(str, Enum):
    """Tablet lifecycle states relevant to balancing."""
    
    STARTING = "starting"      # Still being created
    RUNNING = "running"        # Serving


@dataclass(frozen=True)
class Locality:
    """
    Cloud / region / zone placement of a server.
    
    An empty field is a wildcard when the locality describes a placement
    block or an affinity zone.
    """
    cloud: str = ""
    region: str = ""
    zone: str = ""
    
    @classmethod
    def parse(cls, value: str) -> "Locality":
        """
        Parse a dotted locality string.
        
        Args:
            value: "cloud.region.zone" (trailing parts may be omitted)
        
        Returns:
            Locality
        """
        parts = value.split(".") if value else []
        parts += [""] * (3 - len(parts))
        return cls(cloud=parts[0], region=parts[1], zone=parts[2])
    
    def matches(self, other: "Locality") -> bool:
        """
        Check whether a concrete server locality falls inside this one.
        
        Args:
            other: Server locality
        
        Returns:
            True if every non-empty field of this locality equals other's
        """
        return all(
            not mine or mine == theirs
            for mine, theirs in (
                (self.cloud, other.cloud),
                (self.region, other.region),
                (self.zone, other.zone),
            )
        )
    
    def __str__(self) -> str:
        return ".".join(p for p in (self.cloud, self.region, self.zone) if p) or "*"


@dataclass
class ServerDescriptor:
    """
    A storage server as seen by the balancer.
    
    Attributes:
        server_id: Unique server identifier
        locality: Cloud/region/zone of the server
        host: Server hostname
        port: Server RPC port
        state: Current server state
        registered_at: Registration timestamp (ms)
        last_heartbeat: Last heartbeat timestamp (ms)
    """
    server_id: str
    locality: Locality = field(default_factory=Locality)
    host: str = "localhost"
    port: int = 9100
    state: ServerState = ServerState.STARTING
    registered_at: int = 0
    last_heartbeat: int = 0
    
    def __post_init__(self):
        if self.registered_at == 0:
            self.registered_at = int(time.time() * 1000)
        if self.last_heartbeat == 0:
            self.last_heartbeat = int(time.time() * 1000)
    
    def endpoint(self) -> str:
        """Get server endpoint (host:port)."""
        return f"{self.host}:{self.port}"
    
    def copy(self) -> "ServerDescriptor":
        return replace(self)
    
    def update_heartbeat(self) -> None:
        """Update last heartbeat timestamp."""
        self.last_heartbeat = int(time.time() * 1000)
    
    def is_healthy(self, timeout_ms: int = 30000) -> bool:
        """
        Check if server is live.
        
        Args:
            timeout_ms: Heartbeat timeout in milliseconds
        
        Returns:
            True if the server is running or starting and heartbeating
        """
        if self.state not in (ServerState.RUNNING, ServerState.STARTING):
            return False
        
        current_time = int(time.time() * 1000)
        return (current_time - self.last_heartbeat) < timeout_ms
    
    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "server_id": self.server_id,
            "locality": str(self.locality),
            "host": self.host,
            "port": self.port,
            "state": self.state.value,
            "registered_at": self.registered_at,
            "last_heartbeat": self.last_heartbeat,
        }
    
    @classmethod
    def from_dict(cls, data: dict) -> "ServerDescriptor":
        """Create from dictionary."""
        return cls(
            server_id=str(data["server_id"]),
            locality=Locality.parse(data.get("locality", "")),
            host=data.get("host", "localhost"),
            port=data.get("port", 9100),
            state=ServerState(data.get("state", "running")),
            registered_at=data.get("registered_at", 0),
            last_heartbeat=data.get("last_heartbeat", 0),
        )


@dataclass(frozen=True)
class PlacementBlock:
    """
    A locality with replica count bounds for a table.
    
    Attributes:
        locality: Locality the block covers
        min_num_replicas: Replicas that must live inside the block
        max_num_replicas: Optional upper bound for the block
    """
    locality: Locality
    min_num_replicas: int = 1
    max_num_replicas: Optional[int] = None
    
    def contains(self, locality: Locality) -> bool:
        """Check if a server locality is inside this block."""
        return self.locality.matches(locality)


@dataclass
class PlacementPolicy:
    """
    Replication requirements of a table.
    
    Attributes:
        num_replicas: Required replication factor
        placement_blocks: Allowed blocks (empty means anywhere)
    """
    num_replicas: int = 3
    placement_blocks: List[PlacementBlock] = field(default_factory=list)
    
    def allows(self, locality: Locality) -> bool:
        """
        Check if a server locality may host replicas under this policy.
        
        Args:
            locality: Server locality
        
        Returns:
            True if there are no blocks or a block contains the locality
        """
        if not self.placement_blocks:
            return True
        return any(block.contains(locality) for block in self.placement_blocks)
    
    def copy(self) -> "PlacementPolicy":
        """Return a copy that does not share the block list."""
        return replace(self, placement_blocks=list(self.placement_blocks))
    
    def blocks_for(self, locality: Locality) -> List[PlacementBlock]:
        """Get the placement blocks containing a locality."""
        return [b for b in self.placement_blocks if b.contains(locality)]
    
    @classmethod
    def from_dict(cls, data: dict) -> "PlacementPolicy":
        """Create from dictionary."""
        blocks = [
            PlacementBlock(
                locality=Locality.parse(block.get("locality", "")),
                min_num_replicas=block.get("min_num_replicas", 1),
                max_num_replicas=block.get("max_num_replicas"),
            )
            for block in data.get("placement_blocks", [])
        ]
        return cls(
            num_replicas=data.get("num_replicas", 3),
            placement_blocks=blocks,
        )


@dataclass
class TableMetadata:
    """
    A table and its placement.
    
    Attributes:
        table_id: Unique table identifier
        name: Table name
        placement: Table-level policy, None to use the cluster-wide one
    """
    table_id: str
    name: str = ""
    placement: Optional[PlacementPolicy] = None
    
    def copy(self) -> "TableMetadata":
        return replace(self, placement=self.placement.copy() if self.placement else None)


@dataclass
class TabletMetadata:
    """
    A tablet (data partition) of a table.
    
    Attributes:
        tablet_id: Unique tablet identifier
        table_id: Owning table
        replicas: Server ids hosting a replica
        leader: Server id of the leader replica, if known
        state: Tablet lifecycle state
    """
    tablet_id: str
    table_id: str
    replicas: Set[str] = field(default_factory=set)
    leader: Optional[str] = None
    state: TabletState = TabletState.RUNNING
    
    def is_replica(self, server_id: str) -> bool:
        """Check if server hosts a replica of this tablet."""
        return server_id in self.replicas
    
    def is_leader(self, server_id: str) -> bool:
        """Check if server is the leader for this tablet."""
        return self.leader == server_id
    
    def copy(self) -> "TabletMetadata":
        """Return a copy that does not share the replica set."""
        return TabletMetadata(
            tablet_id=self.tablet_id,
            table_id=self.table_id,
            replicas=set(self.replicas),
            leader=self.leader,
            state=self.state,
        )
