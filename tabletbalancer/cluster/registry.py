"""
Server registry for cluster membership.

Tracks storage server registration and heartbeats and decides which servers
are live. The balancer only ever reads the live view.
"""

import asyncio
from typing import Dict, List, Optional

from tabletbalancer.cluster.metadata import Locality, ServerDescriptor, ServerState
from tabletbalancer.utils.logging import get_logger

logger = get_logger(__name__)


class ServerRegistry:
    """
    Registry of storage servers.

    Manages:
    - Server registration and deregistration
    - Heartbeat tracking
    - Failure detection
    """

    def __init__(self, heartbeat_timeout_ms: int = 30000):
        """
        Initialize server registry.

        Args:
            heartbeat_timeout_ms: Heartbeat timeout in milliseconds
        """
        self._servers: Dict[str, ServerDescriptor] = {}
        self._heartbeat_timeout_ms = heartbeat_timeout_ms
        self._lock = asyncio.Lock()

        logger.info(
            "ServerRegistry initialized",
            heartbeat_timeout_ms=heartbeat_timeout_ms,
        )

    async def register_server(
        self,
        server_id: str,
        locality: Optional[Locality] = None,
        host: str = "localhost",
        port: int = 9100,
    ) -> ServerDescriptor:
        """
        Register a storage server.

        Args:
            server_id: Unique server ID
            locality: Server cloud/region/zone
            host: Server hostname
            port: Server port

        Returns:
            Server descriptor
        """
        async with self._lock:
            descriptor = ServerDescriptor(
                server_id=server_id,
                locality=locality or Locality(),
                host=host,
                port=port,
                state=ServerState.STARTING,
            )
            self._servers[server_id] = descriptor

            logger.info(
                "Server registered",
                server_id=server_id,
                endpoint=descriptor.endpoint(),
                locality=str(descriptor.locality),
            )

            return descriptor

    async def deregister_server(self, server_id: str) -> None:
        """
        Deregister a server.

        Args:
            server_id: Server ID
        """
        async with self._lock:
            server = self._servers.pop(server_id, None)
            if server:
                server.state = ServerState.STOPPED

                logger.info("Server deregistered", server_id=server_id)

    async def update_heartbeat(self, server_id: str) -> bool:
        """
        Record a server heartbeat.

        Args:
            server_id: Server ID

        Returns:
            True if the server is known
        """
        async with self._lock:
            server = self._servers.get(server_id)
            if not server:
                return False

            server.update_heartbeat()

            if server.state in (ServerState.STARTING, ServerState.FAILED):
                server.state = ServerState.RUNNING

            return True

    async def check_health(self) -> List[str]:
        """
        Mark servers that missed their heartbeat window as failed.

        Returns:
            IDs of servers newly marked failed
        """
        async with self._lock:
            failed = []

            for server_id, server in self._servers.items():
                if server.state == ServerState.FAILED:
                    continue
                if not server.is_healthy(self._heartbeat_timeout_ms):
                    server.state = ServerState.FAILED
                    failed.append(server_id)

            for server_id in failed:
                logger.warning("Server failed heartbeat check", server_id=server_id)

            return failed

    def get_server(self, server_id: str) -> Optional[ServerDescriptor]:
        """Get a server descriptor by ID."""
        return self._servers.get(server_id)

    def get_all_servers(self) -> List[ServerDescriptor]:
        """Get every registered server, live or not."""
        return list(self._servers.values())

    def get_live_servers(self) -> Dict[str, ServerDescriptor]:
        """
        Get servers currently considered live.

        Returns:
            Map of server ID to descriptor
        """
        return {
            server_id: server
            for server_id, server in self._servers.items()
            if server.is_healthy(self._heartbeat_timeout_ms)
        }
