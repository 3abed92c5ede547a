"""
Action dispatch.

Hands replica changes to the control plane. A dispatched action is recorded
as pending before the command is sent and rolled back if the command is not
accepted, so it is proposed again on a later run. Dispatch never waits for
the change itself to complete.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set

from tabletbalancer.balancer.placement import CandidateAction
from tabletbalancer.balancer.state import PendingTaskMap
from tabletbalancer.cluster.catalog import Catalog, PendingTask
from tabletbalancer.cluster.metadata import TabletMetadata
from tabletbalancer.errors import DispatchError
from tabletbalancer.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ReplicaChangeRequest:
    """
    A replica change as sent to the control plane.

    Attributes:
        tablet_id: Tablet to change
        target_server: Server receiving the command
        is_add: Add a replica on target_server
        should_remove: Remove the replica on target_server
        new_leader: Server that should take over leadership
    """
    tablet_id: str
    target_server: str
    is_add: bool
    should_remove: bool
    new_leader: Optional[str] = None


@dataclass
class DispatchResult:
    """
    Acknowledgement of a dispatch.

    Attributes:
        accepted: Control plane accepted the command for tracking
        error_message: Reason for rejection
    """
    accepted: bool = True
    error_message: str = ""


class ActionDispatcher(ABC):
    """
    Sends replica changes and tracks them as pending.
    """

    @abstractmethod
    async def send_replica_change(
        self,
        tablet: TabletMetadata,
        target_server: str,
        is_add: bool,
        should_remove: bool,
        new_leader: Optional[str] = None,
    ) -> DispatchResult:
        """
        Send one replica change.

        Args:
            tablet: Tablet to change
            target_server: Server receiving the command
            is_add: Add a replica on target_server
            should_remove: Remove the replica on target_server
            new_leader: Server that should take over leadership

        Returns:
            Dispatch result
        """
        pass

    def record_pending(self, action: CandidateAction) -> bool:
        """Record the action outside the run. Returns False on conflict."""
        return True

    def rollback_pending(self, action: CandidateAction) -> None:
        """Undo record_pending."""

    async def dispatch(
        self,
        action: CandidateAction,
        pending: PendingTaskMap,
    ) -> DispatchResult:
        """
        Dispatch an action, keeping pending tasks consistent.

        Args:
            action: Admitted action
            pending: The run's pending task map

        Returns:
            Dispatch result; failures are returned, never raised
        """
        if not pending.add(action.tablet_id, action.kind, action.server_id):
            return DispatchResult(accepted=False, error_message="task already pending")

        if not self.record_pending(action):
            pending.remove(action.tablet_id, action.kind)
            return DispatchResult(accepted=False, error_message="task already pending")

        try:
            result = await self.send_replica_change(
                tablet=action.tablet,
                target_server=action.target_server,
                is_add=action.is_add,
                should_remove=action.should_remove,
                new_leader=action.leader_target,
            )
        except Exception as e:
            result = DispatchResult(accepted=False, error_message=str(e))

        if not result.accepted:
            pending.remove(action.tablet_id, action.kind)
            self.rollback_pending(action)

            logger.warning(
                "Replica change rejected",
                tablet_id=action.tablet_id,
                kind=action.kind.value,
                server_id=action.server_id,
                error=result.error_message,
            )
            return result

        logger.info(
            "Replica change dispatched",
            tablet_id=action.tablet_id,
            table_id=action.table_id,
            kind=action.kind.value,
            server_id=action.server_id,
            condition=action.condition.value,
            new_leader=action.leader_target,
        )

        return result


Transport = Callable[[ReplicaChangeRequest], Awaitable[None]]


class CatalogDispatcher(ActionDispatcher):
    """
    Dispatcher that records pending tasks in the catalog.

    The transport delivers the request to the target server and raises
    DispatchError (or any exception) when it cannot.
    """

    def __init__(self, catalog: Catalog, transport: Optional[Transport] = None):
        """
        Initialize dispatcher.

        Args:
            catalog: Catalog holding durable pending tasks
            transport: Coroutine function delivering requests
        """
        self.catalog = catalog
        self.transport = transport

    def record_pending(self, action: CandidateAction) -> bool:
        return self.catalog.add_pending_task(PendingTask(
            tablet_id=action.tablet_id,
            kind=action.kind,
            server_id=action.server_id,
            new_leader=action.new_leader,
        ))

    def rollback_pending(self, action: CandidateAction) -> None:
        self.catalog.remove_pending_task(action.tablet_id, action.kind)

    async def send_replica_change(
        self,
        tablet: TabletMetadata,
        target_server: str,
        is_add: bool,
        should_remove: bool,
        new_leader: Optional[str] = None,
    ) -> DispatchResult:
        if tablet.tablet_id not in self.catalog.tablets:
            raise DispatchError(tablet.tablet_id, "tablet no longer exists")

        if self.transport is not None:
            await self.transport(ReplicaChangeRequest(
                tablet_id=tablet.tablet_id,
                target_server=target_server,
                is_add=is_add,
                should_remove=should_remove,
                new_leader=new_leader,
            ))

        return DispatchResult()


class RecordingDispatcher(ActionDispatcher):
    """
    Dispatcher that only records requests.

    Used for dry runs and tests. Tablets in reject_tablets are refused.
    """

    def __init__(self, reject_tablets: Optional[Set[str]] = None):
        self.requests: List[ReplicaChangeRequest] = []
        self.reject_tablets: Set[str] = set(reject_tablets or ())

    async def send_replica_change(
        self,
        tablet: TabletMetadata,
        target_server: str,
        is_add: bool,
        should_remove: bool,
        new_leader: Optional[str] = None,
    ) -> DispatchResult:
        if tablet.tablet_id in self.reject_tablets:
            return DispatchResult(accepted=False, error_message="rejected")

        self.requests.append(ReplicaChangeRequest(
            tablet_id=tablet.tablet_id,
            target_server=target_server,
            is_add=is_add,
            should_remove=should_remove,
            new_leader=new_leader,
        ))
        return DispatchResult()

    def adds(self) -> List[ReplicaChangeRequest]:
        return [r for r in self.requests if r.is_add]

    def removals(self) -> List[ReplicaChangeRequest]:
        return [r for r in self.requests if r.should_remove]

    def stepdowns(self) -> List[ReplicaChangeRequest]:
        return [r for r in self.requests if not r.is_add and not r.should_remove]
