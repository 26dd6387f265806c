"""Lifecycle reconciliation: converge one container to its declared state."""

import logging
from dataclasses import dataclass, field
from typing import List

from hatchery.errors import InvalidTransitionError
from hatchery.hypervisor.client import HypervisorClient
from hatchery.hypervisor.polling import (
    ReadinessPoller,
    registration_probe,
    removal_probe,
    status_probe,
)
from hatchery.models.config import PollingConfig
from hatchery.models.container import ContainerSpec, LifecycleState
from hatchery.models.records import ContainerStatus


logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Terminal lifecycle state reached for one container and what it took."""
    vmid: int
    state: LifecycleState
    actions: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.actions)


class LifecycleReconciler:
    """Drives a container through the legal transitions towards its desired state.

    Transitions mirror the hypervisor's rules: a container is created and its
    registration confirmed before any state call, a running container is
    never started again, and deletion always follows a stop.
    """

    def __init__(self, client: HypervisorClient, polling: PollingConfig):
        """Initialize reconciler."""
        self.client = client
        self.registration_poller = ReadinessPoller.from_settings(polling.registration)
        self.status_poller = ReadinessPoller.from_settings(polling.status)

    async def reconcile(self, spec: ContainerSpec) -> ReconcileResult:
        """Converge the container to `spec.state`."""
        result = ReconcileResult(vmid=spec.vmid, state=LifecycleState.ABSENT)
        exists = await self.client.exists(spec.vmid)

        if spec.state == LifecycleState.ABSENT:
            if exists:
                await self._remove(spec, result)
            else:
                logger.debug(f"Container {spec.vmid} already absent")
            result.state = LifecycleState.ABSENT
            return result

        if not exists:
            await self._create(spec, result)
        result.state = LifecycleState.PRESENT

        if spec.state == LifecycleState.PRESENT:
            return result

        status = await self.client.get_status(spec.vmid)

        if spec.state == LifecycleState.STARTED:
            await self._ensure_running(spec, status, result)
        elif spec.state == LifecycleState.STOPPED:
            await self._ensure_stopped(spec, status, result)
        elif spec.state == LifecycleState.RESTARTED:
            await self._restart(spec, status, result)

        return result

    async def _create(self, spec: ContainerSpec, result: ReconcileResult) -> None:
        """Create the container and wait until the hypervisor has registered it."""
        logger.info(f"Container {spec.vmid} is absent, creating")
        await self.client.create(spec)
        result.actions.append("created")

        # Creation is asynchronous; state calls fail until registration completes
        await self.registration_poller.wait(
            registration_probe(self.client, spec.vmid, spec.hostname),
            f"registration of container {spec.vmid}",
        )

    async def _ensure_running(
        self, spec: ContainerSpec, status: ContainerStatus, result: ReconcileResult
    ) -> None:
        """Start the container unless it already runs."""
        if status == ContainerStatus.RUNNING:
            # Starting a running container is an API error, not a no-op
            logger.debug(f"Container {spec.vmid} already running")
        else:
            logger.info(f"Container {spec.vmid} should be running, starting")
            await self.client.set_state(spec.vmid, LifecycleState.STARTED)
            result.actions.append("started")
            await self._wait_for_status(spec.vmid, ContainerStatus.RUNNING)
        result.state = LifecycleState.STARTED

    async def _ensure_stopped(
        self, spec: ContainerSpec, status: ContainerStatus, result: ReconcileResult
    ) -> None:
        """Stop the container if it runs."""
        if status == ContainerStatus.RUNNING:
            logger.info(f"Container {spec.vmid} should be stopped, stopping")
            await self._stop(spec.vmid, result)
        else:
            logger.debug(f"Container {spec.vmid} already stopped")
        result.state = LifecycleState.STOPPED

    async def _restart(
        self, spec: ContainerSpec, status: ContainerStatus, result: ReconcileResult
    ) -> None:
        """Reboot a running container."""
        if status != ContainerStatus.RUNNING:
            raise InvalidTransitionError(
                f"Container {spec.vmid} is {status.value}; restart is only valid for a started container"
            )
        logger.info(f"Restarting container {spec.vmid}")
        await self.client.set_state(spec.vmid, LifecycleState.RESTARTED)
        result.actions.append("restarted")
        await self._wait_for_status(spec.vmid, ContainerStatus.RUNNING)
        result.state = LifecycleState.STARTED

    async def _remove(self, spec: ContainerSpec, result: ReconcileResult) -> None:
        """Stop if needed, then delete and wait until the container is gone."""
        status = await self.client.get_status(spec.vmid)
        if status == ContainerStatus.RUNNING:
            logger.info(f"Container {spec.vmid} is running, stopping before removal")
            await self._stop(spec.vmid, result)

        logger.info(f"Container {spec.vmid} should be absent, removing")
        await self.client.delete(spec.vmid)
        result.actions.append("deleted")
        await self.status_poller.wait(
            removal_probe(self.client, spec.vmid),
            f"removal of container {spec.vmid}",
        )

    async def _stop(self, vmid: int, result: ReconcileResult) -> None:
        await self.client.set_state(vmid, LifecycleState.STOPPED)
        result.actions.append("stopped")
        await self._wait_for_status(vmid, ContainerStatus.STOPPED)

    async def _wait_for_status(self, vmid: int, expected: ContainerStatus) -> None:
        await self.status_poller.wait(
            status_probe(self.client, vmid, expected),
            f"container {vmid} to be {expected.value}",
        )
