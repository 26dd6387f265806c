"""Batch orchestration: lifecycle, address resolution and configuration per container."""

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import List, Optional, Tuple

from hatchery.engine.reconciler import LifecycleReconciler, ReconcileResult
from hatchery.errors import ConfigurationError, HatcheryError, TransportError
from hatchery.hypervisor.client import HypervisorClient
from hatchery.hypervisor.polling import ReadinessPoller, address_probe
from hatchery.inventory import InventoryRegistry
from hatchery.models.config import HatcheryConfig
from hatchery.models.container import ContainerSpec, LifecycleState
from hatchery.models.records import BatchReport, ContainerRecord, HostReport
from hatchery.pipeline import ConfigurationPipeline, HostContext
from hatchery.remote import SSHConnector


logger = logging.getLogger(__name__)


class Orchestrator:
    """Processes a batch of container specs concurrently, one sequential worker per container.

    A failure or timeout is attributed to its container and never stops the
    rest of the batch.
    """

    def __init__(
        self,
        config: HatcheryConfig,
        client: HypervisorClient,
        connector: SSHConnector,
        pipeline: Optional[ConfigurationPipeline] = None,
        inventory: Optional[InventoryRegistry] = None,
    ):
        """Initialize orchestrator."""
        self.config = config
        self.client = client
        self.connector = connector
        self.reconciler = LifecycleReconciler(client, config.polling)
        self.address_poller = ReadinessPoller.from_settings(config.polling.address)
        self.pipeline = pipeline or ConfigurationPipeline()
        self.inventory = inventory or InventoryRegistry()
        self.last_run: Optional[datetime] = None

    async def run(self, specs: List[ContainerSpec]) -> BatchReport:
        """Converge and configure every declared container."""
        duplicates = sorted(vmid for vmid, n in Counter(s.vmid for s in specs).items() if n > 1)
        if duplicates:
            raise ConfigurationError(f"Duplicate container ids in batch: {', '.join(map(str, duplicates))}")

        start_time = datetime.now()
        logger.info(f"Starting orchestration of {len(specs)} container(s)")

        semaphore = asyncio.Semaphore(self.config.orchestrator.concurrency)
        reports = [
            HostReport(vmid=spec.vmid, hostname=spec.hostname, desired_state=spec.state)
            for spec in specs
        ]
        await asyncio.gather(
            *(self._guarded(spec, report, semaphore) for spec, report in zip(specs, reports))
        )

        self.last_run = datetime.now()
        duration = (self.last_run - start_time).total_seconds()
        failed = sum(1 for r in reports if r.failed)
        logger.info(f"Orchestration completed in {duration:.2f}s ({failed} failed)")
        return BatchReport(hosts=reports)

    async def _guarded(self, spec: ContainerSpec, report: HostReport, semaphore: asyncio.Semaphore) -> None:
        """Process one container within the concurrency limit and its own deadline."""
        timeout = self.config.orchestrator.host_timeout
        async with semaphore:
            try:
                await asyncio.wait_for(self.process(spec, report), timeout=timeout)
            except asyncio.TimeoutError:
                logger.error(f"Container {spec.vmid} abandoned after {timeout:g}s")
                report.error_kind = "timeout"
                report.error = f"exceeded the {timeout:g}s per-container deadline"
            except HatcheryError as e:
                logger.error(f"Failed to process container {spec.vmid}: {e}")
                report.error_kind = e.kind
                report.error = str(e)
            except Exception as e:
                logger.error(f"Unexpected error processing container {spec.vmid}: {e}", exc_info=True)
                report.error_kind = "internal"
                report.error = str(e)

    async def process(self, spec: ContainerSpec, report: HostReport) -> None:
        """Lifecycle, then address, then pipeline; strictly in that order."""
        result = await self.reconcile(spec)
        report.state = result.state
        report.actions = list(result.actions)

        if result.state == LifecycleState.ABSENT:
            self.inventory.remove(spec.vmid)
            return
        if result.state != LifecycleState.STARTED or spec.post_provision is None:
            return

        address = await self.resolve_address(spec)
        report.address = address

        ctx = HostContext(
            spec=spec,
            address=address,
            inventory=self.inventory,
            connector=self.connector,
        )
        if spec.post_provision.run_initial_hardening:
            initial = ctx.root_identity()
        else:
            # Without hardening the operator account is expected to exist already
            initial = ctx.operator_identity()
        await self.inventory.register(initial, spec.post_provision)

        report.stages = await self.pipeline.run(ctx)

    async def reconcile(self, spec: ContainerSpec) -> ReconcileResult:
        """Reconcile, retrying transient transport failures a bounded number of times."""
        retries = self.config.orchestrator.transport_retries
        attempt = 0
        while True:
            try:
                return await self.reconciler.reconcile(spec)
            except TransportError as e:
                attempt += 1
                if attempt > retries:
                    raise
                logger.warning(f"Container {spec.vmid}: transport error ({e}), retry {attempt}/{retries}")
                await asyncio.sleep(self.config.orchestrator.retry_delay)

    async def resolve_address(self, spec: ContainerSpec) -> str:
        """Declared static address, or wait for the DHCP lease on the primary interface."""
        if spec.network.static_address:
            return spec.network.static_address
        return await self.address_poller.wait(
            address_probe(self.client, spec.vmid, spec.network.name),
            f"address of container {spec.vmid} on {spec.network.name}",
        )

    async def describe(self, specs: List[ContainerSpec]) -> List[Tuple[ContainerSpec, Optional[ContainerRecord]]]:
        """Hypervisor view of each declared container (None when absent)."""
        records = await asyncio.gather(*(self.client.get_record(spec.vmid) for spec in specs))
        return list(zip(specs, records))


async def run_batch(config: HatcheryConfig, specs: List[ContainerSpec]) -> BatchReport:
    """Open a hypervisor session, run the batch, and release the session on every path."""
    async with HypervisorClient(config.hypervisor) as client:
        orchestrator = Orchestrator(config, client, SSHConnector(config.ssh))
        return await orchestrator.run(specs)


async def describe_batch(
    config: HatcheryConfig, specs: List[ContainerSpec]
) -> List[Tuple[ContainerSpec, Optional[ContainerRecord]]]:
    """Hypervisor view of the declared containers within a scoped session."""
    async with HypervisorClient(config.hypervisor) as client:
        orchestrator = Orchestrator(config, client, SSHConnector(config.ssh))
        return await orchestrator.describe(specs)
