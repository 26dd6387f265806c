"""Ordered configuration pipeline run against one host at a time."""

import logging
from typing import Dict, List, Optional, Type

from hatchery.errors import HatcheryError
from hatchery.models.records import Capability, StageOutcome, StageResult
from hatchery.pipeline.base import HostContext, Stage
from hatchery.pipeline.stages import (
    ConnectivityPrecheck,
    ExtrasStage,
    HardeningStage,
    WorkloadStage,
)


logger = logging.getLogger(__name__)


class ConfigurationPipeline:
    """Runs stages in declaration order, each with the identity the inventory holds for it."""

    def __init__(self, stage_classes: Optional[Dict[str, Type[Stage]]] = None):
        """Initialize pipeline."""
        self._stage_classes: Dict[str, Type[Stage]] = stage_classes or {
            "connectivity": ConnectivityPrecheck,
            "hardening": HardeningStage,
            "extras": ExtrasStage,
            "workload": WorkloadStage,
        }
        self._stages: List[Stage] = [cls() for cls in self._stage_classes.values()]

    def get_stage(self, name: str) -> Optional[Stage]:
        """Get a stage by name."""
        for stage in self._stages:
            if stage.name == name:
                return stage
        return None

    def list_stages(self) -> List[str]:
        """List stage names in execution order."""
        return [stage.name for stage in self._stages]

    async def run(self, ctx: HostContext) -> List[StageResult]:
        """Apply every stage to the host; failures end the host's pipeline, not the batch."""
        results: List[StageResult] = []
        failed_stage: Optional[str] = None

        for stage in self._stages:
            if failed_stage:
                results.append(stage.result(StageOutcome.SKIPPED, f"{failed_stage} failed"))
                continue

            entry = ctx.inventory.get(ctx.vmid)
            if entry is None:
                results.append(stage.result(StageOutcome.FAILED, "host not registered"))
                failed_stage = stage.name
                continue

            if not ctx.inventory.eligible(ctx.vmid, stage.flag):
                results.append(stage.result(StageOutcome.SKIPPED, "flag unset"))
                continue

            addressable = {i.vmid for i in ctx.inventory.hosts_with_capability(stage.requires)}
            if ctx.vmid not in addressable:
                if entry.previously_hardened and stage.requires == Capability.ROOT:
                    # Root-only stages have nothing left to do on a hardened host
                    results.append(
                        stage.result(StageOutcome.IDEMPOTENT, "root login disabled by a previous run")
                    )
                    continue
                results.append(stage.result(
                    StageOutcome.FAILED,
                    f"container {ctx.vmid} has no {stage.requires.value} identity, "
                    f"it is addressed as {entry.identity.describe()}",
                ))
                failed_stage = stage.name
                continue

            try:
                identity = ctx.inventory.identity_for(ctx.vmid, stage.requires)
                logger.info(f"Container {ctx.vmid}: running stage {stage.name} as {identity.describe()}")
                result = await stage.run(ctx, identity)
            except HatcheryError as e:
                logger.error(f"Container {ctx.vmid}: stage {stage.name} failed: {e}")
                result = stage.result(StageOutcome.FAILED, str(e))
                failed_stage = stage.name

            results.append(result)

        return results
