"""Post-provision configuration pipeline."""

from hatchery.pipeline.base import HostContext, Stage
from hatchery.pipeline.pipeline import ConfigurationPipeline
from hatchery.pipeline.stages import (
    ConnectivityPrecheck,
    ExtrasStage,
    HardeningStage,
    WorkloadStage,
)

__all__ = [
    "ConfigurationPipeline",
    "ConnectivityPrecheck",
    "ExtrasStage",
    "HardeningStage",
    "HostContext",
    "Stage",
    "WorkloadStage",
]
