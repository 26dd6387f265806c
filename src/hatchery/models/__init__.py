"""Pydantic models for configuration and validation, plus runtime records."""

from hatchery.models.config import (
    HatcheryConfig,
    HypervisorConfig,
    OrchestratorConfig,
    PollingConfig,
    PollSettings,
    SSHConfig,
)
from hatchery.models.container import (
    ContainerSpec,
    LifecycleState,
    NetworkSpec,
    PostProvisionConfig,
    WorkloadSpec,
)
from hatchery.models.records import (
    BatchReport,
    Capability,
    ContainerRecord,
    ContainerStatus,
    HostIdentity,
    HostReport,
    StageOutcome,
    StageResult,
)

__all__ = [
    "HatcheryConfig",
    "HypervisorConfig",
    "OrchestratorConfig",
    "PollingConfig",
    "PollSettings",
    "SSHConfig",
    "ContainerSpec",
    "LifecycleState",
    "NetworkSpec",
    "PostProvisionConfig",
    "WorkloadSpec",
    "BatchReport",
    "Capability",
    "ContainerRecord",
    "ContainerStatus",
    "HostIdentity",
    "HostReport",
    "StageOutcome",
    "StageResult",
]
