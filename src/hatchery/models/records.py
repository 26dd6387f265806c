"""Runtime records: hypervisor views, host identities and run reports.

None of these are persisted; they are rebuilt on every run.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from hatchery.models.container import LifecycleState


class ContainerStatus(str, Enum):
    """Runtime status reported by the hypervisor."""
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


@dataclass
class ContainerRecord:
    """The hypervisor's live view of a container."""
    vmid: int
    hostname: Optional[str]
    status: ContainerStatus
    address: Optional[str] = None


class Capability(str, Enum):
    """What a connection identity is allowed to do on a host."""
    ROOT = "root"
    OPERATOR = "operator"


@dataclass(frozen=True)
class HostIdentity:
    """How to reach one container, and as whom."""
    vmid: int
    address: str
    username: str
    capability: Capability
    key_path: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    def describe(self) -> str:
        return f"{self.username}@{self.address} ({self.capability.value})"


class StageOutcome(str, Enum):
    """How a pipeline stage ended for one host."""
    RAN = "ran"
    SKIPPED = "skipped"
    IDEMPOTENT = "idempotent"
    FAILED = "failed"


@dataclass
class StageResult:
    """Outcome of one pipeline stage for one host."""
    stage: str
    outcome: StageOutcome
    reason: str = ""
    changed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "changed": self.changed,
        }


@dataclass
class HostReport:
    """Everything that happened to one declared container during a run."""
    vmid: int
    hostname: str
    desired_state: LifecycleState
    state: Optional[LifecycleState] = None
    actions: List[str] = field(default_factory=list)
    address: Optional[str] = None
    stages: List[StageResult] = field(default_factory=list)
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None or any(s.outcome == StageOutcome.FAILED for s in self.stages)

    def stage(self, name: str) -> Optional[StageResult]:
        """Result of the named stage, if it was evaluated."""
        for result in self.stages:
            if result.stage == name:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vmid": self.vmid,
            "hostname": self.hostname,
            "desired_state": self.desired_state.value,
            "state": self.state.value if self.state else None,
            "actions": list(self.actions),
            "address": self.address,
            "stages": [s.to_dict() for s in self.stages],
            "error_kind": self.error_kind,
            "error": self.error,
        }


@dataclass
class BatchReport:
    """Per-container results of one orchestration run, in declaration order."""
    hosts: List[HostReport] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not any(h.failed for h in self.hosts)

    def get(self, vmid: int) -> Optional[HostReport]:
        for report in self.hosts:
            if report.vmid == vmid:
                return report
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "hosts": [h.to_dict() for h in self.hosts],
        }
