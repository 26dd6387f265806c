"""Base pipeline stage interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from hatchery.inventory import InventoryRegistry
from hatchery.models.container import ContainerSpec, PostProvisionConfig
from hatchery.models.records import Capability, HostIdentity, StageOutcome, StageResult
from hatchery.remote import SSHConnector


@dataclass
class HostContext:
    """Everything a stage needs to configure one host."""
    spec: ContainerSpec
    address: str
    inventory: InventoryRegistry
    connector: SSHConnector

    @property
    def vmid(self) -> int:
        return self.spec.vmid

    @property
    def post_provision(self) -> PostProvisionConfig:
        if self.spec.post_provision is None:
            raise ValueError(f"Container {self.spec.vmid} has no post-provision configuration")
        return self.spec.post_provision

    def operator_identity(self) -> HostIdentity:
        """The identity this host is addressed by once hardened."""
        config = self.post_provision
        return HostIdentity(
            vmid=self.vmid,
            address=self.address,
            username=config.operator_user,
            capability=Capability.OPERATOR,
            key_path=config.private_key_path,
            password=None if config.passwordless_sudo else config.operator_password,
        )

    def root_identity(self) -> HostIdentity:
        """The identity this host is addressed by right after creation."""
        return HostIdentity(
            vmid=self.vmid,
            address=self.address,
            username="root",
            capability=Capability.ROOT,
            key_path=self.post_provision.root_private_key_path,
            password=self.spec.password,
        )


class Stage(ABC):
    """A named, idempotent configuration step.

    Stages declare the capability they must be run with; the pipeline asks the
    inventory for a matching identity and never hands a stage anything else.
    """

    name: str = ""
    requires: Capability = Capability.OPERATOR
    # Eligibility flag recorded in the inventory at registration
    flag: str = ""

    @abstractmethod
    async def run(self, ctx: HostContext, identity: HostIdentity) -> StageResult:
        """Apply the stage; raise ConfigurationError on failure."""
        pass

    def result(self, outcome: StageOutcome, reason: str = "", changed: bool = False) -> StageResult:
        return StageResult(stage=self.name, outcome=outcome, reason=reason, changed=changed)

    def applied(self, changed: bool, reason: Optional[str] = None) -> StageResult:
        """Result for a stage that executed: ran if anything changed, idempotent otherwise."""
        if changed:
            return self.result(StageOutcome.RAN, reason or "applied", changed=True)
        return self.result(StageOutcome.IDEMPOTENT, reason or "already in place")
