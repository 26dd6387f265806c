"""Inventory of reachable hosts and the identity each one is currently addressed by."""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

from hatchery.errors import IdentityError
from hatchery.models.container import PostProvisionConfig
from hatchery.models.records import Capability, HostIdentity


logger = logging.getLogger(__name__)

STAGE_FLAGS = ("hardening", "extras", "workload")


@dataclass(frozen=True)
class Eligibility:
    """Which optional pipeline stages apply to a host, decided once at registration."""
    hardening: bool
    extras: bool
    workload: bool

    @classmethod
    def from_post_provision(cls, config: PostProvisionConfig) -> "Eligibility":
        return cls(
            hardening=config.run_initial_hardening,
            extras=config.install_extras,
            workload=config.install_workload,
        )

    def allows(self, flag: str) -> bool:
        if flag not in STAGE_FLAGS:
            raise ValueError(f"Unknown stage flag: {flag}")
        return getattr(self, flag)


@dataclass
class InventoryEntry:
    """The single active identity of one container."""
    identity: HostIdentity
    eligibility: Eligibility
    hardened: bool = False
    # Root login was already disabled when this run reached the host
    previously_hardened: bool = False

    @property
    def capability(self) -> Capability:
        return self.identity.capability


class InventoryRegistry:
    """Replace-on-write map from container id to its active identity.

    Each container has exactly one entry. Registering again replaces it, which
    is how a host moves from its root identity to the operator identity once
    hardening succeeds. After that a root identity is refused for the id.
    """

    def __init__(self):
        """Initialize inventory registry."""
        self._entries: Dict[int, InventoryEntry] = {}
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def lock(self, vmid: int) -> asyncio.Lock:
        """Per-host lock; no cross-host contention."""
        return self._locks[vmid]

    async def register(self, identity: HostIdentity, post_provision: PostProvisionConfig) -> InventoryEntry:
        """Upsert the identity for `identity.vmid`."""
        async with self.lock(identity.vmid):
            current = self._entries.get(identity.vmid)
            if current and current.hardened and identity.capability == Capability.ROOT:
                raise IdentityError(
                    f"Container {identity.vmid} is hardened; refusing root identity {identity.describe()}"
                )

            entry = InventoryEntry(
                identity=identity,
                eligibility=Eligibility.from_post_provision(post_provision),
                hardened=current.hardened if current else False,
            )
            self._entries[identity.vmid] = entry
            action = "Replaced" if current else "Registered"
            logger.info(f"{action} container {identity.vmid} as {identity.describe()}")
            return entry

    async def promote(self, identity: HostIdentity) -> InventoryEntry:
        """Replace the host's identity with its operator identity and mark it hardened."""
        if identity.capability != Capability.OPERATOR:
            raise IdentityError(f"Cannot promote container {identity.vmid} to {identity.describe()}")

        async with self.lock(identity.vmid):
            current = self._entries.get(identity.vmid)
            if current is None:
                raise IdentityError(f"Container {identity.vmid} is not registered")
            current.identity = identity
            current.hardened = True
            logger.info(f"Container {identity.vmid} hardened, now addressed as {identity.describe()}")
            return current

    async def mark_hardened(self, vmid: int, operator_identity: HostIdentity) -> InventoryEntry:
        """Record a host whose root login an earlier run already disabled."""
        if operator_identity.vmid != vmid:
            raise IdentityError(f"Identity {operator_identity.describe()} does not belong to container {vmid}")
        entry = await self.promote(operator_identity)
        entry.previously_hardened = True
        return entry

    def get(self, vmid: int) -> Optional[InventoryEntry]:
        return self._entries.get(vmid)

    def eligible(self, vmid: int, stage_flag: str) -> bool:
        """Whether the flags recorded at registration ask for the stage behind `stage_flag`."""
        entry = self._entries.get(vmid)
        if entry is None:
            raise IdentityError(f"Container {vmid} is not registered")
        return entry.eligibility.allows(stage_flag)

    def identity_for(self, vmid: int, capability: Capability) -> HostIdentity:
        """The host's identity, only if it carries the requested capability."""
        entry = self._entries.get(vmid)
        if entry is None:
            raise IdentityError(f"Container {vmid} is not registered")
        if entry.capability != capability:
            raise IdentityError(
                f"Container {vmid} is addressed as {entry.identity.describe()}, "
                f"a {capability.value} identity is required"
            )
        if capability == Capability.ROOT and entry.hardened:
            raise IdentityError(f"Container {vmid} is hardened; root identity is no longer usable")
        return entry.identity

    def hosts_with_capability(self, capability: Capability) -> List[HostIdentity]:
        """Identities of every host currently addressed with `capability`."""
        return [
            entry.identity
            for _, entry in sorted(self._entries.items())
            if entry.capability == capability
        ]

    def remove(self, vmid: int) -> None:
        self._entries.pop(vmid, None)
        self._locks.pop(vmid, None)

    def __contains__(self, vmid: int) -> bool:
        return vmid in self._entries

    def __len__(self) -> int:
        return len(self._entries)
