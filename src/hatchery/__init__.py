"""
Hatchery - declarative container provisioning for Proxmox VE.

Converges declared LXC containers to their desired lifecycle state through the
hypervisor API, then hardens and configures each started container over SSH,
handing the host over from root to an unprivileged operator account.
"""

__version__ = "1.0.0"
__author__ = "Hatchery Development Team"

# Re-export key components for easier access
from hatchery.models.config import HatcheryConfig
from hatchery.models.container import ContainerSpec, LifecycleState, PostProvisionConfig
from hatchery.models.records import BatchReport, HostReport

__all__ = [
    "HatcheryConfig",
    "ContainerSpec",
    "LifecycleState",
    "PostProvisionConfig",
    "BatchReport",
    "HostReport",
]
