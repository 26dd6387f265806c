"""Hypervisor control-plane access and readiness polling."""

from hatchery.hypervisor.client import HypervisorClient
from hatchery.hypervisor.polling import (
    ReadinessPoller,
    address_probe,
    registration_probe,
    removal_probe,
    status_probe,
)

__all__ = [
    "HypervisorClient",
    "ReadinessPoller",
    "address_probe",
    "registration_probe",
    "removal_probe",
    "status_probe",
]
