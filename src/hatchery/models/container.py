"""Container specification models."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class LifecycleState(str, Enum):
    """Desired (and observed) lifecycle state of a container."""
    ABSENT = "absent"
    PRESENT = "present"
    STARTED = "started"
    STOPPED = "stopped"
    RESTARTED = "restarted"


class NetworkSpec(BaseModel):
    """Primary network interface of a container."""
    name: str = Field(default="eth0", description="Interface name inside the container")
    bridge: str = Field(default="vmbr0")
    ip: str = Field(default="dhcp", description="'dhcp' or an address in CIDR notation")
    gateway: Optional[str] = None
    firewall: bool = Field(default=False)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def is_dhcp(self) -> bool:
        """Whether the address is leased rather than declared."""
        return self.ip == "dhcp"

    @property
    def static_address(self) -> Optional[str]:
        """Declared address without its prefix length, if static."""
        if self.is_dhcp:
            return None
        return self.ip.split("/", 1)[0]

    def to_descriptor(self) -> str:
        """Render the hypervisor's netN descriptor string."""
        parts = [f"name={self.name}", f"bridge={self.bridge}", f"ip={self.ip}"]
        if self.gateway:
            parts.append(f"gw={self.gateway}")
        if self.firewall:
            parts.append("firewall=1")
        return ",".join(parts)


class WorkloadSpec(BaseModel):
    """A containerised workload deployed with docker compose."""
    name: str = Field(..., description="Workload name")
    descriptor: str = Field(..., description="Jinja2 template of the compose file")
    environment: Dict[str, str] = Field(default_factory=dict)
    directory: Optional[str] = Field(None, description="Deployment directory, defaults to /opt/<name>")

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def deploy_dir(self) -> str:
        return self.directory or f"/opt/{self.name}"


class PostProvisionConfig(BaseModel):
    """Configuration applied over SSH once a container is started."""
    operator_user: str = Field(..., description="Unprivileged account created by hardening")
    operator_password: Optional[str] = None
    operator_public_key: str = Field(..., description="Public key installed for the operator")
    private_key_path: str = Field(..., description="Private key used to connect as the operator")
    root_private_key_path: Optional[str] = Field(
        None, description="Private key used to connect as root before hardening"
    )
    passwordless_sudo: bool = Field(default=True)
    run_initial_hardening: bool = Field(default=True)
    install_extras: bool = Field(default=False)
    install_workload: bool = Field(default=False)
    extra_packages: List[str] = Field(
        default_factory=lambda: ["curl", "git", "htop", "vim", "unattended-upgrades"]
    )
    motd: Optional[str] = Field(None, description="Jinja2 template for /etc/motd")
    workloads: Dict[str, WorkloadSpec] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("operator_user")
    @classmethod
    def validate_operator_user(cls, v):
        """The operator must not be root."""
        if v == "root":
            raise ValueError("operator_user must not be root")
        return v

    @field_validator("workloads", mode="before")
    @classmethod
    def inject_workload_names(cls, v):
        """Workloads are declared as a mapping keyed by name."""
        if isinstance(v, dict):
            return {
                name: ({"name": name, **spec} if isinstance(spec, dict) else spec)
                for name, spec in v.items()
            }
        return v

    @model_validator(mode="after")
    def validate_sudo_password(self):
        """Without passwordless sudo the operator's password is what sudo asks for."""
        if not self.passwordless_sudo and not self.operator_password:
            raise ValueError("operator_password is required when passwordless_sudo is false")
        return self


class ContainerSpec(BaseModel):
    """Container specification."""
    vmid: int = Field(..., ge=100, le=999999999, description="Hypervisor container id")
    hostname: str = Field(..., description="Container hostname")
    state: LifecycleState = Field(default=LifecycleState.STARTED)
    ostemplate: Optional[str] = Field(None, description="Base image volume, e.g. local:vztmpl/debian-12.tar.zst")
    cores: int = Field(default=1, ge=1)
    memory: int = Field(default=512, ge=16, description="Memory in MiB")
    swap: int = Field(default=512, ge=0, description="Swap in MiB")
    disk: int = Field(default=8, ge=1, description="Root disk size in GiB")
    storage: str = Field(default="local-lvm")
    network: NetworkSpec = Field(default_factory=NetworkSpec)
    password: Optional[str] = Field(None, description="Initial root password")
    ssh_public_keys: Optional[str] = Field(None, description="Initial root authorized keys")
    unprivileged: bool = Field(default=True)
    onboot: bool = Field(default=False)
    nesting: bool = Field(default=False, description="Allow nested containers (needed by docker)")
    post_provision: Optional[PostProvisionConfig] = None

    model_config = ConfigDict(extra="ignore", frozen=True)

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v):
        """Hostnames are single DNS labels."""
        if not v or len(v) > 63 or not all(c.isalnum() or c == "-" for c in v) or v.startswith("-"):
            raise ValueError(f"Invalid hostname: {v}")
        return v

    @model_validator(mode="after")
    def validate_ostemplate(self):
        """Anything but an absent container needs a base image to be created from."""
        if self.state != LifecycleState.ABSENT and not self.ostemplate:
            raise ValueError(f"ostemplate is required for state {self.state.value}")
        return self

    def creation_params(self) -> Dict[str, object]:
        """Parameters for the hypervisor's container create call."""
        params: Dict[str, object] = {
            "vmid": self.vmid,
            "hostname": self.hostname,
            "ostemplate": self.ostemplate,
            "cores": self.cores,
            "memory": self.memory,
            "swap": self.swap,
            "rootfs": f"{self.storage}:{self.disk}",
            "net0": self.network.to_descriptor(),
            "unprivileged": int(self.unprivileged),
            "onboot": int(self.onboot),
        }
        if self.nesting:
            params["features"] = "nesting=1"
        if self.password:
            params["password"] = self.password
        if self.ssh_public_keys:
            params["ssh-public-keys"] = self.ssh_public_keys
        return params
