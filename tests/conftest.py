"""Shared fixtures: in-memory stand-ins for the hypervisor API and SSH hosts."""

import shlex
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set, Tuple

import pytest

from hatchery.errors import ApiError, NotFoundError, RemoteCommandError, TransportError
from hatchery.models.config import HatcheryConfig
from hatchery.models.container import ContainerSpec, LifecycleState
from hatchery.models.records import ContainerRecord, ContainerStatus, HostIdentity
from hatchery.remote import CommandResult, Reachability


class FakeHypervisor:
    """Mimics the hypervisor's observable rules without a network.

    Creation registers a container only after `registration_delay` config
    reads, starting a running container and deleting a running one are
    rejected, as the real API does.
    """

    def __init__(self):
        self.containers: Dict[int, Dict] = {}
        self.calls: List[Tuple] = []
        self.interfaces: Dict[int, List[Tuple[str, str]]] = {}
        self.registration_delay = 1
        self.transport_failures: Dict[int, int] = {}
        self._pending: Dict[int, int] = {}

    def add(self, vmid: int, hostname: str, status: ContainerStatus = ContainerStatus.STOPPED):
        self.containers[vmid] = {"hostname": hostname, "status": status}

    def status_of(self, vmid: int) -> Optional[ContainerStatus]:
        container = self.containers.get(vmid)
        return container["status"] if container else None

    def call_names(self, vmid: Optional[int] = None) -> List[str]:
        return [c[0] for c in self.calls if vmid is None or c[1] == vmid]

    def _lookup(self, vmid: int) -> Dict:
        if vmid not in self.containers:
            raise NotFoundError(500, f"Configuration file 'nodes/pve/lxc/{vmid}.conf' does not exist")
        return self.containers[vmid]

    async def exists(self, vmid: int) -> bool:
        self.calls.append(("exists", vmid))
        if self.transport_failures.get(vmid):
            self.transport_failures[vmid] -= 1
            raise TransportError("connection reset by peer")
        return vmid in self.containers and not self._pending.get(vmid)

    async def create(self, spec: ContainerSpec) -> str:
        self.calls.append(("create", spec.vmid))
        if spec.vmid in self.containers:
            raise ApiError(500, f"CT {spec.vmid} already exists on node 'pve'")
        self.add(spec.vmid, spec.hostname)
        self._pending[spec.vmid] = self.registration_delay
        return f"UPID:pve:vzcreate:{spec.vmid}"

    async def get_config(self, vmid: int) -> Dict:
        self.calls.append(("get_config", vmid))
        container = self._lookup(vmid)
        if self._pending.get(vmid):
            self._pending[vmid] -= 1
            raise NotFoundError(500, f"Configuration file 'nodes/pve/lxc/{vmid}.conf' does not exist")
        return {"hostname": container["hostname"]}

    async def get_status(self, vmid: int) -> ContainerStatus:
        self.calls.append(("get_status", vmid))
        return self._lookup(vmid)["status"]

    async def set_state(self, vmid: int, target: LifecycleState) -> str:
        self.calls.append(("set_state", vmid, target))
        container = self._lookup(vmid)
        if self._pending.get(vmid):
            raise ApiError(500, f"CT {vmid} is locked (create)")
        running = container["status"] == ContainerStatus.RUNNING
        if target == LifecycleState.STARTED:
            if running:
                raise ApiError(500, f"CT {vmid} already running")
            container["status"] = ContainerStatus.RUNNING
        elif target == LifecycleState.STOPPED:
            container["status"] = ContainerStatus.STOPPED
        elif target == LifecycleState.RESTARTED:
            if not running:
                raise ApiError(500, f"CT {vmid} not running")
        return f"UPID:pve:vz{target.value}:{vmid}"

    async def delete(self, vmid: int) -> str:
        self.calls.append(("delete", vmid))
        if self._lookup(vmid)["status"] == ContainerStatus.RUNNING:
            raise ApiError(500, f"CT {vmid} is running - destroy failed")
        del self.containers[vmid]
        return f"UPID:pve:vzdestroy:{vmid}"

    async def get_interfaces(self, vmid: int) -> List[Tuple[str, str]]:
        self.calls.append(("get_interfaces", vmid))
        self._lookup(vmid)
        return self.interfaces.get(vmid, [("lo", "127.0.0.1"), ("eth0", f"10.0.0.{vmid % 250}")])

    async def get_record(self, vmid: int) -> Optional[ContainerRecord]:
        container = self.containers.get(vmid)
        if container is None:
            return None
        return ContainerRecord(vmid=vmid, hostname=container["hostname"], status=container["status"])


class FakeHostState:
    """The parts of a container's filesystem and services the stages touch."""

    def __init__(self):
        self.users: Set[str] = {"root"}
        self.groups: Dict[str, Set[str]] = {}
        self.files: Dict[str, str] = {}
        self.packages: Set[str] = set()
        self.commands: Set[str] = {"sh", "apt-get"}
        self.running_workloads: Set[str] = set()
        self.root_login = True
        self.reachable = True
        self.fail_on: Optional[str] = None
        self.history: List[Tuple[str, str]] = []

    def ran(self, fragment: str) -> List[str]:
        """Commands containing `fragment`, in execution order."""
        return [command for _, command in self.history if fragment in command]


class FakeRemoteHost:
    """RemoteHost with the same surface, interpreting commands against a FakeHostState."""

    def __init__(self, state: FakeHostState, identity: HostIdentity):
        self.state = state
        self.identity = identity

    async def run(self, command: str, check: bool = True, sudo: bool = True, stdin: str = "") -> CommandResult:
        state = self.state
        state.history.append((self.identity.username, command))
        if state.fail_on and state.fail_on in command:
            if check:
                raise RemoteCommandError(command, 1, "simulated failure")
            return CommandResult(returncode=1, stderr="simulated failure")

        stdout = ""
        if command.startswith("useradd"):
            state.users.add(shlex.split(command)[-1])
        elif command.startswith("id -nG"):
            user = shlex.split(command)[-1]
            stdout = " ".join([user] + sorted(state.groups.get(user, set()))) + "\n"
        elif command.startswith("usermod -aG"):
            _, _, group, user = shlex.split(command)
            state.groups.setdefault(user, set()).add(group)
        elif command.startswith("rm -f "):
            state.files.pop(shlex.split(command)[-1], None)
        elif command.startswith("systemctl restart ssh"):
            if any(path.startswith("/etc/ssh/sshd_config.d/") for path in state.files):
                state.root_login = False
        elif "apt-get install" in command:
            state.packages.update(shlex.split(command.split("-qq ")[-1]))
        elif command.startswith("docker compose"):
            directory = shlex.split(command)[3]
            if command.endswith("ps --quiet"):
                stdout = "f00dfeed\n" if directory in state.running_workloads else ""
            elif "up -d" in command:
                state.running_workloads.add(directory)
        return CommandResult(returncode=0, stdout=stdout)

    async def read_file(self, path: str) -> Optional[str]:
        return self.state.files.get(path)

    async def write_file(self, path: str, content: str, mode: str = "0644", owner: str = "root:root") -> bool:
        self.state.history.append((self.identity.username, f"write {path}"))
        if self.state.files.get(path) == content:
            return False
        self.state.files[path] = content
        return True

    async def user_exists(self, username: str) -> bool:
        return username in self.state.users

    async def package_installed(self, package: str) -> bool:
        return package in self.state.packages

    async def command_available(self, name: str) -> bool:
        return name in self.state.commands


class FakeConnector:
    """SSHConnector stand-in; root login works until an sshd drop-in takes effect."""

    def __init__(self):
        self.hosts: Dict[str, FakeHostState] = {}
        self.sessions: List[HostIdentity] = []

    def host(self, address: str) -> FakeHostState:
        return self.hosts.setdefault(address, FakeHostState())

    def _check_login(self, identity: HostIdentity) -> Reachability:
        state = self.host(identity.address)
        if not state.reachable:
            return Reachability.UNREACHABLE
        if identity.username == "root" and not state.root_login:
            return Reachability.AUTH_FAILED
        if identity.username != "root" and identity.username not in state.users:
            return Reachability.AUTH_FAILED
        return Reachability.OK

    async def probe(self, identity: HostIdentity) -> Reachability:
        return self._check_login(identity)

    @asynccontextmanager
    async def session(self, identity: HostIdentity):
        reachability = self._check_login(identity)
        if reachability != Reachability.OK:
            raise TransportError(f"SSH login as {identity.describe()} failed: {reachability.value}")
        self.sessions.append(identity)
        yield FakeRemoteHost(self.host(identity.address), identity)


@pytest.fixture
def hypervisor():
    return FakeHypervisor()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def hatchery_config():
    """Configuration with zero poll delays so waits resolve immediately."""
    no_delay = {"max_attempts": 10, "delay": 0}
    return HatcheryConfig(
        hypervisor={"host": "pve.example.com", "node": "pve", "token_id": "hatchery", "token_secret": "s3cret"},
        orchestrator={"concurrency": 2, "host_timeout": 30, "transport_retries": 2, "retry_delay": 0},
        polling={"registration": no_delay, "status": no_delay, "address": no_delay},
    )


@pytest.fixture
def post_provision_data():
    return {
        "operator_user": "ops",
        "operator_public_key": "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOps ops@workstation",
        "private_key_path": "~/.ssh/ops_ed25519",
        "root_private_key_path": "~/.ssh/root_ed25519",
    }


@pytest.fixture
def make_spec(post_provision_data):
    """Factory for container specs; `post_provision=True` attaches the default configuration."""
    def factory(vmid: int = 111, state: str = "started", post_provision=None, **fields) -> ContainerSpec:
        if post_provision is True:
            post_provision = dict(post_provision_data)
        elif isinstance(post_provision, dict):
            post_provision = {**post_provision_data, **post_provision}
        return ContainerSpec(
            vmid=vmid,
            hostname=fields.pop("hostname", f"ct{vmid}"),
            state=state,
            ostemplate=fields.pop("ostemplate", "local:vztmpl/debian-12-standard_12.7-1_amd64.tar.zst"),
            post_provision=post_provision,
            **fields,
        )
    return factory
