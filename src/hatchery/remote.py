"""SSH channel to provisioned containers.

paramiko is blocking, so every network call is offloaded with asyncio.to_thread.
"""

import asyncio
import logging
import os
import shlex
import socket
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional, Tuple

import paramiko

from hatchery.errors import RemoteCommandError, TransportError
from hatchery.models.config import SSHConfig
from hatchery.models.records import HostIdentity


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result from running a command."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Reachability(Enum):
    """Outcome of a lightweight login attempt."""
    OK = "ok"
    AUTH_FAILED = "auth_failed"
    UNREACHABLE = "unreachable"


class RemoteHost:
    """Command execution and file management on one connected host."""

    def __init__(self, client: paramiko.SSHClient, identity: HostIdentity, command_timeout: float = 600.0):
        self._client = client
        self.identity = identity
        self.command_timeout = command_timeout

    @property
    def is_root(self) -> bool:
        return self.identity.username == "root"

    def _wrap(self, command: str, sudo: bool) -> Tuple[str, str]:
        """Return (command, stdin prefix), elevating through sudo for non-root users."""
        if not sudo or self.is_root:
            return command, ""
        inner = f"sh -c {shlex.quote(command)}"
        if self.identity.password:
            return f"sudo -S -p '' {inner}", self.identity.password + "\n"
        return f"sudo -n {inner}", ""

    def _exec(self, command: str, stdin_data: str) -> CommandResult:
        stdin, stdout, stderr = self._client.exec_command(command, timeout=self.command_timeout)
        if stdin_data:
            stdin.write(stdin_data)
        stdin.channel.shutdown_write()
        # Drain output first; a full channel window blocks the remote side from exiting
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        return CommandResult(returncode=stdout.channel.recv_exit_status(), stdout=out, stderr=err)

    async def run(self, command: str, check: bool = True, sudo: bool = True, stdin: str = "") -> CommandResult:
        """Run a command on the host, elevated unless `sudo` is False."""
        wrapped, prefix = self._wrap(command, sudo)
        logger.debug(f"[{self.identity.describe()}] {command}")
        try:
            result = await asyncio.to_thread(self._exec, wrapped, prefix + stdin)
        except (paramiko.SSHException, socket.error) as e:
            raise TransportError(f"SSH command failed on {self.identity.address}: {e}") from e

        if check and not result.ok:
            raise RemoteCommandError(command, result.returncode, result.stderr)
        return result

    async def read_file(self, path: str) -> Optional[str]:
        """File contents, or None if the file does not exist."""
        result = await self.run(f"cat {shlex.quote(path)}", check=False)
        if not result.ok:
            return None
        return result.stdout

    async def write_file(self, path: str, content: str, mode: str = "0644", owner: str = "root:root") -> bool:
        """Write `content` to `path` unless it is already there; returns whether it changed."""
        if await self.read_file(path) == content:
            logger.debug(f"{path} on {self.identity.address} already up to date")
            return False

        quoted = shlex.quote(path)
        tmp = shlex.quote(f"{path}.hatchery-tmp")
        await self.run(
            f"mkdir -p $(dirname {quoted}) && cat > {tmp} && chmod {mode} {tmp} "
            f"&& chown {owner} {tmp} && mv {tmp} {quoted}",
            stdin=content,
        )
        logger.info(f"Wrote {path} on {self.identity.address}")
        return True

    async def user_exists(self, username: str) -> bool:
        result = await self.run(f"id -u {shlex.quote(username)}", check=False, sudo=False)
        return result.ok

    async def package_installed(self, package: str) -> bool:
        result = await self.run(
            f"dpkg-query -W -f='${{Status}}' {shlex.quote(package)}", check=False, sudo=False
        )
        return result.ok and "install ok installed" in result.stdout

    async def command_available(self, name: str) -> bool:
        result = await self.run(f"command -v {shlex.quote(name)}", check=False, sudo=False)
        return result.ok


class SSHConnector:
    """Opens scoped SSH sessions for host identities."""

    def __init__(self, config: SSHConfig):
        """Initialize connector."""
        self.config = config

    def _connect(self, identity: HostIdentity) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self.config.known_hosts_file:
            client.load_host_keys(os.path.expanduser(self.config.known_hosts_file))
        else:
            client.load_system_host_keys()
        if self.config.auto_add_host_keys:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())

        key_filename = os.path.expanduser(identity.key_path) if identity.key_path else None
        try:
            client.connect(
                hostname=identity.address,
                port=self.config.port,
                username=identity.username,
                key_filename=key_filename,
                password=identity.password,
                timeout=self.config.connect_timeout,
                banner_timeout=self.config.connect_timeout,
                auth_timeout=self.config.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except Exception:
            client.close()
            raise
        return client

    @asynccontextmanager
    async def session(self, identity: HostIdentity) -> AsyncIterator[RemoteHost]:
        """Connected RemoteHost, closed on every exit path."""
        try:
            client = await asyncio.to_thread(self._connect, identity)
        except paramiko.AuthenticationException as e:
            raise TransportError(f"SSH authentication failed for {identity.describe()}") from e
        except (paramiko.SSHException, socket.error) as e:
            raise TransportError(f"SSH connection to {identity.describe()} failed: {e}") from e

        logger.debug(f"SSH connected to {identity.describe()}")
        try:
            yield RemoteHost(client, identity, self.config.command_timeout)
        finally:
            await asyncio.to_thread(client.close)
            logger.debug(f"SSH connection to {identity.address} closed")

    async def probe(self, identity: HostIdentity) -> Reachability:
        """Attempt a login and classify the outcome."""
        try:
            client = await asyncio.to_thread(self._connect, identity)
        except paramiko.AuthenticationException:
            logger.info(f"Login refused for {identity.describe()}")
            return Reachability.AUTH_FAILED
        except (paramiko.SSHException, socket.error) as e:
            logger.warning(f"{identity.address} unreachable: {e}")
            return Reachability.UNREACHABLE

        await asyncio.to_thread(client.close)
        return Reachability.OK
