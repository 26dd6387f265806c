"""Configuration stages applied to started containers."""

import logging
import shlex
from typing import List

from hatchery.errors import ConfigurationError, HatcheryError
from hatchery.models.records import Capability, HostIdentity, StageOutcome, StageResult
from hatchery.pipeline.base import HostContext, Stage
from hatchery.remote import Reachability, RemoteHost
from hatchery.utils.templates import render_env_file, render_template


logger = logging.getLogger(__name__)


SSHD_DROPIN_PATH = "/etc/ssh/sshd_config.d/00-hatchery-hardening.conf"

# sshd keeps the first value it reads, so this drop-in must sort first
SSHD_DROPIN_TEMPLATE = """\
# Managed by hatchery
PermitRootLogin no
PasswordAuthentication no
KbdInteractiveAuthentication no
PubkeyAuthentication yes
AllowUsers {{ operator_user }}
"""

SUDOERS_TEMPLATE = "{{ operator_user }} ALL=(ALL) NOPASSWD:ALL\n"

PRIVILEGE_GROUP = "sudo"


class ConnectivityPrecheck(Stage):
    """Detect hosts whose root login a previous run already disabled."""

    name = "connectivity"
    requires = Capability.ROOT
    flag = "hardening"

    async def run(self, ctx: HostContext, identity: HostIdentity) -> StageResult:
        reachability = await ctx.connector.probe(identity)

        if reachability == Reachability.OK:
            return self.result(StageOutcome.RAN, "root login available")

        if reachability == Reachability.AUTH_FAILED:
            logger.info(f"Container {ctx.vmid}: root login refused, treating host as already hardened")
            await ctx.inventory.mark_hardened(ctx.vmid, ctx.operator_identity())
            return self.result(StageOutcome.IDEMPOTENT, "root login disabled by a previous run")

        raise ConfigurationError(f"Container {ctx.vmid} is unreachable at {identity.address}")


class HardeningStage(Stage):
    """Create the operator account and lock down remote root access."""

    name = "hardening"
    requires = Capability.ROOT
    flag = "hardening"

    async def run(self, ctx: HostContext, identity: HostIdentity) -> StageResult:
        config = ctx.post_provision
        user = config.operator_user
        changed = False

        async with ctx.connector.session(identity) as host:
            changed |= await self._ensure_user(host, user, config.operator_password)
            changed |= await self._ensure_group(host, user)
            if config.passwordless_sudo:
                changed |= await self._ensure_sudoers(host, user)
            changed |= await self._ensure_authorized_key(host, user, config.operator_public_key)

            dropin = render_template(SSHD_DROPIN_TEMPLATE, operator_user=user)
            if await host.write_file(SSHD_DROPIN_PATH, dropin, mode="0644"):
                try:
                    await host.run("sshd -t")
                    await host.run("systemctl restart ssh || systemctl restart sshd")
                except HatcheryError:
                    # A drop-in left behind would read as up to date and never be activated
                    await host.run(f"rm -f {SSHD_DROPIN_PATH}", check=False)
                    raise
                logger.info(f"Container {ctx.vmid}: root login disabled, sshd restarted")
                changed = True

        await ctx.inventory.promote(ctx.operator_identity())
        return self.applied(changed, f"operator {user} configured" if changed else None)

    async def _ensure_user(self, host: RemoteHost, user: str, password) -> bool:
        if await host.user_exists(user):
            return False
        await host.run(f"useradd --create-home --shell /bin/bash {shlex.quote(user)}")
        if password:
            await host.run("chpasswd", stdin=f"{user}:{password}\n")
        logger.info(f"Created operator account {user} on {host.identity.address}")
        return True

    async def _ensure_group(self, host: RemoteHost, user: str) -> bool:
        groups = await host.run(f"id -nG {shlex.quote(user)}", sudo=False)
        if PRIVILEGE_GROUP in groups.stdout.split():
            return False
        await host.run(f"usermod -aG {PRIVILEGE_GROUP} {shlex.quote(user)}")
        return True

    async def _ensure_sudoers(self, host: RemoteHost, user: str) -> bool:
        path = f"/etc/sudoers.d/90-hatchery-{user}"
        content = render_template(SUDOERS_TEMPLATE, operator_user=user)
        if not await host.write_file(path, content, mode="0440"):
            return False
        await host.run(f"visudo -cf {shlex.quote(path)}")
        return True

    async def _ensure_authorized_key(self, host: RemoteHost, user: str, public_key: str) -> bool:
        home = f"/home/{user}"
        ssh_dir = f"{home}/.ssh"
        path = f"{ssh_dir}/authorized_keys"
        key = public_key.strip()

        current = await host.read_file(path) or ""
        if key in (line.strip() for line in current.splitlines()):
            return False

        quoted_user = shlex.quote(user)
        await host.run(
            f"install -d -m 0700 -o {quoted_user} -g {quoted_user} {shlex.quote(ssh_dir)}"
        )
        content = current if not current or current.endswith("\n") else current + "\n"
        return await host.write_file(path, content + key + "\n", mode="0600", owner=f"{user}:{user}")


class ExtrasStage(Stage):
    """Install auxiliary tooling and the login banner."""

    name = "extras"
    requires = Capability.OPERATOR
    flag = "extras"

    async def run(self, ctx: HostContext, identity: HostIdentity) -> StageResult:
        config = ctx.post_provision
        changed = False

        async with ctx.connector.session(identity) as host:
            missing: List[str] = []
            for package in config.extra_packages:
                if not await host.package_installed(package):
                    missing.append(package)

            if missing:
                logger.info(f"Container {ctx.vmid}: installing {', '.join(missing)}")
                await host.run(
                    "DEBIAN_FRONTEND=noninteractive apt-get update -qq && "
                    "DEBIAN_FRONTEND=noninteractive apt-get install -y -qq "
                    + " ".join(shlex.quote(p) for p in missing)
                )
                changed = True

            if config.motd:
                motd = render_template(
                    config.motd,
                    hostname=ctx.spec.hostname,
                    vmid=ctx.vmid,
                    operator_user=config.operator_user,
                    address=ctx.address,
                )
                changed |= await host.write_file("/etc/motd", motd, mode="0644")

        return self.applied(changed)


class WorkloadStage(Stage):
    """Render and activate each declared compose workload."""

    name = "workload"
    requires = Capability.OPERATOR
    flag = "workload"

    async def run(self, ctx: HostContext, identity: HostIdentity) -> StageResult:
        config = ctx.post_provision
        activated: List[str] = []
        if not config.workloads:
            return self.result(StageOutcome.SKIPPED, "no workloads declared")

        async with ctx.connector.session(identity) as host:
            if not await host.command_available("docker"):
                raise ConfigurationError(
                    f"Container {ctx.vmid}: docker is not installed, add it to extra_packages"
                )

            for name, workload in sorted(config.workloads.items()):
                context = {
                    "name": name,
                    "hostname": ctx.spec.hostname,
                    "vmid": ctx.vmid,
                    "address": ctx.address,
                    "operator_user": config.operator_user,
                    "env": workload.environment,
                }
                directory = workload.deploy_dir
                compose_path = f"{directory}/compose.yaml"
                env_path = f"{directory}/.env"

                descriptor_changed = await host.write_file(
                    compose_path, render_template(workload.descriptor, **context), mode="0644"
                )
                env_changed = await host.write_file(
                    env_path, render_env_file(workload.environment, **context), mode="0600"
                )

                compose = (
                    f"docker compose --project-directory {shlex.quote(directory)} "
                    f"-f {shlex.quote(compose_path)} --env-file {shlex.quote(env_path)}"
                )
                running = await host.run(f"{compose} ps --quiet", check=False)
                if descriptor_changed or env_changed or not running.stdout.strip():
                    logger.info(f"Container {ctx.vmid}: activating workload {name}")
                    await host.run(f"{compose} up -d --remove-orphans")
                    activated.append(name)

        if activated:
            return self.applied(True, f"activated {', '.join(activated)}")
        return self.applied(False)
