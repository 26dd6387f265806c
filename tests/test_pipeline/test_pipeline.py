"""Tests for the configuration pipeline against simulated hosts."""

import pytest

from hatchery.inventory import InventoryRegistry
from hatchery.models.records import Capability, StageOutcome
from hatchery.pipeline import ConfigurationPipeline, HostContext
from hatchery.pipeline.stages import SSHD_DROPIN_PATH, ExtrasStage


ADDRESS = "10.0.0.111"

COMPOSE = """\
services:
  app:
    image: nginx:stable
    container_name: {{ name }}
    ports:
      - "${PORT}:80"
"""


async def prepared(spec, connector, registered=True):
    """HostContext for `spec`, registered the way the orchestrator does it."""
    inventory = InventoryRegistry()
    ctx = HostContext(spec=spec, address=ADDRESS, inventory=inventory, connector=connector)
    if registered:
        if spec.post_provision.run_initial_hardening:
            initial = ctx.root_identity()
        else:
            initial = ctx.operator_identity()
        await inventory.register(initial, spec.post_provision)
    return ctx


def outcomes(results):
    return {r.stage: r.outcome for r in results}


def test_stage_order():
    assert ConfigurationPipeline().list_stages() == ["connectivity", "hardening", "extras", "workload"]


def test_get_stage():
    pipeline = ConfigurationPipeline()

    assert pipeline.get_stage("hardening").requires == Capability.ROOT
    assert pipeline.get_stage("extras").requires == Capability.OPERATOR
    assert pipeline.get_stage("nope") is None


@pytest.mark.asyncio
class TestConfigurationPipeline:
    """Test stage selection, identity handoff and idempotence."""

    async def test_fresh_host_hardened_then_extras(self, make_spec, connector):
        spec = make_spec(post_provision={"install_extras": True})
        ctx = await prepared(spec, connector)

        results = await ConfigurationPipeline().run(ctx)

        assert outcomes(results) == {
            "connectivity": StageOutcome.RAN,
            "hardening": StageOutcome.RAN,
            "extras": StageOutcome.RAN,
            "workload": StageOutcome.SKIPPED,
        }
        assert results[3].reason == "flag unset"

        host = connector.host(ADDRESS)
        assert "ops" in host.users
        assert "sudo" in host.groups["ops"]
        assert "AllowUsers ops" in host.files[SSHD_DROPIN_PATH]
        assert "PermitRootLogin no" in host.files[SSHD_DROPIN_PATH]
        assert host.files["/etc/sudoers.d/90-hatchery-ops"] == "ops ALL=(ALL) NOPASSWD:ALL\n"
        assert spec.post_provision.operator_public_key in host.files["/home/ops/.ssh/authorized_keys"]
        assert host.root_login is False
        assert {"curl", "git", "htop"} <= host.packages

    async def test_hardening_hands_host_to_operator(self, make_spec, connector):
        ctx = await prepared(make_spec(post_provision={"install_extras": True}), connector)

        await ConfigurationPipeline().run(ctx)

        entry = ctx.inventory.get(111)
        assert entry.hardened is True
        assert entry.capability == Capability.OPERATOR
        # Extras ran as the operator, never as root
        extras_commands = [user for user, cmd in connector.host(ADDRESS).history if "apt-get" in cmd]
        assert extras_commands == ["ops"]
        assert [i.username for i in connector.sessions] == ["root", "ops"]

    async def test_rerun_is_idempotent(self, make_spec, connector):
        """Test a second run against a hardened host changes nothing."""
        spec = make_spec(post_provision={"install_extras": True})
        await ConfigurationPipeline().run(await prepared(spec, connector))
        host = connector.host(ADDRESS)
        commands_before = len(host.ran("useradd"))

        results = await ConfigurationPipeline().run(await prepared(spec, connector))

        assert outcomes(results) == {
            "connectivity": StageOutcome.IDEMPOTENT,
            "hardening": StageOutcome.IDEMPOTENT,
            "extras": StageOutcome.IDEMPOTENT,
            "workload": StageOutcome.SKIPPED,
        }
        assert not any(r.outcome == StageOutcome.FAILED for r in results)
        assert len(host.ran("useradd")) == commands_before
        assert len(host.ran("apt-get install")) == 1

    async def test_root_login_refused_skips_hardening(self, make_spec, connector):
        """Test a host hardened by an earlier run is reported idempotent, not failed."""
        host = connector.host(ADDRESS)
        host.root_login = False
        host.users.add("ops")
        ctx = await prepared(make_spec(post_provision=True), connector)

        results = await ConfigurationPipeline().run(ctx)

        assert results[0].outcome == StageOutcome.IDEMPOTENT
        assert results[1].outcome == StageOutcome.IDEMPOTENT
        assert results[1].reason == "root login disabled by a previous run"
        assert ctx.inventory.get(111).previously_hardened is True
        assert ctx.inventory.get(111).capability == Capability.OPERATOR
        assert host.history == []

    async def test_unreachable_host_fails_remaining_stages(self, make_spec, connector):
        connector.host(ADDRESS).reachable = False
        ctx = await prepared(make_spec(post_provision={"install_extras": True}), connector)

        results = await ConfigurationPipeline().run(ctx)

        assert results[0].outcome == StageOutcome.FAILED
        assert "unreachable" in results[0].reason
        assert [(r.outcome, r.reason) for r in results[1:]] == [
            (StageOutcome.SKIPPED, "connectivity failed"),
            (StageOutcome.SKIPPED, "connectivity failed"),
            (StageOutcome.SKIPPED, "connectivity failed"),
        ]

    async def test_partial_hardening_resumes(self, make_spec, connector):
        """Test a run that died after creating the account completes on the next run."""
        spec = make_spec(post_provision={"install_extras": True})
        host = connector.host(ADDRESS)
        host.fail_on = "sshd -t"

        first = await ConfigurationPipeline().run(await prepared(spec, connector))

        assert first[1].outcome == StageOutcome.FAILED
        assert first[2].outcome == StageOutcome.SKIPPED
        assert first[2].reason == "hardening failed"
        assert "ops" in host.users
        assert host.root_login is True
        assert SSHD_DROPIN_PATH not in host.files

        host.fail_on = None
        second = await ConfigurationPipeline().run(await prepared(spec, connector))

        assert outcomes(second)["hardening"] == StageOutcome.RAN
        assert outcomes(second)["extras"] == StageOutcome.RAN
        assert len(host.ran("useradd")) == 1
        assert len(host.ran("usermod")) == 1
        assert host.root_login is False

    async def test_without_initial_hardening(self, make_spec, connector):
        connector.host(ADDRESS).users.add("ops")
        ctx = await prepared(
            make_spec(post_provision={"run_initial_hardening": False, "install_extras": True}), connector
        )

        results = await ConfigurationPipeline().run(ctx)

        assert [(r.outcome, r.reason) for r in results[:2]] == [
            (StageOutcome.SKIPPED, "flag unset"),
            (StageOutcome.SKIPPED, "flag unset"),
        ]
        assert results[2].outcome == StageOutcome.RAN
        assert connector.sessions[0].username == "ops"

    async def test_unregistered_host_fails(self, make_spec, connector):
        ctx = await prepared(make_spec(post_provision=True), connector, registered=False)

        results = await ConfigurationPipeline().run(ctx)

        assert results[0].outcome == StageOutcome.FAILED
        assert results[0].reason == "host not registered"
        assert all(r.outcome == StageOutcome.SKIPPED for r in results[1:])

    async def test_operator_password_set_when_sudo_needs_it(self, make_spec, connector):
        spec = make_spec(post_provision={"passwordless_sudo": False, "operator_password": "pw"})
        ctx = await prepared(spec, connector)

        await ConfigurationPipeline().run(ctx)

        host = connector.host(ADDRESS)
        assert host.ran("chpasswd")
        assert "/etc/sudoers.d/90-hatchery-ops" not in host.files
        assert ctx.inventory.get(111).identity.password == "pw"

    async def test_workload_deployed_and_activated_once(self, make_spec, connector):
        spec = make_spec(post_provision={
            "install_workload": True,
            "workloads": {"app": {"descriptor": COMPOSE, "environment": {"PORT": "8080", "HOST": "{{ hostname }}"}}},
        })
        host = connector.host(ADDRESS)
        host.commands.add("docker")

        results = await ConfigurationPipeline().run(await prepared(spec, connector))

        assert outcomes(results)["workload"] == StageOutcome.RAN
        assert results[3].reason == "activated app"
        assert "container_name: app" in host.files["/opt/app/compose.yaml"]
        assert host.files["/opt/app/.env"] == "HOST=ct111\nPORT=8080\n"
        assert len(host.ran("up -d")) == 1

        again = await ConfigurationPipeline().run(await prepared(spec, connector))

        assert outcomes(again)["workload"] == StageOutcome.IDEMPOTENT
        assert len(host.ran("up -d")) == 1

    async def test_workload_requires_docker(self, make_spec, connector):
        spec = make_spec(post_provision={
            "install_workload": True,
            "workloads": {"app": {"descriptor": COMPOSE}},
        })

        results = await ConfigurationPipeline().run(await prepared(spec, connector))

        assert results[3].outcome == StageOutcome.FAILED
        assert "docker" in results[3].reason

    async def test_motd_rendered(self, make_spec, connector):
        spec = make_spec(post_provision={
            "install_extras": True,
            "extra_packages": [],
            "motd": "Welcome to {{ hostname }} ({{ address }})\n",
        })

        results = await ConfigurationPipeline().run(await prepared(spec, connector))

        assert outcomes(results)["extras"] == StageOutcome.RAN
        assert connector.host(ADDRESS).files["/etc/motd"] == "Welcome to ct111 (10.0.0.111)\n"

    async def test_workload_flag_without_workloads(self, make_spec, connector):
        connector.host(ADDRESS).commands.add("docker")
        spec = make_spec(post_provision={"install_workload": True})

        results = await ConfigurationPipeline().run(await prepared(spec, connector))

        assert (results[3].outcome, results[3].reason) == (StageOutcome.SKIPPED, "no workloads declared")
        assert not connector.host(ADDRESS).ran("docker compose")

    async def test_stage_runs_only_for_hosts_with_its_capability(self, make_spec, connector):
        """Test an operator stage is refused for a host still addressed as root."""
        ctx = await prepared(make_spec(post_provision={"install_extras": True}), connector)

        results = await ConfigurationPipeline({"extras": ExtrasStage}).run(ctx)

        assert results[0].outcome == StageOutcome.FAILED
        assert "has no operator identity" in results[0].reason
        assert connector.sessions == []
        assert ctx.inventory.hosts_with_capability(Capability.OPERATOR) == []
