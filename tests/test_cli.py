"""Tests for the kfleet CLI (cli.py).

Operations are monkeypatched on the cli module so no SSH is involved; the
tests cover option parsing, validation, dry-run output and error mapping.
"""

import pytest
from typer.testing import CliRunner

from kfleet import __version__, cli
from kfleet.cli import app
from kfleet.driver import NodeOutcome, NodeState, OperationReport
from kfleet.errors import OperationFailed, SSHConnectError
from kfleet.nodes import NodeAddress

runner = CliRunner()


@pytest.fixture
def base_args(tmp_path, monkeypatch):
    """Global options pointing at a hermetic, absent config file."""
    monkeypatch.delenv("KFLEET_SSH_PASSWORD", raising=False)
    return ["--config", str(tmp_path / "absent.toml")]


def _report(kind: str, *hosts: str, failed: str | None = None) -> OperationReport:
    report = OperationReport(kind)
    for host in hosts:
        outcome = NodeOutcome(node=NodeAddress("root", host), label=f"{kind}_{host}")
        if host == failed:
            outcome.returncode = 1
            outcome.message = "exit 1"
            outcome.advance(NodeState.FAILED)
        else:
            outcome.advance(NodeState.DONE)
        report.add(outcome)
    return report


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"kfleet {__version__}" in result.output


def test_deploy_dry_run_touches_nothing(base_args, monkeypatch):
    async def fail_deploy(*args, **kwargs):
        raise AssertionError("deploy must not run in dry-run mode")

    monkeypatch.setattr(cli, "deploy", fail_deploy)

    result = runner.invoke(
        app,
        base_args + ["deploy", "--control-planes", "10.0.0.1,10.0.0.2", "--workers", "10.0.1.1",
                     "--dry-run", "--", "--cri", "containerd"],
    )

    assert result.exit_code == 0, result.output
    assert "Deploy Dry-Run Plan" in result.output
    assert "Passthrough args: --cri containerd" in result.output
    assert "root@10.0.0.2" in result.output


def test_deploy_passes_parsed_nodes(base_args, monkeypatch):
    seen = {}

    async def fake_deploy(config, control_planes, workers, passthrough):
        seen.update(cps=control_planes.csv, workers=workers.csv, passthrough=passthrough, user=config.ssh_user)
        return _report("deploy", "10.0.0.1", "10.0.1.1")

    monkeypatch.setattr(cli, "deploy", fake_deploy)

    result = runner.invoke(
        app,
        base_args + ["--ssh-user", "ubuntu", "deploy", "--control-planes", "10.0.0.1",
                     "--workers", "admin@10.0.1.1", "--", "--cri", "crio"],
    )

    assert result.exit_code == 0, result.output
    assert seen == {
        "cps": "ubuntu@10.0.0.1",
        "workers": "admin@10.0.1.1",
        "passthrough": ["--cri", "crio"],
        "user": "ubuntu",
    }
    assert "Deployment complete." in result.output


def test_invalid_node_exits_1(base_args):
    result = runner.invoke(app, base_args + ["deploy", "--control-planes", "fd00::1"])
    assert result.exit_code == 1
    assert "enclosed in brackets" in result.output


def test_overlapping_node_lists_exit_1(base_args):
    result = runner.invoke(
        app, base_args + ["deploy", "--control-planes", "10.0.0.1", "--workers", "10.0.0.1"]
    )
    assert result.exit_code == 1
    assert "Duplicate node address" in result.output


def test_invalid_config_override_exits_1(base_args):
    result = runner.invoke(app, base_args + ["--ssh-user=-bad", "renew", "--control-planes", "10.0.0.1"])
    assert result.exit_code == 1
    assert "invalid configuration" in result.output


def test_operation_failure_renders_report(base_args, monkeypatch):
    async def fake_renew(config, control_planes, passthrough):
        raise OperationFailed("renew failed on 1 node(s)", _report("renew", "10.0.0.1", "10.0.0.2", failed="10.0.0.2"))

    monkeypatch.setattr(cli, "renew", fake_renew)

    result = runner.invoke(app, base_args + ["renew", "--control-planes", "10.0.0.1,10.0.0.2"])

    assert result.exit_code == 1
    assert "renew summary" in result.output
    assert "FAILED 1" in result.output
    assert "Error: renew failed on 1 node(s)" in result.output


def test_connectivity_error_exits_1(base_args, monkeypatch):
    async def fake_backup(config, node, snapshot_path):
        raise SSHConnectError({"root@10.0.0.1": "cannot connect"})

    monkeypatch.setattr(cli, "backup", fake_backup)

    result = runner.invoke(
        app, base_args + ["backup", "--control-planes", "10.0.0.1", "--snapshot-path", "/tmp/snap.db"]
    )
    assert result.exit_code == 1
    assert "SSH connectivity check failed for: root@10.0.0.1" in result.output


def test_missing_known_hosts_file_exits_1(base_args, tmp_path):
    missing = tmp_path / "nope" / "known_hosts"
    result = runner.invoke(
        app,
        base_args + ["--ssh-known-hosts", str(missing), "deploy", "--control-planes", "10.0.0.1"],
    )
    assert result.exit_code == 1
    assert result.exception is None or isinstance(result.exception, SystemExit)
    assert "Error: Known hosts file not found" in result.output


def test_backup_requires_exactly_one_node(base_args):
    result = runner.invoke(
        app, base_args + ["backup", "--control-planes", "10.0.0.1,10.0.0.2", "--snapshot-path", "/tmp/s.db"]
    )
    assert result.exit_code == 1
    assert "exactly one node" in result.output


def test_upgrade_builds_options(base_args, monkeypatch):
    seen = {}

    async def fake_upgrade(config, control_planes, workers, options):
        seen["options"] = options
        seen["resume"] = config.resume
        return [_report("upgrade", "10.0.0.1")]

    monkeypatch.setattr(cli, "upgrade", fake_upgrade)

    result = runner.invoke(
        app,
        base_args + ["--resume", "upgrade", "--control-planes", "10.0.0.1", "--kubernetes-version", "v1.33.2",
                     "--auto-step-upgrade", "--no-rollback"],
    )

    assert result.exit_code == 0, result.output
    options = seen["options"]
    assert options.target_version == "1.33.2"
    assert options.auto_step and options.no_rollback and not options.skip_drain
    assert seen["resume"] is True
    assert "Upgrade to v1.33.2 complete." in result.output


def test_remove_requires_force_when_non_interactive(base_args, monkeypatch):
    async def fail_remove(*args, **kwargs):
        raise AssertionError("remove must not run without confirmation")

    monkeypatch.setattr(cli, "remove", fail_remove)

    result = runner.invoke(app, base_args + ["remove", "--control-planes", "10.0.0.1", "--workers", "10.0.1.1"])
    assert result.exit_code == 1
    assert "Use --force" in result.output


def test_remove_with_force(base_args, monkeypatch):
    async def fake_remove(config, control_plane, targets):
        return _report("remove", *(n.host for n in targets))

    monkeypatch.setattr(cli, "remove", fake_remove)

    result = runner.invoke(
        app, base_args + ["remove", "--control-planes", "10.0.0.1", "--workers", "10.0.1.1", "--force"]
    )
    assert result.exit_code == 0, result.output
    assert "All nodes removed successfully." in result.output


def test_remove_rejects_orchestrating_control_plane(base_args):
    result = runner.invoke(
        app, base_args + ["remove", "--control-planes", "10.0.0.1", "--workers", "10.0.0.1", "--force"]
    )
    assert result.exit_code == 1
    assert "cannot remove the orchestrating control plane" in result.output


@pytest.mark.parametrize(
    "command, title, expected",
    [
        (["backup", "--control-planes", "10.0.0.1", "--snapshot-path", "/tmp/snap.db"],
         "Backup Dry-Run Plan", "Download snapshot to: /tmp/snap.db"),
        (["restore", "--control-planes", "10.0.0.1", "--snapshot-path", "/tmp/snap.db"],
         "Restore Dry-Run Plan", "Upload snapshot to the remote node"),
        (["renew", "--control-planes", "10.0.0.1,10.0.0.2", "--dry-run", "--", "--certs", "apiserver", "--check-only"],
         "Renew Dry-Run Plan", "Action: Check expiration only (no renewal)"),
    ],
)
def test_maintenance_dry_runs_touch_nothing(base_args, monkeypatch, command, title, expected):
    async def fail(*args, **kwargs):
        raise AssertionError("operation must not run in dry-run mode")

    for name in ("backup", "restore", "renew"):
        monkeypatch.setattr(cli, name, fail)

    if "--dry-run" not in command:
        command = command + ["--dry-run"]
    result = runner.invoke(app, base_args + command)

    assert result.exit_code == 0, result.output
    assert title in result.output
    assert expected in result.output
    assert "End of dry-run (no changes made)" in result.output
