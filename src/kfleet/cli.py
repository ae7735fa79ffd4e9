"""kfleet CLI entry point."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from kfleet import __version__
from kfleet.cleanup import run_with_interrupts
from kfleet.config import HostKeyPolicy, OrchestratorConfig, load_config
from kfleet.deploy import deploy, describe_deploy
from kfleet.driver import OperationReport
from kfleet.errors import KfleetError, OperationFailed
from kfleet.etcd import backup, describe_backup, describe_restore, restore
from kfleet.log import setup_logging
from kfleet.nodes import NodeAddress, NodeList, validate_all
from kfleet.remove import describe_remove, remove
from kfleet.renew import describe_renew, renew
from kfleet.upgrade import UpgradeOptions, describe_upgrade, upgrade


app = typer.Typer(
    name="kfleet",
    help="kfleet: Kubernetes cluster orchestration over SSH.",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"kfleet {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", "-V", help="Show version and exit.",
        callback=version_callback, is_eager=True,
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Config file (TOML)."),
    ssh_user: Optional[str] = typer.Option(None, "--ssh-user", help="Default SSH user for node entries."),
    ssh_port: Optional[int] = typer.Option(None, "--ssh-port", min=1, max=65535, help="SSH port."),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key", help="SSH private key."),
    ssh_password_file: Optional[Path] = typer.Option(
        None, "--ssh-password-file", help="File holding the SSH password (mode 600 or 400)."
    ),
    ssh_known_hosts: Optional[Path] = typer.Option(
        None, "--ssh-known-hosts", help="Pre-seeded known_hosts file (forces strict checking)."
    ),
    host_key_check: Optional[HostKeyPolicy] = typer.Option(
        None, "--ssh-host-key-check", help="StrictHostKeyChecking policy."
    ),
    persist_known_hosts: Optional[Path] = typer.Option(
        None, "--persist-known-hosts", help="Save the session known_hosts here on exit."
    ),
    remote_timeout: Optional[int] = typer.Option(None, "--remote-timeout", min=1, help="Seconds per remote operation."),
    poll_interval: Optional[int] = typer.Option(None, "--poll-interval", min=1, help="Seconds between remote polls."),
    resume: bool = typer.Option(False, "--resume", help="Resume the latest unfinished operation."),
    collect_diagnostics: bool = typer.Option(
        False, "--collect-diagnostics", help="Collect remote logs from failed nodes."
    ),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Write a full debug log here."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug output."),
) -> None:
    """kfleet: Kubernetes cluster orchestration over SSH."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
        overrides = {
            "ssh_user": ssh_user,
            "ssh_port": ssh_port,
            "ssh_key": ssh_key,
            "ssh_password_file": ssh_password_file,
            "ssh_known_hosts": ssh_known_hosts,
            "host_key_check": host_key_check,
            "persist_known_hosts": persist_known_hosts,
            "remote_timeout": remote_timeout,
            "poll_interval": poll_interval,
            "log_file": log_file,
        }
        update = {k: v for k, v in overrides.items() if v is not None}
        if resume:
            update["resume"] = True
        if collect_diagnostics:
            update["collect_diagnostics"] = True
        # Reason: flag values pass the same validators as file values.
        config = OrchestratorConfig.model_validate({**config.model_dump(), **update})
    except (ValidationError, OSError, ValueError) as exc:
        console.print(f"Error: invalid configuration: {escape(str(exc))}")
        raise typer.Exit(code=1)

    setup_logging(verbose=verbose, log_file=config.log_file)
    ctx.obj["config"] = config


def _parse_nodes(csv: str, config: OrchestratorConfig, what: str, required: bool = True) -> NodeList:
    """Validate a CSV node option, exiting with an error message on failure."""
    try:
        nodes = validate_all(csv or "", config.ssh_user)
    except KfleetError as exc:
        console.print(f"Error: {escape(str(exc))}")
        raise typer.Exit(code=1)
    if required and not nodes:
        console.print(f"Error: {what} is required")
        raise typer.Exit(code=1)
    return nodes


def _single_node(csv: str, config: OrchestratorConfig, what: str) -> NodeAddress:
    nodes = _parse_nodes(csv, config, what)
    if len(nodes) != 1:
        console.print(f"Error: {what} takes exactly one node (got {len(nodes)})")
        raise typer.Exit(code=1)
    return nodes.primary


def _render_report(report: OperationReport) -> None:
    """Print per-node outcomes as a table."""
    if not report.outcomes:
        return
    table = Table(title=f"{report.kind} summary")
    table.add_column("Node")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Detail")

    for outcome in report.outcomes:
        if outcome.skipped:
            status = "[SKIPPED]"
        elif outcome.ok:
            status = "[OK]"
        elif outcome.handled:
            status = "[ROLLED BACK]"
        else:
            status = f"[FAILED {outcome.returncode}]"
        table.add_row(
            escape(str(outcome.node)), escape(outcome.label), escape(status), escape(outcome.message)
        )
    console.print(table)


def _print_plan(title: str, lines: list[str]) -> None:
    console.print(f"=== {title} Dry-Run Plan ===")
    for line in lines:
        console.print(escape(line))
    console.print("=== End of dry-run (no changes made) ===")


def _run(coro) -> object:
    """Run an operation coroutine, mapping errors to exit code 1."""
    try:
        return asyncio.run(run_with_interrupts(coro))
    except OperationFailed as exc:
        _render_report(exc.report)
        console.print(f"Error: {escape(str(exc))}")
        raise typer.Exit(code=1)
    except KfleetError as exc:
        console.print(f"Error: {escape(str(exc))}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print("Interrupted; cleanup completed.")
        raise typer.Exit(code=130)


@app.command("deploy")
def deploy_cmd(
    ctx: typer.Context,
    control_planes: str = typer.Option(..., "--control-planes", help="Control planes, CSV of host or user@host."),
    workers: str = typer.Option("", "--workers", help="Workers, CSV of host or user@host."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan without touching any node."),
    extra: Optional[list[str]] = typer.Argument(None, help="Args after -- are passed to init/join."),
) -> None:
    """Deploy a cluster: init the first control plane, then join the rest.

    Control planes join one at a time; workers join in parallel. With
    --resume, nodes already joined by an interrupted run are skipped.
    """
    config: OrchestratorConfig = ctx.obj["config"]
    cps = _parse_nodes(control_planes, config, "--control-planes")
    wks = _parse_nodes(workers, config, "--workers", required=False)
    try:
        cps + wks
    except KfleetError as exc:
        console.print(f"Error: {escape(str(exc))}")
        raise typer.Exit(code=1)

    passthrough = list(extra or [])
    if dry_run:
        _print_plan("Deploy", describe_deploy(config, cps, wks, passthrough))
        return

    report = _run(deploy(config, cps, wks, passthrough))
    _render_report(report)
    console.print("Deployment complete.")


@app.command("upgrade")
def upgrade_cmd(
    ctx: typer.Context,
    control_planes: str = typer.Option(..., "--control-planes", help="Control planes, primary first."),
    workers: str = typer.Option("", "--workers", help="Workers, CSV of host or user@host."),
    kubernetes_version: str = typer.Option(..., "--kubernetes-version", help="Target version (MAJOR.MINOR.PATCH)."),
    auto_step: bool = typer.Option(False, "--auto-step-upgrade", help="Step through intermediate minor versions."),
    skip_drain: bool = typer.Option(False, "--skip-drain", help="Do not drain nodes."),
    no_rollback: bool = typer.Option(False, "--no-rollback", help="Do not roll back failed nodes."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan without touching any node."),
    extra: Optional[list[str]] = typer.Argument(None, help="Args after -- are passed to the upgrade command."),
) -> None:
    """Upgrade the cluster one node at a time, control planes first.

    A failed node is rolled back to its previous version and uncordoned
    unless --no-rollback is given; the run still exits non-zero.
    """
    config: OrchestratorConfig = ctx.obj["config"]
    cps = _parse_nodes(control_planes, config, "--control-planes")
    wks = _parse_nodes(workers, config, "--workers", required=False)
    options = UpgradeOptions(
        target_version=kubernetes_version.lstrip("v"),
        auto_step=auto_step,
        skip_drain=skip_drain,
        no_rollback=no_rollback,
        passthrough=tuple(extra or []),
    )
    if dry_run:
        _print_plan("Upgrade", describe_upgrade(config, cps, wks, options))
        return

    reports = _run(upgrade(config, cps, wks, options))
    for report in reports:
        _render_report(report)
    console.print(f"Upgrade to v{options.target_version} complete.")


@app.command("backup")
def backup_cmd(
    ctx: typer.Context,
    control_plane: str = typer.Option(..., "--control-planes", help="The control plane to snapshot."),
    snapshot_path: Path = typer.Option(..., "--snapshot-path", help="Local file for the snapshot."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan without touching any node."),
) -> None:
    """Take an etcd snapshot on a control plane and download it."""
    config: OrchestratorConfig = ctx.obj["config"]
    node = _single_node(control_plane, config, "--control-planes")
    if dry_run:
        _print_plan("Backup", describe_backup(config, node, snapshot_path))
        return
    _run(backup(config, node, snapshot_path))
    console.print(f"Etcd backup saved to {escape(str(snapshot_path))}")


@app.command("restore")
def restore_cmd(
    ctx: typer.Context,
    control_plane: str = typer.Option(..., "--control-planes", help="The control plane to restore."),
    snapshot_path: Path = typer.Option(..., "--snapshot-path", help="Local snapshot file to upload."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan without touching any node."),
) -> None:
    """Upload an etcd snapshot to a control plane and restore it."""
    config: OrchestratorConfig = ctx.obj["config"]
    node = _single_node(control_plane, config, "--control-planes")
    if dry_run:
        _print_plan("Restore", describe_restore(config, node, snapshot_path))
        return
    _run(restore(config, node, snapshot_path))
    console.print(f"Etcd restore on {escape(str(node))} complete.")


@app.command("renew")
def renew_cmd(
    ctx: typer.Context,
    control_planes: str = typer.Option(..., "--control-planes", help="Control planes to renew."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan without touching any node."),
    extra: Optional[list[str]] = typer.Argument(None, help="Args after -- are passed to renew."),
) -> None:
    """Renew kubeadm certificates on every control plane, one at a time."""
    config: OrchestratorConfig = ctx.obj["config"]
    cps = _parse_nodes(control_planes, config, "--control-planes")
    if dry_run:
        _print_plan("Renew", describe_renew(config, cps, list(extra or [])))
        return
    report = _run(renew(config, cps, list(extra or [])))
    _render_report(report)
    console.print(f"Certificates renewed on {len(report.succeeded)} node(s).")


@app.command("remove")
def remove_cmd(
    ctx: typer.Context,
    control_plane: str = typer.Option(..., "--control-planes", help="Control plane that runs kubectl."),
    nodes: str = typer.Option(..., "--workers", help="Nodes to remove, CSV of host or user@host."),
    force: bool = typer.Option(False, "--force", help="Skip the confirmation prompt."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the plan without touching any node."),
) -> None:
    """Drain, delete and reset nodes to remove them from the cluster."""
    config: OrchestratorConfig = ctx.obj["config"]
    cp = _single_node(control_plane, config, "--control-planes")
    targets = _parse_nodes(nodes, config, "--workers")
    if cp in targets:
        console.print(f"Error: cannot remove the orchestrating control plane {escape(str(cp))}")
        raise typer.Exit(code=1)

    if dry_run:
        _print_plan("Remove", describe_remove(cp, targets))
        return

    if not force:
        if not sys.stdin.isatty():
            console.print("Error: non-interactive environment detected. Use --force to skip confirmation.")
            raise typer.Exit(code=1)
        typer.confirm(f"Remove {len(targets)} node(s) ({targets.csv}) from the cluster?", abort=True)

    report = _run(remove(config, cp, targets))
    _render_report(report)
    console.print("All nodes removed successfully.")
