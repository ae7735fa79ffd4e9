"""etcd snapshot backup and restore on a single control plane."""

import logging
import shlex
from pathlib import Path

from kfleet.config import OrchestratorConfig
from kfleet.driver import OperationReport, StepContext
from kfleet.errors import KfleetError, NodeStepError
from kfleet.nodes import NodeAddress
from kfleet.operation import operation
from kfleet.ssh import NodeResult, SSHSession


logger = logging.getLogger(__name__)

MIN_SNAPSHOT_BYTES = 100
REMOTE_SNAPSHOT_NAME = "etcd-snapshot.db"


def _ssh_line(config: OrchestratorConfig) -> str:
    return (
        f"SSH: port={config.ssh_port} host-key-check={config.host_key_check.value}"
        f" known-hosts={config.ssh_known_hosts or 'ephemeral'}"
    )


def describe_backup(config: OrchestratorConfig, node: NodeAddress, snapshot_path: Path) -> list[str]:
    """Ordered plan printed by --dry-run."""
    return [
        f"Target node: {node}",
        _ssh_line(config),
        "Steps:",
        "  1. Check SSH connectivity",
        "  2. Build and transfer bundle",
        "  3. Take etcd snapshot on the remote node",
        f"  4. Download snapshot to: {snapshot_path}",
        "  5. Remove remote bundle directory",
    ]


def describe_restore(config: OrchestratorConfig, node: NodeAddress, snapshot_path: Path) -> list[str]:
    """Ordered plan printed by --dry-run."""
    return [
        f"Target node: {node}",
        f"Snapshot: {snapshot_path}",
        _ssh_line(config),
        "Steps:",
        "  1. Check SSH connectivity",
        "  2. Build and transfer bundle",
        "  3. Upload snapshot to the remote node",
        "  4. Restore etcd from the snapshot on the remote node",
        "  5. Remove remote bundle directory",
    ]


async def backup(
    config: OrchestratorConfig,
    node: NodeAddress,
    snapshot_path: Path,
    session: SSHSession | None = None,
) -> OperationReport:
    """Take an etcd snapshot on a control plane and download it.

    Args:
        config: Orchestrator configuration.
        node: Control plane to snapshot.
        snapshot_path: Local destination file.
        session: Pre-built SSH session (tests).

    Returns:
        OperationReport: Single-node outcome.

    Raises:
        OperationFailed: If the backup, download or size check fails.
    """
    snapshot_path.parent.mkdir(parents=True, exist_ok=True)

    async with operation("backup", config, [node], session=session, path=snapshot_path) as ctx:

        async def run_backup(step: StepContext) -> NodeResult:
            location = ctx.location(step.node)
            remote_snapshot = f"{location.directory}/{REMOTE_SNAPSHOT_NAME}"
            result = await ctx.session.exec_remote(
                step.node, "etcd backup",
                location.command(f"backup --snapshot-path {shlex.quote(remote_snapshot)}"),
            )
            if not result.ok:
                return result

            if step.node.user != "root":
                await ctx.session.run(step.node, f"sudo -n chmod 644 {shlex.quote(remote_snapshot)}")

            logger.info("Downloading snapshot to %s...", snapshot_path)
            downloaded = await ctx.session.copy_from(step.node, remote_snapshot, snapshot_path)
            if not downloaded.ok:
                raise NodeStepError(step.node, "Failed to download snapshot", returncode=downloaded.returncode or 1)

            size = snapshot_path.stat().st_size if snapshot_path.exists() else 0
            if size < MIN_SNAPSHOT_BYTES:
                raise NodeStepError(
                    step.node, f"Downloaded snapshot is too small ({size} bytes), backup may have failed"
                )
            logger.info("Snapshot downloaded: %s (%d bytes)", snapshot_path, size)
            return downloaded

        await ctx.orchestrator.run_single(node, f"backup_{node.host}", run_backup, ctx.report)
        return ctx.report


async def restore(
    config: OrchestratorConfig,
    node: NodeAddress,
    snapshot_path: Path,
    session: SSHSession | None = None,
) -> OperationReport:
    """Upload a local etcd snapshot to a control plane and restore it.

    Raises:
        KfleetError: If the local snapshot is missing or too small.
        OperationFailed: If the upload or remote restore fails.
    """
    if not snapshot_path.is_file():
        raise KfleetError(f"Snapshot file not found: {snapshot_path}")
    size = snapshot_path.stat().st_size
    if size < MIN_SNAPSHOT_BYTES:
        raise KfleetError(f"Snapshot file is too small ({size} bytes): {snapshot_path}")

    async with operation("restore", config, [node], session=session, path=snapshot_path) as ctx:

        async def run_restore(step: StepContext) -> NodeResult:
            location = ctx.location(step.node)
            remote_snapshot = f"{location.directory}/{REMOTE_SNAPSHOT_NAME}"
            logger.info("[%s] Uploading snapshot (%d bytes)...", step.node.host, size)
            uploaded = await ctx.session.copy_to(step.node, snapshot_path, remote_snapshot)
            if not uploaded.ok:
                raise NodeStepError(step.node, "Failed to upload snapshot", returncode=uploaded.returncode or 1)
            return await ctx.session.exec_remote(
                step.node, "etcd restore",
                location.command(f"restore --snapshot-path {shlex.quote(remote_snapshot)}"),
            )

        await ctx.orchestrator.run_single(node, f"restore_{node.host}", run_restore, ctx.report)
        return ctx.report
