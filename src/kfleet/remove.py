"""Removing nodes from a running cluster."""

import logging
import shlex

from kfleet.config import OrchestratorConfig
from kfleet.driver import OperationReport, StepContext
from kfleet.health import check_cluster
from kfleet.nodes import NodeAddress, NodeList
from kfleet.operation import operation
from kfleet.ssh import NodeResult, SSHSession
from kfleet.upgrade import KUBECTL, resolve_node_name


logger = logging.getLogger(__name__)


def describe_remove(control_plane: NodeAddress, targets: NodeList) -> list[str]:
    """Ordered plan printed by --dry-run."""
    lines = [
        f"Control plane (orchestrator): {control_plane}",
        f"Nodes to remove ({len(targets)}): {targets.csv}",
        "Steps:",
        "  1. Check SSH connectivity to all nodes",
        "  2. For each target node:",
    ]
    for node in targets:
        lines += [
            f"     [{node.host}]",
            "       a. Resolve Kubernetes node name",
            "       b. kubectl drain (from control plane)",
            "       c. kubectl delete node (from control plane)",
            "       d. kubeadm reset -f (on target node)",
        ]
    lines.append("  3. Run post-remove health checks (from control plane)")
    return lines


async def remove(
    config: OrchestratorConfig,
    control_plane: NodeAddress,
    targets: NodeList,
    session: SSHSession | None = None,
) -> OperationReport:
    """Drain, delete and reset each target node in turn.

    Drain and delete failures are tolerated (the node may already be gone
    from the API); a failed `kubeadm reset` fails that node. Every target
    is attempted.

    Args:
        config: Orchestrator configuration.
        control_plane: Control plane that runs kubectl.
        targets: Nodes to remove.
        session: Pre-built SSH session (tests).

    Returns:
        OperationReport: Per-node outcomes.

    Raises:
        OperationFailed: If any node could not be reset.
    """
    nodes = [control_plane, *(n for n in targets if n != control_plane)]
    logger.info("Removing %d node(s) from the cluster", len(targets))
    pfx = control_plane.sudo_prefix

    async with operation(
        "remove", config, nodes, session=session, needs_bundle=False, targets=len(targets),
    ) as ctx:

        async def remove_node(step: StepContext) -> NodeResult:
            node = step.node
            logger.info("[%s] Processing node removal...", node.host)
            name = await resolve_node_name(ctx.session, control_plane, node)
            logger.info("[%s] Kubernetes node name: %s", node.host, name)

            drained = await ctx.session.run(
                control_plane,
                f"{pfx}{KUBECTL} drain {shlex.quote(name)} --ignore-daemonsets "
                "--delete-emptydir-data --force --timeout=300s",
            )
            if not drained.ok:
                logger.warning("[%s] Drain failed (node may already be drained or not ready). Continuing...", node.host)

            deleted = await ctx.session.run(control_plane, f"{pfx}{KUBECTL} delete node {shlex.quote(name)}")
            if not deleted.ok:
                logger.warning("[%s] Delete node failed. Continuing with reset...", node.host)

            logger.info("[%s] Running kubeadm reset on target node...", node.host)
            result = await ctx.session.run(node, f"{node.sudo_prefix}kubeadm reset -f")
            if result.ok:
                logger.info("[%s] Node removed successfully", node.host)
            return result

        await ctx.orchestrator.run_sequential(
            list(targets), "remove_", remove_node, ctx.report, stop_on_failure=False
        )

        removed = ", ".join(o.node.host for o in ctx.report.succeeded)
        failed = ", ".join(o.node.host for o in ctx.report.failed)
        if removed:
            logger.info("Removed: %s", removed)
        if failed:
            logger.error("Failed: %s", failed)
        if any(not o.skipped for o in ctx.report.outcomes):
            await check_cluster(ctx.session, control_plane, "post")
        return ctx.report
