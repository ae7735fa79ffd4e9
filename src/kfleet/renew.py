"""Certificate renewal across control planes."""

import logging

from kfleet.bundle import append_passthrough
from kfleet.config import OrchestratorConfig
from kfleet.driver import OperationReport, StepContext
from kfleet.nodes import NodeList
from kfleet.operation import operation
from kfleet.ssh import NodeResult, SSHSession


logger = logging.getLogger(__name__)


def describe_renew(
    config: OrchestratorConfig, control_planes: NodeList, passthrough: list[str]
) -> list[str]:
    """Ordered plan printed by --dry-run."""
    certs = "all"
    if "--certs" in passthrough:
        index = passthrough.index("--certs")
        if index + 1 < len(passthrough):
            certs = passthrough[index + 1]
    action = "Check expiration only (no renewal)" if "--check-only" in passthrough else "Renew certificates"
    return [
        f"Control planes ({len(control_planes)}): {control_planes.csv}",
        f"SSH: port={config.ssh_port} host-key-check={config.host_key_check.value}",
        f"Certificates: {certs}",
        f"Action: {action}",
        "Steps:",
        "  1. Check SSH connectivity to all nodes",
        "  2. Build and transfer bundle",
        "  3. Run renewal on each control plane sequentially",
        "  4. Display summary",
    ]


async def renew(
    config: OrchestratorConfig,
    control_planes: NodeList,
    passthrough: list[str] | None = None,
    session: SSHSession | None = None,
) -> OperationReport:
    """Run the bundle's `renew` on every control plane, one at a time.

    Unlike joins, a failure on one node does not stop the others; the run
    fails at the end if any node failed.

    Args:
        config: Orchestrator configuration.
        control_planes: Control planes to renew.
        passthrough: Extra args forwarded to `renew` (e.g. --certs, --check-only).
        session: Pre-built SSH session (tests).

    Returns:
        OperationReport: Per-node outcomes.

    Raises:
        OperationFailed: If renewal failed on any node.
    """
    args = list(passthrough or [])
    logger.info("Starting remote certificate renewal on %d control-plane node(s)...", len(control_planes))

    async with operation("renew", config, list(control_planes), session=session, cp=len(control_planes)) as ctx:

        async def run_renew(step: StepContext) -> NodeResult:
            logger.info("--- Node %d/%d: %s ---", step.index + 1, len(control_planes), step.node.host)
            command = append_passthrough(ctx.location(step.node).command("renew"), args)
            return await ctx.session.exec_remote(step.node, "cert renew", command)

        await ctx.orchestrator.run_sequential(
            list(control_planes), "renew_", run_renew, ctx.report, stop_on_failure=False
        )

        logger.info(
            "Certificate renewal summary: %d succeeded, %d failed",
            len(ctx.report.succeeded), len(ctx.report.failed),
        )
        return ctx.report
