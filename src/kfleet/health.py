"""Cluster health checks run around deploy, upgrade and remove.

Checks only warn: a failed check is logged and reported, never raised, so
an operation's outcome depends on its node steps alone.
"""

import logging
from dataclasses import dataclass, field

from kfleet.nodes import NodeAddress
from kfleet.ssh import SSHSession


logger = logging.getLogger(__name__)

KUBECTL = "kubectl --kubeconfig=/etc/kubernetes/admin.conf"

# kube-system pod phases that count as healthy.
_HEALTHY_POD_STATUSES = ("Running", "Completed")


@dataclass
class HealthReport:
    """Outcome of one round of cluster health checks.

    Attributes:
        phase: "pre" or "post".
        failures: One message per failed check.
    """

    phase: str
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


async def _kubectl(session: SSHSession, node: NodeAddress, args: str):
    return await session.run(node, f"{node.sudo_prefix}{KUBECTL} {args}")


def _rows(output: str) -> list[list[str]]:
    return [line.split() for line in output.splitlines() if line.strip()]


async def check_api_server(session: SSHSession, node: NodeAddress) -> str | None:
    """API server answers /readyz."""
    result = await _kubectl(session, node, "get --raw /readyz")
    if not result.ok:
        return "API server: not ready"
    logger.info("  API server: ready")
    return None


async def check_nodes_ready(session: SSHSession, node: NodeAddress) -> str | None:
    """Every registered node reports Ready."""
    result = await _kubectl(session, node, "get nodes --no-headers")
    rows = _rows(result.stdout)
    if not result.ok or not rows:
        return "Could not retrieve node list"

    not_ready = [
        f"{row[0]}({row[1] if len(row) > 1 else '?'})"
        for row in rows
        if len(row) < 2 or row[1] != "Ready"
    ]
    if not_ready:
        return f"Not ready nodes: {' '.join(not_ready)}"
    logger.info("  All %d node(s) are Ready", len(rows))
    return None


async def check_etcd(session: SSHSession, node: NodeAddress) -> str | None:
    """API server reports etcd healthy via /healthz/etcd."""
    result = await _kubectl(session, node, "get --raw /healthz/etcd")
    answer = result.stdout.strip()
    if not result.ok or answer != "ok":
        return f"etcd health check returned: {answer or 'no response'}"
    logger.info("  etcd: healthy")
    return None


async def check_core_pods(session: SSHSession, node: NodeAddress) -> str | None:
    """Every kube-system pod is Running or Completed."""
    result = await _kubectl(session, node, "get pods -n kube-system --no-headers")
    rows = _rows(result.stdout)
    if not result.ok or not rows:
        return "Could not retrieve kube-system pods"

    problems = [
        f"{row[0]}({row[2] if len(row) > 2 else '?'})"
        for row in rows
        if len(row) < 3 or row[2] not in _HEALTHY_POD_STATUSES
    ]
    if problems:
        return f"Non-running kube-system pods: {' '.join(problems)}"
    logger.info("  All %d kube-system pod(s) are Running/Completed", len(rows))
    return None


_CHECKS = (check_api_server, check_nodes_ready, check_etcd, check_core_pods)


async def check_cluster(session: SSHSession, node: NodeAddress, phase: str = "post") -> HealthReport:
    """Run every health check against the cluster through one control plane.

    Args:
        session: Shared SSH session.
        node: Control plane holding admin.conf.
        phase: "pre" before an operation touches nodes, "post" after.

    Returns:
        HealthReport: Failed checks, if any. Never raises for an unhealthy
        cluster.
    """
    logger.info("Running %s-operation health checks...", phase)
    report = HealthReport(phase)
    for check in _CHECKS:
        failure = await check(session, node)
        if failure:
            logger.warning("  %s", failure)
            report.failures.append(failure)

    if report.ok:
        logger.info("Health check: all checks passed")
    else:
        logger.warning("Health check: %d check(s) failed", len(report.failures))
    return report


async def verify_node_count(session: SSHSession, node: NodeAddress, expected: int) -> bool:
    """Check that the cluster reports the expected number of nodes."""
    result = await _kubectl(session, node, "get nodes --no-headers")
    rows = _rows(result.stdout)
    if not result.ok or not rows:
        logger.error("Could not retrieve node list for node count verification")
        return False
    if len(rows) != expected:
        logger.error("Node count mismatch: expected %d, got %d", expected, len(rows))
        return False
    logger.info("Node count verified: %d/%d", len(rows), expected)
    return True
