"""Rolling cluster upgrade with drain, rollback and auto-stepping."""

import logging
import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from kfleet.bundle import append_passthrough, filter_passthrough
from kfleet.cleanup import CleanupStack
from kfleet.config import OrchestratorConfig
from kfleet.driver import OperationReport, StepContext
from kfleet.errors import NodeStepError
from kfleet.health import check_cluster
from kfleet.nodes import NodeAddress, NodeList
from kfleet.operation import OperationContext, operation
from kfleet.session import open_session
from kfleet.ssh import NodeResult, SSHSession
from kfleet.state import StateStore
from kfleet.versions import PatchResolver, parse_version, plan_upgrade


logger = logging.getLogger(__name__)

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBECTL = f"kubectl --kubeconfig={ADMIN_CONF}"


@dataclass(frozen=True)
class UpgradeOptions:
    """Operator choices for one upgrade request.

    Attributes:
        target_version: Final Kubernetes version (MAJOR.MINOR.PATCH).
        auto_step: Step through intermediate minors when the gap exceeds one.
        skip_drain: Do not drain/uncordon nodes around the upgrade.
        no_rollback: Leave failed nodes as they are.
        passthrough: Extra args forwarded to the bundle's upgrade command.
    """

    target_version: str
    auto_step: bool = False
    skip_drain: bool = False
    no_rollback: bool = False
    passthrough: tuple[str, ...] = field(default_factory=tuple)


async def get_current_version(session: SSHSession, node: NodeAddress) -> str:
    """`kubeadm version -o short` on the node, without the leading v.

    Raises:
        NodeStepError: If the version cannot be read.
    """
    result = await session.run(node, f"{node.sudo_prefix}kubeadm version -o short")
    version = result.stdout.strip().lstrip("v")
    if not result.ok or not version:
        raise NodeStepError(node, "Failed to get current Kubernetes version", returncode=result.returncode or 1)
    return version


async def resolve_node_name(session: SSHSession, primary: NodeAddress, node: NodeAddress) -> str:
    """Kubernetes node name whose addresses include the node's host.

    Falls back to the host itself when no node matches.
    """
    jsonpath = (
        "'{range .items[*]}{.metadata.name}{\" \"}"
        "{range .status.addresses[*]}{.address}{\" \"}{end}{\"\\n\"}{end}'"
    )
    result = await session.run(
        primary, f"{primary.sudo_prefix}{KUBECTL} get nodes -o jsonpath={jsonpath}"
    )
    if result.ok:
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) < 2:
                continue
            name, addresses = parts[0], parts[1:]
            if node.ssh_host in addresses or node.host in addresses:
                return name
    logger.warning("Could not resolve node name for %s, using host as node name", node.host)
    return node.ssh_host


class NodeUpgrader:
    """Per-node upgrade steps for one target version."""

    def __init__(self, ctx: OperationContext, primary: NodeAddress, version: str, options: UpgradeOptions):
        self.ctx = ctx
        self.session = ctx.session
        self.primary = primary
        self.version = version
        self.options = options
        self.passthrough = filter_passthrough(
            options.passthrough,
            skip_pairs=("--kubernetes-version",),
            skip_flags=("--skip-drain",),
        )

    async def _kubectl(self, args: str) -> NodeResult:
        return await self.session.run(self.primary, f"{self.primary.sudo_prefix}{KUBECTL} {args}")

    async def drain(self, name: str) -> NodeResult:
        logger.info("[%s] Draining node...", name)
        return await self._kubectl(
            f"drain {shlex.quote(name)} --ignore-daemonsets --delete-emptydir-data --timeout=300s"
        )

    async def uncordon(self, name: str) -> bool:
        logger.info("[%s] Uncordoning node...", name)
        result = await self._kubectl(f"uncordon {shlex.quote(name)}")
        if not result.ok:
            logger.error("[%s] Uncordon failed", name)
        return result.ok

    def upgrade_command(self, step: StepContext, version: str, first: bool) -> str:
        subcommand = f"upgrade --kubernetes-version {shlex.quote(version)}"
        if first:
            subcommand += " --first-control-plane"
        env = f"UPGRADE_ADMIN_CONF={shlex.quote(step.aux)}" if step.aux else ""
        command = self.ctx.location(step.node).command(subcommand, env=env)
        return append_passthrough(command, self.passthrough)

    async def rollback(self, step: StepContext, pre_version: str) -> bool:
        """Downgrade a failed node to its recorded version and restart kubelet."""
        node = step.node
        logger.warning("[%s] Attempting rollback to v%s...", node.host, pre_version)
        result = await self.session.exec_remote(
            node, "rollback", self.upgrade_command(step, pre_version, first=False)
        )
        if not result.ok:
            logger.error("[%s] Rollback failed. Manual intervention required.", node.host)
            return False
        pfx = node.sudo_prefix
        await self.session.run(node, f"{pfx}systemctl daemon-reload && {pfx}systemctl restart kubelet")
        logger.info("[%s] Rollback to v%s succeeded", node.host, pre_version)
        return True

    async def _upgrade(self, step: StepContext, first: bool) -> NodeResult:
        node = step.node
        name = await resolve_node_name(self.session, self.primary, node)

        pre_version = ""
        pre = await self.session.run(node, f"{node.sudo_prefix}kubeadm version -o short")
        if pre.ok:
            pre_version = pre.stdout.strip().lstrip("v")
            logger.debug("[%s] Pre-upgrade version: v%s", node.host, pre_version)

        if not self.options.skip_drain:
            drained = await self.drain(name)
            if not drained.ok:
                raise NodeStepError(node, "Drain failed", returncode=drained.returncode or 1)

        result = await self.session.exec_remote(
            node, f"upgrade to v{self.version}", self.upgrade_command(step, self.version, first)
        )
        if result.ok:
            if not self.options.skip_drain and not await self.uncordon(name):
                logger.warning("[%s] Uncordon failed. Continuing...", node.host)
            logger.info("[%s] Upgrade to v%s complete", node.host, self.version)
            return result

        handled = False
        if self.options.no_rollback:
            logger.warning("[%s] Rollback disabled, leaving node as is", node.host)
        elif not pre_version:
            logger.warning("[%s] No pre-upgrade version recorded, cannot rollback", node.host)
        else:
            handled = await self.rollback(step, pre_version)
            if not self.options.skip_drain:
                handled = await self.uncordon(name) and handled

        message = f"Upgrade to v{self.version} failed"
        if handled:
            message += f" (rolled back to v{pre_version})"
        raise NodeStepError(node, message, returncode=result.returncode or 1, handled=handled)

    async def control_plane(self, step: StepContext) -> NodeResult:
        return await self._upgrade(step, first=step.index == 0)

    async def worker(self, step: StepContext) -> NodeResult:
        return await self._upgrade(step, first=False)

    async def fetch_admin_conf(self, step: StepContext) -> str:
        """Copy admin.conf from the primary into a temp file on the worker.

        Returns:
            str: Remote path of the copied credential.
        """
        node = step.node
        pfx = node.sudo_prefix
        created = await self.session.run(node, f"{pfx}mktemp /tmp/upgrade-admin-XXXXXX")
        remote_path = created.stdout.strip()
        if not created.ok or not remote_path.startswith("/"):
            raise NodeStepError(node, "Failed to create remote admin.conf path", returncode=created.returncode or 1)

        conf = await self.session.run(self.primary, f"{self.primary.sudo_prefix}cat {ADMIN_CONF}")
        if not conf.ok or not conf.stdout.strip():
            await self.session.run(node, f"{pfx}rm -f {shlex.quote(remote_path)}")
            raise NodeStepError(
                node, f"Failed to download admin.conf from control-plane {self.primary.host}"
            )

        fd, local = tempfile.mkstemp(prefix="kfleet-admin-conf-")
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(conf.stdout)
            copied = await self.session.copy_to(node, Path(local), remote_path)
        finally:
            Path(local).unlink(missing_ok=True)

        if not copied.ok:
            await self.session.run(node, f"{pfx}rm -f {shlex.quote(remote_path)}")
            raise NodeStepError(node, "Failed to transfer admin.conf", returncode=copied.returncode or 1)
        await self.session.run(node, f"{pfx}chmod 600 {shlex.quote(remote_path)}")
        return remote_path

    async def remove_admin_conf(self, step: StepContext, outcome: str) -> None:
        if step.aux:
            await self.session.run(step.node, f"{step.node.sudo_prefix}rm -f {shlex.quote(step.aux)}")


async def upgrade_to_version(
    config: OrchestratorConfig,
    control_planes: NodeList,
    workers: NodeList,
    version: str,
    options: UpgradeOptions,
    session: SSHSession,
    resume: bool = False,
) -> OperationReport:
    """One upgrade hop with its own state lifecycle.

    Control planes go one by one (the primary with --first-control-plane),
    then workers one by one with admin.conf fetched for each.

    Raises:
        OperationFailed: If any node fails, rolled back or not.
    """
    all_nodes = list(control_planes + workers)
    primary = control_planes.primary
    logger.info(
        "Upgrading Kubernetes cluster to v%s: %d control-plane(s), %d worker(s)",
        version, len(control_planes), len(workers),
    )

    async with operation(
        "upgrade", config, all_nodes, session=session, resume=resume, target=version,
    ) as ctx:
        ctx.state.set("target_version", version)
        upgrader = NodeUpgrader(ctx, primary, version, options)

        labels = [f"upgrade_cp_{n.host}" for n in control_planes]
        labels += [f"upgrade_worker_{n.host}" for n in workers]
        pending = [label for label in labels if not ctx.state.is_step_done(label)]

        if pending:
            await ctx.ensure_prepared()
            plan = await ctx.session.run(primary, f"{primary.sudo_prefix}kubeadm upgrade plan")
            logger.info("kubeadm upgrade plan:\n%s", plan.stdout.strip() or plan.stderr.strip())
            await check_cluster(ctx.session, primary, "pre")

        ok = await ctx.orchestrator.run_sequential(
            list(control_planes), "upgrade_cp_", upgrader.control_plane, ctx.report
        )
        if not ok:
            logger.error("Some nodes may be in mixed-version state (this is allowed by K8s skew policy).")
            ctx.fail("Control-plane upgrade failed")

        if workers:
            ok = await ctx.orchestrator.run_sequential(
                list(workers), "upgrade_worker_", upgrader.worker, ctx.report,
                pre_hook=upgrader.fetch_admin_conf, post_hook=upgrader.remove_admin_conf,
            )
            if not ok:
                ctx.fail("Worker upgrade failed")

        if pending:
            verify = await ctx.session.run(primary, f"{primary.sudo_prefix}{KUBECTL} get nodes -o wide")
            logger.info("Cluster state:\n%s", verify.stdout.strip())
            await check_cluster(ctx.session, primary, "post")
        return ctx.report


def _resumable_target(config: OrchestratorConfig) -> str | None:
    store = StateStore(config.state_dir)
    state_id = store.find_resumable("upgrade")
    if state_id is None:
        return None
    return store.peek(state_id).values.get("target_version")


async def upgrade(
    config: OrchestratorConfig,
    control_planes: NodeList,
    workers: NodeList,
    options: UpgradeOptions,
    session: SSHSession | None = None,
    resolver: PatchResolver | None = None,
) -> list[OperationReport]:
    """Upgrade the cluster to options.target_version.

    The whole version path is computed before any node is touched. Each hop
    runs as its own operation with a fresh state scope. With resume, an
    unfinished hop recorded in the state directory is completed first.

    Args:
        config: Orchestrator configuration.
        control_planes: Control planes, primary first.
        workers: Worker nodes.
        options: Upgrade choices.
        session: Pre-built SSH session (tests).
        resolver: Patch lookup for auto-stepping (tests).

    Returns:
        list[OperationReport]: One report per hop.

    Raises:
        VersionSkewError: If the requested upgrade violates the skew policy.
        OperationFailed: If a hop fails.
    """
    target = str(parse_version(options.target_version))
    primary = control_planes.primary
    reports: list[OperationReport] = []

    async with CleanupStack() as cleanup:
        if session is None:
            session = open_session("upgrade", config, cleanup)

        resumed = _resumable_target(config) if config.resume else None
        if resumed:
            logger.info("Resuming interrupted upgrade to v%s", resumed)
            reports.append(
                await upgrade_to_version(
                    config, control_planes, workers, resumed, options, session, resume=True
                )
            )
            current = resumed
            if parse_version(current) >= parse_version(target):
                return reports
        else:
            current = await get_current_version(session, primary)

        logger.info("Current cluster version: v%s", current)
        logger.info("Target version: v%s", target)
        plan = await plan_upgrade(current, target, auto_step=options.auto_step, resolver=resolver)

        for version in plan.steps:
            if plan.intermediate_steps:
                logger.info("Auto-step: upgrading to v%s", version)
            reports.append(
                await upgrade_to_version(config, control_planes, workers, version, options, session)
            )
        if plan.intermediate_steps:
            logger.info("Auto-step upgrade to v%s completed successfully!", target)
    return reports


def describe_upgrade(
    config: OrchestratorConfig,
    control_planes: NodeList,
    workers: NodeList,
    options: UpgradeOptions,
) -> list[str]:
    """Ordered plan printed by --dry-run."""
    lines = [
        f"Target version: v{options.target_version}"
        + (" (auto-step through intermediate minors)" if options.auto_step else ""),
        f"Control planes ({len(control_planes)}): {control_planes.csv}",
        f"Workers ({len(workers)}): {workers.csv or '-'}",
        f"SSH: port={config.ssh_port} host-key-check={config.host_key_check.value}",
        f"Drain: {'skipped' if options.skip_drain else 'yes'}"
        f"  Rollback: {'disabled' if options.no_rollback else 'enabled'}",
        "Steps:",
        "  1. Check SSH connectivity and transfer bundle",
        f"  2. Read current version from {control_planes.primary} and validate skew",
        "  3. kubeadm upgrade plan (informational) and pre-upgrade health checks",
        "  4. Upgrade control planes sequentially (first with --first-control-plane)",
    ]
    if workers:
        lines.append("  5. Upgrade workers sequentially (admin.conf fetched per worker)")
    lines.append(f"  {6 if workers else 5}. Verify cluster state and run post-upgrade health checks")
    return lines
