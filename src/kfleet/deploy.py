"""Cluster deployment: init the primary, join control planes, then workers."""

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass

from kfleet.bundle import append_passthrough, filter_passthrough
from kfleet.config import OrchestratorConfig
from kfleet.driver import OperationReport, StepContext
from kfleet.errors import NodeStepError
from kfleet.health import check_cluster, verify_node_count
from kfleet.nodes import NodeAddress, NodeList
from kfleet.operation import operation
from kfleet.ssh import NodeResult, SSHSession


logger = logging.getLogger(__name__)

JOIN_TOKEN_RE = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
DISCOVERY_HASH_RE = re.compile(r"^sha256:[a-f0-9]{64}$")
CERT_KEY_RE = re.compile(r"^[a-f0-9]{64}$")

JOIN_ATTEMPTS = 3
# Flags that only make sense on control planes.
WORKER_SKIP_PAIRS = ("--ha-vip", "--ha-interface")


@dataclass(frozen=True)
class JoinInfo:
    """Credentials for `kubeadm join`, extracted from the primary.

    Attributes:
        address: API server endpoint.
        token: Bootstrap token.
        discovery_hash: CA certificate hash.
        certificate_key: Key for control-plane certificate download (HA only).
    """

    address: str
    token: str
    discovery_hash: str
    certificate_key: str | None = None


def parse_join_command(node: NodeAddress, output: str) -> JoinInfo:
    """Parse `kubeadm join <addr> --token <t> --discovery-token-ca-cert-hash <h>`.

    Raises:
        NodeStepError: If a component is missing or malformed.
    """
    words = output.split()
    address = token = discovery_hash = ""
    for i, word in enumerate(words):
        following = words[i + 1] if i + 1 < len(words) else ""
        if word == "join" and following and not following.startswith("-"):
            address = following
        elif word == "--token":
            token = following
        elif word == "--discovery-token-ca-cert-hash":
            discovery_hash = following

    if not (address and token and discovery_hash):
        raise NodeStepError(node, f"Failed to parse join command: {output.strip()!r}")
    if not JOIN_TOKEN_RE.match(token):
        raise NodeStepError(node, "Join token has an invalid format")
    if not DISCOVERY_HASH_RE.match(discovery_hash):
        raise NodeStepError(node, "Discovery token hash has an invalid format")
    return JoinInfo(address=address, token=token, discovery_hash=discovery_hash)


async def extract_join_info(
    session: SSHSession, node: NodeAddress, with_certificate_key: bool = False
) -> JoinInfo:
    """Create a join token on the primary, retrying with linear backoff.

    Args:
        session: Shared SSH session.
        node: Primary control plane.
        with_certificate_key: Also upload certificates and return their key.

    Returns:
        JoinInfo: Parsed and validated join credentials.

    Raises:
        NodeStepError: If extraction fails after all attempts.
    """
    logger.info("[%s] Extracting join information...", node.host)
    command = f"{node.sudo_prefix}kubeadm token create --print-join-command"

    result: NodeResult | None = None
    for attempt in range(1, JOIN_ATTEMPTS + 1):
        result = await session.run(node, command)
        if result.ok and result.stdout.strip():
            break
        logger.warning(
            "[%s] Join command extraction attempt %d/%d failed, retrying in %ds...",
            node.host, attempt, JOIN_ATTEMPTS, attempt,
        )
        await asyncio.sleep(attempt)
    else:
        raise NodeStepError(
            node,
            f"Failed to extract join command after {JOIN_ATTEMPTS} attempts",
            returncode=result.returncode if result else 1,
        )

    info = parse_join_command(node, result.stdout)

    if with_certificate_key:
        logger.info("[%s] Uploading certificates for HA join...", node.host)
        certs = await session.run(
            node, f"{node.sudo_prefix}kubeadm init phase upload-certs --upload-certs"
        )
        if not certs.ok:
            raise NodeStepError(node, "kubeadm upload-certs failed", returncode=certs.returncode)
        lines = certs.stdout.strip().splitlines()
        key = lines[-1].strip() if lines else ""
        if not CERT_KEY_RE.match(key):
            raise NodeStepError(node, f"Invalid certificate key format: {key!r}")
        info = JoinInfo(info.address, info.token, info.discovery_hash, key)

    logger.info("[%s] Join info extracted successfully", node.host)
    return info


def join_arguments(info: JoinInfo, control_plane: bool = False) -> str:
    """`join ...` subcommand for the bundle."""
    parts = [
        "join",
        "--join-token", shlex.quote(info.token),
        "--join-address", shlex.quote(info.address),
        "--discovery-token-hash", shlex.quote(info.discovery_hash),
    ]
    if control_plane:
        parts.append("--control-plane")
        if info.certificate_key:
            parts += ["--certificate-key", shlex.quote(info.certificate_key)]
    return " ".join(parts)


def describe_deploy(
    config: OrchestratorConfig,
    control_planes: NodeList,
    workers: NodeList,
    passthrough: list[str],
) -> list[str]:
    """Ordered plan printed by --dry-run."""
    lines = [
        f"Control planes ({len(control_planes)}): {control_planes.csv}",
        f"Workers ({len(workers)}): {workers.csv or '-'}",
        f"SSH: port={config.ssh_port} host-key-check={config.host_key_check.value}"
        f" known-hosts={config.ssh_known_hosts or 'ephemeral'}",
        f"Passthrough args: {' '.join(shlex.quote(a) for a in passthrough) or '-'}",
        "Steps:",
        "  1. Check SSH connectivity to all nodes",
        "  2. Build and transfer bundle",
        f"  3. Init first control plane {control_planes.primary}"
        + (" (HA)" if len(control_planes) > 1 else ""),
        "  4. Extract join information",
    ]
    step = 5
    if len(control_planes) > 1:
        lines.append(f"  {step}. Join control planes sequentially: {', '.join(str(n) for n in control_planes[1:])}")
        step += 1
    if workers:
        lines.append(f"  {step}. Join workers in parallel: {workers.csv}")
        step += 1
    lines.append(f"  {step}. Verify node count and run post-deploy health checks")
    lines.append(f"  {step + 1}. Remove remote bundle directories")
    return lines


async def deploy(
    config: OrchestratorConfig,
    control_planes: NodeList,
    workers: NodeList,
    passthrough: list[str] | None = None,
    session: SSHSession | None = None,
) -> OperationReport:
    """Deploy a cluster across control planes and workers.

    The primary is initialized first, remaining control planes join one at
    a time, and workers join concurrently. Every step is guarded by the
    state store so a resumed run skips finished nodes.

    Args:
        config: Orchestrator configuration.
        control_planes: Control planes, primary first.
        workers: Worker nodes.
        passthrough: Extra args forwarded to the bundle's init/join.
        session: Pre-built SSH session (tests).

    Returns:
        OperationReport: Per-node outcomes.

    Raises:
        OperationFailed: If any node fails.
    """
    passthrough = list(passthrough or [])
    all_nodes = list(control_planes + workers)
    primary = control_planes.primary
    has_ha_vip = "--ha-vip" in passthrough
    logger.info(
        "Deploying Kubernetes cluster: %d control-plane(s), %d worker(s)",
        len(control_planes), len(workers),
    )

    async with operation(
        "deploy", config, all_nodes, session=session,
        cp=len(control_planes), workers=len(workers),
    ) as ctx:
        orchestrator = ctx.orchestrator

        async def init_primary(step: StepContext) -> NodeResult:
            subcommand = "init --ha" if len(control_planes) > 1 else "init"
            command = append_passthrough(ctx.location(step.node).command(subcommand), passthrough)
            return await ctx.session.exec_remote(step.node, "kubeadm init", command)

        if not await orchestrator.run_single(primary, "init_cp", init_primary, ctx.report):
            ctx.fail("First control-plane initialization failed")

        extra_cps = list(control_planes)[1:]
        pending_joins = [
            n for n in extra_cps if not ctx.state.is_step_done(f"join_cp_{n.host}")
        ] + [n for n in workers if not ctx.state.is_step_done(f"join_worker_{n.host}")]

        info: JoinInfo | None = None
        if pending_joins:
            await ctx.ensure_prepared()
            info = await extract_join_info(ctx.session, primary, with_certificate_key=has_ha_vip)

        async def join_control_plane(step: StepContext) -> NodeResult:
            command = ctx.location(step.node).command(join_arguments(info, control_plane=True))
            return await ctx.session.exec_remote(
                step.node, "join control-plane", append_passthrough(command, passthrough)
            )

        worker_args = filter_passthrough(passthrough, skip_pairs=WORKER_SKIP_PAIRS)

        async def join_worker(step: StepContext) -> NodeResult:
            command = ctx.location(step.node).command(join_arguments(info))
            return await ctx.session.exec_remote(
                step.node, "join worker", append_passthrough(command, worker_args)
            )

        if extra_cps:
            ok = await orchestrator.run_sequential(
                extra_cps, "join_cp_", join_control_plane, ctx.report, index_offset=1
            )
            if not ok:
                ctx.fail("Control-plane join failed")

        if workers:
            await orchestrator.run_parallel(list(workers), "join_worker_", join_worker, ctx.report)

        ran_anything = any(not o.skipped for o in ctx.report.outcomes)
        if ran_anything and ctx.report.ok:
            if not await verify_node_count(ctx.session, primary, len(all_nodes)):
                ctx.fail("Node count verification failed")
            await check_cluster(ctx.session, primary, "post")

        if ctx.report.ok:
            logger.info(
                "To access the cluster: scp%s %s:/etc/kubernetes/admin.conf ~/.kube/config",
                f" -P {config.ssh_port}" if config.ssh_port != 22 else "",
                primary,
            )
        return ctx.report
