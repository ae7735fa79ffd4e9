"""SSH session lifecycle: host-key trust, askpass helper and connectivity."""

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path

from kfleet.cleanup import CleanupStack
from kfleet.config import HostKeyPolicy, OrchestratorConfig
from kfleet.credentials import Credentials, resolve_credentials
from kfleet.errors import CredentialError, SSHConnectError
from kfleet.nodes import NodeAddress
from kfleet.ssh import SSHSession, SSHSessionConfig


logger = logging.getLogger(__name__)

_ASKPASS_SCRIPT = '#!/bin/sh\nprintf \'%s\\n\' "$KFLEET_ASKPASS_PASSWORD"\n'


@dataclass
class TrustHandle:
    """Per-operation host-key trust material.

    Attributes:
        workdir: Private temp directory holding the files below.
        known_hosts: Ephemeral known_hosts file (mode 0600).
        policy: Effective StrictHostKeyChecking policy.
        persist_to: Where to save known_hosts at teardown, if anywhere.
        askpass: SSH_ASKPASS helper (mode 0700), for password auth only.
    """

    workdir: Path
    known_hosts: Path
    policy: HostKeyPolicy
    persist_to: Path | None = None
    askpass: Path | None = None
    closed: bool = False


def setup_session_trust(
    label: str,
    config: OrchestratorConfig,
    needs_askpass: bool = False,
) -> TrustHandle:
    """Create the ephemeral known_hosts file for one operation.

    When config.ssh_known_hosts is set, its contents are copied in and the
    policy is forced to strict, whatever host_key_check says.

    Args:
        label: Operation label, used in the temp directory name.
        config: Orchestrator configuration.
        needs_askpass: Also create the SSH_ASKPASS helper script.

    Returns:
        TrustHandle: Handle to pass to teardown_session_trust.

    Raises:
        CredentialError: If the pre-seeded known_hosts file does not exist.
    """
    if config.ssh_known_hosts is not None and not config.ssh_known_hosts.is_file():
        raise CredentialError(f"Known hosts file not found: {config.ssh_known_hosts}")

    workdir = Path(tempfile.mkdtemp(prefix=f"kfleet-{label}-"))
    known_hosts = workdir / "known_hosts"
    known_hosts.touch(mode=0o600)
    os.chmod(known_hosts, 0o600)

    policy = config.host_key_check
    if config.ssh_known_hosts is not None:
        known_hosts.write_bytes(config.ssh_known_hosts.read_bytes())
        policy = HostKeyPolicy.STRICT
        logger.info("Using pre-seeded known_hosts %s (strict host key checking)", config.ssh_known_hosts)

    askpass = None
    if needs_askpass:
        askpass = workdir / "askpass.sh"
        askpass.write_text(_ASKPASS_SCRIPT)
        os.chmod(askpass, 0o700)

    return TrustHandle(
        workdir=workdir,
        known_hosts=known_hosts,
        policy=policy,
        persist_to=config.persist_known_hosts,
        askpass=askpass,
    )


def teardown_session_trust(handle: TrustHandle) -> None:
    """Persist known_hosts if requested, then delete the trust material.

    Safe to call more than once.

    Args:
        handle: Handle returned by setup_session_trust.
    """
    if handle.closed:
        return
    handle.closed = True

    if handle.persist_to is not None and handle.known_hosts.exists():
        try:
            handle.persist_to.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(handle.known_hosts, handle.persist_to)
            os.chmod(handle.persist_to, 0o600)
            logger.info("Saved known_hosts to %s", handle.persist_to)
        except OSError as exc:
            logger.warning("Failed to persist known_hosts to %s: %s", handle.persist_to, exc)

    shutil.rmtree(handle.workdir, ignore_errors=True)


def build_session(
    config: OrchestratorConfig, credentials: Credentials, handle: TrustHandle
) -> SSHSession:
    """Assemble the shared, read-only SSHSession for one operation."""
    session_config = SSHSessionConfig(
        port=config.ssh_port,
        credentials=credentials,
        host_key_policy=handle.policy,
        known_hosts=handle.known_hosts,
        connect_timeout=config.connect_timeout,
        remote_timeout=config.remote_timeout,
        poll_interval=config.poll_interval,
    )
    return SSHSession(config=session_config, askpass=handle.askpass)


def open_session(
    label: str, config: OrchestratorConfig, cleanup: CleanupStack
) -> SSHSession:
    """Resolve credentials, set up trust and register its teardown.

    Args:
        label: Operation label.
        config: Orchestrator configuration.
        cleanup: Stack that receives the trust teardown.

    Returns:
        SSHSession: The session shared by every node task.

    Raises:
        CredentialError: If the credentials are invalid.
    """
    credentials = resolve_credentials(config)
    handle = setup_session_trust(label, config, needs_askpass=credentials.uses_password)
    cleanup.push("known_hosts teardown", teardown_session_trust, handle)
    logger.debug("SSH auth mode: %s", credentials.auth.value)
    return build_session(config, credentials, handle)


async def _probe(session: SSHSession, node: NodeAddress) -> str | None:
    result = await session.run(node, "echo ok", timeout=session.config.connect_timeout + 5)
    if not result.ok or result.stdout.strip() != "ok":
        detail = result.stderr.strip() or f"exit {result.returncode}"
        return f"cannot connect: {detail}"

    if node.user != "root":
        sudo = await session.run(node, "sudo -n true", timeout=session.config.connect_timeout + 5)
        if not sudo.ok:
            return f"user '{node.user}' needs passwordless sudo (sudo -n true failed)"
    return None


async def check_connectivity(session: SSHSession, nodes: list[NodeAddress]) -> None:
    """Verify every node is reachable before anything is transferred.

    All nodes are probed concurrently; failures are collected so the
    operator sees every unreachable node at once.

    Args:
        session: Shared SSH session.
        nodes: Nodes to probe.

    Raises:
        SSHConnectError: Naming every node that failed.
    """
    results = await asyncio.gather(
        *(_probe(session, node) for node in nodes), return_exceptions=True
    )

    failures: dict[str, str] = {}
    for node, outcome in zip(nodes, results):
        if isinstance(outcome, Exception):
            failures[str(node)] = str(outcome)
        elif outcome is not None:
            failures[str(node)] = outcome

    for name, reason in failures.items():
        logger.error("[%s] %s", name, reason)
    if failures:
        raise SSHConnectError(failures)
    logger.info("SSH connectivity verified for %d node(s)", len(nodes))
