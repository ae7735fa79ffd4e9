"""Best-effort collection of remote logs from failed nodes."""

import logging
import time
from pathlib import Path

from kfleet.nodes import NodeAddress
from kfleet.ssh import SSHSession


logger = logging.getLogger(__name__)

_COMMAND_TIMEOUT = 15

# (file suffix, command, needs sudo)
_COLLECTORS = [
    ("kubelet", "journalctl -u kubelet --no-pager -n 100", True),
    ("containerd", "journalctl -u containerd --no-pager -n 50", True),
    (
        "events",
        "kubectl --kubeconfig=/etc/kubernetes/admin.conf get events -A "
        "--sort-by=.lastTimestamp 2>/dev/null | tail -50",
        True,
    ),
]


def diagnostics_dir(base: Path, label: str) -> Path:
    """Per-run diagnostics directory, e.g. /tmp/kfleet-diag-upgrade-1718000000."""
    return base / f"kfleet-diag-{label}-{int(time.time())}"


async def collect_diagnostics(session: SSHSession, node: NodeAddress, output_dir: Path) -> list[Path]:
    """Save kubelet/containerd logs, recent events and disk/memory usage.

    Never raises for remote failures; empty outputs are not written.

    Args:
        session: Shared SSH session.
        node: Failed node.
        output_dir: Local directory for `<host>-*.log` files.

    Returns:
        list[Path]: Files written.
    """
    logger.info("[%s] Collecting diagnostics into %s", node.host, output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []

    for suffix, command, needs_sudo in _COLLECTORS:
        prefix = node.sudo_prefix if needs_sudo else ""
        result = await session.run(node, f"{prefix}{command}", timeout=_COMMAND_TIMEOUT)
        if result.stdout.strip():
            path = output_dir / f"{node.host}-{suffix}.log"
            path.write_text(result.stdout)
            written.append(path)

    sections = []
    for command in ("df -h", "free -m"):
        result = await session.run(node, command, timeout=_COMMAND_TIMEOUT)
        sections.append(f"=== {command} ===\n{result.stdout}")
    path = output_dir / f"{node.host}-system.log"
    path.write_text("\n".join(sections))
    written.append(path)

    logger.info("[%s] Diagnostics collected (%d file(s))", node.host, len(written))
    return written
