"""Bundle assembly and distribution.

The bundle is one self-contained shell script built from an ordered module
manifest plus the entrypoint, with the offline flag as its first statement.
It is validated locally before any node sees it, then copied into a fresh
remote temp directory on every node.
"""

import asyncio
import logging
import shlex
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from kfleet.config import BundleConfig, ModuleSpec
from kfleet.errors import BundleValidationError
from kfleet.nodes import NodeAddress
from kfleet.ssh import SSHSession


logger = logging.getLogger(__name__)

OFFLINE_FLAG = "BUNDLED_MODE=true"


@dataclass(frozen=True)
class Bundle:
    """An assembled, validated bundle on local disk.

    Attributes:
        path: Local file holding the bundle.
        remote_name: File name used inside each remote directory.
        modules: Names of the modules it contains, in order.
    """

    path: Path
    remote_name: str
    modules: tuple[str, ...]


@dataclass(frozen=True)
class BundleLocation:
    """Where the bundle lives on one node.

    Attributes:
        node: Node holding the bundle.
        directory: Remote temp directory (removed at cleanup).
        script_path: Full remote path of the bundle script.
    """

    node: NodeAddress
    directory: str
    script_path: str

    def command(self, subcommand: str, env: str = "") -> str:
        """Command line running the bundle with `subcommand` on the node."""
        prefix = self.node.sudo_prefix
        if env:
            return f"{prefix}env {env} sh {self.script_path} {subcommand}".rstrip()
        return f"{prefix}sh {self.script_path} {subcommand}".rstrip()


def append_passthrough(command: str, args: list[str] | tuple[str, ...]) -> str:
    """Append operator passthrough args to a remote command, shell-quoted."""
    if not args:
        return command
    return " ".join([command, *(shlex.quote(arg) for arg in args)])


def filter_passthrough(
    args: list[str] | tuple[str, ...],
    skip_pairs: tuple[str, ...] = (),
    skip_flags: tuple[str, ...] = (),
) -> list[str]:
    """Drop flags that do not apply to a node role.

    Args:
        args: Passthrough args.
        skip_pairs: Flags dropped together with the value that follows them.
        skip_flags: Boolean flags dropped on their own.

    Returns:
        list[str]: The remaining args, in order.
    """
    kept: list[str] = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if arg in skip_pairs:
            skip_next = True
            continue
        if arg in skip_flags:
            continue
        kept.append(arg)
    return kept


class BundleLocations:
    """Node → BundleLocation map, written once per node at distribution."""

    def __init__(self) -> None:
        self._by_node: dict[NodeAddress, BundleLocation] = {}

    def record(self, location: BundleLocation) -> None:
        if location.node in self._by_node:
            raise ValueError(f"bundle location already recorded for {location.node}")
        self._by_node[location.node] = location

    def __getitem__(self, node: NodeAddress) -> BundleLocation:
        return self._by_node[node]

    def get(self, node: NodeAddress) -> BundleLocation | None:
        return self._by_node.get(node)

    def __contains__(self, node: object) -> bool:
        return node in self._by_node

    def __iter__(self) -> Iterator[BundleLocation]:
        return iter(list(self._by_node.values()))

    def __len__(self) -> int:
        return len(self._by_node)


def resolve_module_path(source_dir: Path, spec: ModuleSpec) -> Path:
    """Locate a module file: explicit path, else lib/<name>.sh, else commands/<name>.sh.

    Raises:
        BundleValidationError: If no file exists for the module.
    """
    if spec.path:
        candidate = source_dir / spec.path
        if candidate.is_file():
            return candidate
        raise BundleValidationError(f"Module '{spec.name}' not found at {candidate}")

    for sub in ("lib", "commands"):
        candidate = source_dir / sub / f"{spec.name}.sh"
        if candidate.is_file():
            return candidate
    raise BundleValidationError(
        f"Module '{spec.name}' not found in {source_dir}/lib or {source_dir}/commands"
    )


def check_manifest_order(modules: tuple[ModuleSpec, ...]) -> None:
    """Every module may only require modules listed before it.

    Raises:
        BundleValidationError: On duplicate names, unknown requirements or
            requirements that appear later in the manifest.
    """
    seen: set[str] = set()
    all_names = [m.name for m in modules]
    for spec in modules:
        if spec.name in seen:
            raise BundleValidationError(f"Duplicate module in manifest: {spec.name}")
        for dep in spec.requires:
            if dep not in all_names:
                raise BundleValidationError(
                    f"Module '{spec.name}' requires unknown module '{dep}'"
                )
            if dep not in seen:
                raise BundleValidationError(
                    f"Module '{spec.name}' requires '{dep}', which must come before it"
                )
        seen.add(spec.name)


def _first_statement(text: str) -> str | None:
    for line in text.splitlines()[1:]:
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return stripped
    return None


def validate_bundle_text(text: str) -> None:
    """Structural checks on assembled bundle text.

    Raises:
        BundleValidationError: If the bundle is empty, lacks a shebang, or
            does not start with the offline flag.
    """
    if not text.strip():
        raise BundleValidationError("Generated bundle is empty")
    if not text.startswith("#!"):
        raise BundleValidationError("Generated bundle has no shebang line")
    if _first_statement(text) != OFFLINE_FLAG:
        raise BundleValidationError(
            f"Generated bundle must declare {OFFLINE_FLAG} as its first statement"
        )


def check_syntax(path: Path) -> None:
    """Parse the bundle with `sh -n` without executing it.

    Raises:
        BundleValidationError: If the shell reports a syntax error.
    """
    try:
        result = subprocess.run(
            ["sh", "-n", str(path)], capture_output=True, text=True, timeout=60
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise BundleValidationError(f"Cannot syntax-check bundle: {exc}") from exc
    if result.returncode != 0:
        raise BundleValidationError(
            f"Generated bundle has syntax errors: {result.stderr.strip()}"
        )


def render_bundle(config: BundleConfig) -> str:
    """Concatenate manifest modules and the entrypoint into bundle text."""
    check_manifest_order(config.modules)

    entry = config.source_dir / config.entrypoint
    if not entry.is_file():
        raise BundleValidationError(f"Entrypoint not found: {entry}")

    parts = ["#!/bin/sh", OFFLINE_FLAG, "set -eu", ""]
    for spec in config.modules:
        path = resolve_module_path(config.source_dir, spec)
        parts.append(f"# === {path.relative_to(config.source_dir)} ===")
        parts.append(path.read_text().rstrip("\n"))
        parts.append("")

    entry_lines = entry.read_text().splitlines()
    if entry_lines and entry_lines[0].startswith("#!"):
        entry_lines = entry_lines[1:]
    parts.append(f"# === Main {config.entrypoint} ===")
    parts.extend(entry_lines)
    return "\n".join(parts) + "\n"


def build_bundle(config: BundleConfig, output_dir: Path | None = None) -> Bundle:
    """Assemble the bundle and validate it before any distribution.

    Args:
        config: Bundle manifest settings.
        output_dir: Directory for the local bundle file. Defaults to a new
            temp directory.

    Returns:
        Bundle: The validated bundle.

    Raises:
        BundleValidationError: If any manifest or structural check fails.
    """
    text = render_bundle(config)
    validate_bundle_text(text)

    directory = output_dir or Path(tempfile.mkdtemp(prefix="kfleet-bundle-"))
    path = directory / config.remote_name
    path.write_text(text)
    path.chmod(0o700)
    check_syntax(path)

    logger.info("Bundle built: %s (%d modules, %d bytes)", path, len(config.modules), len(text))
    return Bundle(
        path=path,
        remote_name=config.remote_name,
        modules=tuple(m.name for m in config.modules),
    )


async def _send(session: SSHSession, bundle: Bundle, node: NodeAddress) -> BundleLocation:
    directory = await session.make_remote_tmpdir(node)
    if directory is None:
        raise RuntimeError("could not create remote temp directory")

    script_path = f"{directory}/{bundle.remote_name}"
    copied = await session.copy_to(node, bundle.path, script_path)
    if copied.ok:
        copied = await session.run(node, f"chmod 700 {script_path}")
    if not copied.ok:
        await session.remove_remote_path(node, directory)
        raise RuntimeError(copied.stderr.strip() or f"exit {copied.returncode}")
    return BundleLocation(node=node, directory=directory, script_path=script_path)


async def distribute_to(
    session: SSHSession,
    bundle: Bundle,
    nodes: list[NodeAddress],
    locations: BundleLocations,
) -> dict[str, str]:
    """Copy the bundle to every node concurrently.

    A failing node does not stop the others. Successful copies are recorded
    in `locations`, which the caller registers for cleanup beforehand.

    Args:
        session: Shared SSH session.
        bundle: Validated bundle.
        nodes: Target nodes.
        locations: Map receiving one entry per successful node.

    Returns:
        dict[str, str]: Failure reason per node that did not receive the bundle.
    """
    results = await asyncio.gather(
        *(_send(session, bundle, node) for node in nodes), return_exceptions=True
    )

    failures: dict[str, str] = {}
    for node, outcome in zip(nodes, results):
        if isinstance(outcome, BaseException):
            logger.error("[%s] Failed to transfer bundle: %s", node.host, outcome)
            failures[str(node)] = str(outcome)
        else:
            locations.record(outcome)
            logger.debug("[%s] Bundle at %s", node.host, outcome.script_path)
    return failures


async def cleanup_all(session: SSHSession, locations: BundleLocations) -> None:
    """Best-effort removal of every recorded remote bundle directory."""
    targets = list(locations)
    if not targets:
        return
    results = await asyncio.gather(
        *(session.remove_remote_path(loc.node, loc.directory) for loc in targets),
        return_exceptions=True,
    )
    for loc, outcome in zip(targets, results):
        if outcome is not True:
            logger.warning("[%s] Failed to remove remote bundle dir %s", loc.node.host, loc.directory)
    logger.debug("Removed remote bundle directories on %d node(s)", len(targets))
