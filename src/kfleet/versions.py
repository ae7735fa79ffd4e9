"""Kubernetes version parsing, skew policy and auto-step planning."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import requests

from kfleet.errors import VersionSkewError


logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
STABLE_URL = "https://dl.k8s.io/release/stable-{major}.{minor}.txt"

PatchResolver = Callable[[int, int], Awaitable[str]]


@dataclass(frozen=True, order=True)
class Version:
    """A MAJOR.MINOR.PATCH Kubernetes version."""

    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def parse_version(raw: str) -> Version:
    """Parse "1.32.4" or "v1.32.4".

    Raises:
        VersionSkewError: If the string is not MAJOR.MINOR.PATCH.
    """
    text = raw.strip()
    if text.startswith("v"):
        text = text[1:]
    match = _VERSION_RE.match(text)
    if not match:
        raise VersionSkewError(f"Invalid version format: '{raw}' (expected MAJOR.MINOR.PATCH)")
    return Version(*(int(part) for part in match.groups()))


def validate_version_skew(current: str, target: str) -> None:
    """Allow only a strictly newer target within the same or next minor.

    Args:
        current: Version the cluster runs now.
        target: Requested version.

    Raises:
        VersionSkewError: For bad formats, same version, downgrades, minor
            skips and major jumps.
    """
    cur = parse_version(current)
    tar = parse_version(target)

    if tar == cur:
        raise VersionSkewError(f"Current version ({cur}) is already at target version ({tar})")
    if tar < cur:
        raise VersionSkewError(f"Downgrade not supported: {cur} -> {tar}")
    if tar.major != cur.major:
        raise VersionSkewError(f"Major version upgrade not supported: {cur} -> {tar}")
    if tar.minor > cur.minor + 1:
        raise VersionSkewError(
            f"Cannot skip minor versions: {cur} -> {tar} (max +1 minor version at a time)"
        )


def fetch_latest_patch(major: int, minor: int, timeout: float = 10) -> str:
    """Latest published patch for a minor, from dl.k8s.io.

    Raises:
        VersionSkewError: If the release channel cannot be read.
    """
    url = STABLE_URL.format(major=major, minor=minor)
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise VersionSkewError(
            f"Failed to fetch latest patch version for {major}.{minor}.x: {exc}"
        ) from exc
    return str(parse_version(response.text))


async def _default_resolver(major: int, minor: int) -> str:
    return await asyncio.to_thread(fetch_latest_patch, major, minor)


@dataclass(frozen=True)
class UpgradePlan:
    """Versions to pass through, computed before any node is touched.

    Attributes:
        current_version: Version the cluster runs now.
        target_version: Final version.
        intermediate_steps: Latest patch of each minor in between.
    """

    current_version: str
    target_version: str
    intermediate_steps: tuple[str, ...] = field(default_factory=tuple)

    @property
    def steps(self) -> list[str]:
        """Every version to upgrade to, in order, ending with the target."""
        return [*self.intermediate_steps, self.target_version]


async def compute_auto_steps(
    current: str, target: str, resolver: PatchResolver | None = None
) -> list[str]:
    """Latest patch of each minor strictly between current and target.

    Args:
        current: Version the cluster runs now.
        target: Final version.
        resolver: Async (major, minor) -> "X.Y.Z". Defaults to dl.k8s.io.

    Returns:
        list[str]: Intermediate versions in order. Empty when the gap is at
        most one minor.

    Raises:
        VersionSkewError: On a major jump, a downgrade or a lookup failure.
    """
    cur = parse_version(current)
    tar = parse_version(target)
    if tar.major != cur.major:
        raise VersionSkewError(f"Major version upgrade not supported: {cur} -> {tar}")
    if tar <= cur:
        raise VersionSkewError(f"Target {tar} is not newer than current {cur}")

    resolve = resolver or _default_resolver
    steps: list[str] = []
    for minor in range(cur.minor + 1, tar.minor):
        latest = parse_version(await resolve(cur.major, minor))
        if (latest.major, latest.minor) != (cur.major, minor):
            raise VersionSkewError(
                f"Release channel for {cur.major}.{minor} returned {latest}"
            )
        steps.append(str(latest))
    return steps


async def plan_upgrade(
    current: str,
    target: str,
    auto_step: bool = False,
    resolver: PatchResolver | None = None,
) -> UpgradePlan:
    """Validate the requested jump and build the plan.

    Without auto_step, the target must pass validate_version_skew directly.
    With it, each hop of the resulting chain must.

    Raises:
        VersionSkewError: If the upgrade is not allowed.
    """
    cur = parse_version(current)
    tar = parse_version(target)
    if auto_step and tar.major == cur.major and tar.minor > cur.minor + 1:
        intermediate = await compute_auto_steps(current, target, resolver)
        chain = [str(cur), *intermediate, str(tar)]
        for before, after in zip(chain, chain[1:]):
            validate_version_skew(before, after)
        logger.info("Auto-step upgrade path: %s", " -> ".join(chain))
        return UpgradePlan(str(cur), str(tar), tuple(intermediate))

    validate_version_skew(current, target)
    return UpgradePlan(str(cur), str(tar))
