"""Node addresses: parse, normalize and validate comma-separated node lists."""

import ipaddress
import re
from dataclasses import dataclass
from typing import Iterator

from kfleet.errors import DuplicateNodeError, InvalidAddressError


_USER_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_HOSTNAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9._-]*[A-Za-z0-9])?$")
_IPV6_CHARS_RE = re.compile(r"^[0-9A-Fa-f:.]+$")


@dataclass(frozen=True)
class NodeAddress:
    """A single SSH-reachable node.

    Attributes:
        user: Login user.
        host: IPv4 literal, hostname, or bracketed IPv6 literal ("[fd00::1]").
    """

    user: str
    host: str

    @property
    def is_ipv6(self) -> bool:
        return self.host.startswith("[")

    @property
    def ssh_host(self) -> str:
        """Host as the ssh client expects it in `user@host` (brackets stripped)."""
        if self.is_ipv6:
            return self.host[1:-1]
        return self.host

    @property
    def sudo_prefix(self) -> str:
        """`sudo -n ` for non-root users so missing NOPASSWD fails fast."""
        return "" if self.user == "root" else "sudo -n "

    def __str__(self) -> str:
        return f"{self.user}@{self.host}"


def bracket_host(host: str) -> str:
    """Wrap a bare IPv6 literal in brackets; leave anything else untouched.

    Args:
        host: Host as typed by the operator.

    Returns:
        str: The host, bracketed when it contains ':'.
    """
    if ":" in host and not (host.startswith("[") and host.endswith("]")):
        return f"[{host}]"
    return host


def _split_user(entry: str) -> tuple[str | None, str]:
    # Reason: the last unescaped '@' separates user from host, so a '\@'
    # sequence never splits the entry.
    for i in range(len(entry) - 1, -1, -1):
        if entry[i] == "@" and (i == 0 or entry[i - 1] != "\\"):
            return entry[:i], entry[i + 1:]
    return None, entry


def _check_host(host: str, entry: str) -> None:
    if host.startswith("[") and host.endswith("]"):
        inner = host[1:-1]
        if not inner or not _IPV6_CHARS_RE.match(inner):
            raise InvalidAddressError(f"Invalid IPv6 address: {host}")
        try:
            ipaddress.IPv6Address(inner)
        except ValueError:
            raise InvalidAddressError(f"Invalid IPv6 address: {host}")
        return
    if ":" in host:
        try:
            ipaddress.IPv6Address(host)
        except ValueError:
            raise InvalidAddressError(f"Invalid node address: {entry}")
        return
    if not _HOSTNAME_RE.match(host):
        raise InvalidAddressError(f"Invalid node address: {entry}")


def parse_node(entry: str, default_user: str = "root") -> NodeAddress:
    """Parse a `[user@]host` entry into a NodeAddress.

    A bare IPv6 literal is bracketed so every later command (ssh, scp,
    display, state labels) sees the same form.

    Args:
        entry: A single node entry, already trimmed.
        default_user: User for entries without `user@`.

    Returns:
        NodeAddress: The parsed address.

    Raises:
        InvalidAddressError: If the user segment is empty, starts with '-'
            (it would be read as an ssh option), or contains invalid
            characters, or if the host is empty or malformed.
    """
    user, host = _split_user(entry)

    if user is not None:
        if not user:
            raise InvalidAddressError(f"Empty username in node address: {entry}")
        if user.startswith("-"):
            raise InvalidAddressError(f"Invalid username (starts with '-'): {user}")
        if not _USER_RE.match(user):
            raise InvalidAddressError(f"Invalid username: {user}")
    else:
        user = default_user

    if not host:
        raise InvalidAddressError(f"Empty host in node address: {entry!r}")

    _check_host(host, entry)
    return NodeAddress(user=user, host=bracket_host(host))


def normalize_node_list(csv: str) -> tuple[str, int]:
    """Trim whitespace around each entry and drop empty ones.

    Order is preserved. Duplicates are kept so that validate_all can
    report them.

    Args:
        csv: Raw comma-separated node list, e.g. "a , b,,c".

    Returns:
        tuple[str, int]: The normalized CSV and how many entries survived.
    """
    entries = [token.strip() for token in csv.split(",")]
    entries = [token for token in entries if token]
    return ",".join(entries), len(entries)


class NodeList:
    """Ordered, duplicate-free sequence of node addresses.

    Index 0 is the primary node (the bootstrap control plane).
    """

    def __init__(self, nodes: list[NodeAddress] | None = None):
        self._nodes: list[NodeAddress] = []
        seen: set[NodeAddress] = set()
        for node in nodes or []:
            if node in seen:
                raise DuplicateNodeError(f"Duplicate node address: {node}")
            seen.add(node)
            self._nodes.append(node)

    @classmethod
    def from_csv(cls, csv: str, default_user: str = "root") -> "NodeList":
        """Build a validated NodeList from a comma-separated string."""
        return validate_all(csv, default_user)

    def get(self, index: int) -> NodeAddress:
        return self._nodes[index]

    @property
    def primary(self) -> NodeAddress:
        return self._nodes[0]

    def __getitem__(self, index: int) -> NodeAddress:
        return self._nodes[index]

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[NodeAddress]:
        return iter(self._nodes)

    def __bool__(self) -> bool:
        return bool(self._nodes)

    def __add__(self, other: "NodeList") -> "NodeList":
        return NodeList(self._nodes + list(other))

    def __repr__(self) -> str:
        return f"NodeList({self.csv!r})"

    @property
    def csv(self) -> str:
        return ",".join(str(node) for node in self._nodes)


def validate_all(csv: str, default_user: str = "root") -> NodeList:
    """Normalize, parse and de-duplicate a CSV node list.

    Unlike parse_node, this rejects bare IPv6 literals: on the command line
    `fd00::1:22` is ambiguous, so the operator must write `[fd00::1]`.

    Args:
        csv: Raw comma-separated node list.
        default_user: User for entries without `user@`.

    Returns:
        NodeList: The validated list, in input order.

    Raises:
        InvalidAddressError: For unbracketed IPv6 literals or malformed entries.
        DuplicateNodeError: If two entries resolve to the same (user, host).
    """
    normalized, _ = normalize_node_list(csv)
    if not normalized:
        return NodeList()

    nodes: list[NodeAddress] = []
    for entry in normalized.split(","):
        _, host = _split_user(entry)
        if ":" in host and not host.startswith("["):
            raise InvalidAddressError(
                f"IPv6 addresses must be enclosed in brackets, e.g., [{host}]"
            )
        nodes.append(parse_node(entry, default_user))

    return NodeList(nodes)
