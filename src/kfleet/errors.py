"""Exception hierarchy shared by every kfleet module."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kfleet.driver import OperationReport
    from kfleet.nodes import NodeAddress


class KfleetError(Exception):
    """Base class for all errors surfaced to the operator."""

    pass


class InvalidAddressError(KfleetError):
    """Raised when a node entry is not a valid `[user@]host` address."""

    pass


class DuplicateNodeError(KfleetError):
    """Raised when two entries resolve to the same (user, host) pair."""

    pass


class CredentialError(KfleetError):
    """Raised when SSH credentials are missing, empty, or too permissive."""

    pass


class SSHConnectError(KfleetError):
    """Raised when one or more nodes fail the pre-flight connectivity check.

    Attributes:
        failures: Mapping of node display name to the error reported for it.
    """

    def __init__(self, failures: dict[str, str]):
        self.failures = failures
        names = ", ".join(failures)
        super().__init__(f"SSH connectivity check failed for: {names}")


class BundleValidationError(KfleetError):
    """Raised when the assembled bundle fails its structural checks."""

    pass


class BundleTransferError(KfleetError):
    """Raised when the bundle could not be copied to one or more nodes.

    Attributes:
        failures: Mapping of node display name to the transfer error.
    """

    def __init__(self, failures: dict[str, str]):
        self.failures = failures
        names = ", ".join(failures)
        super().__init__(f"Bundle transfer failed for: {names}")


class VersionSkewError(KfleetError):
    """Raised when an upgrade target violates the version skew policy."""

    pass


class StateError(KfleetError):
    """Raised when a state file is missing or cannot be parsed."""

    pass


class NodeStepError(KfleetError):
    """A single node failed a step.

    Attributes:
        node: The node that failed.
        returncode: Exit status of the failing remote command.
        handled: True when the failure was compensated (e.g. rolled back).
    """

    def __init__(
        self,
        node: "NodeAddress",
        message: str,
        returncode: int = 1,
        handled: bool = False,
    ):
        self.node = node
        self.returncode = returncode
        self.handled = handled
        super().__init__(f"[{node.host}] {message} (exit {returncode})")


class OperationFailed(KfleetError):
    """Raised when an operation finishes with at least one unrecovered failure.

    Attributes:
        report: Per-node outcomes collected up to the failure.
    """

    def __init__(self, message: str, report: "OperationReport"):
        self.report = report
        super().__init__(message)
