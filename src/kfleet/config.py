"""Orchestrator configuration loading and validation."""

import os
import re
from enum import Enum
from pathlib import Path

import tomllib
from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "kfleet" / "config.toml"
DEFAULT_STATE_DIR = Path.home() / ".local" / "state" / "kfleet"
PASSWORD_ENV_VAR = "KFLEET_SSH_PASSWORD"

_SSH_USER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")

# Upstream module order: libraries first, then command modules. Each module
# may only reference modules that appear before it.
DEFAULT_LIB_MODULES = [
    "variables", "logging", "detection", "validation", "system", "helpers",
    "cri_helpers", "join_token", "ssh_args", "etcd_helpers", "kubevip", "ssh",
    "ssh_credentials", "ssh_session", "bundle", "health", "diagnostics",
    "state", "networking", "swap", "completion", "helm", "kubeadm",
    "upgrade_helpers", "upgrade_orchestration", "runners",
]
DEFAULT_COMMAND_MODULES = [
    "etcd_common", "init", "join", "cleanup", "deploy", "upgrade", "remove",
    "backup", "restore", "renew", "status", "preflight",
]


class HostKeyPolicy(str, Enum):
    """Value passed to ssh's StrictHostKeyChecking option."""

    STRICT = "yes"
    ACCEPT_NEW = "accept-new"
    OFF = "no"


class ModuleSpec(BaseModel):
    """One entry of the bundle manifest.

    Attributes:
        name: Module identifier, unique within the manifest.
        path: File path relative to the bundle source dir. When omitted,
            `lib/<name>.sh` is tried first, then `commands/<name>.sh`.
        requires: Names of modules this one depends on. All of them must
            appear earlier in the manifest.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    path: str | None = None
    requires: tuple[str, ...] = ()


def _default_modules() -> tuple[ModuleSpec, ...]:
    return tuple(
        ModuleSpec(name=name) for name in DEFAULT_LIB_MODULES + DEFAULT_COMMAND_MODULES
    )


class BundleConfig(BaseModel):
    """Where the remote-side scripts live and how they are assembled.

    Attributes:
        source_dir: Checkout holding `lib/`, `commands/` and the entrypoint.
        entrypoint: Entrypoint script, relative to source_dir.
        remote_name: File name of the bundle inside each remote directory.
        modules: Ordered manifest of modules to concatenate.
    """

    model_config = ConfigDict(frozen=True)

    source_dir: Path = Path(".")
    entrypoint: str = "setup-k8s.sh"
    remote_name: str = "setup-k8s.sh"
    modules: tuple[ModuleSpec, ...] = Field(default_factory=_default_modules)

    @field_validator("source_dir", mode="before")
    @classmethod
    def expand_path(cls, v):
        """Expand ~ and environment variables in the source directory."""
        if isinstance(v, str):
            return Path(os.path.expandvars(v)).expanduser()
        return v


class OrchestratorConfig(BaseModel):
    """Immutable settings shared by the session manager and the driver.

    Attributes:
        ssh_user: Default user for node entries without `user@`.
        ssh_port: SSH port used for every node.
        ssh_key: Private key path. Auto-discovered when nothing else is set.
        ssh_password: Password for password authentication.
        ssh_password_file: File holding the password (mode 0600 or 0400).
        ssh_known_hosts: Pre-seeded known_hosts file. Forces strict checking.
        host_key_check: Host key policy when no known_hosts file is given.
        persist_known_hosts: Path to save the session known_hosts at teardown.
        connect_timeout: SSH ConnectTimeout in seconds.
        remote_timeout: Upper bound for a single remote operation, in seconds.
        poll_interval: Poll interval for long-running remote steps, in seconds.
        state_dir: Directory holding resumable state files.
        resume: Resume the latest unfinished operation of the same kind.
        collect_diagnostics: Collect remote logs from nodes that fail.
        diagnostics_dir: Local directory for collected diagnostics.
        log_file: Optional file receiving the full debug log.
        bundle: Bundle manifest settings.
    """

    model_config = ConfigDict(frozen=True)

    ssh_user: str = "root"
    ssh_port: int = Field(default=22, ge=1, le=65535)
    ssh_key: Path | None = None
    ssh_password: str | None = None
    ssh_password_file: Path | None = None
    ssh_known_hosts: Path | None = None
    host_key_check: HostKeyPolicy = HostKeyPolicy.ACCEPT_NEW
    persist_known_hosts: Path | None = None
    connect_timeout: int = Field(default=10, gt=0)
    remote_timeout: int = Field(default=600, gt=0)
    poll_interval: int = Field(default=10, gt=0)
    state_dir: Path = DEFAULT_STATE_DIR
    resume: bool = False
    collect_diagnostics: bool = False
    diagnostics_dir: Path = Path("/tmp")
    log_file: Path | None = None
    bundle: BundleConfig = Field(default_factory=BundleConfig)

    @field_validator("ssh_user")
    @classmethod
    def check_user(cls, v: str) -> str:
        """Reject user names that could be read as ssh options.

        Args:
            v: Raw user name.

        Returns:
            str: The validated user name.
        """
        if not _SSH_USER_RE.match(v):
            raise ValueError(f"invalid SSH user: {v!r}")
        return v

    @field_validator(
        "ssh_key",
        "ssh_password_file",
        "ssh_known_hosts",
        "persist_known_hosts",
        "state_dir",
        "diagnostics_dir",
        "log_file",
        mode="before",
    )
    @classmethod
    def expand_paths(cls, v):
        """Expand ~ and environment variables in path fields.

        Args:
            v: Raw value, usually a string from TOML or the CLI.

        Returns:
            Path | None: Expanded path, or the value unchanged when not a string.
        """
        if isinstance(v, str):
            if not v:
                return None
            return Path(os.path.expandvars(v)).expanduser()
        return v


def load_config(path: Path | None = None) -> OrchestratorConfig:
    """Load orchestrator configuration from a TOML file.

    Reads the given path (or ~/.config/kfleet/config.toml). A missing file
    yields defaults. The SSH password may also come from the
    KFLEET_SSH_PASSWORD environment variable, which keeps it out of both the
    config file and the process list.

    Args:
        path: Path to the config file.

    Returns:
        OrchestratorConfig: The loaded and validated configuration.

    Raises:
        pydantic.ValidationError: If the file contains invalid values.
    """
    config_path = path or DEFAULT_CONFIG_PATH

    data: dict = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)

    env_password = os.environ.get(PASSWORD_ENV_VAR)
    if env_password and "ssh_password" not in data:
        data["ssh_password"] = env_password

    return OrchestratorConfig(**data)
