"""SSH credentials: password files, key permissions and key auto-discovery."""

import logging
import os
import pwd
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping

from kfleet.config import OrchestratorConfig
from kfleet.errors import CredentialError


logger = logging.getLogger(__name__)

# Preference order for auto-discovery.
DEFAULT_KEY_NAMES = ("id_ed25519", "id_rsa", "id_ecdsa")


class AuthMode(str, Enum):
    """How the ssh client authenticates. Exactly one is active per session."""

    KEY = "key"
    PASSWORD = "password"
    PASSWORD_FILE = "password-file"
    AGENT = "agent"


@dataclass(frozen=True)
class Credentials:
    """Resolved authentication settings for one operation.

    Attributes:
        auth: Active authentication mode.
        key_path: Private key, for KEY mode.
        password: Password, for PASSWORD and PASSWORD_FILE modes.
        agent_available: Whether SSH_AUTH_SOCK was set when resolving.
    """

    auth: AuthMode
    key_path: Path | None = None
    password: str | None = field(default=None, repr=False)
    agent_available: bool = False

    @property
    def uses_password(self) -> bool:
        return self.auth in (AuthMode.PASSWORD, AuthMode.PASSWORD_FILE)


def _mode_bits(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def load_password_file(path: Path) -> str:
    """Read an SSH password from a file with owner-only permissions.

    Args:
        path: Password file path.

    Returns:
        str: The password, without the trailing newline.

    Raises:
        CredentialError: If the file is missing, empty, or its mode is
            not exactly 0600 or 0400.
    """
    if not path.is_file():
        raise CredentialError(f"SSH password file not found: {path}")

    mode = _mode_bits(path)
    if mode not in (0o600, 0o400):
        raise CredentialError(
            f"SSH password file '{path}' has permissions {mode:o} (must be 600 or 400)"
        )

    password = path.read_text().rstrip("\r\n")
    if not password:
        raise CredentialError(f"SSH password file '{path}' is empty")
    return password


def validate_key_permissions(path: Path) -> bool:
    """Warn when a private key is readable by group or others.

    Never fails: ssh itself refuses such keys, and the operator gets a
    clearer message from the warning.

    Args:
        path: Private key path.

    Returns:
        bool: True if the permissions are owner-only (or the file is absent).
    """
    if not path.is_file():
        return True
    mode = _mode_bits(path)
    if mode & 0o077:
        logger.warning(
            "SSH key '%s' has permissions %o (recommend 600 or 400)", path, mode
        )
        return False
    return True


def _ssh_home(env: Mapping[str, str]) -> Path | None:
    # Reason: under sudo, keys belong to the invoking user, not root.
    sudo_user = env.get("SUDO_USER")
    if sudo_user:
        try:
            return Path(pwd.getpwnam(sudo_user).pw_dir)
        except KeyError:
            return Path("/home") / sudo_user
    home = env.get("HOME")
    return Path(home) if home else None


def auto_discover_key(env: Mapping[str, str] | None = None) -> Path | None:
    """Find the first default private key in ~/.ssh.

    Probes id_ed25519, id_rsa and id_ecdsa in that order.

    Args:
        env: Environment to read HOME/SUDO_USER from. Defaults to os.environ.

    Returns:
        Path | None: The first existing key, or None to defer to the agent.
    """
    env = os.environ if env is None else env
    home = _ssh_home(env)
    if home is None:
        return None

    for name in DEFAULT_KEY_NAMES:
        candidate = home / ".ssh" / name
        if candidate.is_file():
            logger.info("SSH key auto-discovered: %s", candidate)
            return candidate
    return None


def resolve_credentials(
    config: OrchestratorConfig, env: Mapping[str, str] | None = None
) -> Credentials:
    """Pick exactly one authentication mode from the configuration.

    Precedence: password file, then password, then explicit key, then an
    auto-discovered key, then the agent.

    Args:
        config: Orchestrator configuration.
        env: Environment for agent detection and key discovery.

    Returns:
        Credentials: The resolved credentials.

    Raises:
        CredentialError: If both a key and a password source are given, the
            key file does not exist, or the password file is invalid.
    """
    env = os.environ if env is None else env
    agent = bool(env.get("SSH_AUTH_SOCK"))
    password_given = config.ssh_password is not None or config.ssh_password_file is not None

    if password_given and config.ssh_key is not None:
        raise CredentialError(
            "Specify either an SSH key or a password (file), not both"
        )

    if config.ssh_password_file is not None:
        password = load_password_file(config.ssh_password_file)
        return Credentials(AuthMode.PASSWORD_FILE, password=password, agent_available=agent)

    if config.ssh_password is not None:
        if not config.ssh_password:
            raise CredentialError("SSH password is empty")
        return Credentials(AuthMode.PASSWORD, password=config.ssh_password, agent_available=agent)

    if config.ssh_key is not None:
        if not config.ssh_key.is_file():
            raise CredentialError(f"SSH key file not found: {config.ssh_key}")
        validate_key_permissions(config.ssh_key)
        return Credentials(AuthMode.KEY, key_path=config.ssh_key, agent_available=agent)

    discovered = auto_discover_key(env)
    if discovered is not None:
        validate_key_permissions(discovered)
        return Credentials(AuthMode.KEY, key_path=discovered, agent_available=agent)

    return Credentials(AuthMode.AGENT, agent_available=agent)
