"""Tests for credential resolution (credentials.py)."""

import os

import pytest

from kfleet.config import OrchestratorConfig
from kfleet.credentials import (
    AuthMode,
    auto_discover_key,
    load_password_file,
    resolve_credentials,
    validate_key_permissions,
)
from kfleet.errors import CredentialError


def _write(path, text, mode):
    path.write_text(text)
    os.chmod(path, mode)
    return path


# ---------------------------------------------------------------------------
# Password files
# ---------------------------------------------------------------------------


def test_password_file_strips_trailing_newline(tmp_path):
    pw = _write(tmp_path / "pw", "hunter2\n", 0o600)
    assert load_password_file(pw) == "hunter2"


def test_password_file_read_only_is_accepted(tmp_path):
    pw = _write(tmp_path / "pw", "hunter2", 0o400)
    assert load_password_file(pw) == "hunter2"


@pytest.mark.parametrize("mode", [0o640, 0o644, 0o604, 0o700, 0o200, 0o000])
def test_password_file_rejects_other_modes(tmp_path, mode):
    pw = _write(tmp_path / "pw", "hunter2", mode)
    with pytest.raises(CredentialError, match="must be 600"):
        load_password_file(pw)


def test_password_file_empty(tmp_path):
    pw = _write(tmp_path / "pw", "\n", 0o600)
    with pytest.raises(CredentialError, match="empty"):
        load_password_file(pw)


def test_password_file_missing(tmp_path):
    with pytest.raises(CredentialError, match="not found"):
        load_password_file(tmp_path / "absent")


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def test_key_permissions_warn_but_never_fail(tmp_path, caplog):
    key = _write(tmp_path / "id_ed25519", "KEY", 0o644)
    assert validate_key_permissions(key) is False
    assert "recommend 600" in caplog.text

    os.chmod(key, 0o600)
    assert validate_key_permissions(key) is True


def test_auto_discover_prefers_ed25519(tmp_path):
    ssh_dir = tmp_path / ".ssh"
    ssh_dir.mkdir()
    _write(ssh_dir / "id_rsa", "RSA", 0o600)
    _write(ssh_dir / "id_ed25519", "ED", 0o600)

    assert auto_discover_key({"HOME": str(tmp_path)}) == ssh_dir / "id_ed25519"


def test_auto_discover_nothing_found(tmp_path):
    assert auto_discover_key({"HOME": str(tmp_path)}) is None


# ---------------------------------------------------------------------------
# resolve_credentials
# ---------------------------------------------------------------------------


def test_password_file_has_highest_precedence(tmp_path):
    pw = _write(tmp_path / "pw", "from-file", 0o600)
    config = OrchestratorConfig(ssh_password_file=pw, ssh_password="inline")
    creds = resolve_credentials(config, env={})
    assert creds.auth == AuthMode.PASSWORD_FILE
    assert creds.password == "from-file"
    assert creds.uses_password


def test_inline_password():
    creds = resolve_credentials(OrchestratorConfig(ssh_password="inline"), env={})
    assert creds.auth == AuthMode.PASSWORD
    assert "inline" not in repr(creds)


def test_key_and_password_are_mutually_exclusive(tmp_path):
    key = _write(tmp_path / "key", "KEY", 0o600)
    config = OrchestratorConfig(ssh_key=key, ssh_password="inline")
    with pytest.raises(CredentialError, match="not both"):
        resolve_credentials(config, env={})


def test_explicit_key(tmp_path):
    key = _write(tmp_path / "key", "KEY", 0o600)
    creds = resolve_credentials(OrchestratorConfig(ssh_key=key), env={"SSH_AUTH_SOCK": "/tmp/agent"})
    assert creds.auth == AuthMode.KEY
    assert creds.key_path == key
    assert creds.agent_available


def test_missing_explicit_key(tmp_path):
    with pytest.raises(CredentialError, match="not found"):
        resolve_credentials(OrchestratorConfig(ssh_key=tmp_path / "absent"), env={})


def test_discovered_key_then_agent(tmp_path):
    ssh_dir = tmp_path / ".ssh"
    ssh_dir.mkdir()
    env = {"HOME": str(tmp_path), "SSH_AUTH_SOCK": "/tmp/agent"}

    creds = resolve_credentials(OrchestratorConfig(), env=env)
    assert creds.auth == AuthMode.AGENT
    assert creds.agent_available

    _write(ssh_dir / "id_ecdsa", "EC", 0o600)
    creds = resolve_credentials(OrchestratorConfig(), env=env)
    assert creds.auth == AuthMode.KEY
    assert creds.key_path == ssh_dir / "id_ecdsa"
