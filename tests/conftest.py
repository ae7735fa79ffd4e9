"""Shared test fixtures for the kfleet test suite."""

from pathlib import Path

import pytest

from kfleet.config import BundleConfig, ModuleSpec, OrchestratorConfig
from kfleet.credentials import AuthMode, Credentials
from kfleet.nodes import NodeAddress
from kfleet.ssh import NodeResult, SSHSessionConfig


class FakeProcess:
    """Fake asyncio subprocess that returns predetermined output.

    Attributes:
        stdout: Bytes to return as stdout.
        stderr: Bytes to return as stderr.
        returncode: Exit code to return.
    """

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0):
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
        self.input = None
        self.killed = False

    async def communicate(self, input=None):
        """Record stdin and return stored stdout and stderr."""
        self.input = input
        return self.stdout, self.stderr

    def kill(self):
        self.killed = True

    async def wait(self):
        return self.returncode


class FakeSession:
    """In-memory stand-in for SSHSession.

    Responses are matched by substring against the command, newest
    registration first, optionally restricted to one host. Unmatched
    commands succeed with empty output, except `echo ok`, which answers
    "ok" so connectivity checks pass.

    Attributes:
        calls: (kind, host, command) tuples in call order. kind is one of
            run, exec, copy_to, copy_from, mktemp, rm.
        downloads: Bytes written locally by copy_from, keyed by a
            substring of the remote path.
    """

    def __init__(self):
        self.config = SSHSessionConfig(port=22, credentials=Credentials(AuthMode.AGENT))
        self.calls: list[tuple[str, str, str]] = []
        self._responses: list[tuple[str, str | None, tuple[str, str, int]]] = []
        self._exec: list[tuple[str, str | None, tuple[str, str, int]]] = []
        self.copy_failures: set[str] = set()
        self.downloads: dict[str, bytes] = {}
        self._tmp_counter = 0
        self.register("echo ok", stdout="ok\n")

    def register(self, pattern: str, stdout: str = "", stderr: str = "", returncode: int = 0, host: str | None = None):
        """Answer `run` calls containing `pattern`."""
        self._responses.insert(0, (pattern, host, (stdout, stderr, returncode)))

    def register_exec(self, pattern: str, stdout: str = "", stderr: str = "", returncode: int = 0, host: str | None = None):
        """Answer `exec_remote` calls containing `pattern`."""
        self._exec.insert(0, (pattern, host, (stdout, stderr, returncode)))

    @staticmethod
    def _match(table, node: NodeAddress, command: str) -> NodeResult:
        for pattern, host, (stdout, stderr, rc) in table:
            if pattern in command and (host is None or host == node.host):
                return NodeResult(stdout, stderr, rc, node)
        return NodeResult("", "", 0, node)

    def commands(self, kind: str = "run", host: str | None = None) -> list[str]:
        """Commands of one kind, optionally for one host, in call order."""
        return [cmd for k, h, cmd in self.calls if k == kind and (host is None or h == host)]

    async def run(self, node, command, input=None, timeout=None):
        self.calls.append(("run", node.host, command))
        return self._match(self._responses, node, command)

    async def exec_remote(self, node, description, command):
        self.calls.append(("exec", node.host, command))
        return self._match(self._exec, node, command)

    async def copy_to(self, node, local_path, remote_path):
        self.calls.append(("copy_to", node.host, remote_path))
        if node.host in self.copy_failures:
            return NodeResult("", "scp: connection refused", 1, node)
        return NodeResult("", "", 0, node)

    async def copy_from(self, node, remote_path, local_path):
        self.calls.append(("copy_from", node.host, remote_path))
        for pattern, data in self.downloads.items():
            if pattern in remote_path:
                Path(local_path).write_bytes(data)
        return NodeResult("", "", 0, node)

    async def make_remote_tmpdir(self, node):
        self._tmp_counter += 1
        path = f"/tmp/kfleet.{self._tmp_counter}"
        self.calls.append(("mktemp", node.host, path))
        return path

    async def remove_remote_path(self, node, path):
        self.calls.append(("rm", node.host, path))
        return True


@pytest.fixture
def fake_session():
    """A fresh FakeSession."""
    return FakeSession()


@pytest.fixture
def bundle_source(tmp_path):
    """Minimal bundle checkout: one library module and the entrypoint.

    Returns:
        Path: The source directory.
    """
    source = tmp_path / "bundle-src"
    (source / "lib").mkdir(parents=True)
    (source / "commands").mkdir()
    (source / "lib" / "variables.sh").write_text('K8S_VERSION="${K8S_VERSION:-}"\n')
    (source / "commands" / "init.sh").write_text('cmd_init() {\n    echo "init $*"\n}\n')
    (source / "setup-k8s.sh").write_text('#!/bin/sh\nset -eu\ncase "$1" in\n    init) shift; cmd_init "$@" ;;\nesac\n')
    return source


@pytest.fixture
def config(tmp_path, bundle_source):
    """OrchestratorConfig with a temp state dir and the minimal bundle."""
    return OrchestratorConfig(
        state_dir=tmp_path / "state",
        diagnostics_dir=tmp_path / "diag",
        bundle=BundleConfig(
            source_dir=bundle_source,
            modules=(ModuleSpec(name="variables"), ModuleSpec(name="init", requires=("variables",))),
        ),
    )


@pytest.fixture
def node_factory():
    """Build NodeAddress objects: node_factory("10.0.0.1", user="ubuntu")."""

    def _make(host: str, user: str = "root") -> NodeAddress:
        return NodeAddress(user=user, host=host)

    return _make
