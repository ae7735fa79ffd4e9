"""SSH transport layer: option assembly, remote commands and file copies."""

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from kfleet.config import HostKeyPolicy
from kfleet.credentials import AuthMode, Credentials
from kfleet.nodes import NodeAddress


logger = logging.getLogger(__name__)

# Exit status reported when a command exceeds its deadline (same as timeout(1)).
TIMEOUT_RETURNCODE = 124
# Exit status reported when the ssh/scp client could not be started.
SPAWN_FAILED_RETURNCODE = 255


@dataclass
class NodeResult:
    """Result of executing a command on a node.

    Attributes:
        stdout: Standard output from the command.
        stderr: Standard error from the command.
        returncode: Exit code of the command.
        node: The node the command was executed on.
    """

    stdout: str
    stderr: str
    returncode: int
    node: NodeAddress

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class SSHSessionConfig:
    """Everything needed to build ssh/scp command lines for one operation.

    Shared read-only by all concurrent node tasks.

    Attributes:
        port: SSH port.
        credentials: Resolved authentication mode and secrets.
        host_key_policy: StrictHostKeyChecking value.
        known_hosts: Session known_hosts file, or None for /dev/null.
        connect_timeout: ssh ConnectTimeout in seconds.
        remote_timeout: Budget for one remote operation, in seconds.
        poll_interval: Seconds between polls of a long-running remote step.
    """

    port: int
    credentials: Credentials
    host_key_policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_NEW
    known_hosts: Path | None = None
    connect_timeout: int = 10
    remote_timeout: int = 600
    poll_interval: int = 10

    @property
    def batch_mode(self) -> bool:
        # Reason: a password prompt must stay possible for password auth,
        # and an agent may need to ask for a key passphrase. An explicit key
        # always runs non-interactively.
        creds = self.credentials
        if creds.uses_password:
            return False
        if creds.auth == AuthMode.KEY:
            return True
        return not creds.agent_available


def build_options(config: SSHSessionConfig) -> list[str]:
    """Assemble ssh options in a fixed order.

    Args:
        config: Session configuration.

    Returns:
        list[str]: Options for the interactive `ssh` client.
    """
    known_hosts = str(config.known_hosts) if config.known_hosts else "/dev/null"
    opts = [
        "-o", f"StrictHostKeyChecking={config.host_key_policy.value}",
        "-o", f"UserKnownHostsFile={known_hosts}",
        "-o", "LogLevel=ERROR",
        "-o", f"ConnectTimeout={config.connect_timeout}",
    ]
    if config.batch_mode:
        opts += ["-o", "BatchMode=yes"]
    opts += ["-p", str(config.port)]
    if config.credentials.auth == AuthMode.KEY and config.credentials.key_path:
        opts += ["-i", str(config.credentials.key_path)]
    return opts


def build_scp_options(config: SSHSessionConfig) -> list[str]:
    """Same as build_options, with scp's `-P` port flag in place of `-p`."""
    return ["-P" if opt == "-p" else opt for opt in build_options(config)]


@dataclass
class SSHSession:
    """Runs commands and copies files on nodes with one shared configuration.

    Attributes:
        config: Session configuration.
        askpass: SSH_ASKPASS helper script, set for password authentication.
    """

    config: SSHSessionConfig
    askpass: Path | None = None
    _env: dict[str, str] | None = field(default=None, init=False, repr=False)

    def _child_env(self) -> dict[str, str] | None:
        if not self.config.credentials.uses_password or self.askpass is None:
            return None
        if self._env is None:
            env = dict(os.environ)
            env["SSH_ASKPASS"] = str(self.askpass)
            env["SSH_ASKPASS_REQUIRE"] = "force"
            env["KFLEET_ASKPASS_PASSWORD"] = self.config.credentials.password or ""
            env.setdefault("DISPLAY", ":0")
            self._env = env
        return self._env

    def ssh_argv(self, node: NodeAddress, command: str) -> list[str]:
        """Build the full ssh command line for running `command` on `node`."""
        return [
            "ssh",
            *build_options(self.config),
            "--",
            f"{node.user}@{node.ssh_host}",
            command,
        ]

    def scp_argv(self, source: str, dest: str) -> list[str]:
        """Build the full scp command line."""
        return ["scp", *build_scp_options(self.config), source, dest]

    async def _spawn(
        self,
        argv: list[str],
        node: NodeAddress,
        input: str | None = None,
        timeout: float | None = None,
    ) -> NodeResult:
        env = self._child_env()
        deadline = timeout if timeout is not None else self.config.remote_timeout
        try:
            # Reason: ssh only consults SSH_ASKPASS when it has no
            # controlling terminal, hence the new session for password auth.
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=env is not None,
            )
        except OSError as exc:
            return NodeResult(stdout="", stderr=str(exc), returncode=SPAWN_FAILED_RETURNCODE, node=node)

        data = input.encode() if input is not None else None
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(data), timeout=deadline
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return NodeResult(
                stdout="",
                stderr=f"Command timed out after {deadline}s",
                returncode=TIMEOUT_RETURNCODE,
                node=node,
            )
        except BaseException:
            # Reason: a cancelled task must not leave ssh/scp running; under
            # password auth the child is outside the terminal's process group.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        return NodeResult(
            stdout=stdout_bytes.decode(errors="replace"),
            stderr=stderr_bytes.decode(errors="replace"),
            returncode=proc.returncode or 0,
            node=node,
        )

    async def run(
        self,
        node: NodeAddress,
        command: str,
        input: str | None = None,
        timeout: float | None = None,
    ) -> NodeResult:
        """Run a shell command string on a node.

        Args:
            node: Target node.
            command: Command line interpreted by the remote shell.
            input: Optional text fed to the command's stdin.
            timeout: Seconds before the ssh client is killed. Defaults to
                the session's remote_timeout.

        Returns:
            NodeResult: Output and exit status. A timeout is reported as
            returncode 124 for this node only.
        """
        logger.debug("[%s] ssh: %s", node.host, command)
        return await self._spawn(self.ssh_argv(node, command), node, input, timeout)

    async def copy_to(self, node: NodeAddress, local_path: Path, remote_path: str) -> NodeResult:
        """Copy a local file to `remote_path` on the node via scp."""
        dest = f"{node.user}@{node.host}:{remote_path}"
        return await self._spawn(self.scp_argv(str(local_path), dest), node)

    async def copy_from(self, node: NodeAddress, remote_path: str, local_path: Path) -> NodeResult:
        """Copy `remote_path` from the node to a local file via scp."""
        source = f"{node.user}@{node.host}:{remote_path}"
        return await self._spawn(self.scp_argv(source, str(local_path)), node)

    async def make_remote_tmpdir(self, node: NodeAddress) -> str | None:
        """Create a mode-700 temporary directory on the node.

        Returns:
            str | None: Absolute path of the directory, or None on failure.
        """
        result = await self.run(
            node, 'd=$(mktemp -d) && chmod 700 "$d" && echo "$d"'
        )
        path = result.stdout.strip()
        if not result.ok or not path.startswith("/"):
            logger.error(
                "[%s] Failed to create remote temp directory (got: '%s')", node.host, path
            )
            return None
        return path

    async def remove_remote_path(self, node: NodeAddress, path: str) -> bool:
        """Best-effort `rm -rf` of a remote path. Returns True on success."""
        result = await self.run(node, f"rm -rf {shlex.quote(path)}")
        return result.ok

    async def exec_remote(self, node: NodeAddress, description: str, command: str) -> NodeResult:
        """Run a long-running command detached on the node and poll for it.

        The command is uploaded as a script into a fresh remote temp dir,
        launched under nohup so a dropped connection does not kill it, and
        polled every poll_interval seconds until its exit-code file appears
        or remote_timeout elapses. The remote dir is removed afterwards.

        Args:
            node: Target node.
            description: Human-readable step name for log messages.
            command: Shell command to run.

        Returns:
            NodeResult: stdout holds the remote log; returncode is the
            command's exit status, or 124 on timeout.
        """
        cfg = self.config
        logger.info("[%s] Starting: %s", node.host, description)

        remote_dir = await self.make_remote_tmpdir(node)
        if remote_dir is None:
            return NodeResult("", "failed to create remote temp directory", 1, node)

        script = f"{remote_dir}/run.sh"
        log_file = f"{remote_dir}/run.log"
        exit_file = f"{remote_dir}/run.exit"

        try:
            upload = await self.run(
                node, f"cat > {shlex.quote(script)} && chmod 700 {shlex.quote(script)}",
                input=command + "\n",
            )
            if not upload.ok:
                logger.error("[%s] Failed to upload remote script", node.host)
                return NodeResult(upload.stdout, upload.stderr, upload.returncode or 1, node)

            inner = f"sh {shlex.quote(script)} > {shlex.quote(log_file)} 2>&1; echo $? > {shlex.quote(exit_file)}"
            launch = await self.run(
                node, f"nohup sh -c {shlex.quote(inner)} </dev/null >/dev/null 2>&1 &"
            )
            if not launch.ok:
                logger.error("[%s] Failed to launch remote command", node.host)
                return NodeResult(launch.stdout, launch.stderr, launch.returncode or 1, node)

            elapsed = 0
            finished = False
            last_poll_err = ""
            while elapsed < cfg.remote_timeout:
                await asyncio.sleep(cfg.poll_interval)
                elapsed += cfg.poll_interval

                poll = await self.run(node, f"test -f {shlex.quote(exit_file)}")
                if poll.ok:
                    finished = True
                    break
                last_poll_err = poll.stderr.strip()

                progress = await self.run(node, f"tail -1 {shlex.quote(log_file)}")
                line = progress.stdout.strip()
                if line:
                    logger.info("[%s] [%ss] %s", node.host, elapsed, line)

            remote_log = (await self.run(node, f"cat {shlex.quote(log_file)}")).stdout

            if not finished:
                logger.error("[%s] Timeout after %ss: %s", node.host, cfg.remote_timeout, description)
                if last_poll_err:
                    logger.error("[%s] Last poll error: %s", node.host, last_poll_err)
                logger.error("[%s] Remote log:\n%s", node.host, remote_log)
                return NodeResult(remote_log, f"timed out after {cfg.remote_timeout}s", TIMEOUT_RETURNCODE, node)

            exit_result = await self.run(node, f"cat {shlex.quote(exit_file)}")
            raw_exit = exit_result.stdout.strip()
            if not raw_exit.isdigit():
                logger.error("[%s] Invalid exit code from remote: '%s'", node.host, raw_exit)
                return NodeResult(remote_log, f"invalid exit code {raw_exit!r}", 1, node)

            returncode = int(raw_exit)
            if returncode != 0:
                logger.error("[%s] Failed (exit %s): %s", node.host, returncode, description)
                logger.error("[%s] Remote log:\n%s", node.host, remote_log)
            else:
                logger.info("[%s] Completed: %s", node.host, description)
            return NodeResult(remote_log, "", returncode, node)
        finally:
            await self.remove_remote_path(node, remote_dir)
