"""SSH transport to the PBS head node.

Commands run through the system ``ssh`` client as asyncio subprocesses.
Every call is bounded by a timeout.

Commands are passed to a remote shell verbatim. Never build them from
user controlled strings without quoting.
"""

import asyncio
import shlex
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

import structlog

from batch_analysis.config import Settings
from batch_analysis.core.resilience import remote_queue_circuit
from batch_analysis.errors import RemoteQueueTimeoutError, TransportError

logger = structlog.get_logger(__name__)

# ssh reports its own connection failures with this exit status
SSH_CONNECTION_FAILURE = 255


@dataclass
class CommandOutput:
    """Captured result of one remote command."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SSHTransport:
    """Runs shell commands on the PBS head node."""

    def __init__(self, settings: Settings, ssh_binary: str = "ssh"):
        self._settings = settings
        self._ssh_binary = ssh_binary

    def _base_args(self) -> list[str]:
        args = [
            self._ssh_binary,
            "-p",
            str(self._settings.pbs_port),
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            f"ConnectTimeout={max(1, int(self._settings.remote_timeout_s))}",
            "-o",
            "ServerAliveInterval=300",
            "-o",
            "ServerAliveCountMax=3",
        ]
        if self._settings.pbs_key_file:
            args += ["-i", str(self._settings.pbs_key_file)]
        args.append(self._settings.pbs_ssh_target)
        return args

    async def execute(
        self,
        command: str,
        stdin: Optional[bytes] = None,
        timeout_s: Optional[float] = None,
    ) -> CommandOutput:
        """Run a command remotely and capture its output.

        Raises:
            TransportError: If ssh cannot be started or cannot connect, or
                the head node circuit is open
            RemoteQueueTimeoutError: If the command exceeds its timeout
        """
        async with remote_queue_circuit():
            return await self._run(command, stdin, timeout_s)

    async def _run(
        self,
        command: str,
        stdin: Optional[bytes],
        timeout_s: Optional[float],
    ) -> CommandOutput:
        timeout_s = timeout_s or self._settings.remote_timeout_s
        start = time.perf_counter()

        try:
            process = await asyncio.create_subprocess_exec(
                *self._base_args(),
                command,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("ssh_spawn_failed", command=command, error=str(e))
            raise TransportError(f"Could not start ssh: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input=stdin), timeout=timeout_s
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            logger.warning("ssh_command_timeout", command=command, timeout_s=timeout_s)
            raise RemoteQueueTimeoutError(
                f"Remote command timed out after {timeout_s}s", timeout_s=timeout_s
            ) from e

        output = CommandOutput(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        duration_ms = int((time.perf_counter() - start) * 1000)

        if output.exit_code == SSH_CONNECTION_FAILURE:
            logger.error(
                "ssh_connection_failed",
                host=self._settings.pbs_host,
                stderr=output.stderr.strip(),
            )
            raise TransportError(
                f"ssh to {self._settings.pbs_host} failed: {output.stderr.strip()}"
            )

        log = logger.debug if output.ok else logger.warning
        log(
            "ssh_command_executed",
            command=command,
            exit_code=output.exit_code,
            duration_ms=duration_ms,
            stderr=output.stderr.strip() or None,
        )
        return output

    async def upload(self, content: str, destination: PurePosixPath) -> CommandOutput:
        """Write a small text file on the remote host."""
        parent = shlex.quote(str(destination.parent))
        target = shlex.quote(str(destination))
        return await self.execute(
            f"mkdir -p {parent} && cat > {target}",
            stdin=content.encode("utf-8"),
        )
