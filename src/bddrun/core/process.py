from __future__ import annotations

import asyncio
import os
import shutil
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Mapping, Sequence

from bddrun.core.logging import get_logger

logger = get_logger(__name__)

# Runner output lines can be long (stack traces, JSON dumps); asyncio's default is 64 KiB.
STREAM_LIMIT = 1024 * 1024


class LaunchError(RuntimeError):
    """The runner command could not be started at all."""

    error_type = "TOOL_MISSING"

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Cannot start {command}: {reason}")
        self.command = command
        self.reason = reason


class RunFailure(RuntimeError):
    """The command started and exited non-zero."""

    error_type = "BACKEND_FAILED"

    def __init__(self, cmd: Sequence[str], returncode: int, output: str) -> None:
        super().__init__(f"Process failed with code {returncode}: {' '.join(cmd)}")
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output


class TerminationReason(str, Enum):
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class ProcessResult:
    output: str
    returncode: int


def ensure_tool(name: str) -> str:
    path = shutil.which(name)
    if not path:
        raise LaunchError(name, "not found on PATH")
    return path


def run_checked(cmd: Sequence[str], *, timeout: float | None = None) -> ProcessResult:
    """Run a short command to completion, raising `RunFailure` on a non-zero exit."""
    try:
        proc = subprocess.run(
            list(cmd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise LaunchError(cmd[0], "not found") from exc
    except PermissionError as exc:
        raise LaunchError(cmd[0], "permission denied") from exc
    except subprocess.TimeoutExpired as exc:
        output = exc.output if isinstance(exc.output, str) else ""
        raise RunFailure(cmd, -1, output) from exc
    if proc.returncode != 0:
        raise RunFailure(cmd, proc.returncode, proc.stdout)
    return ProcessResult(output=proc.stdout, returncode=proc.returncode)


class RunningProcess:
    """Handle on a started runner process.

    Output is stdout and stderr merged. `kill` and `terminate` may be called from
    any task or thread while another task is reading `lines()`.
    """

    def __init__(self, process: asyncio.subprocess.Process, command: Sequence[str]) -> None:
        self._process = process
        self.command = list(command)
        self._lock = threading.Lock()
        self._termination: TerminationReason | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def termination_reason(self) -> TerminationReason | None:
        return self._termination

    def is_alive(self) -> bool:
        return self._process.returncode is None

    async def lines(self) -> AsyncIterator[str]:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def wait(self, timeout: float | None = None) -> int | None:
        """Exit code, or None if `timeout` seconds pass first."""
        if timeout is None:
            return await self._process.wait()
        try:
            return await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def kill(self) -> None:
        """SIGKILL the runner's whole process group.

        Sent even after the runner itself has exited: a forked JVM or browser
        driver left in the group keeps the output pipe open until it dies.
        """
        try:
            if sys.platform != "win32":
                os.killpg(self._process.pid, signal.SIGKILL)
            elif self.is_alive():
                self._process.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def terminate(self, reason: TerminationReason) -> bool:
        """Record why the process is being killed, then kill it.

        The reason is assigned once, and only while the runner is still alive.
        Returns True only for the caller that assigned it, so a timeout and a user
        cancel racing on the same process agree on a single outcome, and a runner
        that already exited keeps the outcome of its own exit code. Leftover
        processes in its group are killed either way.
        """
        with self._lock:
            if self._termination is not None:
                return False
            exited = not self.is_alive()
            if not exited:
                self._termination = reason
        if exited:
            logger.info("process_group_reaped", pid=self.pid, returncode=self.returncode, reason=reason.value)
            self.kill()
            return False
        logger.info("process_terminating", pid=self.pid, reason=reason.value)
        self.kill()
        return True


class ProcessRunner:
    async def start(
        self,
        command: Sequence[str],
        args: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str] | None = None,
    ) -> RunningProcess:
        argv = [*command, *args]
        if not argv:
            raise LaunchError("<empty>", "no command configured")
        if not Path(cwd).is_dir():
            raise LaunchError(argv[0], f"working directory does not exist: {cwd}")
        merged_env = dict(os.environ)
        if env:
            merged_env.update(env)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(cwd),
                env=merged_env,
                limit=STREAM_LIMIT,
                start_new_session=sys.platform != "win32",
            )
        except FileNotFoundError as exc:
            raise LaunchError(argv[0], "not found") from exc
        except PermissionError as exc:
            raise LaunchError(argv[0], "permission denied") from exc
        except OSError as exc:
            raise LaunchError(argv[0], str(exc)) from exc
        logger.info("process_started", pid=process.pid, argv=argv, cwd=str(cwd))
        return RunningProcess(process, argv)
