"""Shell command execution.

Runs commands through `sh -c` as asyncio subprocesses in their own process
group, so a timeout or cancellation kills the whole command tree.
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of a finished (or killed) subprocess."""

    output: str
    returncode: int
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class ShellRunner(Protocol):
    """Capability to run shell commands inside a working directory."""

    async def run(
        self, command: str, cwd: str | Path, timeout: float | None = None
    ) -> ProcessResult: ...

    def exists(self, cwd: str | Path, path: str) -> bool: ...


def kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def run_process(
    argv: list[str],
    cwd: str | Path,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
) -> ProcessResult:
    """Run argv to completion, capturing stdout and stderr combined.

    Args:
        argv: Program and arguments
        cwd: Working directory
        timeout: Seconds before the process group is killed; None waits forever
        env: Extra environment variables layered over os.environ

    Returns:
        ProcessResult; a timeout yields returncode -1 and timed_out=True

    Raises:
        asyncio.CancelledError: After killing the process group
    """
    started = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env={**os.environ, **env} if env else None,
        start_new_session=True,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        kill_process_group(proc)
        stdout, _ = await proc.communicate()
        logger.warning("Command timed out after %ss: %s", timeout, " ".join(argv))
        return ProcessResult(
            output=stdout.decode(errors="replace"),
            returncode=-1,
            timed_out=True,
            duration_seconds=time.monotonic() - started,
        )
    except asyncio.CancelledError:
        kill_process_group(proc)
        await proc.wait()
        raise

    return ProcessResult(
        output=stdout.decode(errors="replace"),
        returncode=proc.returncode if proc.returncode is not None else -1,
        duration_seconds=time.monotonic() - started,
    )


class ShellCommandRunner:
    """ShellRunner backed by `sh -c`."""

    async def run(
        self, command: str, cwd: str | Path, timeout: float | None = None
    ) -> ProcessResult:
        logger.debug("Running in %s: %s", cwd, command)
        return await run_process(["sh", "-c", command], cwd, timeout)

    def exists(self, cwd: str | Path, path: str) -> bool:
        return (Path(cwd) / path).exists()
