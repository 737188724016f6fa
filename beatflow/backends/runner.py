"""Async command runner for tracker CLIs, with timeout handling."""

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass
class CommandResult:
    """Result of a tracker CLI invocation."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


async def run_command(
    cmd: list[str],
    cwd: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> CommandResult:
    """
    Run a command without a shell, capturing output.

    Args:
        cmd: Program and arguments
        cwd: Working directory for the command
        timeout: Timeout in seconds

    Returns:
        CommandResult with returncode, stdout, stderr, and timed_out flag
    """
    logger.debug(f"[runner] {' '.join(cmd)} (cwd={cwd})")
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return CommandResult(returncode=127, stdout="", stderr=f"Command not found: {cmd[0]}")
    except OSError as e:
        return CommandResult(returncode=126, stdout="", stderr=f"Unable to run {cmd[0]}: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )

    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
    )
