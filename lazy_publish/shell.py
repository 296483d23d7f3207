"""Shell and git utilities.

Provides simple wrappers around subprocess calls for running shell commands
and git operations, plus output formatting helpers.
"""

from __future__ import annotations

import asyncio
import subprocess
import sys
from pathlib import Path


def git(*args: str, check: bool = True, cwd: Path | None = None) -> str:
    """Run a git command and return stdout.

    Args:
        *args: Arguments to pass to git (e.g., "status", "--short").
        check: If True (default), raise on non-zero exit. Set to False
               for commands that may legitimately fail (e.g., branch lookup
               on a detached HEAD).
        cwd: Directory to run in. Defaults to the current directory.

    Returns:
        Stripped stdout from the git command.
    """
    result = subprocess.run(
        ["git", *args], capture_output=True, text=True, check=check, cwd=cwd
    )
    return result.stdout.strip()


async def run_async(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    capture: bool = False,
) -> subprocess.CompletedProcess[str]:
    """Run a command without blocking the event loop.

    By default output streams straight to the terminal so users can see
    build and publish progress. With capture=True, stdout and stderr are
    collected and returned instead.

    Args:
        *args: Command and arguments (e.g., "bun", "publish").
        cwd: Working directory for the command.
        check: If True (default), raise CalledProcessError on non-zero exit.
        capture: Collect output instead of streaming it.

    Returns:
        CompletedProcess with returncode (and output when captured).
    """
    pipe = asyncio.subprocess.PIPE if capture else None
    proc = await asyncio.create_subprocess_exec(
        *args, cwd=cwd, stdout=pipe, stderr=pipe
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        # Don't leave the child running after a timeout
        proc.kill()
        await proc.wait()
        raise
    result = subprocess.CompletedProcess(
        list(args),
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode() if stdout else "",
        stderr.decode() if stderr else "",
    )
    if check and result.returncode != 0:
        raise subprocess.CalledProcessError(
            result.returncode, list(args), result.stdout, result.stderr
        )
    return result


def step(msg: str) -> None:
    """Print a visually distinct step header.

    Used to separate major phases of the release pipeline in terminal output.
    """
    print(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")


def warn(msg: str) -> None:
    """Print a warning to stderr without stopping the pipeline."""
    print(f"WARNING: {msg}", file=sys.stderr)
