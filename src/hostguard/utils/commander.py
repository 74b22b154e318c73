"""Async shell command execution with explicit timeouts.

Every call degrades to an empty string on failure or timeout so a slow or
missing system tool never fails the run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


async def execute_command(
    command: str,
    args: Optional[list[str]] = None,
    timeout: float = DEFAULT_TIMEOUT,
    quiet: bool = False,
) -> str:
    """Run an executable with arguments and return its stdout."""
    argv = [command, *(args or [])]
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        if not quiet:
            logger.warning("Command failed to start: %s (%s)", " ".join(argv), e)
        return ""
    return await _collect(proc, " ".join(argv), timeout, quiet)


async def execute_shell_command(
    command: str,
    timeout: float = DEFAULT_TIMEOUT,
    quiet: bool = False,
) -> str:
    """Run a command string through /bin/sh and return its stdout."""
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        if not quiet:
            logger.warning("Shell command failed to start: %s (%s)", command, e)
        return ""
    return await _collect(proc, command, timeout, quiet)


async def _collect(proc: asyncio.subprocess.Process, label: str, timeout: float, quiet: bool) -> str:
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        if not quiet:
            logger.warning("Command timed out after %ss: %s", timeout, label)
        return ""

    if proc.returncode != 0:
        if not quiet:
            logger.warning("Command failed (exit %s): %s", proc.returncode, label)
        return ""
    return stdout.decode("utf-8", errors="replace")
