"""Bounded-timeout execution of external tools (wg, wg-quick, nginx)."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from gatehouse.core.exceptions import ExternalToolError
from gatehouse.observability.metrics import EXTERNAL_COMMAND_DURATION, EXTERNAL_COMMANDS

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """Captured output of a finished command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str


async def run_command(
    args: Sequence[str],
    *,
    timeout: float,
    input_text: str | None = None,
    error_cls: type[ExternalToolError] = ExternalToolError,
    check: bool = True,
) -> CommandResult:
    """Run a command and wait at most ``timeout`` seconds for it.

    A timed-out process is killed and reported as failed; it is never
    retried here. With ``check`` set, a non-zero exit raises ``error_cls``.
    """
    argv = list(args)
    tool = _tool_name(argv)
    started = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        EXTERNAL_COMMANDS.labels(tool=tool, result="missing").inc()
        logger.error("Command could not be started", command=argv, error=str(e))
        raise error_cls(f"Could not run {tool}: {e}", command=argv) from e

    payload = input_text.encode() if input_text is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        EXTERNAL_COMMANDS.labels(tool=tool, result="timeout").inc()
        logger.error("Command timed out", command=argv, timeout=timeout)
        raise error_cls(
            f"{tool} timed out after {timeout:g}s",
            command=argv,
            timed_out=True,
        ) from None
    finally:
        EXTERNAL_COMMAND_DURATION.labels(tool=tool).observe(time.monotonic() - started)

    result = CommandResult(
        args=argv,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )

    if result.returncode != 0:
        EXTERNAL_COMMANDS.labels(tool=tool, result="error").inc()
        if check:
            logger.error(
                "Command failed",
                command=argv,
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )
            raise error_cls(
                f"{tool} exited with status {result.returncode}",
                command=argv,
                returncode=result.returncode,
                stderr=result.stderr,
            )
    else:
        EXTERNAL_COMMANDS.labels(tool=tool, result="ok").inc()

    return result


def _tool_name(argv: list[str]) -> str:
    for arg in argv:
        if arg != "sudo" and not arg.startswith("-"):
            return arg.rsplit("/", 1)[-1]
    return argv[0] if argv else "unknown"
