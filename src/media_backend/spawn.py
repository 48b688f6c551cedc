from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from media_backend.errors import TransientToolError

logger = logging.getLogger(__name__)

_STDERR_TAIL = 2000


@dataclass(frozen=True)
class ToolResult:
    stdout: bytes
    stderr: str


def _flatten(args: Sequence[str | Sequence[str]]) -> list[str]:
    out: list[str] = []
    for a in args:
        if isinstance(a, str):
            out.append(a)
        else:
            out.extend(a)
    return out


async def run_tool(
    command: str,
    args: Sequence[str | Sequence[str]],
    *,
    timeout: float,
) -> ToolResult:
    """Run an external tool and return its output.

    Nested argument lists are flattened, so option/value pairs can be grouped
    the way they read on a command line. A missing binary, a non-zero exit
    code or running longer than ``timeout`` seconds raises
    :class:`TransientToolError`; the process is killed on timeout.
    """
    argv = [command, *_flatten(args)]
    logger.debug("spawning %s", " ".join(argv))
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise TransientToolError(f"{command}: cannot start: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise TransientToolError(f"{command}: timed out after {timeout:g}s") from exc

    stderr_text = stderr.decode("utf-8", errors="replace")
    if process.returncode != 0:
        raise TransientToolError(
            f"{command}: exited with code {process.returncode}\n{stderr_text[-_STDERR_TAIL:]}"
        )
    return ToolResult(stdout=stdout, stderr=stderr_text)
