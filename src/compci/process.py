import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    cmd: Sequence[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    input: Optional[str] = None,
    timeout: Optional[float] = None,
    prefix: str = "CMD",
) -> CommandResult:
    """Run a command to completion without blocking the event loop.

    Raises OSError when the executable cannot be started and
    asyncio.TimeoutError when ``timeout`` expires (the process is killed).
    """
    logger.debug(f"[{prefix}] Executing: {' '.join(cmd)}")
    process = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.PIPE if input is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    data = input.encode("utf-8") if input is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(data), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.error(f"[{prefix}] Timed out after {timeout}s: {' '.join(cmd)}")
        raise

    result = CommandResult(
        returncode=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
    )
    if result.stdout:
        logger.debug(f"[{prefix}]: {result.stdout}")
    if result.stderr:
        logger.debug(f"[{prefix}] ERR: {result.stderr}")
    logger.debug(f"[{prefix}] exit code is {result.returncode}")
    return result
