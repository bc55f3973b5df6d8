import asyncio
import logging
import os
import tempfile
from typing import Optional

from filelock import FileLock, Timeout

from .errors import TestExecutionError

logger = logging.getLogger(__name__)

MAX_START_ATTEMPTS = 3


class VirtualDisplay:
    """Xvfb server shared by every target of the running job.

    Started lazily the first time a target needs a browser and stopped by
    the pipeline when the job ends. The display number is guarded by a file
    lock so two jobs never drive browsers on it at the same time.
    """

    def __init__(self, display: int = 99, enabled: bool = True, lock_dir: Optional[str] = None):
        self.display = display
        self.enabled = enabled
        self.lock = FileLock(os.path.join(lock_dir or tempfile.gettempdir(), f"compci-display-{display}.lock"))
        self.process: Optional[asyncio.subprocess.Process] = None
        self._previous_display: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def acquire(self):
        if not self.enabled or self.running:
            return
        # Still held when Xvfb died under a running job.
        if not self.lock.is_locked:
            try:
                self.lock.acquire(timeout=0)
            except Timeout:
                raise TestExecutionError(f"Display :{self.display} is in use by another job")
            self._previous_display = os.environ.get("DISPLAY")

        last_error = None
        for attempt in range(1, MAX_START_ATTEMPTS + 1):
            try:
                await self._start()
                return
            except (OSError, TestExecutionError) as e:
                last_error = e
                logger.warning(f"Unable to start Xvfb (attempt {attempt}): {e}")
        self.process = None
        self._unlock()
        raise TestExecutionError(f"Unable to start virtual display: {last_error}")

    async def _start(self):
        logger.info(f"Starting Xvfb on :{self.display}")
        self.process = await asyncio.create_subprocess_exec(
            "Xvfb", f":{self.display}", "-screen", "0", "1280x1024x24", "-nolisten", "tcp",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        # Xvfb exits right away when the display is taken.
        await asyncio.sleep(0.5)
        if self.process.returncode is not None:
            code = self.process.returncode
            self.process = None
            raise TestExecutionError(f"Xvfb exited with code {code}")
        os.environ["DISPLAY"] = f":{self.display}"

    async def release(self):
        if self.process:
            logger.info(f"Stopping Xvfb on :{self.display}")
            if self.process.returncode is None:
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=10)
                except asyncio.TimeoutError:
                    self.process.kill()
                    await self.process.wait()
            self.process = None
        self._unlock()

    def _unlock(self):
        if not self.lock.is_locked:
            return
        if self._previous_display is None:
            os.environ.pop("DISPLAY", None)
        else:
            os.environ["DISPLAY"] = self._previous_display
        self.lock.release()
