"""
Best-effort keep-awake lock held while a plot runs.

The lock is a child process that asks the OS not to sleep
(systemd-inhibit on Linux, caffeinate on macOS). Failure to start it is
logged and otherwise ignored.
"""
import asyncio
import logging
import platform
import shutil
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)


class WakeLockError(Exception):
    """Raised when no keep-awake mechanism could be started."""


def _inhibitor_command(reason: str) -> List[str]:
    system = platform.system()
    if system == "Linux" and shutil.which("systemd-inhibit"):
        return [
            "systemd-inhibit", "--what=sleep:idle", "--who=plotlink",
            f"--why={reason}", "--mode=block", "sleep", "infinity",
        ]
    if system == "Darwin" and shutil.which("caffeinate"):
        return ["caffeinate", "-i"]
    raise WakeLockError(f"No keep-awake mechanism available on {system}")


class WakeLock:
    """Async context manager holding a keep-awake lock for its lifetime.

    Spawning and reaping the child process happen in a worker thread.
    """

    def __init__(self, reason: str):
        self.reason = reason
        self._process: Optional[subprocess.Popen] = None

    @property
    def held(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def acquire(self) -> None:
        command = _inhibitor_command(self.reason)
        try:
            self._process = subprocess.Popen(
                command, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except OSError as e:
            raise WakeLockError(f"Could not start {command[0]}: {e}") from e

    def release(self) -> None:
        if self._process is None:
            return
        if self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=2)
            except subprocess.TimeoutExpired:
                self._process.kill()
        self._process = None

    async def __aenter__(self):
        try:
            await asyncio.to_thread(self.acquire)
        except WakeLockError as e:
            logger.warning(
                "Couldn't acquire wake lock (%s). Ensure your machine does not sleep during plotting", e
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await asyncio.to_thread(self.release)
        return False
