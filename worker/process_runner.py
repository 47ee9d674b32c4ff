"""
Out-of-process tool execution behind a narrow interface.

Media code depends on ``ProcessRunner.run(command, args)`` rather than on
asyncio subprocess calls, so tests can substitute a fake runner and never
spawn ffmpeg or ffprobe.
"""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import List, Optional, Sequence

from api.errors import ExternalToolError
from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    """Exit status and fully drained output of one tool invocation."""

    exit_code: int
    stdout: bytes
    stderr: bytes

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def stderr_text(self, max_length: int = ERROR_DETAIL_MAX_LENGTH) -> str:
        """Decoded stderr, cut from the front so the final error lines survive."""
        text = self.stderr.decode("utf-8", errors="ignore").strip()
        if len(text) <= max_length:
            return text
        if max_length <= 3:
            return text[-max_length:]
        return "..." + text[-(max_length - 3) :]


class ProcessRunner:
    """Interface: run ``command`` with ``args`` and return its exit code and output."""

    async def run(self, command: str, args: Sequence[str]) -> ToolResult:
        raise NotImplementedError


class SubprocessRunner(ProcessRunner):
    """
    Runs tools with asyncio subprocesses.

    stdout and stderr are both piped and drained together by ``communicate()``
    so a child that fills one pipe cannot deadlock against us. With a timeout
    configured, the child gets its own session and the whole process group is
    killed when the timeout expires.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout else None

    async def run(self, command: str, args: Sequence[str]) -> ToolResult:
        cmd: List[str] = [command, *args]
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=self.timeout is not None,
            )
        except FileNotFoundError as e:
            raise ExternalToolError(command, "executable not found", diagnostic=str(e))
        except OSError as e:
            raise ExternalToolError(command, "could not be started", diagnostic=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill_process_group(process, command)
            raise ExternalToolError(command, f"timed out after {self.timeout}s")

        return ToolResult(exit_code=process.returncode, stdout=stdout, stderr=stderr)

    @staticmethod
    async def _kill_process_group(process: asyncio.subprocess.Process, context: str) -> None:
        """Kill the child's process group, tolerating a child that already exited."""
        if process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                # Process already terminated between the timeout and the kill
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                logger.warning(f"{context} process did not terminate after kill")
