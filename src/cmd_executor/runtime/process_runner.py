"""Process runner with subprocess isolation and reliable termination.

cmd-executor runtime module v0.1.0

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Shell and direct (argv) spawning
- Signal delivery to the whole process group
- Graceful termination (SIGTERM -> timeout -> SIGKILL)
- Chunked stdout/stderr reads

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Termination signals the process group, not just the main process,
  so grandchildren started by a shell are stopped too
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import subprocess
import sys
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import SpawnFailed, StopFailed

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
    "IS_WINDOWS",
    "stop_signal",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

DEFAULT_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command and arguments. With shell=True the first element is
            passed to the shell verbatim and the rest are quoted.
        shell: Run through the platform shell
        cwd: Working directory (None = inherit)
        env: Environment variables (None = inherit parent)
    """

    argv: list[str]
    shell: bool = False
    cwd: Path | None = None
    env: Mapping[str, str] | None = None

    @property
    def command_line(self) -> str:
        """The command as a single string (what the shell sees)."""
        if not self.argv:
            return ""
        if IS_WINDOWS:
            rest = subprocess.list2cmdline(self.argv[1:])
        else:
            rest = " ".join(shlex.quote(arg) for arg in self.argv[1:])
        return f"{self.argv[0]} {rest}".rstrip()


@dataclass
class ProcessRunner:
    """Cross-platform process runner with isolation and reliable termination.

    This class manages subprocess execution with:
    - Process group/session isolation
    - Group-wide signal delivery
    - Graceful termination (SIGTERM -> timeout -> SIGKILL)

    Example:
        runner = ProcessRunner()
        process = await runner.spawn(ProcessSpec(argv=["ping", "-c", "3", "localhost"]))

        async for chunk in runner.read_chunks(process.stdout):
            handle(chunk)

        await process.wait()
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Start the subprocess in an isolated process group/session.

        stdin is DEVNULL so the child never inherits the caller's stdin.

        Args:
            spec: Process specification

        Returns:
            The started asyncio subprocess with piped stdout/stderr

        Raises:
            SpawnFailed: If the process could not be created
            ValueError: If argv is empty
        """
        if not spec.argv:
            raise ValueError("Cannot spawn an empty command")

        kwargs = self._build_subprocess_kwargs(spec)

        try:
            if spec.shell:
                process = await asyncio.create_subprocess_shell(
                    spec.command_line,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    **kwargs,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *spec.argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    **kwargs,
                )
        except OSError as e:
            logger.debug(f"Spawn failed argv={spec.argv[0]}: {e}")
            raise SpawnFailed(spec.command_line, e) from e

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} shell={spec.shell} cwd={spec.cwd}"
        )
        return process

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec/shell
        """
        kwargs: dict[str, Any] = {}

        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd

        # Environment
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        # Platform-specific isolation
        if IS_WINDOWS:
            # Windows: CREATE_NEW_PROCESS_GROUP
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # POSIX: start_new_session (equivalent to setsid)
            kwargs["start_new_session"] = True

        return kwargs

    async def read_chunks(
        self,
        stream: asyncio.StreamReader | None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> AsyncIterator[bytes]:
        """Yield raw chunks from a pipe until EOF.

        Chunks are whatever the OS delivered, not aligned to lines or
        characters.
        """
        if stream is None:
            return
        while True:
            chunk = await stream.read(chunk_size)
            if not chunk:
                break
            yield chunk

    def send_signal(
        self,
        process: asyncio.subprocess.Process,
        force: bool = False,
    ) -> bool:
        """Send a termination signal to the process group.

        Args:
            process: The subprocess
            force: Kill instead of asking the process to stop

        Returns:
            True if a signal was sent, False if the process had already exited

        Raises:
            StopFailed: If the signal could not be delivered
        """
        if process.returncode is not None:
            return False

        sig = stop_signal(force)
        try:
            self._signal_group(process, sig)
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={process.pid}")
            return False
        except OSError as e:
            raise StopFailed(process.pid, e) from e
        return True

    def _signal_group(self, process: asyncio.subprocess.Process, sig: int) -> None:
        if IS_WINDOWS:
            # CTRL_BREAK_EVENT reaches the group created with CREATE_NEW_PROCESS_GROUP
            process.send_signal(sig)
            logger.debug(f"Sent signal {sig} to pid={process.pid}")
            return

        try:
            # start_new_session makes the child its own group leader
            os.killpg(process.pid, sig)
        except PermissionError as e:
            logger.debug(f"killpg refused for pid={process.pid}, signalling it alone: {e}")
            process.send_signal(sig)
        else:
            logger.debug(f"Sent {signal.Signals(sig).name} to process group {process.pid}")

    async def terminate(
        self,
        process: asyncio.subprocess.Process,
        *,
        signalled: bool = False,
    ) -> None:
        """Stop the subprocess, escalating to a kill if it does not exit.

        Two stages, each signalling the group and then waiting:
        the graceful signal for term_timeout, then the kill for kill_timeout.

        Args:
            process: The subprocess to terminate
            signalled: The graceful signal was already sent by the caller
        """
        pid = process.pid
        stages = ((False, self.term_timeout), (True, self.kill_timeout))

        for force, timeout in stages:
            try:
                if not (signalled and not force) and not self.send_signal(process, force=force):
                    return
            except StopFailed as e:
                logger.warning(f"Error terminating subprocess pid={pid}: {e}")
                return

            if await _wait_exit(process, timeout):
                logger.debug(
                    f"Subprocess exited pid={pid} returncode={process.returncode} "
                    f"forced={force}"
                )
                return
            logger.debug(f"Subprocess still running after {timeout}s pid={pid} forced={force}")

        logger.warning(f"Subprocess did not exit after kill pid={pid}")


def stop_signal(force: bool) -> int:
    """The graceful or forced stop signal for this platform."""
    if IS_WINDOWS:
        # Popen.send_signal maps SIGTERM to TerminateProcess
        return signal.SIGTERM if force else signal.CTRL_BREAK_EVENT
    return signal.SIGKILL if force else signal.SIGTERM


async def _wait_exit(process: asyncio.subprocess.Process, timeout: float) -> bool:
    try:
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True
