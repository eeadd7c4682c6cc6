"""Command executor: one-shot and real-time process supervision.

cmd-executor core module v0.1.0

This module provides:
- CommandExecutor.execute(): buffered run, returns decoded stdout
- CommandExecutor.realtime_execution(): streams chunks to a handler and
  returns a ProcessController right after launch
- stop_process() / is_process_running() / stop_all() over a process registry
- An event channel for non-fatal diagnostics (error / warning)

Key design points:
- Every launch is registered before any output is delivered
- Registry removal decides ownership: natural exit, timeout, output limit and
  explicit stop all race on ProcessRegistry.remove(), exactly one wins
- Each pipe is pumped by its own task and drained to EOF even after
  termination starts, but nothing is delivered once the handle's cancel
  scope is cancelled
- Every sink call runs as its own task; the termination that wins the
  registry race cancels any call still in progress, so a slow handler never
  holds back a timeout or stop
- Buffered runs fail on non-zero exit; streaming runs never do, the exit
  code is reported through the controller
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from collections.abc import Awaitable, Generator, Mapping, Sequence
from typing import Any, Optional, Union

from .config import get_config
from .errors import (
    ExecutionTimeout,
    ExecutorError,
    OutputLimitExceeded,
    ProcessFailed,
    StopFailed,
)
from .events import EventChannel, EventKind, EventSubscriber
from .registry import ProcessHandle, ProcessRegistry, Termination
from .runtime.process_runner import IS_WINDOWS, ProcessRunner, ProcessSpec
from .streams import BufferSink, HandlerSink, OutputSink
from .types import STDERR, STDOUT, ChunkHandler, ExecutionOptions, StreamTag

__all__ = [
    "CommandExecutor",
    "ProcessController",
    "OptionsLike",
]

logger = logging.getLogger(__name__)

# ExecutionOptions, or a dict of overrides merged over the executor defaults
OptionsLike = Union[ExecutionOptions, Mapping[str, Any], None]


def _retrieve_exception(future: asyncio.Future[Any]) -> None:
    # Failures are also emitted as events; mark them retrieved so an
    # unawaited controller does not log "exception was never retrieved"
    if not future.cancelled():
        future.exception()


class ProcessController:
    """Caller-facing handle for a streaming execution.

    Example:
        controller = await executor.realtime_execution(
            "ping", ["-c", "3", "localhost"], {"timeout": 5000}, on_data
        )
        print(controller.process_id, controller.is_running())
        exit_code = await controller      # or: await controller.wait()
    """

    def __init__(
        self,
        executor: CommandExecutor,
        handle: ProcessHandle,
        completion: asyncio.Future[Optional[int]],
    ) -> None:
        self._executor = executor
        self._handle = handle
        self._completion = completion

    @property
    def process_id(self) -> str:
        return self._handle.process_id

    @property
    def pid(self) -> int:
        return self._handle.pid

    @property
    def exit_code(self) -> Optional[int]:
        """Exit code once the process has been reaped, else None."""
        return self._handle.exit_code

    @property
    def done(self) -> bool:
        """Whether the execution has resolved (exit, timeout or failure)."""
        return self._completion.done()

    def stop(self) -> bool:
        """Stop the process. Returns False if it was already stopped or has exited."""
        return self._executor.stop_process(self.process_id)

    def is_running(self) -> bool:
        return self._executor.is_process_running(self.process_id)

    async def wait(self) -> Optional[int]:
        """Wait for the execution to resolve.

        Returns:
            The exit code (negative signal number when killed on POSIX)

        Raises:
            ExecutionTimeout: If the timeout fired before the process exited
        """
        return await asyncio.shield(self._completion)

    def __await__(self) -> Generator[Any, None, Optional[int]]:
        return self.wait().__await__()

    def __repr__(self) -> str:
        return f"ProcessController(process_id={self.process_id}, pid={self.pid}, exit_code={self.exit_code})"


class CommandExecutor:
    """Process supervisor.

    Launches commands, streams or buffers their output, tracks live processes
    by ID and supports timeouts, explicit stops and bulk termination.

    Example:
        executor = CommandExecutor()
        executor.on("error", lambda event: print("Error:", event.message))
        executor.on("warning", lambda event: print("Warning:", event.message))

        output = await executor.execute("echo hello")

        async def on_data(chunk: str, stream: StreamTag) -> None:
            print(stream, chunk, end="")

        controller = await executor.realtime_execution(
            "ping", ["localhost"], {"timeout": 10000}, on_data
        )
        await executor.stop_all()
    """

    def __init__(
        self,
        runner: ProcessRunner | None = None,
        registry: ProcessRegistry | None = None,
        events: EventChannel | None = None,
        defaults: ExecutionOptions | None = None,
    ) -> None:
        config = get_config()
        self.runner = runner if runner is not None else ProcessRunner(
            term_timeout=config.term_timeout,
            kill_timeout=config.kill_timeout,
        )
        self.registry = registry if registry is not None else ProcessRegistry()
        self.events = events if events is not None else EventChannel()
        self.defaults = defaults if defaults is not None else ExecutionOptions.from_config(config)

        self._supervisors: set[asyncio.Task[None]] = set()
        self._reapers: set[asyncio.Task[None]] = set()

    async def __aenter__(self) -> CommandExecutor:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop_all()

    # =========================================================================
    # Public API
    # =========================================================================

    def on(self, kind: EventKind | str, callback: EventSubscriber):
        """Subscribe to one event kind ("error" or "warning").

        Returns:
            A function that removes the subscription
        """
        return self.events.subscribe(callback, kinds=kind)

    async def execute(self, command: str, options: OptionsLike = None) -> str:
        """Run a command to completion and return its decoded stdout.

        Args:
            command: Command line. Passed to the shell as-is when
                options.shell is true, otherwise split shell-style into argv.
            options: Execution options or overrides

        Returns:
            Everything the process wrote to stdout

        Raises:
            SpawnFailed: The process could not be created
            ProcessFailed: The process exited with a non-zero code
            ExecutionTimeout: The timeout fired first
            OutputLimitExceeded: stdout or stderr exceeded max_buffer
        """
        try:
            opts = self.defaults.merged(options)
            argv = [command] if opts.shell else shlex.split(command, posix=not IS_WINDOWS)
            return await self._run_buffered(argv, opts)
        except ExecutorError as e:
            self.events.error(
                f"One-time execution error: {e}",
                process_id=getattr(e, "process_id", None) or None,
                error=e,
            )
            raise

    async def realtime_execution(
        self,
        command: str,
        args: Sequence[str] = (),
        options: OptionsLike = None,
        on_data: ChunkHandler | None = None,
    ) -> Union[ProcessController, str]:
        """Run a command and deliver its output as it arrives.

        With on_data, returns a ProcessController as soon as the process is
        started and registered; on_data(chunk, stream) is called for each
        decoded chunk, stream being "stdout" or "stderr". Handler exceptions
        are reported as error events and delivery continues.

        Without on_data, behaves like execute() and returns the stdout text.

        Args:
            command: Executable or shell command
            args: Arguments (shell-quoted when options.shell is true)
            options: Execution options or overrides
            on_data: Chunk handler, plain or async

        Raises:
            SpawnFailed: The process could not be created
            ProcessFailed: Non-zero exit (only without on_data)
            ExecutionTimeout: The timeout fired first (only without on_data;
                with on_data it is raised from controller.wait())
        """
        try:
            opts = self.defaults.merged(options)
            argv = [command, *args]
            if on_data is None:
                return await self._run_buffered(argv, opts)
            handle = await self._launch(argv, opts)
        except ExecutorError as e:
            self.events.error(
                f"Execution error: {e}",
                process_id=getattr(e, "process_id", None) or None,
                error=e,
            )
            raise

        sink = HandlerSink(
            on_data,
            opts.encoding,
            on_error=lambda err: self.events.error(
                f"Callback error: {err}",
                process_id=handle.process_id,
                error=err,
            ),
        )

        loop = asyncio.get_running_loop()
        completion: asyncio.Future[Optional[int]] = loop.create_future()
        completion.add_done_callback(_retrieve_exception)

        task = loop.create_task(
            self._run_streaming(handle, sink, completion),
            name=f"cmdx-supervise-{handle.process_id}",
        )
        self._supervisors.add(task)
        task.add_done_callback(self._supervisors.discard)

        return ProcessController(self, handle, completion)

    def stop_process(self, process_id: str) -> bool:
        """Stop a registered process.

        Removes the registry entry, stops chunk delivery and sends SIGTERM to
        the process group; a background reaper escalates to SIGKILL after
        runner.term_timeout.

        A child that has already exited while its output is still being
        delivered is not signalled. Its entry is released so that
        is_process_running() agrees, and delivery runs to the end.

        Returns:
            True if a live process was claimed (signalling is best effort),
            False otherwise (unknown ID, already stopped, or already exited)
        """
        handle = self.registry.get(process_id)
        if handle is None:
            return False
        if handle.process.returncode is not None:
            if self.registry.remove(process_id) is not None:
                logger.debug(f"Released exited process {process_id} pid={handle.pid}")
            return False
        if not self._claim(handle, Termination.STOPPED):
            return False

        logger.info(f"Stopping process {process_id} pid={handle.pid}")
        if self._signal(handle):
            self._spawn_reaper(handle)
        return True

    def is_process_running(self, process_id: str) -> bool:
        """Whether the registry currently holds process_id."""
        return process_id in self.registry

    def terminate_all(self) -> int:
        """Signal every registered process without waiting.

        Safe to call from a signal handler running on the event loop.

        Returns:
            Number of processes stopped
        """
        stopped = 0
        for process_id in self.registry.ids():
            try:
                if self.stop_process(process_id):
                    stopped += 1
            except Exception as e:
                self.events.error(f"Stop all error: {e}", process_id=process_id, error=e)

        if stopped > 0:
            logger.info(f"Stopped {stopped} running process(es)")
        return stopped

    async def stop_all(self) -> int:
        """Stop every registered process and wait for them to go away.

        Individual failures are reported as error events and do not stop the
        iteration.

        Returns:
            Number of processes stopped
        """
        stopped = self.terminate_all()

        if self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)

        if self._supervisors:
            # Let streaming executions resolve their controllers
            await asyncio.wait(
                list(self._supervisors),
                timeout=self.runner.term_timeout + self.runner.kill_timeout,
            )

        return stopped

    @property
    def running_count(self) -> int:
        return len(self.registry)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _launch(self, argv: list[str], opts: ExecutionOptions) -> ProcessHandle:
        """Spawn and register. The handle is registered before any read."""
        spec = ProcessSpec(argv=argv, shell=opts.shell, cwd=opts.cwd, env=opts.env)
        process = await self.runner.spawn(spec)

        handle = ProcessHandle(
            process_id=self.registry.generate_process_id(),
            process=process,
            spec=spec,
            options=opts,
        )
        self.registry.register(handle)
        return handle

    async def _run_buffered(self, argv: list[str], opts: ExecutionOptions) -> str:
        handle = await self._launch(argv, opts)
        sink = BufferSink(
            opts.max_buffer,
            on_overflow=lambda stream: self._kill(handle, Termination.OUTPUT_LIMIT),
        )

        exit_code = await self._supervise(handle, sink)

        if sink.overflowed is not None:
            raise OutputLimitExceeded(sink.overflowed.value, opts.max_buffer)

        stderr = sink.text(STDERR, opts.encoding)
        if exit_code != 0:
            raise ProcessFailed(exit_code, stderr, handle.spec.command_line)
        if stderr:
            self.events.warning(stderr, process_id=handle.process_id)

        return sink.text(STDOUT, opts.encoding)

    async def _run_streaming(
        self,
        handle: ProcessHandle,
        sink: HandlerSink,
        completion: asyncio.Future[Optional[int]],
    ) -> None:
        try:
            exit_code = await self._supervise(handle, sink)
        except asyncio.CancelledError:
            if not completion.done():
                completion.cancel()
            raise
        except Exception as e:
            self.events.error(f"Execution error: {e}", process_id=handle.process_id, error=e)
            if not completion.done():
                completion.set_exception(e)
        else:
            logger.debug(
                f"Streaming execution finished {handle.process_id} "
                f"exit_code={exit_code} chunks={sink.delivered}"
            )
            if not completion.done():
                completion.set_result(exit_code)

    async def _supervise(self, handle: ProcessHandle, sink: OutputSink) -> int:
        """Pump both pipes, wait for exit, then release the registry entry.

        Raises:
            ExecutionTimeout: If the timeout timer claimed the process
        """
        opts = handle.options
        loop = asyncio.get_running_loop()

        timer: asyncio.TimerHandle | None = None
        if opts.timeout > 0:
            timer = loop.call_later(opts.timeout_seconds, self._on_timeout, handle)

        pumps = [
            loop.create_task(
                self._pump(handle, handle.process.stdout, STDOUT, sink),
                name=f"cmdx-stdout-{handle.process_id}",
            ),
            loop.create_task(
                self._pump(handle, handle.process.stderr, STDERR, sink),
                name=f"cmdx-stderr-{handle.process_id}",
            ),
        ]

        try:
            await asyncio.gather(*pumps)
            exit_code = await handle.process.wait()
        except BaseException:
            # Caller cancelled or a pipe failed: do not leave the child behind
            self.stop_process(handle.process_id)
            raise
        finally:
            if timer is not None:
                timer.cancel()
            for pump in pumps:
                if not pump.done():
                    pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)

            handle.set_exit_code(handle.process.returncode)
            if self.registry.remove(handle.process_id) is not None:
                logger.debug(
                    f"Process exited {handle.process_id} pid={handle.pid} "
                    f"returncode={handle.process.returncode}"
                )

        if handle.termination is Termination.TIMEOUT:
            raise ExecutionTimeout(opts.timeout, handle.process_id)

        return exit_code

    async def _pump(
        self,
        handle: ProcessHandle,
        stream: asyncio.StreamReader | None,
        tag: StreamTag,
        sink: OutputSink,
    ) -> None:
        async for chunk in self.runner.read_chunks(stream):
            # Keep draining after termination so the pipe never blocks the child
            if handle.cancel_scope.cancel_called:
                continue
            await self._deliver(handle, sink.feed(tag, chunk))

        if not handle.cancel_scope.cancel_called:
            await self._deliver(handle, sink.close(tag))

    @staticmethod
    async def _deliver(handle: ProcessHandle, call: Awaitable[None]) -> None:
        """Run one sink call as a task that _claim() can cancel."""
        task = asyncio.ensure_future(call)
        handle.deliveries.add(task)
        try:
            await asyncio.wait({task})
        finally:
            handle.deliveries.discard(task)
            if not task.done():
                task.cancel()

        # Cancelled by a termination: drop the chunk and keep draining
        if not task.cancelled():
            task.result()

    def _on_timeout(self, handle: ProcessHandle) -> None:
        if handle.process.returncode is not None:
            return
        logger.warning(
            f"Process {handle.process_id} timed out after "
            f"{handle.options.timeout:g}ms, killing pid={handle.pid}"
        )
        self._kill(handle, Termination.TIMEOUT)

    def _kill(self, handle: ProcessHandle, reason: Termination) -> None:
        """Claim the handle and SIGKILL it immediately."""
        if self._claim(handle, reason):
            self._signal(handle, force=True)

    def _claim(self, handle: ProcessHandle, reason: Termination) -> bool:
        """Take ownership of the termination. Only one caller ever wins."""
        if self.registry.remove(handle.process_id) is None:
            return False
        handle.termination = reason
        handle.cancel_scope.cancel()
        for task in list(handle.deliveries):
            task.cancel()
        return True

    def _signal(self, handle: ProcessHandle, force: bool = False) -> bool:
        try:
            return self.runner.send_signal(handle.process, force=force)
        except StopFailed as e:
            self.events.error(
                f"Stop process error: {e}",
                process_id=handle.process_id,
                error=e,
            )
            return False

    def _spawn_reaper(self, handle: ProcessHandle) -> None:
        """Escalate a SIGTERM to SIGKILL in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running loop, skipping kill escalation for pid={handle.pid}")
            return

        task = loop.create_task(
            self.runner.terminate(handle.process, signalled=True),
            name=f"cmdx-reap-{handle.process_id}",
        )
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)
