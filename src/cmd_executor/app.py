"""cmd-executor 命令行入口。

包含日志配置、帮助信息和主入口点。
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Optional, Sequence

from .config import get_config
from .errors import ExecutionTimeout, ProcessFailed, SpawnFailed
from .events import ExecutorEvent
from .executor import CommandExecutor, ProcessController
from .runtime.process_runner import ProcessSpec
from .signal_manager import SignalManager
from .types import STDOUT, ExecutionOptions, StreamTag

__all__ = ["build_parser", "run", "main", "DETAILED_HELP"]

logger = logging.getLogger(__name__)

# 退出码约定
EXIT_TIMEOUT = 124
EXIT_SPAWN_FAILED = 127
EXIT_FORCED = 130

DETAILED_HELP = """\
Detailed Help
=============
1. Library usage:
   from cmd_executor import CommandExecutor

   executor = CommandExecutor()

2. Executing commands:
   a) One-time commands (buffered, returns stdout):
      output = await executor.execute("ls -la")

   b) Real-time commands (returns a controller immediately):
      controller = await executor.realtime_execution(
          "ping", ["localhost"],
          {"timeout": 5000},
          lambda chunk, stream: print(chunk, end=""),
      )

3. Options:
   - timeout:    timeout in milliseconds (0 = none)
   - encoding:   output encoding (default utf-8)
   - shell:      run through the shell (default true)
   - max_buffer: max buffered bytes per stream in one-time mode

4. Process control:
   - Stop a process:  controller.stop()  or  executor.stop_process(process_id)
   - Check if running: controller.is_running()
   - Wait for exit:   exit_code = await controller
   - Stop all:        await executor.stop_all()

5. Error handling:
   executor.on("error", lambda event: print("Error:", event.message))
   executor.on("warning", lambda event: print("Warning:", event.message))

Examples (command line):
   cmd-executor echo hello
   cmd-executor --timeout 5000 ping localhost
   cmd-executor --once "ls -la | head"

Environment:
   CMDX_SHELL, CMDX_ENCODING, CMDX_MAX_BUFFER, CMDX_TIMEOUT,
   CMDX_TERM_TIMEOUT, CMDX_KILL_TIMEOUT, CMDX_LOG_DEBUG,
   CMDX_SIGINT_MODE, CMDX_SIGINT_DOUBLE_TAP_WINDOW
"""


def build_parser() -> argparse.ArgumentParser:
    """构建命令行解析器。"""
    parser = argparse.ArgumentParser(
        prog="cmd-executor",
        description="Run a command and stream its output in real time.",
        epilog="Use --detailed for usage examples.",
    )
    parser.add_argument("--detailed", action="store_true", help="Show detailed help with examples")
    parser.add_argument("--timeout", type=float, default=None, help="Timeout in milliseconds (0 = none)")
    parser.add_argument("--encoding", default=None, help="Output encoding")
    parser.add_argument("--no-shell", action="store_true", help="Execute directly instead of through the shell")
    parser.add_argument("--once", action="store_true", help="Buffer the output and print it on completion")
    parser.add_argument("command", nargs="?", help="Command to run")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Command arguments")
    return parser


def _exit_status(code: Optional[int]) -> int:
    """把子进程退出码转换为 shell 风格的退出状态。"""
    if code is None:
        return 1
    if code < 0:
        # 被信号终止：128 + 信号编号
        return 128 - code
    return code


def _options_from_args(ns: argparse.Namespace) -> dict:
    overrides: dict = {}
    if ns.timeout is not None:
        overrides["timeout"] = ns.timeout
    if ns.encoding:
        overrides["encoding"] = ns.encoding
    if ns.no_shell:
        overrides["shell"] = False
    return overrides


def _write_chunk(chunk: str, stream: StreamTag) -> None:
    target = sys.stdout if stream == STDOUT else sys.stderr
    target.write(chunk)
    target.flush()


def _write_warning(event: ExecutorEvent) -> None:
    # 缓冲模式下成功进程的 stderr 以 warning 事件给出
    sys.stderr.write(event.message)
    sys.stderr.flush()


async def run_command(ns: argparse.Namespace) -> int:
    """执行命令并返回退出状态。"""
    executor = CommandExecutor()
    signal_manager = SignalManager(executor)
    options = _options_from_args(ns)

    try:
        await signal_manager.start()

        if ns.once:
            executor.on("warning", _write_warning)
            command_line = ProcessSpec(argv=[ns.command, *ns.args]).command_line
            output = await executor.execute(command_line, options)
            sys.stdout.write(output)
            sys.stdout.flush()
            return 0

        controller = await executor.realtime_execution(ns.command, ns.args, options, _write_chunk)
        return await _wait_controller(controller, executor, signal_manager)

    except ExecutionTimeout as e:
        logger.error(str(e))
        return EXIT_TIMEOUT

    except SpawnFailed as e:
        logger.error(str(e))
        return EXIT_SPAWN_FAILED

    except ProcessFailed as e:
        if e.stderr:
            sys.stderr.write(e.stderr)
        return _exit_status(e.exit_code)

    finally:
        await executor.stop_all()
        await signal_manager.stop()
        if signal_manager.is_force_exit:
            logger.warning("Force exit requested")


async def _wait_controller(
    controller: ProcessController,
    executor: CommandExecutor,
    signal_manager: SignalManager,
) -> int:
    """等待进程结束或关闭信号。"""
    waiter = asyncio.ensure_future(controller.wait())
    shutdown = asyncio.ensure_future(signal_manager.wait_for_shutdown())

    try:
        await asyncio.wait({waiter, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        if not waiter.done():
            logger.info(f"Shutdown requested, stopping process {controller.process_id}")
            controller.stop()
            await executor.stop_all()
    finally:
        shutdown.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await shutdown

    if signal_manager.is_force_exit:
        waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await waiter
        return EXIT_FORCED

    return _exit_status(await waiter)


def _configure_logging() -> None:
    """配置日志输出。"""
    config = get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
        log_handlers.append(stderr_handler)
        log_level = logging.WARNING

    # root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("cmd_executor").setLevel(log_level)


def run(argv: Optional[Sequence[str]] = None) -> int:
    """解析参数并运行，返回退出状态。"""
    parser = build_parser()
    ns = parser.parse_args(argv)

    if ns.detailed:
        parser.print_help()
        print()
        print(DETAILED_HELP)
        return 0

    if not ns.command:
        parser.print_help()
        return 2

    try:
        ExecutionOptions().merged(_options_from_args(ns))
    except ValueError as e:
        parser.error(str(e))

    return asyncio.run(run_command(ns))


def main() -> None:
    """主入口点。"""
    _configure_logging()
    sys.exit(run())


if __name__ == "__main__":
    main()
