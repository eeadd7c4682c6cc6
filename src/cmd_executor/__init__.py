"""cmd-executor - 实时命令执行与进程管理。

用法:
    from cmd_executor import CommandExecutor

    executor = CommandExecutor()
    output = await executor.execute("echo hello")

命令行:
    cmd-executor --timeout 5000 ping localhost
"""

__version__ = "0.1.0"

from .errors import (
    CallbackFailed,
    ExecutionTimeout,
    ExecutorError,
    OutputLimitExceeded,
    ProcessFailed,
    SpawnFailed,
    StopFailed,
)
from .events import EventChannel, EventKind, ExecutorEvent
from .executor import CommandExecutor, ProcessController
from .registry import ProcessHandle, ProcessRegistry
from .types import STDERR, STDOUT, ExecutionOptions, StreamTag

__all__ = [
    "__version__",
    "CommandExecutor",
    "ProcessController",
    "ExecutionOptions",
    "StreamTag",
    "STDOUT",
    "STDERR",
    "EventChannel",
    "EventKind",
    "ExecutorEvent",
    "ProcessHandle",
    "ProcessRegistry",
    "ExecutorError",
    "SpawnFailed",
    "ProcessFailed",
    "ExecutionTimeout",
    "OutputLimitExceeded",
    "CallbackFailed",
    "StopFailed",
]
