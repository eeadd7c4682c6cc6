"""执行器异常类。

阻止结果产生的错误（启动失败、超时、非零退出）由发起调用抛出；
执行过程中发现的错误（回调异常、终止信号失败）通过事件通道报告。
"""

from __future__ import annotations

__all__ = [
    "ExecutorError",
    "SpawnFailed",
    "ProcessFailed",
    "ExecutionTimeout",
    "OutputLimitExceeded",
    "CallbackFailed",
    "StopFailed",
]


class ExecutorError(Exception):
    """执行器基础异常。"""
    pass


class SpawnFailed(ExecutorError):
    """进程无法创建（可执行文件不存在、无权限、工作目录无效等）。

    Attributes:
        command: 尝试启动的命令行
        cause: 底层 OSError
    """

    def __init__(self, command: str, cause: OSError) -> None:
        self.command = command
        self.cause = cause
        super().__init__(f"Failed to spawn '{command}': {cause}")


class ProcessFailed(ExecutorError):
    """缓冲模式下进程以非零退出码结束。

    Attributes:
        exit_code: 进程退出码（被信号终止时为负数）
        stderr: 捕获的标准错误输出
        command: 命令行
    """

    def __init__(self, exit_code: int, stderr: str = "", command: str = "") -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = command
        message = f"Process exited with code {exit_code}"
        if stderr.strip():
            message += f": {stderr.strip()}"
        super().__init__(message)


class ExecutionTimeout(ExecutorError, TimeoutError):
    """超时触发，进程已被强制终止。

    Attributes:
        timeout_ms: 配置的超时时间（毫秒）
        process_id: 进程标识符
    """

    def __init__(self, timeout_ms: float, process_id: str = "") -> None:
        self.timeout_ms = timeout_ms
        self.process_id = process_id
        super().__init__(f"Command timed out after {timeout_ms:g}ms")


class OutputLimitExceeded(ExecutorError):
    """缓冲输出超过 max_buffer，进程已被强制终止。

    Attributes:
        stream: 超限的输出流 (stdout/stderr)
        limit: 字节上限
    """

    def __init__(self, stream: str, limit: int) -> None:
        self.stream = stream
        self.limit = limit
        super().__init__(f"{stream} exceeded max_buffer of {limit} bytes")


class CallbackFailed(ExecutorError):
    """实时输出回调抛出异常（非致命，通过事件通道报告）。

    Attributes:
        cause: 回调抛出的原始异常
        stream: 正在投递的输出流
    """

    def __init__(self, cause: BaseException, stream: str = "") -> None:
        self.cause = cause
        self.stream = stream
        super().__init__(str(cause) or type(cause).__name__)


class StopFailed(ExecutorError):
    """终止信号无法送达进程（尽力终止，不影响注册表清理）。

    Attributes:
        pid: 操作系统进程 ID
        cause: 底层 OSError
    """

    def __init__(self, pid: int, cause: OSError) -> None:
        self.pid = pid
        self.cause = cause
        super().__init__(f"Could not signal pid={pid}: {cause}")
