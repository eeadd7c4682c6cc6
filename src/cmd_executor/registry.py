"""进程注册表模块。

提供进程级别的登记和管理，包括：
- ProcessHandle: 一个已启动子进程的句柄
- ProcessRegistry: 运行中进程的登记、查询和一次性移除

注册表的移除操作是"所有权"的唯一来源：自然退出、超时、显式停止
都通过 remove() 竞争同一个条目，只有拿到句柄的一方负责终止进程。
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

import anyio

from .runtime.process_runner import ProcessSpec
from .types import ExecutionOptions

__all__ = ["ProcessRegistry", "ProcessHandle", "Termination"]

logger = logging.getLogger(__name__)


class Termination(str, Enum):
    """进程被主动终止的原因。"""

    STOPPED = "stopped"
    TIMEOUT = "timeout"
    OUTPUT_LIMIT = "output_limit"


@dataclass
class ProcessHandle:
    """已启动子进程的句柄。

    Attributes:
        process_id: 唯一进程标识符
        process: 底层 asyncio 子进程（移除前由执行器独占）
        spec: 启动规格
        options: 执行选项
        cancel_scope: 取消后不再向调用方投递输出
        deliveries: 正在执行的输出投递任务（终止时一并取消）
        created_at: 创建时间
        exit_code: 退出码（终止前为 None，只设置一次）
        termination: 主动终止原因（自然退出为 None）
    """

    process_id: str
    process: asyncio.subprocess.Process
    spec: ProcessSpec
    options: ExecutionOptions
    cancel_scope: anyio.CancelScope = field(default_factory=anyio.CancelScope)
    deliveries: set[asyncio.Task[None]] = field(default_factory=set, repr=False)
    created_at: datetime = field(default_factory=datetime.now)
    exit_code: Optional[int] = None
    termination: Optional[Termination] = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        """进程是否尚未确认退出。"""
        return self.exit_code is None and self.process.returncode is None

    def set_exit_code(self, code: Optional[int]) -> None:
        """记录退出码（只记录第一次）。"""
        if self.exit_code is None:
            self.exit_code = code

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        status = "running" if self.running else f"exited({self.exit_code})"
        return (
            f"ProcessHandle(id={self.process_id[:8]}..., "
            f"pid={self.pid}, "
            f"command={self.spec.command_line[:40]!r}, "
            f"status={status}, "
            f"elapsed={elapsed:.1f}s)"
        )


class ProcessRegistry:
    """运行中进程的注册表。

    提供：
    - 进程登记（每个 ID 只登记一次）
    - 一次性移除（并发移除同一 ID 只有一方成功）
    - 运行状态查询

    线程安全：所有读写都在锁内完成，可以从信号处理器或其他线程调用。

    Example:
        ```python
        registry = ProcessRegistry()

        process_id = registry.generate_process_id()
        registry.register(handle)

        if process_id in registry:
            print(f"Running: {len(registry)}")

        handle = registry.remove(process_id)  # 第二次调用返回 None
        ```
    """

    def __init__(self) -> None:
        """初始化进程注册表。"""
        self._handles: Dict[str, ProcessHandle] = {}
        self._lock = threading.Lock()

    def generate_process_id(self) -> str:
        """生成当前注册表内不重复的进程 ID。

        Returns:
            12 位十六进制字符串
        """
        with self._lock:
            while True:
                process_id = uuid.uuid4().hex[:12]
                if process_id not in self._handles:
                    return process_id

    def register(self, handle: ProcessHandle) -> None:
        """登记新进程。

        Args:
            handle: 进程句柄

        Raises:
            ValueError: 如果 process_id 已存在
        """
        with self._lock:
            if handle.process_id in self._handles:
                raise ValueError(f"Process {handle.process_id} already registered")
            self._handles[handle.process_id] = handle
        logger.debug(f"Registered process: {handle}")

    def remove(self, process_id: str) -> Optional[ProcessHandle]:
        """移除进程条目。

        Args:
            process_id: 进程标识符

        Returns:
            被移除的句柄；条目不存在（或已被移除）时返回 None
        """
        with self._lock:
            handle = self._handles.pop(process_id, None)

        if handle is not None:
            logger.debug(f"Removed process: {handle}")
        return handle

    def get(self, process_id: str) -> Optional[ProcessHandle]:
        """获取进程句柄，不存在则返回 None。"""
        with self._lock:
            return self._handles.get(process_id)

    def ids(self) -> list[str]:
        """当前所有进程 ID 的快照。"""
        with self._lock:
            return list(self._handles)

    def __len__(self) -> int:
        """返回注册表中的进程数量。"""
        with self._lock:
            return len(self._handles)

    def __contains__(self, process_id: object) -> bool:
        """检查进程是否在注册表中。"""
        with self._lock:
            return process_id in self._handles
