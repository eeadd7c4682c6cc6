"""信号管理模块。

把终端信号翻译成对执行器的操作：
- SIGINT: 按 CMDX_SIGINT_MODE 决定停止子进程还是结束运行，窗口内连按两次强制退出
- SIGTERM / SIGHUP: 停止所有子进程并结束运行

每次 SIGINT 先被归类为一个 InterruptAction，再统一执行，
调用方通过 wait_for_shutdown() 和 is_force_exit 决定如何收尾。
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional

from .config import SigintMode, get_config
from .runtime.process_runner import IS_WINDOWS

if TYPE_CHECKING:
    from .executor import CommandExecutor

__all__ = ["SignalManager", "SigintMode", "InterruptAction"]

logger = logging.getLogger(__name__)


class InterruptAction(str, Enum):
    """一次 SIGINT 的处理结果。"""

    STOP = "stop"  # 停止子进程，继续等待
    ARM = "arm"  # 停止子进程，窗口内再按一次即退出
    SHUTDOWN = "shutdown"  # 结束运行，子进程由调用方收尾
    FORCE = "force"  # 停止子进程并强制退出


class SignalManager:
    """信号管理器。

    Example:
        ```python
        executor = CommandExecutor()
        signals = SignalManager(executor)

        await signals.start()
        try:
            controller = await executor.realtime_execution(...)
            await asyncio.wait(
                {asyncio.ensure_future(controller.wait()),
                 asyncio.ensure_future(signals.wait_for_shutdown())},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            await signals.stop()
        ```
    """

    def __init__(
        self,
        executor: CommandExecutor,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            executor: 命令执行器
            sigint_mode: SIGINT 处理模式（默认从配置读取）
            double_tap_window: 双击退出窗口时间，秒（默认从配置读取）
        """
        config = get_config()
        self.executor = executor
        self.sigint_mode = sigint_mode if sigint_mode is not None else config.sigint_mode
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )

        self._shutdown = asyncio.Event()
        self._force_exit = False
        self._armed = False
        self._last_interrupt: Optional[float] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._installed: Dict[int, object] = {}

    @property
    def is_shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（窗口内连按两次 SIGINT）。"""
        return self._force_exit

    @property
    def installed_signals(self) -> list[int]:
        return list(self._installed)

    def _handlers(self) -> Dict[int, Callable[[], None]]:
        if IS_WINDOWS:
            return {signal.SIGINT: self.interrupt}
        return {
            signal.SIGINT: self.interrupt,
            signal.SIGTERM: self.terminate,
            signal.SIGHUP: self.terminate,
        }

    async def start(self) -> None:
        """安装信号处理器。必须在事件循环中调用。"""
        if self._loop is not None:
            logger.warning("SignalManager already running")
            return

        loop = asyncio.get_running_loop()
        self._loop = loop

        for signum, handler in self._handlers().items():
            if IS_WINDOWS:
                # Windows 事件循环不支持 add_signal_handler，转回循环线程执行
                self._installed[signum] = signal.signal(
                    signum, lambda sig, frame, h=handler: loop.call_soon_threadsafe(h)
                )
            else:
                loop.add_signal_handler(signum, handler)
                self._installed[signum] = None

        logger.debug(
            f"Signal handlers installed for {sorted(self._installed)} "
            f"(mode={self.sigint_mode.value}, double_tap_window={self.double_tap_window}s)"
        )

    async def stop(self) -> None:
        """卸载信号处理器，恢复原来的行为。"""
        loop, self._loop = self._loop, None
        if loop is None:
            return

        for signum, previous in self._installed.items():
            if IS_WINDOWS:
                signal.signal(signum, previous)
                continue
            try:
                loop.remove_signal_handler(signum)
            except (ValueError, RuntimeError) as e:
                logger.debug(f"Error removing handler for signal {signum}: {e}")
        self._installed.clear()

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭请求。"""
        await self._shutdown.wait()

    # =========================================================================
    # 信号处理
    # =========================================================================

    def interrupt(self) -> InterruptAction:
        """处理一次 SIGINT。

        Returns:
            本次采取的动作
        """
        now = time.monotonic()
        action = self._classify_interrupt(now)
        self._last_interrupt = now

        logger.info(f"SIGINT received (mode={self.sigint_mode.value}), action={action.value}")
        self._apply(action)
        return action

    def terminate(self) -> None:
        """处理 SIGTERM / SIGHUP：停止所有子进程并结束运行。"""
        logger.info("Termination signal received, shutting down")
        self._stop_processes()
        self._shutdown.set()

    def _classify_interrupt(self, now: float) -> InterruptAction:
        repeated = (
            self._last_interrupt is not None
            and now - self._last_interrupt < self.double_tap_window
        )
        if repeated and (self._armed or self.is_shutdown_requested):
            return InterruptAction.FORCE

        if self.sigint_mode is SigintMode.EXIT or self.executor.running_count == 0:
            return InterruptAction.SHUTDOWN
        if self.sigint_mode is SigintMode.CANCEL_THEN_EXIT:
            return InterruptAction.ARM
        return InterruptAction.STOP

    def _apply(self, action: InterruptAction) -> None:
        if action is InterruptAction.SHUTDOWN:
            self._shutdown.set()
            return

        self._stop_processes()

        if action is InterruptAction.ARM:
            self._armed = True
            logger.info(f"Press Ctrl+C again within {self.double_tap_window}s to exit")
        elif action is InterruptAction.FORCE:
            self._force_exit = True
            self._shutdown.set()

    def _stop_processes(self) -> None:
        count = self.executor.terminate_all()
        if count:
            logger.info(f"Stopped {count} process(es)")
