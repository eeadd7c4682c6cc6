"""CMDX 环境变量配置管理。

环境变量:
    CMDX_SHELL: 默认是否通过 shell 执行
        - true/1/yes = 使用 shell (默认)
        - false/0/no = 直接执行

    CMDX_ENCODING: 默认输出编码
        - 默认 utf-8，未知编码回退到默认值

    CMDX_MAX_BUFFER: 缓冲模式下单个输出流的最大字节数
        - 默认 104857600 (100 MiB)

    CMDX_TIMEOUT: 默认超时时间（毫秒）
        - 默认 0 = 不限制

    CMDX_TERM_TIMEOUT: 发送 SIGTERM 后等待退出的时间（秒）
        - 默认 2.0，限制在 0.1-60 秒

    CMDX_KILL_TIMEOUT: 发送 SIGKILL 后等待退出的时间（秒）
        - 默认 1.0，限制在 0.1-60 秒

    CMDX_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    CMDX_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - cancel = 终止运行中的进程（无运行进程则退出）(默认)
        - exit = 直接退出
        - cancel_then_exit = 先终止进程，第二次才退出

    CMDX_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
"""

from __future__ import annotations

import codecs
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from .types import DEFAULT_ENCODING, DEFAULT_MAX_BUFFER

__all__ = ["Config", "SigintMode", "load_config", "get_config", "reload_config"]


class SigintMode(Enum):
    """SIGINT 处理模式。

    - CANCEL: 终止运行中的进程，不退出（没有运行进程则退出）
    - EXIT: 直接退出
    - CANCEL_THEN_EXIT: 先终止进程，第二次 SIGINT 才退出
    """

    CANCEL = "cancel"
    EXIT = "exit"
    CANCEL_THEN_EXIT = "cancel_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式，无效值返回 CANCEL。"""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float, low: float, high: float) -> float:
    """解析浮点数环境变量并限制范围。"""
    if not value:
        return default
    try:
        return max(low, min(float(value), high))
    except ValueError:
        return default


def _parse_encoding(value: str | None) -> str:
    """解析编码环境变量，未知编码回退到默认值。"""
    if not value or not value.strip():
        return DEFAULT_ENCODING
    try:
        codecs.lookup(value.strip())
    except LookupError:
        return DEFAULT_ENCODING
    return value.strip()


def _parse_max_buffer(value: str | None) -> int:
    """解析最大缓冲字节数。"""
    if not value:
        return DEFAULT_MAX_BUFFER
    try:
        size = int(value)
    except ValueError:
        return DEFAULT_MAX_BUFFER
    return size if size > 0 else DEFAULT_MAX_BUFFER


def _parse_timeout(value: str | None) -> float:
    """解析默认超时（毫秒），负数和无效值返回 0。"""
    if not value:
        return 0
    try:
        timeout = float(value)
    except ValueError:
        return 0
    return timeout if timeout > 0 else 0


@dataclass
class Config:
    """CMDX 配置。

    Attributes:
        shell: 默认是否通过 shell 执行
        encoding: 默认输出编码
        max_buffer: 默认最大缓冲字节数
        timeout: 默认超时（毫秒）
        term_timeout: SIGTERM 后的等待时间（秒）
        kill_timeout: SIGKILL 后的等待时间（秒）
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    shell: bool = True
    encoding: str = DEFAULT_ENCODING
    max_buffer: int = DEFAULT_MAX_BUFFER
    timeout: float = 0
    term_timeout: float = 2.0
    kill_timeout: float = 1.0
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        return (
            f"Config(shell={self.shell}, "
            f"encoding={self.encoding}, "
            f"max_buffer={self.max_buffer}, "
            f"timeout={self.timeout:g}ms, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _generate_log_file_path() -> str:
    """生成临时目录下带时间戳的日志文件路径。"""
    log_dir = Path(tempfile.gettempdir()) / "cmd-executor"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"cmdx_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("CMDX_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None
    sigint_mode = os.environ.get("CMDX_SIGINT_MODE")

    return Config(
        shell=_parse_bool(os.environ.get("CMDX_SHELL"), default=True),
        encoding=_parse_encoding(os.environ.get("CMDX_ENCODING")),
        max_buffer=_parse_max_buffer(os.environ.get("CMDX_MAX_BUFFER")),
        timeout=_parse_timeout(os.environ.get("CMDX_TIMEOUT")),
        term_timeout=_parse_float(os.environ.get("CMDX_TERM_TIMEOUT"), 2.0, 0.1, 60.0),
        kill_timeout=_parse_float(os.environ.get("CMDX_KILL_TIMEOUT"), 1.0, 0.1, 60.0),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=SigintMode.from_string(sigint_mode) if sigint_mode else SigintMode.CANCEL,
        sigint_double_tap_window=_parse_float(
            os.environ.get("CMDX_SIGINT_DOUBLE_TAP_WINDOW"), 1.0, 0.1, 10.0
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
