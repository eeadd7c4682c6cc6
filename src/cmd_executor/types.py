"""执行请求的类型定义。

定义执行选项、输出流标签、回调签名等公共类型。
"""

from __future__ import annotations

import codecs
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from .config import Config

__all__ = [
    "StreamTag",
    "STDOUT",
    "STDERR",
    "ChunkHandler",
    "ExecutionOptions",
    "DEFAULT_ENCODING",
    "DEFAULT_MAX_BUFFER",
]

DEFAULT_ENCODING = "utf-8"
DEFAULT_MAX_BUFFER = 1024 * 1024 * 100


class StreamTag(str, Enum):
    """输出流标签。"""

    STDOUT = "stdout"
    STDERR = "stderr"


STDOUT = StreamTag.STDOUT
STDERR = StreamTag.STDERR

# 类型别名：实时输出回调，可以是普通函数或协程函数
ChunkHandler = Callable[[str, StreamTag], Union[Awaitable[Any], None]]


@dataclass(frozen=True)
class ExecutionOptions:
    """执行选项。

    提交后不可修改。

    Attributes:
        shell: 是否通过 shell 执行
        encoding: 输出解码使用的编码
        max_buffer: 缓冲模式下单个输出流允许的最大字节数
        timeout: 超时时间（毫秒），0 表示不限制
        cwd: 工作目录（None = 继承当前目录）
        env: 环境变量（None = 继承父进程）
    """

    shell: bool = True
    encoding: str = DEFAULT_ENCODING
    max_buffer: int = DEFAULT_MAX_BUFFER
    timeout: float = 0
    cwd: Path | None = None
    env: Mapping[str, str] | None = None

    def __post_init__(self) -> None:
        """校验选项，确保 cwd 是 Path 对象。"""
        if self.timeout < 0:
            raise ValueError(f"timeout must be >= 0, got {self.timeout}")
        if self.max_buffer <= 0:
            raise ValueError(f"max_buffer must be > 0, got {self.max_buffer}")
        try:
            codecs.lookup(self.encoding)
        except LookupError as e:
            raise ValueError(f"Unknown encoding: {self.encoding}") from e
        if isinstance(self.cwd, str):
            object.__setattr__(self, "cwd", Path(self.cwd))

    @property
    def timeout_seconds(self) -> float:
        """超时时间（秒）。"""
        return self.timeout / 1000

    @classmethod
    def from_config(cls, config: "Config") -> "ExecutionOptions":
        """从全局配置构造默认选项。"""
        return cls(
            shell=config.shell,
            encoding=config.encoding,
            max_buffer=config.max_buffer,
            timeout=config.timeout,
        )

    def merged(self, overrides: "ExecutionOptions | Mapping[str, Any] | None") -> "ExecutionOptions":
        """在当前选项之上合并覆盖项。

        Args:
            overrides: ExecutionOptions 实例（直接使用）、字典（覆盖同名字段）或 None

        Returns:
            新的 ExecutionOptions

        Raises:
            TypeError: 字典中包含未知字段
            ValueError: 合并后的值无效
        """
        if overrides is None:
            return self
        if isinstance(overrides, ExecutionOptions):
            return overrides

        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown execution option(s): {', '.join(sorted(unknown))}")
        return replace(self, **dict(overrides))
