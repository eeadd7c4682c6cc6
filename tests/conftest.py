"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
CHATTY_PATH = FIXTURES_DIR / "chatty.py"

from cmd_executor.executor import CommandExecutor  # noqa: E402
from cmd_executor.runtime.process_runner import ProcessRunner  # noqa: E402
from cmd_executor.types import ExecutionOptions  # noqa: E402


@pytest.fixture
def runner() -> ProcessRunner:
    """短超时的 ProcessRunner。"""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.3)


@pytest.fixture
def executor(runner: ProcessRunner) -> CommandExecutor:
    """使用默认选项（不读取环境变量）的执行器。"""
    return CommandExecutor(runner=runner, defaults=ExecutionOptions())


@pytest.fixture
def chatty() -> list[str]:
    """启动 chatty 测试子进程的 argv 前缀。"""
    return [sys.executable, str(CHATTY_PATH)]
