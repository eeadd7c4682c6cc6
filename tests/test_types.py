"""执行选项和错误类型测试。"""

from __future__ import annotations

from pathlib import Path

import pytest

from cmd_executor.errors import (
    ExecutionTimeout,
    ExecutorError,
    OutputLimitExceeded,
    ProcessFailed,
    SpawnFailed,
)
from cmd_executor.types import DEFAULT_MAX_BUFFER, STDOUT, ExecutionOptions, StreamTag


class TestExecutionOptions:
    """ExecutionOptions 测试。"""

    def test_defaults(self):
        options = ExecutionOptions()
        assert options.shell is True
        assert options.encoding == "utf-8"
        assert options.max_buffer == DEFAULT_MAX_BUFFER
        assert options.timeout == 0
        assert options.cwd is None
        assert options.env is None

    def test_frozen(self):
        options = ExecutionOptions()
        with pytest.raises(AttributeError):
            options.timeout = 5  # type: ignore

    def test_cwd_converted_to_path(self):
        assert ExecutionOptions(cwd="/tmp").cwd == Path("/tmp")

    def test_timeout_seconds(self):
        assert ExecutionOptions(timeout=1500).timeout_seconds == 1.5

    @pytest.mark.parametrize(
        "kwargs",
        [{"timeout": -1}, {"max_buffer": 0}, {"encoding": "no-such-codec"}],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            ExecutionOptions(**kwargs)

    def test_merged_dict(self):
        """字典覆盖同名字段，其余保持默认。"""
        base = ExecutionOptions(encoding="latin-1", timeout=1000)
        merged = base.merged({"timeout": 50})

        assert merged.timeout == 50
        assert merged.encoding == "latin-1"
        assert base.timeout == 1000

    def test_merged_instance_replaces(self):
        explicit = ExecutionOptions(shell=False)
        assert ExecutionOptions(timeout=1000).merged(explicit) is explicit

    def test_merged_none(self):
        base = ExecutionOptions()
        assert base.merged(None) is base

    def test_merged_unknown_key(self):
        with pytest.raises(TypeError, match="bogus"):
            ExecutionOptions().merged({"bogus": True})

    def test_merged_invalid_value(self):
        with pytest.raises(ValueError):
            ExecutionOptions().merged({"timeout": -5})


class TestStreamTag:
    def test_values(self):
        assert STDOUT == "stdout"
        assert StreamTag("stderr") is StreamTag.STDERR


class TestErrors:
    """错误类型测试。"""

    def test_hierarchy(self):
        assert issubclass(ExecutionTimeout, ExecutorError)
        assert issubclass(ExecutionTimeout, TimeoutError)
        assert issubclass(ProcessFailed, ExecutorError)

    def test_process_failed_message(self):
        error = ProcessFailed(2, "no such file\n", "ls missing")
        assert error.exit_code == 2
        assert str(error) == "Process exited with code 2: no such file"

    def test_process_failed_without_stderr(self):
        assert str(ProcessFailed(1)) == "Process exited with code 1"

    def test_timeout_message(self):
        assert str(ExecutionTimeout(100)) == "Command timed out after 100ms"

    def test_spawn_failed(self):
        cause = FileNotFoundError(2, "No such file or directory")
        error = SpawnFailed("nope", cause)
        assert error.cause is cause
        assert "nope" in str(error)

    def test_output_limit(self):
        error = OutputLimitExceeded("stdout", 1024)
        assert str(error) == "stdout exceeded max_buffer of 1024 bytes"
