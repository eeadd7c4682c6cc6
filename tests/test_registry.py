"""ProcessRegistry 模块测试。

测试进程注册表的基本功能：
- 进程登记和一次性移除
- 并发移除只有一方成功
"""

from __future__ import annotations

import asyncio
import threading
from unittest import mock

import pytest

from cmd_executor.registry import ProcessHandle, ProcessRegistry, Termination
from cmd_executor.runtime.process_runner import ProcessSpec
from cmd_executor.types import ExecutionOptions


def make_handle(process_id: str, pid: int = 4321) -> ProcessHandle:
    """创建测试句柄（需要在事件循环中调用）。"""
    process = mock.MagicMock(spec=asyncio.subprocess.Process)
    process.pid = pid
    process.returncode = None
    return ProcessHandle(
        process_id=process_id,
        process=process,
        spec=ProcessSpec(argv=["sleep", "10"]),
        options=ExecutionOptions(),
    )


class TestProcessRegistry:
    """ProcessRegistry 基本功能测试。"""

    def test_generate_process_id(self):
        """生成唯一进程 ID。"""
        registry = ProcessRegistry()
        ids = {registry.generate_process_id() for _ in range(1000)}
        assert len(ids) == 1000
        assert all(len(i) == 12 for i in ids)

    @pytest.mark.asyncio
    async def test_register_and_remove(self):
        """登记和移除进程。"""
        registry = ProcessRegistry()
        handle = make_handle("proc-1")

        registry.register(handle)
        assert "proc-1" in registry
        assert len(registry) == 1
        assert registry.get("proc-1") is handle

        assert registry.remove("proc-1") is handle
        assert "proc-1" not in registry
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_remove_twice_returns_none(self):
        """第二次移除返回 None。"""
        registry = ProcessRegistry()
        registry.register(make_handle("proc-1"))

        assert registry.remove("proc-1") is not None
        assert registry.remove("proc-1") is None

    @pytest.mark.asyncio
    async def test_remove_nonexistent(self):
        registry = ProcessRegistry()
        assert registry.remove("nonexistent") is None
        assert registry.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_register_duplicate_raises_error(self):
        """登记重复进程 ID 时抛出错误。"""
        registry = ProcessRegistry()
        registry.register(make_handle("proc-1"))

        with pytest.raises(ValueError, match="already registered"):
            registry.register(make_handle("proc-1"))

    @pytest.mark.asyncio
    async def test_ids_snapshot(self):
        """ids() 返回快照，迭代时可以移除。"""
        registry = ProcessRegistry()
        for i in range(3):
            registry.register(make_handle(f"proc-{i}"))

        for process_id in registry.ids():
            registry.remove(process_id)

        assert len(registry) == 0

    def test_empty_registry_is_falsy(self):
        """空注册表长度为 0。"""
        assert len(ProcessRegistry()) == 0


class TestConcurrentRemoval:
    """并发移除测试。"""

    @pytest.mark.asyncio
    async def test_only_one_thread_wins(self):
        """多个线程同时移除同一 ID，只有一个拿到句柄。"""
        registry = ProcessRegistry()
        registry.register(make_handle("proc-1"))

        barrier = threading.Barrier(8)
        results: list = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            result = registry.remove("proc-1")
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r is not None) == 1
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_concurrent_register_and_remove(self):
        registry = ProcessRegistry()

        handles = {n: [make_handle(f"w{n}-{i}") for i in range(100)] for n in range(4)}
        failures: list[str] = []

        def worker(n: int):
            for handle in handles[n]:
                registry.register(handle)
                if registry.remove(handle.process_id) is not handle:
                    failures.append(handle.process_id)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert failures == []
        assert len(registry) == 0
