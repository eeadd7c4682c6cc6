"""Runtime module for subprocess spawning and termination.

This module provides isolated process execution with group-wide signal
delivery and reliable termination.
"""

from __future__ import annotations

from .process_runner import IS_WINDOWS, ProcessRunner, ProcessSpec

__all__ = [
    "IS_WINDOWS",
    "ProcessRunner",
    "ProcessSpec",
]
