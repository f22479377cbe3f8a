"""
Timing helpers for generation and benchmarking.
"""

from __future__ import annotations

import time
from typing import Any


class Timer:
    """Context manager for timing operations."""

    def __init__(self) -> None:
        self.start_time: float = 0
        self.elapsed_ms: float = 0

    def __enter__(self) -> Timer:
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, *args: Any) -> None:
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000

    @property
    def elapsed_seconds(self) -> float:
        return self.elapsed_ms / 1000
