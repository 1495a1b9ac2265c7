"""
Stock Service — ID 採番

PREFIX-YYYYMMDD-HHMMSS-NNNNNN 形式の ID を作る。
連番と時計はインスタンスごとに注入でき、グローバルな状態は持たない。
"""

import threading
from datetime import datetime
from typing import Callable


class OrderIdGenerator:
    def __init__(
        self,
        start: int = 1,
        limit: int = 999_999,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if not 1 <= start <= limit:
            raise ValueError(f"start must be between 1 and {limit}, got: {start}")
        self._start = start
        self._limit = limit
        self._clock = clock
        self._next = start
        self._lock = threading.Lock()

    def next(self, prefix: str) -> str:
        with self._lock:
            sequence = self._next
            self._next = 1 if sequence >= self._limit else sequence + 1
        now = self._clock()
        return f"{prefix}-{now:%Y%m%d}-{now:%H%M%S}-{sequence:06d}"

    def reset(self) -> None:
        with self._lock:
            self._next = self._start
