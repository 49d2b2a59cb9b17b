from __future__ import annotations

import threading
import time
from typing import Optional


class IdAllocator:
    """Hands out unique, increasing filter ids.

    Seeded from the wall clock so ids (and therefore cache file names) stay
    fresh across restarts without persisting a counter.
    """

    def __init__(self, start: Optional[int] = None):
        self._lock = threading.Lock()
        self._value = int(time.time()) if start is None else int(start)

    def next_id(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def ensure_above(self, value: int) -> None:
        # Loaded ids may be ahead of the clock (clock skew, many URL changes).
        with self._lock:
            if int(value) > self._value:
                self._value = int(value)
