from __future__ import annotations

import threading
from typing import Iterable, List, Optional

from filtersync.errors import DuplicateError
from filtersync.models import FilterDescriptor


class FilterRegistry:
    """Ordered list of filter descriptors guarded by a single lock.

    Every method expects the caller to hold `lock`; the storage takes it
    once per logical step and never across network I/O.
    Descriptors handed to code outside the lock are always copies.
    """

    def __init__(self, filters: Optional[Iterable[FilterDescriptor]] = None):
        self.lock = threading.Lock()
        self._filters: List[FilterDescriptor] = [f.copy() for f in (filters or [])]

    def __len__(self) -> int:
        return len(self._filters)

    def __iter__(self):
        return iter(self._filters)

    def find(self, url: str) -> Optional[FilterDescriptor]:
        for f in self._filters:
            if f.url == url:
                return f
        return None

    def check_unique(self, name: str, url: str, *, ignore: Optional[FilterDescriptor] = None) -> None:
        for f in self._filters:
            if f is ignore:
                continue
            if f.name == name or f.url == url:
                raise DuplicateError("filter with this Name or URL already exists")

    def append(self, flt: FilterDescriptor) -> None:
        self._filters.append(flt)

    def remove(self, url: str) -> Optional[FilterDescriptor]:
        found = self.find(url)
        if found is not None:
            self._filters = [f for f in self._filters if f is not found]
        return found

    def next_due(self, now: int, interval_seconds: int, *, skip: Iterable[str] = ()) -> Optional[FilterDescriptor]:
        """Return the first enabled filter due for an update and reschedule it.

        URLs in `skip` were already attempted in the current pass.
        """
        for f in self._filters:
            if f.enabled and f.next_update <= now and f.url not in skip:
                f.next_update = now + interval_seconds
                return f
        return None

    def clear_schedule(self) -> None:
        for f in self._filters:
            f.next_update = 0
