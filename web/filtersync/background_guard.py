from __future__ import annotations

import logging
import os
from typing import Optional

from filtersync.logutil import log_exception_throttled


logger = logging.getLogger(__name__)


_LOCK_FD: Optional[int] = None


def acquire_background_lock() -> bool:
    """Multi-process guard for the filter update loops.

    Gunicorn may run several worker processes; without a guard each would run
    its own timer and download every filter into the same directory.

    Returns True if this process should start the update loops.

    Env overrides:
      - BACKGROUND_FORCE=1: always start (no locking)
      - BACKGROUND_LOCK_PATH: lock file path (default: /var/lib/filtersync/background.lock)
    """
    global _LOCK_FD

    if (os.environ.get("BACKGROUND_FORCE") or "").strip() == "1":
        return True

    if _LOCK_FD is not None:
        return True

    lock_path = (os.environ.get("BACKGROUND_LOCK_PATH") or "").strip() or "/var/lib/filtersync/background.lock"
    lock_dir = os.path.dirname(lock_path)
    if lock_dir:
        try:
            os.makedirs(lock_dir, exist_ok=True)
        except OSError:
            log_exception_throttled(
                logger,
                "background_guard.makedirs",
                interval_seconds=300.0,
                message="Failed to create BACKGROUND_LOCK_PATH directory; allowing filter updates to start",
            )
            return True

    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o644)
    except OSError:
        return True

    try:
        import fcntl  # type: ignore[import-not-found]
    except ImportError:
        # Non-POSIX environment: allow background.
        os.close(fd)
        return True

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # type: ignore[attr-defined]
    except BlockingIOError:
        os.close(fd)
        logger.info("Filters: another process runs the update loops")
        return False
    except OSError:
        os.close(fd)
        return True

    _LOCK_FD = fd
    return True
