"""Filter storage: registry, downloads and the background update cycle.

An update pass works in two phases:

1. Pick the next due filter under the registry lock, release the lock,
   download it into a new file named after a freshly allocated id and add
   the copy to the pass's batch. Repeat until nothing is due.
2. Notify observers (EVENT_BEFORE_UPDATE), take the lock once and, for each
   downloaded copy, rename the new file over the live `<id>.txt` of the filter
   with the same URL, then update its metadata. Notify EVENT_AFTER_UPDATE.

Filters are looked up by URL in phase 2 because add/modify/delete may run
between the phases.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, List, Optional, Tuple

from filtersync.config_store import get_config_store
from filtersync.downloader import Downloader
from filtersync.errors import (
    DownloadError,
    DuplicateError,
    FilterError,
    HTTPStatusError,
    NetworkError,
    NotFoundError,
)
from filtersync.ids import IdAllocator
from filtersync.models import (
    EVENT_AFTER_UPDATE,
    EVENT_BEFORE_UPDATE,
    STATUS_CHANGED_ENABLED,
    STATUS_CHANGED_URL,
    FilterConf,
    FilterDescriptor,
)
from filtersync.registry import FilterRegistry
from filtersync.rules import count_rules_in_file, validate_file
from filtersync.scheduler import UpdateScheduler


logger = logging.getLogger(__name__)


NETWORK_RETRY_SECONDS = 10

EventHandler = Callable[[int], None]


def _now() -> int:
    return int(time.time())


def _remove_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error("Filters: os.remove: %s: %s", path, e)


class FilterStorage:
    def __init__(
        self,
        conf: FilterConf,
        *,
        downloader: Optional[Downloader] = None,
        ids: Optional[IdAllocator] = None,
        scheduler: Optional[UpdateScheduler] = None,
    ):
        self.conf = conf.copy()
        self.registry = FilterRegistry(self.conf.filters)
        # The registry owns the descriptors from here on.
        self.conf.filters = []

        self.ids = ids or IdAllocator()
        for f in self.registry:
            self.ids.ensure_above(f.id)

        self.downloader = downloader or Downloader(
            conf.filter_dir,
            timeout=conf.http_timeout,
            max_bytes=conf.max_download_bytes,
            user_agent=conf.user_agent,
        )
        self.scheduler = scheduler or UpdateScheduler(self.update_all, lambda: self.conf.update_interval_hours)

        self._observers: List[EventHandler] = []
        self._observers_lock = threading.Lock()

    @property
    def filter_dir(self) -> str:
        return self.conf.filter_dir

    def file_path(self, flt: FilterDescriptor) -> str:
        return self.downloader.file_path(flt.id)

    # Lifecycle

    def load_cached(self) -> None:
        """Pick up cache files left by a previous run; nothing is downloaded.

        A filter without a cache file keeps next_update=0, so the first pass
        downloads it.
        """
        os.makedirs(self.filter_dir, exist_ok=True)
        interval = self.conf.update_interval_seconds
        with self.registry.lock:
            for f in self.registry:
                fname = self.file_path(f)
                try:
                    st = os.stat(fname)
                except OSError as e:
                    logger.debug("Filters: os.stat: %s %s", fname, e)
                    f.last_modified = ""
                    f.rule_count = 0
                    continue
                f.last_updated = int(st.st_mtime)

                if not f.enabled:
                    continue

                try:
                    f.rule_count = count_rules_in_file(fname)
                except OSError as e:
                    logger.error("Filters: open: %s %s", fname, e)
                    f.rule_count = 0
                    continue

                f.next_update = f.last_updated + interval

    def start(self) -> None:
        self.load_cached()
        self.scheduler.start()

    def close(self) -> None:
        self.scheduler.stop()

    def write_config(self) -> FilterConf:
        """Return an independent copy of the configuration for persisting."""
        with self.registry.lock:
            c = self.conf.copy()
            c.filters = [f.copy(path="", next_update=0, network_error=False) for f in self.registry]
        return c

    def set_config(self, conf: FilterConf) -> None:
        with self.registry.lock:
            self.conf.update_interval_hours = int(conf.update_interval_hours)

    # Observers

    def add_observer(self, handler: EventHandler) -> None:
        """Register `handler(event)`.

        Handlers run synchronously, in registration order, on the thread that
        runs the update pass; a slow handler delays the next pass.
        """
        with self._observers_lock:
            self._observers.append(handler)

    def _notify(self, event: int) -> None:
        with self._observers_lock:
            handlers = list(self._observers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Filters: observer %r failed on event %d", handler, event)

    # Public operations

    def list_filters(self, flags: int = 0) -> List[FilterDescriptor]:
        with self.registry.lock:
            return [f.copy(path=self.file_path(f)) for f in self.registry]

    def add(self, flt: FilterDescriptor) -> FilterDescriptor:
        """Download a new filter and append it. The filter is always enabled."""
        nf = flt.copy(
            enabled=True,
            last_modified="",
            rule_count=0,
            next_update=0,
            network_error=False,
            path="",
        )
        with self.registry.lock:
            self.registry.check_unique(nf.name, nf.url)

        nf.id = self.ids.next_id()
        try:
            self.downloader.fetch(nf)
            if not nf.path:
                raise HTTPStatusError(nf.url, 304)
        except FilterError as e:
            logger.debug("Filters: %s", e)
            raise

        with self.registry.lock:
            try:
                # Another add may have claimed the name or URL meanwhile.
                self.registry.check_unique(nf.name, nf.url)
            except DuplicateError:
                _remove_file(nf.path)
                raise
            nf.next_update = nf.last_updated + self.conf.update_interval_seconds
            self.registry.append(nf.copy(path="", network_error=False))

        logger.debug("Filters: added filter %s", nf.url)
        return nf.copy(path=self.file_path(nf))

    def delete(self, url: str) -> Optional[FilterDescriptor]:
        """Remove a filter from the registry.

        The cache file is left in place; the returned copy carries its path so
        the caller can delete it.
        """
        with self.registry.lock:
            found = self.registry.remove(url)
            if found is None:
                return None
            logger.debug("Filters: removed filter %s", url)
            return found.copy(path=self.file_path(found))

    def modify(self, url: str, enabled: bool, name: str, new_url: str) -> Tuple[int, FilterDescriptor]:
        """Change a filter's name, enabled state and URL.

        Returns (STATUS_CHANGED_* flags, previous descriptor). The change is
        all-or-nothing: when the required download fails, the registry still
        holds the previous descriptor and the error is raised.
        """
        with self.registry.lock:
            f = self.registry.find(url)
            if f is None:
                raise NotFoundError(f"filter {url} not found")
            backup = f.copy(path=self.file_path(f))
            self.registry.check_unique(name, new_url, ignore=f)

            nf = f.copy(name=name)
            st = 0
            if nf.enabled != enabled:
                nf.enabled = enabled
                st |= STATUS_CHANGED_ENABLED
            if nf.url != new_url:
                nf.url = new_url
                st |= STATUS_CHANGED_URL

            reparse = not (st & STATUS_CHANGED_URL) and (st & STATUS_CHANGED_ENABLED) and enabled
            need_download = bool(st & STATUS_CHANGED_URL)
            if not reparse and not need_download:
                f.name = nf.name
                f.enabled = nf.enabled
                return st, backup

        if reparse:
            fname = self.file_path(nf)
            try:
                nf.rule_count = validate_file(fname)
            except (OSError, DownloadError) as e:
                logger.debug("Filters: can't reuse %s: %s", fname, e)
                need_download = True

        if need_download:
            if st & STATUS_CHANGED_URL:
                nf.id = self.ids.next_id()
            nf.last_modified = ""
            nf.rule_count = 0
            self.downloader.fetch(nf)
            if not nf.path:
                raise HTTPStatusError(nf.url, 304)
            nf.next_update = nf.last_updated + self.conf.update_interval_seconds

        with self.registry.lock:
            live = self.registry.find(url)
            try:
                if live is None:
                    raise NotFoundError(f"filter {url} not found")
                self.registry.check_unique(nf.name, nf.url, ignore=live)
            except FilterError:
                # With an unchanged URL the download wrote the live file, which
                # is only orphaned when the filter itself is gone.
                if need_download and (st & STATUS_CHANGED_URL or live is None):
                    _remove_file(nf.path)
                raise
            live.name = nf.name
            live.enabled = nf.enabled
            live.url = nf.url
            live.id = nf.id
            live.rule_count = nf.rule_count
            if need_download:
                live.last_modified = nf.last_modified
                live.last_updated = nf.last_updated
                live.next_update = nf.next_update
                live.network_error = False

        return st, backup

    def refresh(self, flags: int = 0) -> bool:
        """Make every enabled filter due and request an update pass.

        May block while two pass requests are already queued.
        """
        with self.registry.lock:
            self.registry.clear_schedule()
        return self.scheduler.trigger()

    # Update cycle

    def update_all(self) -> None:
        """Run one update pass. Only the scheduler's consumer thread calls this."""
        logger.debug("Filters: updating...")
        batch: List[FilterDescriptor] = []
        attempted = set()

        while True:
            with self.registry.lock:
                f = self.registry.next_due(_now(), self.conf.update_interval_seconds, skip=attempted)
                if f is None:
                    break
                attempted.add(f.url)
                uf = f.copy()

            # Download into a new file so the live one stays intact until apply.
            uf.id = self.ids.next_id()
            try:
                self.downloader.fetch(uf)
            except NetworkError as e:
                logger.warning("Filters: %s", e)
                with self.registry.lock:
                    f.next_update = _now() + NETWORK_RETRY_SECONDS
                    f.network_error = True
                continue
            except FilterError as e:
                logger.warning("Filters: %s", e)
                continue

            batch.append(uf)

        self.apply_update(batch)

    def apply_update(self, batch: List[FilterDescriptor]) -> None:
        if not batch:
            logger.debug("Filters: no filters were updated")
            return

        self._notify(EVENT_BEFORE_UPDATE)

        n_updated = 0
        with self.registry.lock:
            for uf in batch:
                f = self.registry.find(uf.url)
                if f is None:
                    # Deleted (or its URL changed) while the pass was downloading.
                    if uf.path:
                        _remove_file(uf.path)
                    continue

                fpath = self.file_path(f)
                if not uf.path:
                    # Not modified: only touch the file.
                    try:
                        os.utime(fpath, (uf.last_updated, uf.last_updated))
                    except FileNotFoundError:
                        logger.error("Filters: %s is missing, will download again", fpath)
                        f.last_modified = ""
                        f.next_update = 0
                        continue
                    except OSError as e:
                        logger.error("Filters: os.utime: %s", e)
                    f.last_updated = uf.last_updated
                    f.network_error = False
                    continue

                try:
                    os.replace(uf.path, fpath)
                except OSError as e:
                    logger.error("Filters: os.rename: %s", e)
                    _remove_file(uf.path)
                    continue

                f.rule_count = uf.rule_count
                f.last_updated = uf.last_updated
                f.last_modified = uf.last_modified
                f.network_error = False
                n_updated += 1

        logger.debug("Filters: %d filters were updated", n_updated)
        self._notify(EVENT_AFTER_UPDATE)


_storage: Optional[FilterStorage] = None
_storage_lock = threading.Lock()


def _env_int(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return int(default)
    try:
        return int(v)
    except Exception:
        return int(default)


def get_filter_storage() -> FilterStorage:
    global _storage
    with _storage_lock:
        if _storage is None:
            defaults = FilterConf(
                filter_dir=os.environ.get("FILTERS_DIR", "/var/lib/filtersync/filters"),
                update_interval_hours=_env_int("FILTERS_UPDATE_INTERVAL_HOURS", 24),
                http_timeout=_env_int("FILTERS_HTTP_TIMEOUT", 30),
                max_download_bytes=_env_int("FILTERS_MAX_DOWNLOAD_BYTES", 64 * 1024 * 1024),
            )
            _storage = FilterStorage(get_config_store().load(defaults))
    return _storage
