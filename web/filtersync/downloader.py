from __future__ import annotations

import http.client
import logging
import os
import tempfile
import time
import urllib.error
import urllib.request
from typing import BinaryIO, Optional
from urllib.parse import urlparse

from filtersync.errors import (
    DownloadError,
    DownloadTooLargeError,
    HTTPStatusError,
    InvalidSourceError,
    NetworkError,
    StorageError,
)
from filtersync.models import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_MAX_DOWNLOAD_BYTES,
    DEFAULT_USER_AGENT,
    FilterDescriptor,
)
from filtersync.rules import write_filter


logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


class _ResponseReader:
    """Reads an HTTP response body; transport failures become NetworkError.

    Keeps read-side errors (TLS resets, socket timeouts) apart from
    OSErrors raised while writing the local file.
    """

    def __init__(self, resp, url: str):
        self._resp = resp
        self._url = url

    def read(self, size: int = -1) -> bytes:
        try:
            return self._resp.read(size)
        except (OSError, http.client.HTTPException) as e:
            raise NetworkError(f"Couldn't download filter from {self._url}: {e}") from e


class Downloader:
    """Fetches filter content from a local path or an http(s) URL.

    Content is validated while it is streamed into a temp file inside
    `filter_dir`; only valid content is renamed to `<id>.txt`, so the rename
    is always same-filesystem.
    """

    def __init__(
        self,
        filter_dir: str,
        *,
        timeout: int = DEFAULT_HTTP_TIMEOUT,
        max_bytes: int = DEFAULT_MAX_DOWNLOAD_BYTES,
        user_agent: str = DEFAULT_USER_AGENT,
        opener: Optional[urllib.request.OpenerDirector] = None,
    ):
        self.filter_dir = filter_dir
        self.timeout = int(timeout)
        self.max_bytes = int(max_bytes) if int(max_bytes) > 0 else DEFAULT_MAX_DOWNLOAD_BYTES
        self.user_agent = user_agent
        self.opener = opener or urllib.request.build_opener()

    def file_path(self, filter_id: int) -> str:
        return os.path.join(self.filter_dir, f"{int(filter_id)}.txt")

    def fetch(self, flt: FilterDescriptor) -> FilterDescriptor:
        """Download `flt` into `<filter_dir>/<flt.id>.txt`.

        `flt` must be a private copy: it is updated in place (path, rule_count,
        last_modified, last_updated, network_error) and returned. On a 304
        response `path` is left empty, meaning "unchanged".
        """
        logger.debug("Filters: Downloading filter from %s", flt.url)
        flt.path = ""
        flt.network_error = False

        if os.path.isabs(flt.url):
            try:
                source: BinaryIO = open(flt.url, "rb")
            except OSError as e:
                raise DownloadError(f"open file: {e}") from e
            with source:
                return self._store(flt, source)

        resp = self._open(flt)
        if resp is None:
            logger.debug("Filters: filter %s isn't modified since %s", flt.url, flt.last_modified)
            flt.last_updated = _now()
            return flt

        with resp:
            try:
                cl = resp.headers.get("Content-Length")
                if cl is not None and int(cl) > self.max_bytes:
                    raise DownloadTooLargeError(f"Download too large (Content-Length={cl}).")
            except ValueError:
                logger.debug("Filters: bad Content-Length from %s: %r", flt.url, cl)

            flt.last_modified = resp.headers.get("Last-Modified") or ""
            return self._store(flt, _ResponseReader(resp, flt.url))

    def _open(self, flt: FilterDescriptor):
        """Issue the conditional GET. Returns None for 304 Not Modified."""
        u = urlparse(flt.url or "")
        if u.scheme not in ("http", "https"):
            raise InvalidSourceError("Only http/https URLs or absolute file paths are supported.")

        headers = {"User-Agent": self.user_agent}
        if flt.last_modified:
            headers["If-Modified-Since"] = flt.last_modified
        req = urllib.request.Request(flt.url, headers=headers, method="GET")

        try:
            resp = self.opener.open(req, timeout=self.timeout)
        except urllib.error.HTTPError as e:
            e.close()
            if e.code == 304:
                return None
            raise HTTPStatusError(flt.url, e.code) from e
        except (urllib.error.URLError, OSError, http.client.HTTPException) as e:
            flt.network_error = True
            raise NetworkError(f"Couldn't download filter from {flt.url}: {e}") from e

        status = int(getattr(resp, "status", 0) or 0)
        if status != 200:
            resp.close()
            raise HTTPStatusError(flt.url, status)
        return resp

    def _store(self, flt: FilterDescriptor, source: BinaryIO) -> FilterDescriptor:
        try:
            os.makedirs(self.filter_dir, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.filter_dir, suffix=".tmp")
        except OSError as e:
            raise StorageError(f"create temp file: {e}") from e

        try:
            # The handle is closed before the rename (required on Windows).
            with os.fdopen(fd, "wb") as out:
                total, rules = write_filter(source, out, max_bytes=self.max_bytes)
            fname = self.file_path(flt.id)
            os.replace(tmp, fname)
        except BaseException as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            if isinstance(e, NetworkError):
                flt.network_error = True
                raise
            if isinstance(e, OSError):
                raise StorageError(f"write filter {flt.url}: {e}") from e
            raise

        logger.debug("Filters: updated filter %s: %d bytes, %d rules", flt.url, total, rules)
        logger.debug("Filters: saved filter %s at %s", flt.url, fname)
        flt.rule_count = int(rules)
        flt.path = fname
        flt.last_updated = _now()
        return flt
