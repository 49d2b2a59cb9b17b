from __future__ import annotations

import os
import re


class FilterError(Exception):
    """Base class for every error raised by the filter storage."""


class DuplicateError(FilterError):
    pass


class NotFoundError(FilterError):
    pass


class StorageError(FilterError):
    """Filesystem failure while staging or finalizing a cache file."""


class DownloadError(FilterError):
    """Fetching or validating filter content failed."""


class InvalidSourceError(DownloadError):
    pass


class NetworkError(DownloadError):
    """Transport-level failure (DNS, connect, timeout).

    The update pass retries these after a short delay instead of waiting for
    the normal interval.
    """


class HTTPStatusError(DownloadError):
    def __init__(self, url: str, status: int):
        super().__init__(f"Couldn't download filter from {url}: status code: {status}")
        self.url = url
        self.status = int(status)


class ValidationError(DownloadError):
    pass


class NonPrintableError(ValidationError):
    def __init__(self, message: str = "data contains non-printable characters"):
        super().__init__(message)


class HTMLContentError(ValidationError):
    def __init__(self, message: str = "data is HTML, not plain text"):
        super().__init__(message)


class DownloadTooLargeError(ValidationError):
    pass


def expose_internal_errors() -> bool:
    return (os.environ.get("EXPOSE_INTERNAL_ERRORS") or "").strip().lower() in (
        "1",
        "true",
        "yes",
        "on",
    )


def clean_text(text: str, *, max_len: int = 200) -> str:
    s = (text or "").replace("\r", " ").replace("\n", " ").strip()
    # Remove other control chars.
    s = "".join(ch if (ch >= " " and ch != "\x7f") else " " for ch in s)
    s = re.sub(r"\s+", " ", s).strip()
    if max_len and len(s) > max_len:
        s = s[: max_len - 3].rstrip() + "..."
    return s


def public_error_message(
    e: Exception,
    *,
    default: str = "Operation failed. Check server logs for details.",
    max_len: int = 200,
) -> str:
    """Return a user-safe error message.

    - Filter errors and ValueError carry messages meant for the caller.
    - Anything else is hidden behind `default`.
    - If EXPOSE_INTERNAL_ERRORS is set, returns the exception type + message.
    """
    if expose_internal_errors():
        detail = clean_text(f"{type(e).__name__}: {e}", max_len=max_len)
        return detail or default

    if isinstance(e, (FilterError, ValueError)):
        msg = clean_text(str(e), max_len=max_len)
        return msg or default

    return default
