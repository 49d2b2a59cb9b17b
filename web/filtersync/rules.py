"""Streaming validation and rule counting for filter list content.

Content is consumed in fixed-size chunks and never held in memory as a whole:
each chunk is checked, written to the output (when one is given) and fed to a
line counter that carries partial lines across chunk boundaries.
"""

from __future__ import annotations

import logging
from typing import BinaryIO, Optional, Tuple

from filtersync.errors import DownloadTooLargeError, HTMLContentError, NonPrintableError


logger = logging.getLogger(__name__)


CHUNK_SIZE = 64 * 1024
HTML_SNIFF_BYTES = 4 * 1024

# Printable text incl. UTF-8 multibyte sequences, plus TAB, LF and CR.
_ALLOWED_BYTES = b"\t\n\r" + bytes(range(0x20, 0x7F)) + bytes(range(0x80, 0x100))

_COMMENT_PREFIXES = (b"#", b"!")


def is_printable(data: bytes) -> bool:
    return not data.translate(None, _ALLOWED_BYTES)


def is_html(data: bytes) -> bool:
    s = bytes(data).lower()
    return b"<html" in s or b"<!doctype" in s


class RuleCounter:
    """Counts rule lines in a byte stream fed piecewise.

    Only the first non-blank byte of the unterminated line is kept between
    chunks, so memory stays constant however long a line gets.
    """

    def __init__(self) -> None:
        self.count = 0
        self._first = b""

    def feed(self, chunk: bytes) -> None:
        parts = chunk.split(b"\n")
        # The last part is the start of an unterminated line (possibly empty).
        last = len(parts) - 1
        for i, part in enumerate(parts):
            if not self._first:
                self._first = part.lstrip()[:1]
            if i < last:
                self._end_line()

    def _end_line(self) -> None:
        if self._first and not self._first.startswith(_COMMENT_PREFIXES):
            self.count += 1
        self._first = b""

    def finish(self) -> int:
        self._end_line()
        return self.count


def write_filter(
    source: BinaryIO,
    out: Optional[BinaryIO],
    *,
    max_bytes: int = 0,
    chunk_size: int = CHUNK_SIZE,
) -> Tuple[int, int]:
    """Validate `source` while copying it to `out` in a single pass.

    Returns (bytes, rules). Raises NonPrintableError, HTMLContentError or
    DownloadTooLargeError; whatever was already written to `out` must then be
    discarded by the caller.
    """
    counter = RuleCounter()
    prefix = bytearray()
    sniffed = False
    total = 0

    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            break
        total += len(chunk)
        if max_bytes > 0 and total > max_bytes:
            raise DownloadTooLargeError(f"Download exceeded limit ({max_bytes} bytes).")

        if not is_printable(chunk):
            raise NonPrintableError()

        if not sniffed:
            prefix += chunk[: HTML_SNIFF_BYTES - len(prefix)]
            if len(prefix) >= HTML_SNIFF_BYTES:
                if is_html(prefix):
                    raise HTMLContentError()
                sniffed = True

        if out is not None:
            out.write(chunk)
        counter.feed(chunk)

    # Short payload: the prefix never filled up.
    if not sniffed and is_html(prefix):
        raise HTMLContentError()

    return total, counter.finish()


def count_rules(source: BinaryIO, *, chunk_size: int = CHUNK_SIZE) -> int:
    """Count rule lines without validating; used for already-committed files."""
    counter = RuleCounter()
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            break
        counter.feed(chunk)
    return counter.finish()


def count_rules_in_file(path: str) -> int:
    with open(path, "rb") as f:
        rules = count_rules(f)
    logger.debug("Filters: %s: %d rules", path, rules)
    return rules


def validate_file(path: str) -> int:
    """Re-run the full content checks over an existing cache file.

    Returns the rule count.
    """
    with open(path, "rb") as f:
        _, rules = write_filter(f, None)
    logger.debug("Filters: revalidated %s: %d rules", path, rules)
    return rules
