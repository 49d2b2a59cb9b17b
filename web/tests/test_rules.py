import io
import time

import pytest

from filtersync.errors import DownloadTooLargeError, HTMLContentError, NonPrintableError
from filtersync.rules import (
    HTML_SNIFF_BYTES,
    RuleCounter,
    count_rules,
    is_html,
    is_printable,
    write_filter,
)


SAMPLE = b"# c\n||ads.example^\n\n! c2\n||track.net^\n"


def test_write_filter_counts_rules_and_copies_bytes():
    out = io.BytesIO()
    total, rules = write_filter(io.BytesIO(SAMPLE), out)
    assert rules == 2
    assert total == len(SAMPLE)
    assert out.getvalue() == SAMPLE


def test_lines_split_across_chunks_are_counted_once():
    data = b"||first.example^\n  ||second.example^  \n#comment\n||third.example^\n"
    out = io.BytesIO()
    _, rules = write_filter(io.BytesIO(data), out, chunk_size=3)
    assert rules == 3
    assert out.getvalue() == data


def test_last_line_without_newline_is_counted():
    _, rules = write_filter(io.BytesIO(b"! header\r\n||a.example^\r\n||b.example^"), None)
    assert rules == 2


def test_rule_counter_handles_crlf_and_indented_comments():
    c = RuleCounter()
    c.feed(b"  # indented comment\r\n\t! another\r\n")
    c.feed(b"||x.example^\r")
    c.feed(b"\n\r\n")
    assert c.finish() == 1


def test_nul_byte_is_rejected_anywhere():
    data = b"||a.example^\n" * 1000 + b"\x00" + b"||b.example^\n"
    with pytest.raises(NonPrintableError):
        write_filter(io.BytesIO(data), io.BytesIO(), chunk_size=512)


def test_printable_allows_utf8_and_rejects_del():
    assert is_printable("||пример.рф^\n".encode("utf-8"))
    assert is_printable(b"a\tb\r\n")
    assert not is_printable(b"abc\x7f")
    assert not is_printable(b"\x1b[0m")


@pytest.mark.parametrize("marker", [b"<!DOCTYPE html>", b"<!doctype HTML>", b"<HTML lang=en>"])
def test_html_in_prefix_is_rejected(marker):
    data = b"||a.example^\n" * 10 + marker + b"\n"
    with pytest.raises(HTMLContentError):
        write_filter(io.BytesIO(data), io.BytesIO())


def test_html_sniff_only_looks_at_the_prefix():
    padding = b"! " + b"x" * (HTML_SNIFF_BYTES + 100) + b"\n"
    data = padding + b"<html>\n||a.example^\n"
    _, rules = write_filter(io.BytesIO(data), io.BytesIO(), chunk_size=1024)
    assert rules == 2


def test_html_split_across_chunks_in_prefix_is_rejected():
    with pytest.raises(HTMLContentError):
        write_filter(io.BytesIO(b"<!DOC" + b"TYPE html>"), None, chunk_size=5)


def test_max_bytes_is_enforced_while_streaming():
    with pytest.raises(DownloadTooLargeError):
        write_filter(io.BytesIO(b"x" * 100), io.BytesIO(), max_bytes=50, chunk_size=10)


def test_count_rules_does_not_validate():
    assert count_rules(io.BytesIO(b"<html>\n||a^\n#c\n")) == 2


def test_is_html_is_case_insensitive():
    assert is_html(b"  <HtMl>")
    assert not is_html(b"||html.example^")


def test_long_unterminated_line_is_counted_in_linear_time():
    # 16 MiB without a newline, fed in 64 KiB chunks.
    size = 16 * 1024 * 1024
    started = time.monotonic()
    total, rules = write_filter(io.BytesIO(b"a" * size), None)
    assert (total, rules) == (size, 1)
    assert time.monotonic() - started < 2.0


def test_long_comment_spanning_chunks_is_not_a_rule():
    c = RuleCounter()
    c.feed(b"  ")
    c.feed(b"! " + b"x" * 100)
    c.feed(b"y" * 100 + b"\n||a.example^")
    assert c.finish() == 1
