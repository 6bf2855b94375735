from __future__ import annotations

import pytest

from meshflash.utils import format_size, is_hex_byte, poll_with_backoff, time_formatter


def test_poll_returns_first_result(no_sleep) -> None:
    results = iter([None, None, "found"])
    assert poll_with_backoff(lambda: next(results), timeout=30) == "found"
    assert no_sleep == [0.5, 1.0]


def test_poll_backoff_is_capped(no_sleep) -> None:
    assert poll_with_backoff(lambda: None, timeout=10, initial_delay=1, max_delay=2) is None
    assert no_sleep == [1, 2, 2, 2, 2, 1]
    assert sum(no_sleep) == 10


def test_poll_tries_once_without_timeout(no_sleep) -> None:
    calls = []
    assert poll_with_backoff(lambda: calls.append(1), timeout=0) is None
    assert calls == [1]
    assert no_sleep == []


@pytest.mark.parametrize(
    "token, expected",
    [("0x0", True), ("0xFF", True), ("0Xab", True), ("0x100", False), ("FF", False), ("0xG1", False)],
)
def test_is_hex_byte(token, expected) -> None:
    assert is_hex_byte(token) is expected


def test_formatters() -> None:
    assert format_size(512) == "512.00 B"
    assert format_size(2048) == "2.00 KB"
    assert time_formatter(5) == "5s"
    assert time_formatter(80) == "1m 20s"
    assert time_formatter(3725) == "1h 2m 5s"
