"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Utility Functions Module
"""

import re
import time
from typing import Callable, Optional, TypeVar

from meshflash.constants import POLL_INITIAL_DELAY, POLL_MAX_DELAY

T = TypeVar("T")

HEX_BYTE_REGEX = re.compile(r"0[xX][0-9a-fA-F]{1,2}")


def is_hex_byte(token):
    """
    Validates if a given string is a single byte in 0xNN notation.

    Args:
        token (str): The string to validate.

    Returns:
        bool: True if valid, False otherwise.
    """
    return bool(HEX_BYTE_REGEX.fullmatch(token))


def format_size(size_in_bytes):
    """
    Formats a file size in bytes into a human-readable string.

    Args:
        size_in_bytes (int): File size in bytes.

    Returns:
        str: Human-readable file size.
    """
    for unit in ["B", "KB", "MB", "GB"]:
        if size_in_bytes < 1024:
            return f"{size_in_bytes:.2f} {unit}"
        size_in_bytes /= 1024
    return f"{size_in_bytes:.2f} TB"


def time_formatter(seconds):
    """
    Formats a duration in seconds into a human-readable format.

    Args:
        seconds (float): Time in seconds.

    Returns:
        str: Formatted time string (e.g., "1m 20s").
    """
    m, s = divmod(int(seconds), 60)
    h, m = divmod(m, 60)
    return f"{h}h {m}m {s}s" if h else f"{m}m {s}s" if m else f"{s}s"


def poll_with_backoff(
    attempt: Callable[[], Optional[T]],
    timeout: float,
    initial_delay: float = POLL_INITIAL_DELAY,
    max_delay: float = POLL_MAX_DELAY,
) -> Optional[T]:
    """
    Calls attempt() until it returns something other than None, sleeping with an
    exponentially growing delay in between. Gives up and returns None once the
    accumulated waiting time reaches timeout. The attempt always runs at least
    once, and once more after the final wait.
    """
    waited = 0.0
    delay = initial_delay
    while True:
        result = attempt()
        if result is not None:
            return result
        if waited >= timeout:
            return None
        step = min(delay, timeout - waited)
        time.sleep(step)
        waited += step
        delay = min(delay * 2, max_delay)
