"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Target Matching Module

Decides which enumerated serial port is a supported device, by looking for a
target's platformio name, display name or architecture inside the port's
device name.
"""

import logging
from enum import Enum
from typing import List, NamedTuple, Optional, Sequence

from meshflash.constants import BOOTLOADER_NAME_HINTS, BOOTLOADER_MANUFACTURER_HINTS
from meshflash.models import HardwareTarget, SerialPortDescriptor

logger = logging.getLogger("Matching")


class MatchFallback(Enum):
    NONE = "none"
    LAST_PORT = "last-port"

    @classmethod
    def parse(cls, value) -> "MatchFallback":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "none").lower())
        except ValueError:
            logger.warning(f"Unknown match fallback '{value}', using 'none'.")
            return cls.NONE


class TargetMatch(NamedTuple):
    port: SerialPortDescriptor
    target: Optional[HardwareTarget]
    matched_on: Optional[str] = None
    fallback: bool = False


def _candidates(target: HardwareTarget):
    return (
        ("platformio_target", target.platformio_target),
        ("display_name", target.display_name),
        ("architecture", target.architecture_label),
    )


def match_port(
    port: SerialPortDescriptor, targets: Sequence[HardwareTarget]
) -> Optional[TargetMatch]:
    """First target, in list order, whose name appears in the port's device name."""
    name = (port.device_name or "").lower()
    if not name:
        return None
    for target in targets:
        for field_name, candidate in _candidates(target):
            candidate = (candidate or "").strip().lower()
            if candidate and candidate in name:
                return TargetMatch(port, target, field_name)
    return None


def match_targets(
    ports: Sequence[SerialPortDescriptor],
    targets: Sequence[HardwareTarget],
    fallback: MatchFallback = MatchFallback.NONE,
) -> Optional[TargetMatch]:
    """
    Returns the first port that matches any known target.

    With MatchFallback.LAST_PORT and no match, the most recently enumerated
    port is returned with target=None and fallback=True; the caller resolves
    the target from the device handshake instead.
    """
    for port in ports:
        match = match_port(port, targets)
        if match:
            logger.debug(
                f"Port {port.path} ({port.device_name}) matches "
                f"{match.target.display_name} on {match.matched_on}"
            )
            return match

    if fallback == MatchFallback.LAST_PORT and ports:
        port = ports[-1]
        logger.debug(f"No port matched a known target, falling back to {port.path}")
        return TargetMatch(port, None, None, True)
    return None


def find_target_by_hw_model(
    targets: Sequence[HardwareTarget], hw_model: int
) -> Optional[HardwareTarget]:
    for target in targets:
        if target.hw_model == hw_model:
            return target
    return None


def _looks_like_bootloader(port: SerialPortDescriptor) -> bool:
    name = (port.device_name or "").lower()
    manufacturer = (port.manufacturer or "").lower()
    return any(hint in name for hint in BOOTLOADER_NAME_HINTS) or any(
        hint in manufacturer for hint in BOOTLOADER_MANUFACTURER_HINTS
    )


def find_bootloader_port(
    before: Sequence[SerialPortDescriptor],
    after: Sequence[SerialPortDescriptor],
    original_path: str,
) -> Optional[SerialPortDescriptor]:
    """
    Re-identifies the port a device exposes after resetting into its
    bootloader. A device may re-enumerate under a new path and name, or stay on
    the original path.

    Preference: a new port that looks like a bootloader, any new port, the
    original path, then any port that looks like a bootloader.
    """
    known = {p.path for p in before}
    new_ports: List[SerialPortDescriptor] = [p for p in after if p.path not in known]

    for port in new_ports:
        if _looks_like_bootloader(port):
            return port
    if new_ports:
        return new_ports[0]
    for port in after:
        if port.path == original_path:
            return port
    for port in after:
        if _looks_like_bootloader(port):
            return port
    return None
