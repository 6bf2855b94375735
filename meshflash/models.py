"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Data Model Module
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol

from meshflash.errors import FlashError


class Architecture(Enum):
    ESP32 = "esp32"
    ESP32_S3 = "esp32-s3"
    ESP32_C3 = "esp32-c3"
    ESP32_C6 = "esp32-c6"
    NRF52840 = "nrf52840"
    RP2040 = "rp2040"
    STM32 = "stm32"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "Architecture":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


class OptionType(Enum):
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    HEX_ARRAY = "arrayOfHexValues"


class FlashPhase(Enum):
    IDLE = "idle"
    DETERMINING_STRATEGY = "determining_strategy"
    PREPARING = "preparing"
    IN_PROGRESS = "in_progress"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"


PHASE_ORDER = [
    FlashPhase.IDLE,
    FlashPhase.DETERMINING_STRATEGY,
    FlashPhase.PREPARING,
    FlashPhase.IN_PROGRESS,
    FlashPhase.VERIFYING,
    FlashPhase.COMPLETE,
]
TERMINAL_PHASES = (FlashPhase.COMPLETE, FlashPhase.FAILED)


@dataclass(frozen=True)
class SerialPortDescriptor:
    path: str
    manufacturer: str = ""
    serial_number: str = ""
    vendor_id: str = ""
    product_id: str = ""
    device_name: str = "Unknown"


@dataclass(frozen=True)
class HardwareTarget:
    hw_model: int
    hw_model_slug: str
    platformio_target: str
    architecture: Architecture
    display_name: str
    actively_supported: bool = True
    # Catalog spelling, kept for architectures the enum does not know yet
    architecture_name: str = ""

    @property
    def architecture_label(self) -> str:
        """Architecture string as it may appear in a port name, "" when unknown."""
        name = self.architecture_name or self.architecture.value
        return "" if name == Architecture.UNKNOWN.value else name

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HardwareTarget":
        """Builds a target from a hardware catalog record (camelCase keys)."""
        return cls(
            hw_model=int(data.get("hwModel", 0)),
            hw_model_slug=data.get("hwModelSlug", ""),
            platformio_target=data.get("platformioTarget", ""),
            architecture=Architecture.parse(data.get("architecture")),
            display_name=data.get("displayName", ""),
            actively_supported=bool(data.get("activelySupported", False)),
            architecture_name=(data.get("architecture") or "").strip().lower(),
        )


@dataclass(frozen=True)
class DeviceMetadata:
    firmware_version: str
    hw_model: int
    has_wifi: bool = False
    has_bluetooth: bool = False


class DeviceLink(Protocol):
    """Live runtime connection to a device (handshake, metadata, DFU entry)."""

    @property
    def is_ready(self) -> bool: ...

    def metadata(self) -> DeviceMetadata: ...

    def enter_dfu_mode(self) -> None: ...

    def close(self) -> None: ...


@dataclass
class ConnectedDevice:
    port: SerialPortDescriptor
    target: HardwareTarget
    metadata: DeviceMetadata
    link: DeviceLink

    @property
    def is_ready(self) -> bool:
        return self.link is not None and self.link.is_ready


@dataclass(frozen=True)
class FirmwareRelease:
    id: str
    title: str
    zip_url: str
    release_notes: str = ""

    @property
    def version(self) -> str:
        return self.id[1:] if self.id.lower().startswith("v") else self.id

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FirmwareRelease":
        return cls(
            id=data.get("id", ""),
            title=data.get("title", ""),
            zip_url=data.get("zip_url", ""),
            release_notes=data.get("release_notes") or "",
        )


@dataclass
class FirmwareReleases:
    stable: list[FirmwareRelease] = field(default_factory=list)
    alpha: list[FirmwareRelease] = field(default_factory=list)
    previews: list[FirmwareRelease] = field(default_factory=list)
    pull_requests: list[FirmwareRelease] = field(default_factory=list)


@dataclass(frozen=True)
class FirmwareSelection:
    """Either a remote release or a user supplied local file, never both."""

    release: Optional[FirmwareRelease] = None
    local_path: Optional[Path] = None

    def __post_init__(self):
        if (self.release is None) == (self.local_path is None):
            raise ValueError("Exactly one of release or local_path must be set.")

    @property
    def is_local(self) -> bool:
        return self.local_path is not None

    @property
    def filename(self) -> str:
        if self.local_path is not None:
            return Path(self.local_path).name
        return self.release.zip_url.rsplit("/", 1)[-1]


@dataclass
class CustomFirmwareOption:
    name: str
    label: str
    type: OptionType
    value: str
    enabled: bool = True


@dataclass(frozen=True)
class RemovableDrive:
    device_path: str
    mountpoints: tuple[str, ...] = ()


@dataclass(frozen=True)
class FlashImage:
    name: str
    offset: int
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ProgressEvent:
    phase: FlashPhase
    message: str
    percent: Optional[int] = None
    image_index: int = 0
    image_count: int = 0
    bytes_written: int = 0
    bytes_total: int = 0


@dataclass
class FlashSession:
    """
    Mutable state of a single update attempt. A session is created per call to
    FlashOrchestrator.flash() and is never reused after reaching a terminal phase.
    """

    device: ConnectedDevice
    selection: FirmwareSelection
    clean_install: bool = False
    strategy: Optional[str] = None
    phase: FlashPhase = FlashPhase.IDLE
    percent: int = 0
    image_index: int = 0
    image_count: int = 0
    bytes_written: int = 0
    bytes_total: int = 0
    error: Optional[str] = None
    failed_phase: Optional[FlashPhase] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def advance(self, phase: FlashPhase, message: str) -> ProgressEvent:
        """Moves one step forward in PHASE_ORDER and returns the matching event."""
        if self.is_terminal or phase == FlashPhase.FAILED:
            raise FlashError(f"Illegal transition {self.phase.value} -> {phase.value}")
        if PHASE_ORDER.index(phase) != PHASE_ORDER.index(self.phase) + 1:
            raise FlashError(f"Illegal transition {self.phase.value} -> {phase.value}")
        self.phase = phase
        if phase == FlashPhase.COMPLETE:
            self.percent = 100
        return self.event(message)

    def fail(self, cause: str) -> ProgressEvent:
        if self.is_terminal:
            raise FlashError(f"Session already finished ({self.phase.value})")
        self.failed_phase = self.phase
        self.error = cause
        self.phase = FlashPhase.FAILED
        return self.event(f"Failed during {self.failed_phase.value}: {cause}")

    def report_bytes(self, written: int, total: int) -> Optional[ProgressEvent]:
        """
        Records progress for the current image. Returns an event only when the
        integer percentage grows, so listeners see a monotonic sequence.
        """
        percent = int(written * 100 / total) if total else 100
        self.bytes_written = written
        self.bytes_total = total
        if percent <= self.percent:
            return None
        self.percent = min(percent, 100)
        return self.event(f"Writing image {self.image_index}/{self.image_count}")

    def start_image(self, index: int, count: int, total: int) -> None:
        self.image_index = index
        self.image_count = count
        self.bytes_written = 0
        self.bytes_total = total
        self.percent = 0

    def event(self, message: str) -> ProgressEvent:
        return ProgressEvent(
            phase=self.phase,
            message=message,
            percent=self.percent,
            image_index=self.image_index,
            image_count=self.image_count,
            bytes_written=self.bytes_written,
            bytes_total=self.bytes_total,
        )
