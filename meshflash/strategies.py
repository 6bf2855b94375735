"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Flashing Strategies Module

Two ways of getting firmware onto a device:

- Mass storage: the device is told to enter its UF2 bootloader, shows up as
  a removable drive and the image is copied onto it.
- Bootloader: the device is reset into its ROM bootloader with a 1200 baud
  touch and the images are written over the serial port by a protocol client.

Each strategy's run() is a generator of ProgressEvents driving the session
through preparing, in_progress, verifying and complete.
"""

import os
import time
import logging
from enum import Enum
from typing import Callable, Iterator, List, Optional, Protocol

from meshflash.constants import (
    COPY_CHUNK_SIZE,
    DRIVE_WAIT_TIMEOUT,
    ERASE_SETTLE_DELAY,
    FLASH_BAUD_RATE,
    PORT_WAIT_TIMEOUT,
    ROM_BAUD_RATE,
    TOUCH_SETTLE_DELAY,
)
from meshflash.drives import DriveLister, list_removable_drives, wait_for_new_drive
from meshflash.errors import (
    DeviceNotReadyError,
    FlashError,
    NoDeviceDetectedError,
    UnsupportedArchitectureError,
)
from meshflash.firmware import FirmwareRepository
from meshflash.matching import find_bootloader_port
from meshflash.models import (
    Architecture,
    FlashImage,
    FlashPhase,
    FlashSession,
    ProgressEvent,
    RemovableDrive,
)
from meshflash.ports import list_ports
from meshflash.progress import ProgressCallback, ProgressChannel
from meshflash.transport import FramedSerialTransport, baud_touch
from meshflash.utils import format_size, poll_with_backoff

logger = logging.getLogger("Strategy")


class FlashMethod(Enum):
    MASS_STORAGE = "mass_storage"
    BOOTLOADER = "bootloader"


STRATEGY_BY_ARCHITECTURE = {
    Architecture.ESP32: FlashMethod.BOOTLOADER,
    Architecture.ESP32_S3: FlashMethod.BOOTLOADER,
    Architecture.ESP32_C3: FlashMethod.BOOTLOADER,
    Architecture.ESP32_C6: FlashMethod.BOOTLOADER,
    Architecture.NRF52840: FlashMethod.MASS_STORAGE,
    Architecture.RP2040: FlashMethod.MASS_STORAGE,
}


def select_strategy(architecture: Architecture) -> FlashMethod:
    method = STRATEGY_BY_ARCHITECTURE.get(architecture)
    if method is None:
        raise UnsupportedArchitectureError(
            f"No flashing method for architecture '{architecture.value}'"
        )
    return method


class BootloaderClient(Protocol):
    """Chip-level bootloader protocol spoken over a FramedSerialTransport."""

    def sync(self, transport: FramedSerialTransport) -> str:
        """Synchronizes with the ROM bootloader and returns the detected chip name."""
        ...

    def change_baud(self, transport: FramedSerialTransport, baud_rate: int) -> None:
        """Asks the bootloader to switch rate; the caller reopens the transport."""
        ...

    def write_image(
        self, transport: FramedSerialTransport, image: FlashImage, progress: ProgressCallback
    ) -> None:
        """Writes image at image.offset, calling progress(written, total) as it goes."""
        ...


class MassStorageFlashStrategy:
    method = FlashMethod.MASS_STORAGE

    def __init__(
        self,
        repository: FirmwareRepository,
        drive_lister: Optional[DriveLister] = None,
        drive_timeout: float = DRIVE_WAIT_TIMEOUT,
    ):
        self.repository = repository
        self.drive_lister = drive_lister or list_removable_drives
        self.drive_timeout = drive_timeout

    def run(self, session: FlashSession) -> Iterator[ProgressEvent]:
        device = session.device
        target = device.target
        if not device.is_ready:
            raise DeviceNotReadyError("The device must be connected to enter update mode.")

        yield session.advance(FlashPhase.PREPARING, "Resolving firmware image...")
        firmware = self.repository.resolve_mass_storage_image(session.selection, target)
        erase = self.repository.erase_image(target.architecture) if session.clean_install else None
        logger.debug(f"Firmware image {firmware.name} ({format_size(firmware.size)})")

        before = self.drive_lister()
        yield session.event("Rebooting device into update mode...")
        device.link.enter_dfu_mode()
        device.link.close()
        drive = wait_for_new_drive(before, self.drive_lister, self.drive_timeout)

        yield session.advance(FlashPhase.IN_PROGRESS, f"Update drive found at {drive.mountpoints[0]}")
        images = [erase, firmware] if erase else [firmware]
        for index, image in enumerate(images, 1):
            if image is firmware and erase is not None:
                yield session.event("Waiting for the device to restart after erase...")
                time.sleep(ERASE_SETTLE_DELAY)
                drive = wait_for_new_drive(before, self.drive_lister, self.drive_timeout)
            yield from self._copy(session, image, drive, index, len(images))

        yield session.advance(FlashPhase.VERIFYING, "Verifying copied firmware...")
        self._verify(firmware, drive)
        yield session.advance(
            FlashPhase.COMPLETE, "Firmware copied. Power-cycle the device to start the new firmware."
        )

    @staticmethod
    def _copy(
        session: FlashSession, image: FlashImage, drive: RemovableDrive, index: int, count: int
    ) -> Iterator[ProgressEvent]:
        destination = os.path.join(drive.mountpoints[0], image.name)
        session.start_image(index, count, image.size)
        yield session.event(f"Copying {image.name} to {drive.mountpoints[0]}")
        try:
            with open(destination, "wb") as f:
                for start in range(0, image.size, COPY_CHUNK_SIZE):
                    f.write(image.data[start : start + COPY_CHUNK_SIZE])
                    event = session.report_bytes(min(start + COPY_CHUNK_SIZE, image.size), image.size)
                    if event:
                        yield event
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise FlashError(f"Could not copy {image.name} to {drive.mountpoints[0]}: {e}") from e
        if image.size == 0:
            event = session.report_bytes(0, 0)
            if event:
                yield event

    @staticmethod
    def _verify(image: FlashImage, drive: RemovableDrive):
        destination = os.path.join(drive.mountpoints[0], image.name)
        if not os.path.exists(destination):
            # The bootloader unmounts the drive once the image is accepted
            logger.info("Update drive is gone, the device is restarting.")
            return
        size = os.path.getsize(destination)
        if size != image.size:
            raise FlashError(f"Copied {image.name} is {size} bytes, expected {image.size}")


class BootloaderFlashStrategy:
    method = FlashMethod.BOOTLOADER

    def __init__(
        self,
        repository: FirmwareRepository,
        client: BootloaderClient,
        port_lister: Optional[Callable] = None,
        transport_factory: Callable[[str], FramedSerialTransport] = FramedSerialTransport,
        port_timeout: float = PORT_WAIT_TIMEOUT,
    ):
        self.repository = repository
        self.client = client
        self.port_lister = port_lister or list_ports
        self.transport_factory = transport_factory
        self.port_timeout = port_timeout

    def run(self, session: FlashSession) -> Iterator[ProgressEvent]:
        device = session.device
        if not device.is_ready:
            raise DeviceNotReadyError("Device handshake has not completed.")

        yield session.advance(FlashPhase.PREPARING, "Resolving firmware images...")
        images = self.repository.resolve_bootloader_images(
            session.selection, device.target, session.clean_install
        )
        for image in images:
            logger.debug(f"{image.name}: {format_size(image.size)} at 0x{image.offset:06x}")

        original_path = device.port.path
        before = self.port_lister()
        yield session.event("Rebooting device into bootloader...")
        device.link.close()
        baud_touch(original_path)
        time.sleep(TOUCH_SETTLE_DELAY)
        port = poll_with_backoff(
            lambda: find_bootloader_port(before, self.port_lister(), original_path),
            self.port_timeout,
        )
        if port is None:
            raise NoDeviceDetectedError(f"No bootloader port appeared within {self.port_timeout:.0f}s.")
        logger.debug(f"Bootloader port: {port.path} ({port.device_name})")

        transport = self.transport_factory(port.path)
        try:
            transport.open(ROM_BAUD_RATE)
            chip = self.client.sync(transport)
            logger.info(f"Connected to {chip} on {port.path}")
            self.client.change_baud(transport, FLASH_BAUD_RATE)
            transport.open(FLASH_BAUD_RATE)

            yield session.advance(FlashPhase.IN_PROGRESS, f"Writing {len(images)} image(s)...")
            completed: List[int] = []
            for index, image in enumerate(images, 1):
                session.start_image(index, len(images), image.size)
                yield session.event(f"Writing {image.name} at 0x{image.offset:x}")
                channel = ProgressChannel(
                    lambda report, image=image: self.client.write_image(transport, image, report)
                )
                for written, total in channel:
                    event = session.report_bytes(written, total)
                    if event:
                        yield event
                completed.append(session.percent)

            yield session.advance(FlashPhase.VERIFYING, "Verifying written images...")
            for image, percent in zip(images, completed):
                if percent < 100:
                    raise FlashError(f"{image.name} stopped at {percent}%")
            transport.pulse_reset()
        finally:
            transport.close()

        yield session.advance(FlashPhase.COMPLETE, "Firmware written, device is restarting.")
