"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Error hierarchy shared by discovery, transport, flashing and option handling.
"""


class FlasherError(Exception):
    """Base error for meshflash."""


class DiscoveryError(FlasherError):
    """Raised when no serial port is present or none matches a known target."""


class TransportError(FlasherError):
    """Base error for serial transport failures."""


class TransportOpenError(TransportError):
    """Raised when the OS cannot open or reconfigure a serial port."""


class TransportClosedError(TransportError):
    """Raised on I/O against a transport that has been closed."""


class TransportTimeoutError(TransportError):
    """Raised when no complete frame arrives in time."""


class DeviceNotReadyError(FlasherError):
    """Raised when the device handshake has not completed."""


class NoDeviceDetectedError(FlasherError):
    """Raised when no new drive or bootloader interface appears."""


class AmbiguousDeviceError(FlasherError):
    """Raised when more than one new drive appears and none can be chosen."""


class ImageResolutionError(FlasherError):
    """Raised when a firmware image cannot be found locally or in an archive."""


class FlashError(FlasherError):
    """Raised when writing or verifying a firmware image fails."""


class UnsupportedArchitectureError(FlashError):
    """Raised when no flashing strategy exists for an architecture."""


class OptionParseError(FlasherError):
    """Raised when a firmware options file is malformed."""


class BuildError(FlasherError):
    """Raised when the firmware build toolchain fails."""
