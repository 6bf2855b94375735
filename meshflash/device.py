"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Device Session Module
"""

import logging
from typing import Callable, List, Optional

from meshflash.catalog import HardwareCatalog
from meshflash.config import ConfigManager
from meshflash.errors import DeviceNotReadyError, DiscoveryError
from meshflash.logging_utils import status_update_active
from meshflash.matching import MatchFallback, TargetMatch, find_target_by_hw_model, match_targets
from meshflash.models import ConnectedDevice, DeviceLink, HardwareTarget, SerialPortDescriptor
from meshflash.ports import list_ports

logger = logging.getLogger("Device")

LinkFactory = Callable[[SerialPortDescriptor], DeviceLink]


class DeviceManager:
    """
    Owns the one device the application works with. A scan always lets go of
    the previously held device, so at most one runtime link is open.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        catalog: HardwareCatalog,
        link_factory: LinkFactory,
        port_lister: Optional[Callable[[], List[SerialPortDescriptor]]] = None,
    ):
        self.config_manager = config_manager
        self.catalog = catalog
        self.link_factory = link_factory
        self.port_lister = port_lister or list_ports
        self.targets: Optional[List[HardwareTarget]] = None
        self.device: Optional[ConnectedDevice] = None

    def load_targets(self) -> List[HardwareTarget]:
        if self.targets is None:
            self.targets = self.catalog.fetch_targets()
        return self.targets

    def scan(self, fallback: Optional[MatchFallback] = None) -> TargetMatch:
        """Finds the first attached port that belongs to a supported target."""
        self.release()
        targets = self.load_targets()
        if fallback is None:
            fallback = MatchFallback.parse(self.config_manager.get_value("match-fallback"))

        status = status_update_active(logger)
        if status:
            logger.info("Scanning for devices...", extra={"status": "start"})
        ports = self.port_lister()
        match = match_targets(ports, targets, fallback) if ports else None
        if status:
            logger.info(f"Scanning for devices... {'OK' if match else 'FAILED'}", extra={"status": "end"})

        if not ports:
            raise DiscoveryError("No serial ports found. Is the device plugged in?")
        if match is None:
            raise DiscoveryError(f"None of {len(ports)} serial port(s) matches a supported device.")

        if match.fallback:
            logger.info(f"No known device found, trying {match.port.path}")
        else:
            logger.info(f"Found {match.target.display_name} on {match.port.path}")
        return match

    def connect(self, match: TargetMatch) -> ConnectedDevice:
        """
        Opens the runtime link to the matched port and reads the device
        metadata. The target reported by the device wins over the name match.
        """
        if self.device is not None:
            raise DiscoveryError(
                f"Already connected to {self.device.port.path}, release it first."
            )

        link = self.link_factory(match.port)
        try:
            metadata = link.metadata()
            if not link.is_ready:
                raise DeviceNotReadyError(f"Device on {match.port.path} did not complete the handshake.")
            target = find_target_by_hw_model(self.load_targets(), metadata.hw_model) or match.target
            if target is None:
                raise DiscoveryError(f"Unsupported hardware model {metadata.hw_model} on {match.port.path}")
        except Exception:
            link.close()
            raise

        if match.target is not None and target != match.target:
            logger.debug(f"Device reports {target.display_name}, name matched {match.target.display_name}")
        logger.info(
            f"Connected to {target.display_name} on {match.port.path}, "
            f"firmware {metadata.firmware_version}"
        )
        self.config_manager.set_value("port", match.port.path)
        self.device = ConnectedDevice(match.port, target, metadata, link)
        return self.device

    def release(self):
        device, self.device = self.device, None
        if device is not None:
            logger.debug(f"Releasing {device.port.path}")
            device.link.close()
