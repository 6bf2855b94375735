"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Serial Port Enumeration Module
"""

import sys
import logging
import plistlib
import subprocess
from typing import Callable, List, Optional

import serial.tools.list_ports

from meshflash.models import SerialPortDescriptor

logger = logging.getLogger("Ports")

UNKNOWN_DEVICE = "Unknown"


def _hex_id(value: Optional[int]) -> str:
    return f"{value:04x}" if value is not None else ""


def load_ioreg_tree():
    """
    Returns the parsed USB registry of macOS (ioreg -p IOUSB -l -a), or None
    when it cannot be read.
    """
    try:
        output = subprocess.run(
            ["ioreg", "-p", "IOUSB", "-l", "-a"],
            capture_output=True,
            check=True,
            timeout=10,
        ).stdout
        return plistlib.loads(output)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"Could not run ioreg: {e}")
    except plistlib.InvalidFileException as e:
        logger.warning(f"Could not parse ioreg output: {e}")
    return None


def _find_product_name(node, serial_number: str) -> Optional[str]:
    if isinstance(node, list):
        for item in node:
            name = _find_product_name(item, serial_number)
            if name:
                return name
    elif isinstance(node, dict):
        if node.get("kUSBSerialNumberString") == serial_number:
            return node.get("USB Product Name") or node.get("kUSBProductString")
        for value in node.values():
            name = _find_product_name(value, serial_number)
            if name:
                return name
    return None


def resolve_device_name(port, ioreg_tree=None) -> str:
    """
    Best-effort human readable product name of a pyserial ListPortInfo.
    When an ioreg tree is given (macOS) the USB registry is searched by serial
    number, otherwise the product string reported by the OS is used.
    """
    name = None
    if ioreg_tree is not None and port.serial_number:
        name = _find_product_name(ioreg_tree, port.serial_number)
    if not name:
        name = port.product or port.description
    if not name or name.strip().lower() == "n/a":
        return UNKNOWN_DEVICE
    return name.strip()


def list_ports(
    resolver: Optional[Callable[..., str]] = None,
) -> List[SerialPortDescriptor]:
    """
    Lists the serial ports currently present. Each call is a fresh snapshot.
    """
    system_ports = serial.tools.list_ports.comports()
    ioreg_tree = None
    if resolver is None:
        resolver = resolve_device_name
        if sys.platform == "darwin" and system_ports:
            logger.debug("macOS detected, reading USB registry for device names.")
            ioreg_tree = load_ioreg_tree()

    ports = []
    for p in system_ports:
        try:
            device_name = resolver(p, ioreg_tree)
        except Exception as e:
            logger.warning(f"Could not resolve device name for {p.device}: {e}")
            device_name = UNKNOWN_DEVICE
        ports.append(
            SerialPortDescriptor(
                path=p.device,
                manufacturer=p.manufacturer or "",
                serial_number=p.serial_number or "",
                vendor_id=_hex_id(p.vid),
                product_id=_hex_id(p.pid),
                device_name=device_name or UNKNOWN_DEVICE,
            )
        )

    logger.debug(f"Serial ports found: {[p.path for p in ports]}")
    return ports
