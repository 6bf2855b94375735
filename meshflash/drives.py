"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Removable Drive Detection Module

Devices with a mass-storage bootloader show up as a new removable drive after
being told to enter update mode. The new drive is found by comparing a
snapshot taken before the reset with the drives present afterwards.
"""

import sys
import json
import logging
import plistlib
import subprocess
from typing import Callable, List, Optional, Sequence

from meshflash.constants import DRIVE_WAIT_TIMEOUT, POLL_INITIAL_DELAY, POLL_MAX_DELAY
from meshflash.errors import AmbiguousDeviceError, FlashError, NoDeviceDetectedError
from meshflash.models import RemovableDrive
from meshflash.utils import poll_with_backoff

logger = logging.getLogger("Drives")

DriveLister = Callable[[], List[RemovableDrive]]


def _run(cmd: List[str]) -> bytes:
    logger.debug(f"Executing command: {' '.join(cmd)}")
    try:
        return subprocess.run(cmd, capture_output=True, check=True, timeout=15).stdout
    except (OSError, subprocess.SubprocessError) as e:
        raise FlashError(f"Could not list removable drives with {cmd[0]}: {e}") from e


def _is_true(value) -> bool:
    if isinstance(value, str):
        return value.strip() in ("1", "true")
    return bool(value)


def _collect_mountpoints(device: dict) -> List[str]:
    mountpoints = []
    if device.get("mountpoint"):
        mountpoints.append(device["mountpoint"])
    for child in device.get("children") or []:
        mountpoints.extend(_collect_mountpoints(child))
    return mountpoints


def parse_lsblk(output: str) -> List[RemovableDrive]:
    drives = []
    for device in json.loads(output).get("blockdevices", []):
        removable = (
            _is_true(device.get("rm"))
            or _is_true(device.get("hotplug"))
            or device.get("tran") == "usb"
        )
        if not removable:
            continue
        drives.append(
            RemovableDrive(f"/dev/{device['name']}", tuple(_collect_mountpoints(device)))
        )
    return drives


def parse_diskutil(output: bytes) -> List[RemovableDrive]:
    drives = []
    for disk in plistlib.loads(output).get("AllDisksAndPartitions", []):
        mountpoints = [disk["MountPoint"]] if disk.get("MountPoint") else []
        for partition in disk.get("Partitions", []):
            if partition.get("MountPoint"):
                mountpoints.append(partition["MountPoint"])
        drives.append(RemovableDrive(f"/dev/{disk['DeviceIdentifier']}", tuple(mountpoints)))
    return drives


def parse_logical_disks(output: str) -> List[RemovableDrive]:
    output = output.strip()
    if not output:
        return []
    data = json.loads(output)
    # ConvertTo-Json emits a bare object when there is a single disk
    if isinstance(data, dict):
        data = [data]
    drives = []
    for disk in data:
        device_id = disk.get("DeviceID")
        if device_id:
            drives.append(RemovableDrive(device_id, (device_id + "\\",)))
    return drives


def list_removable_drives() -> List[RemovableDrive]:
    """Removable drives currently attached, with their mount points."""
    try:
        if sys.platform.startswith("linux"):
            output = _run(["lsblk", "-J", "-o", "NAME,RM,HOTPLUG,TRAN,MOUNTPOINT"])
            drives = parse_lsblk(output.decode())
        elif sys.platform == "darwin":
            output = _run(["diskutil", "list", "-plist", "external", "physical"])
            drives = parse_diskutil(output)
        elif sys.platform == "win32":
            output = _run(
                [
                    "powershell",
                    "-NoProfile",
                    "-Command",
                    "Get-CimInstance Win32_LogicalDisk -Filter 'DriveType=2' "
                    "| Select-Object DeviceID | ConvertTo-Json",
                ]
            )
            drives = parse_logical_disks(output.decode(errors="replace"))
        else:
            raise FlashError(f"Removable drive listing is not supported on {sys.platform}")
    except (ValueError, KeyError, plistlib.InvalidFileException) as e:
        raise FlashError(f"Could not parse removable drive listing: {e}") from e

    logger.debug(f"Removable drives: {[d.device_path for d in drives]}")
    return drives


def detect_new_drive(
    before: Sequence[RemovableDrive], after: Sequence[RemovableDrive]
) -> RemovableDrive:
    """Returns the single drive present in after but not in before."""
    known = {d.device_path for d in before}
    new_drives = [d for d in after if d.device_path not in known]
    if not new_drives:
        raise NoDeviceDetectedError("No new removable drive appeared.")
    if len(new_drives) > 1:
        paths = ", ".join(d.device_path for d in new_drives)
        raise AmbiguousDeviceError(f"Several new removable drives appeared: {paths}")
    return new_drives[0]


def wait_for_new_drive(
    before: Sequence[RemovableDrive],
    lister: Optional[DriveLister] = None,
    timeout: float = DRIVE_WAIT_TIMEOUT,
    initial_delay: float = POLL_INITIAL_DELAY,
    max_delay: float = POLL_MAX_DELAY,
) -> RemovableDrive:
    """
    Polls until exactly one new drive is present and mounted. More than one new
    drive fails immediately; nothing within timeout raises NoDeviceDetectedError.
    """
    lister = lister or list_removable_drives

    def attempt():
        try:
            drive = detect_new_drive(before, lister())
        except NoDeviceDetectedError:
            return None
        if not drive.mountpoints:
            logger.debug(f"Drive {drive.device_path} found, waiting for it to mount")
            return None
        return drive

    drive = poll_with_backoff(attempt, timeout, initial_delay, max_delay)
    if drive is None:
        raise NoDeviceDetectedError(
            f"No new mounted removable drive appeared within {timeout:.0f}s."
        )
    logger.info(f"Found drive {drive.device_path} mounted at {drive.mountpoints[0]}")
    return drive
