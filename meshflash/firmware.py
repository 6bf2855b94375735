"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Firmware Management Module
"""

import os
import re
import json
import time
import logging
from pathlib import Path
from typing import List, Optional

import requests

from meshflash.archive import read_archive_entry
from meshflash.config import ConfigManager, home_path, DOWNLOAD_DIR, RELEASES_CACHE_FILE
from meshflash.constants import (
    FIRMWARE_RELEASES_URL,
    HTTP_TIMEOUT,
    DOWNLOAD_TIMEOUT,
    DOWNLOAD_CHUNK_SIZE,
    RELEASE_LIMIT,
    UPDATE_IMAGE_OFFSET,
    FACTORY_IMAGE_OFFSET,
    OTA_IMAGE_OFFSET,
    LITTLEFS_IMAGE_OFFSET,
    ERASE_IMAGES,
)
from meshflash.errors import ImageResolutionError
from meshflash.models import (
    Architecture,
    CustomFirmwareOption,
    FirmwareRelease,
    FirmwareReleases,
    FirmwareSelection,
    FlashImage,
    HardwareTarget,
)
from meshflash.options import extract_options
from meshflash.progress import ClassProgressHandler
from meshflash.utils import format_size

logger = logging.getLogger("Firmware")

OTA_IMAGES = {
    Architecture.ESP32_S3: "bleota-s3.bin",
    Architecture.ESP32_C3: "bleota-c3.bin",
}
DEFAULT_OTA_IMAGE = "bleota.bin"


def split_releases(data: dict) -> FirmwareReleases:
    """
    Splits the release list into the four channels offered to the user,
    newest first. Alpha titles containing "Preview" are listed as previews.
    """
    releases = data.get("releases") or {}
    stable = [FirmwareRelease.from_dict(r) for r in releases.get("stable") or []]
    alpha = [FirmwareRelease.from_dict(r) for r in releases.get("alpha") or []]
    pull_requests = [FirmwareRelease.from_dict(r) for r in data.get("pullRequests") or []]
    return FirmwareReleases(
        stable=stable[:RELEASE_LIMIT],
        alpha=[r for r in alpha if "Preview" not in r.title][:RELEASE_LIMIT],
        previews=[r for r in alpha if "Preview" in r.title][:RELEASE_LIMIT],
        pull_requests=pull_requests[:RELEASE_LIMIT],
    )


class FirmwareRepository:
    """
    Fetches release information, downloads release archives and resolves the
    image files a flashing strategy writes to a device.
    """

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager
        self.releases_url = config_manager.get_value("releases-url", FIRMWARE_RELEASES_URL)
        self.offline = False

    # --- Releases ---

    def fetch_releases(self) -> FirmwareReleases:
        """
        Fetches the release list. The last successful response is cached and
        used when the service cannot be reached.
        """
        logger.debug(f"Fetching firmware releases from {self.releases_url}")
        try:
            response = requests.get(self.releases_url, timeout=HTTP_TIMEOUT)
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("release list is not a JSON object")
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Failed to fetch firmware releases: {e}")
            self.offline = True
            return split_releases(self._read_cache())

        self.offline = False
        self._write_cache(data)
        return split_releases(data)

    def _read_cache(self) -> dict:
        cache_file = home_path(RELEASES_CACHE_FILE)
        if not os.path.exists(cache_file):
            logger.error("No cached firmware releases available.")
            return {}
        try:
            with open(cache_file, "rt") as f:
                data = json.load(f)
            logger.info("Using cached firmware releases.")
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read cached firmware releases: {e}")
            return {}

    def _write_cache(self, data: dict):
        cache_file = home_path(RELEASES_CACHE_FILE)
        try:
            os.makedirs(os.path.dirname(cache_file), exist_ok=True)
            with open(cache_file, "wt") as f:
                json.dump(data, f)
        except OSError as e:
            logger.warning(f"Could not cache firmware releases: {e}")

    # --- Downloads ---

    def download(self, url: str, progress_callback=None) -> Path:
        """
        Downloads url into the download directory and returns the local path.
        A file already downloaded is reused.
        """
        filename = url.split("?")[0].rstrip("/").split("/")[-1] or "firmware_download.zip"
        download_dir = home_path(DOWNLOAD_DIR)
        firmware_path = Path(download_dir) / filename
        if firmware_path.exists():
            logger.debug(f"Using previously downloaded {firmware_path}")
            return firmware_path

        logger.info(f"Downloading firmware from {url}...")
        start_time = time.time()
        partial_path = firmware_path.with_name(filename + ".part")
        progress = ClassProgressHandler(progress_callback, desc=filename)
        try:
            os.makedirs(download_dir, exist_ok=True)
            response = requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
            total = int(response.headers.get("content-length") or 0)
            received = 0
            with open(partial_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    f.write(chunk)
                    received += len(chunk)
                    if total:
                        progress.set_progress(received, total)
            os.replace(partial_path, firmware_path)
        except requests.RequestException as e:
            raise ImageResolutionError(f"Error downloading firmware: {e}") from e
        except IOError as e:
            raise ImageResolutionError(f"Error saving downloaded firmware: {e}") from e
        finally:
            progress.close()
            if partial_path.exists():
                partial_path.unlink()

        logger.info(
            f"Firmware downloaded to: {firmware_path} "
            f"({format_size(firmware_path.stat().st_size)}, {time.time() - start_time:.2f}s)"
        )
        return firmware_path

    def archive_path(self, selection: FirmwareSelection) -> Path:
        if selection.is_local:
            return Path(selection.local_path)
        return self.download(selection.release.zip_url)

    # --- Image resolution ---

    @staticmethod
    def _read_local(path, offset: int) -> FlashImage:
        path = Path(path)
        try:
            return FlashImage(path.name, offset, path.read_bytes())
        except OSError as e:
            raise ImageResolutionError(f"Could not read firmware file {path}: {e}") from e

    def _from_archive(self, zip_path, pattern: str, offset: int) -> FlashImage:
        name, data = read_archive_entry(zip_path, pattern)
        return FlashImage(name, offset, data)

    def resolve_mass_storage_image(
        self, selection: FirmwareSelection, target: HardwareTarget
    ) -> FlashImage:
        """The .uf2 image copied to a mass-storage bootloader drive."""
        if selection.is_local:
            return self._read_local(selection.local_path, 0)
        zip_path = self.download(selection.release.zip_url)
        pattern = rf"firmware-{re.escape(target.platformio_target)}-{re.escape(selection.release.version)}\.uf2"
        return self._from_archive(zip_path, pattern, 0)

    def resolve_bootloader_images(
        self, selection: FirmwareSelection, target: HardwareTarget, clean_install: bool = False
    ) -> List[FlashImage]:
        """
        Images written through the serial bootloader, with their flash offsets.
        An update only replaces the application; a clean install also writes the
        factory image, the OTA loader and the filesystem.
        """
        if selection.is_local:
            offset = FACTORY_IMAGE_OFFSET if clean_install else UPDATE_IMAGE_OFFSET
            return [self._read_local(selection.local_path, offset)]

        zip_path = self.download(selection.release.zip_url)
        env = re.escape(target.platformio_target)
        version = re.escape(selection.release.version)
        if not clean_install:
            return [self._from_archive(zip_path, rf"firmware-{env}-{version}-update\.bin", UPDATE_IMAGE_OFFSET)]

        ota_image = OTA_IMAGES.get(target.architecture, DEFAULT_OTA_IMAGE)
        images = [
            self._from_archive(zip_path, rf"firmware-{env}-{version}\.bin", FACTORY_IMAGE_OFFSET),
            self._from_archive(zip_path, re.escape(ota_image), OTA_IMAGE_OFFSET),
        ]
        try:
            images.append(self._from_archive(zip_path, rf"littlefs-{env}-{version}\.bin", LITTLEFS_IMAGE_OFFSET))
        except ImageResolutionError:
            # Older releases ship one filesystem image for every target
            images.append(self._from_archive(zip_path, rf"littlefs-{version}\.bin", LITTLEFS_IMAGE_OFFSET))
        return images

    def erase_image(self, architecture: Architecture) -> FlashImage:
        """The image that wipes a mass-storage device before a clean install."""
        filename = ERASE_IMAGES.get(architecture.value)
        if filename is None:
            raise ImageResolutionError(f"No erase image for architecture {architecture.value}")
        assets_path = self.config_manager.get_value("assets-path", home_path("assets"))
        return self._read_local(Path(assets_path) / filename, 0)


class FirmwareSelector:
    """
    Holds the firmware chosen by the user and the options loaded from it.
    Changing the selection discards loaded options.
    """

    def __init__(self):
        self.selection: Optional[FirmwareSelection] = None
        self.options: List[CustomFirmwareOption] = []

    def select_release(self, release: FirmwareRelease) -> FirmwareSelection:
        self._set(FirmwareSelection(release=release))
        return self.selection

    def select_local_file(self, path) -> FirmwareSelection:
        path = Path(path)
        if not path.is_file():
            raise ImageResolutionError(f"Firmware file not found: {path}")
        self._set(FirmwareSelection(local_path=path))
        return self.selection

    def clear(self):
        self._set(None)

    def _set(self, selection: Optional[FirmwareSelection]):
        if selection != self.selection:
            logger.debug(f"Firmware selection changed to {selection.filename if selection else None}")
            self.options = []
        self.selection = selection

    def load_options(self, repository: FirmwareRepository) -> List[CustomFirmwareOption]:
        """Reads the customizable options of the selected firmware source."""
        if self.selection is None:
            raise ImageResolutionError("No firmware selected.")
        self.options = extract_options(repository.archive_path(self.selection))
        return self.options
