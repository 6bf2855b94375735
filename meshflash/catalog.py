"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Hardware Catalog Module

Loads the list of supported device targets. The online catalog is preferred;
when it cannot be reached the bundled list is used, extended by the user's
own ~/.meshflash/hardware.json.
"""

import os
import json
import logging
from pathlib import Path
from typing import List, Optional

import requests

from meshflash.config import ConfigManager, get_local_hardware_list
from meshflash.constants import HARDWARE_CATALOG_URL, HTTP_TIMEOUT
from meshflash.models import HardwareTarget

logger = logging.getLogger("Catalog")


def _read_data_file(filename: str) -> list:
    """
    Reads a JSON file from the 'data' subdirectory.
    Helper function for use within this module.
    """
    path = Path(os.path.dirname(__file__))
    filepath = path / "data" / filename
    try:
        with filepath.open("rt") as file:
            return json.load(file)
    except FileNotFoundError:
        logger.error(f"Data file not found: {filepath}")
        return []
    except json.JSONDecodeError:
        logger.error(f"Error decoding JSON from file: {filepath}")
        return []


def _merge_targets(base: list, override: list) -> list:
    """Entries of override replace base entries with the same hwModel."""
    merged = {entry.get("hwModel"): entry for entry in base}
    for entry in override:
        merged[entry.get("hwModel")] = entry
    return list(merged.values())


def _to_targets(records: list) -> List[HardwareTarget]:
    targets = []
    for record in records:
        if not isinstance(record, dict):
            continue
        try:
            target = HardwareTarget.from_dict(record)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed hardware record {record!r}: {e}")
            continue
        if target.actively_supported:
            targets.append(target)
    return targets


class HardwareCatalog:
    """
    Provides the actively supported hardware targets, in catalog order.
    """

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager
        self.url = config_manager.get_value("hardware-url", HARDWARE_CATALOG_URL)
        self.offline = False

    def fetch_targets(self) -> List[HardwareTarget]:
        records = self._fetch_online()
        self.offline = records is None
        if records is None:
            records = self.offline_records()
        targets = _to_targets(records)
        logger.debug(f"{len(targets)} supported targets ({'offline' if self.offline else 'online'})")
        return targets

    def _fetch_online(self) -> Optional[list]:
        logger.debug(f"Fetching hardware catalog from {self.url}")
        try:
            response = requests.get(self.url, timeout=HTTP_TIMEOUT)
            response.raise_for_status()
            records = response.json()
        except requests.RequestException as e:
            logger.warning(f"Could not fetch hardware catalog, using offline list: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Hardware catalog is not valid JSON, using offline list: {e}")
            return None
        if not isinstance(records, list):
            logger.warning("Hardware catalog has an unexpected format, using offline list.")
            return None
        return records

    @staticmethod
    def offline_records() -> list:
        records = _read_data_file("hardware.json")
        local = get_local_hardware_list()
        if local:
            logger.debug(f"Merging {len(local)} local hardware entries")
            records = _merge_targets(records, local)
        return records
