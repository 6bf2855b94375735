"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Firmware Archive Helpers
"""

import re
import logging
import zipfile
from pathlib import Path, PurePosixPath
from typing import Iterable, List

from meshflash.errors import ImageResolutionError

logger = logging.getLogger("Archive")


def find_archive_entry(names: Iterable[str], pattern: str) -> str:
    """
    Returns the single archive entry whose file name matches pattern in full.
    Sibling variants (firmware-heltec-v3-tft-... next to firmware-heltec-v3-...)
    are told apart by the full match, not by a prefix.

    Raises:
        ImageResolutionError: when no entry or more than one entry matches.
    """
    matches: List[str] = []
    for name in names:
        if name.endswith("/"):
            continue
        basename = PurePosixPath(name).name
        if not re.fullmatch(pattern, basename):
            continue
        matches.append(name)

    if not matches:
        raise ImageResolutionError(f"No file matching '{pattern}' in the firmware archive.")
    if len(matches) > 1:
        raise ImageResolutionError(
            f"Several files match '{pattern}' in the firmware archive: {', '.join(matches)}"
        )
    return matches[0]


def read_archive_entry(zip_path, pattern: str):
    """Returns (entry name, entry bytes) of the single entry matching pattern."""
    try:
        with zipfile.ZipFile(zip_path) as archive:
            name = find_archive_entry(archive.namelist(), pattern)
            logger.debug(f"Reading {name} from {zip_path}")
            return PurePosixPath(name).name, archive.read(name)
    except (OSError, zipfile.BadZipFile) as e:
        raise ImageResolutionError(f"Could not read firmware archive {zip_path}: {e}") from e


def extract_source_archive(zip_path) -> Path:
    """
    Extracts a firmware source zip into a directory next to it, named after
    the archive, and returns the root of the source tree.
    """
    zip_path = Path(zip_path)
    extract_dir = zip_path.with_suffix("")
    target = extract_dir.resolve()
    try:
        with zipfile.ZipFile(zip_path) as archive:
            for member in archive.namelist():
                destination = (extract_dir / member).resolve()
                if destination != target and target not in destination.parents:
                    raise ImageResolutionError(f"Archive entry escapes the extract directory: {member}")
            logger.info(f"Extracting {zip_path.name} to {extract_dir}")
            archive.extractall(extract_dir)
    except (OSError, zipfile.BadZipFile) as e:
        raise ImageResolutionError(f"Could not extract source archive {zip_path}: {e}") from e

    # GitHub source zips hold a single "firmware-<version>" directory
    source_root = extract_dir / zip_path.stem.replace("v", "firmware-", 1)
    if source_root.is_dir():
        return source_root
    children = [p for p in extract_dir.iterdir() if not p.name.startswith(".")]
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return extract_dir
