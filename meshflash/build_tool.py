"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

PlatformIO Tool Wrapper Module
"""

import os
import re
import sys
import logging
from collections import deque
from subprocess import Popen, PIPE, STDOUT, TimeoutExpired
from pathlib import Path
from shutil import which

from meshflash.constants import OPTIONS_FILENAMES
from meshflash.errors import BuildError
from meshflash.models import Architecture
from meshflash.progress import ClassProgressHandler

logger = logging.getLogger("PlatformIO")

SOURCE_SUFFIXES = (".c", ".cc", ".cpp", ".S")
UF2_ARCHITECTURES = (Architecture.NRF52840, Architecture.RP2040)


class PlatformIONotFoundError(BuildError): ...


def artifact_name(architecture: Architecture) -> str:
    return "firmware.uf2" if architecture in UF2_ARCHITECTURES else "firmware.bin"


def count_source_files(source_dir) -> int:
    """Number of translation units the build is expected to compile."""
    total = 0
    for folder in ("src", "lib"):
        for _, _, filenames in os.walk(Path(source_dir) / folder):
            total += sum(1 for name in filenames if name.endswith(SOURCE_SUFFIXES))
    return max(total, 1)


class PlatformIO:
    """
    A wrapper class for the PlatformIO command-line build tool.
    It finds the executable, writes the user options into the firmware source
    and runs a build for one environment, reporting progress by counting the
    files compiled against the number of source files.
    """

    def __init__(self, platformio_path=None):
        self.command = self._find_platformio_path(platformio_path)
        logger.debug(f"Using PlatformIO at {self.command}")

    @classmethod
    def from_config(cls, config_manager):
        return cls(config_manager.get_value("platformio-path"))

    @staticmethod
    def _find_platformio_path(platformio_path):
        """Find the platformio executable path."""
        penv = Path.home() / ".platformio" / "penv"
        penv_bin = penv / ("Scripts" if sys.platform == "win32" else "bin")
        paths_to_check = [
            platformio_path,
            Path(platformio_path) / "pio" if platformio_path else None,
            which("pio"),
            which("platformio"),
            penv_bin / "pio",
            penv_bin / "platformio",
        ]
        for path in paths_to_check:
            if path and which(str(path)):
                return which(str(path))
        raise PlatformIONotFoundError("PlatformIO not found. Install it with 'pip install platformio'.")

    def _execute_command(self, options, cwd=None, timeout=30):
        """Execute a platformio command and return (output, returncode)."""
        cmd = [self.command] + options
        logger.debug(f"Executing command: {' '.join(cmd)}")
        try:
            process = Popen(cmd, stdout=PIPE, stderr=STDOUT, stdin=PIPE, cwd=cwd)
        except OSError as e:
            raise BuildError(f"Could not start {self.command}: {e}") from e
        try:
            stdout, _ = process.communicate(timeout=timeout)
            returncode = process.returncode
        except TimeoutExpired as e:
            process.kill()
            stdout = e.stdout or b""
            returncode = -1
        return stdout.decode("ISO-8859-1"), returncode

    def get_version(self):
        """Retrieve the PlatformIO Core version, or None if it cannot be parsed."""
        output, _ = self._execute_command(["--version"])
        match = re.search(r"version\s+(\d+\.\d+(\.\d+)?)", output, re.IGNORECASE)
        if match:
            logger.debug(f"PlatformIO version: {match.group(1)}")
            return match.group(1)
        logger.warning("Could not determine PlatformIO version.")
        return None

    @staticmethod
    def write_options(source_dir, options_json: str) -> Path:
        options_file = Path(source_dir) / OPTIONS_FILENAMES[0]
        try:
            options_file.write_text(options_json, encoding="utf-8")
        except OSError as e:
            raise BuildError(f"Could not write {options_file}: {e}") from e
        logger.debug(f"Wrote firmware options to {options_file}")
        return options_file

    def build(self, env, source_dir, options_json, architecture, progress_callback=None) -> Path:
        """Build firmware for env and return the path of the produced image."""
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise BuildError(f"Firmware source not found: {source_dir}")
        if options_json:
            self.write_options(source_dir, options_json)

        total = count_source_files(source_dir)
        cmd = [self.command, "run", "-e", env]
        logger.info(f"Building {env}, {total} source files...")
        logger.debug(f"Executing command: {' '.join(cmd)} in {source_dir}")

        progress = ClassProgressHandler(progress_callback, desc=env)
        tail = deque(maxlen=20)
        compiled = 0
        try:
            process = Popen(cmd, stdout=PIPE, stderr=STDOUT, cwd=source_dir, text=True, errors="replace")
        except OSError as e:
            raise BuildError(f"Could not start {self.command}: {e}") from e
        returncode = None
        try:
            progress.start(total)
            for line in process.stdout:
                line = line.rstrip()
                tail.append(line)
                logger.debug(line)
                if line.startswith("Compiling "):
                    compiled += 1
                    progress.set_progress(min(compiled, total), total)
            returncode = process.wait()
        finally:
            progress.close()
            if returncode is None:
                logger.debug(f"Stopping PlatformIO build of {env}")
                process.kill()
                process.wait()

        if returncode != 0:
            details = "\n".join(tail)
            raise BuildError(f"Build of {env} failed with exit code {returncode}:\n{details}")

        artifact = source_dir / ".pio" / "build" / env / artifact_name(architecture)
        if not artifact.is_file():
            raise BuildError(f"Build finished but {artifact} was not produced.")
        logger.info(f"Build complete: {artifact}")
        return artifact
