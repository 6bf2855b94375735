from __future__ import annotations

import pytest

from meshflash import config
from meshflash.config import ConfigManager
from meshflash.models import (
    Architecture,
    ConnectedDevice,
    DeviceMetadata,
    HardwareTarget,
    SerialPortDescriptor,
)


@pytest.fixture
def home(tmp_path, monkeypatch):
    path = tmp_path / "home"
    monkeypatch.setattr(config, "HOME_PATH", str(path))
    monkeypatch.setattr(ConfigManager, "_instances", {})
    monkeypatch.setattr(ConfigManager, "_initialized_configs", {})
    return path


@pytest.fixture
def config_manager(home) -> ConfigManager:
    return ConfigManager()


@pytest.fixture
def no_sleep(monkeypatch):
    slept = []
    monkeypatch.setattr("time.sleep", lambda seconds: slept.append(seconds))
    return slept


def make_target(
    slug: str = "heltec-v3",
    architecture: Architecture = Architecture.ESP32_S3,
    display_name: str = "Heltec V3",
    hw_model: int = 43,
) -> HardwareTarget:
    return HardwareTarget(
        hw_model=hw_model,
        hw_model_slug=slug.upper().replace("-", "_"),
        platformio_target=slug,
        architecture=architecture,
        display_name=display_name,
    )


def make_port(path: str = "/dev/ttyACM0", name: str = "Unknown", manufacturer: str = "") -> SerialPortDescriptor:
    return SerialPortDescriptor(path=path, manufacturer=manufacturer, device_name=name)


class FakeLink:
    def __init__(self, hw_model: int = 43, ready: bool = True, version: str = "2.5.6.abc"):
        self.ready = ready
        self.hw_model = hw_model
        self.version = version
        self.closed = False
        self.dfu_requests = 0

    @property
    def is_ready(self) -> bool:
        return self.ready and not self.closed

    def metadata(self) -> DeviceMetadata:
        return DeviceMetadata(firmware_version=self.version, hw_model=self.hw_model)

    def enter_dfu_mode(self) -> None:
        self.dfu_requests += 1

    def close(self) -> None:
        self.closed = True


def make_device(target: HardwareTarget | None = None, path: str = "/dev/ttyACM0", ready: bool = True) -> ConnectedDevice:
    target = target or make_target()
    link = FakeLink(hw_model=target.hw_model, ready=ready)
    return ConnectedDevice(
        port=make_port(path, target.display_name),
        target=target,
        metadata=link.metadata(),
        link=link,
    )
