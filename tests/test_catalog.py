from __future__ import annotations

import json

import requests

from meshflash import catalog as catalog_module
from meshflash.catalog import HardwareCatalog
from meshflash.models import Architecture

ONLINE = [
    {"hwModel": 43, "hwModelSlug": "HELTEC_V3", "platformioTarget": "heltec-v3", "architecture": "esp32-s3",
     "activelySupported": True, "displayName": "Heltec V3"},
    {"hwModel": 3, "hwModelSlug": "TBEAM_V0P7", "platformioTarget": "tbeam0_7", "architecture": "esp32",
     "activelySupported": False, "displayName": "T-Beam V0.7"},
    {"hwModel": 80, "hwModelSlug": "NEW_BOARD", "platformioTarget": "new-board", "architecture": "riscv-x",
     "activelySupported": True, "displayName": "New Board"},
]


class FakeResponse:
    def __init__(self, payload) -> None:
        self.payload = payload

    def raise_for_status(self) -> None:
        pass

    def json(self):
        return self.payload


def offline(url, timeout):
    raise requests.Timeout("timed out")


def test_online_catalog_filters_unsupported(config_manager, monkeypatch) -> None:
    monkeypatch.setattr(catalog_module.requests, "get", lambda url, timeout: FakeResponse(ONLINE))
    catalog = HardwareCatalog(config_manager)
    targets = catalog.fetch_targets()
    assert [t.platformio_target for t in targets] == ["heltec-v3", "new-board"]
    assert targets[1].architecture == Architecture.UNKNOWN
    assert catalog.offline is False


def test_offline_falls_back_to_bundled_list(config_manager, monkeypatch) -> None:
    monkeypatch.setattr(catalog_module.requests, "get", offline)
    catalog = HardwareCatalog(config_manager)
    slugs = [t.platformio_target for t in catalog.fetch_targets()]
    assert catalog.offline is True
    assert "heltec-v3" in slugs
    assert "rak4631" in slugs
    assert "tbeam0_7" not in slugs


def test_malformed_catalog_falls_back(config_manager, monkeypatch) -> None:
    monkeypatch.setattr(catalog_module.requests, "get", lambda url, timeout: FakeResponse({"error": "x"}))
    catalog = HardwareCatalog(config_manager)
    assert catalog.fetch_targets()
    assert catalog.offline is True


def test_local_hardware_file_is_merged(config_manager, home, monkeypatch) -> None:
    home.mkdir(parents=True, exist_ok=True)
    (home / "hardware.json").write_text(
        json.dumps(
            [
                {"hwModel": 43, "hwModelSlug": "HELTEC_V3", "platformioTarget": "heltec-v3",
                 "architecture": "esp32-s3", "activelySupported": True, "displayName": "My Heltec"},
                {"hwModel": 999, "hwModelSlug": "CUSTOM", "platformioTarget": "custom-board",
                 "architecture": "nrf52840", "activelySupported": True, "displayName": "Custom"},
            ]
        )
    )
    monkeypatch.setattr(catalog_module.requests, "get", offline)
    targets = {t.hw_model: t for t in HardwareCatalog(config_manager).fetch_targets()}
    assert targets[43].display_name == "My Heltec"
    assert targets[999].platformio_target == "custom-board"


def test_catalog_url_from_config(config_manager, monkeypatch) -> None:
    urls = []
    config_manager.set_value("hardware-url", "http://localhost/hardware")
    monkeypatch.setattr(
        catalog_module.requests, "get", lambda url, timeout: urls.append(url) or FakeResponse(ONLINE)
    )
    HardwareCatalog(config_manager).fetch_targets()
    assert urls == ["http://localhost/hardware"]
