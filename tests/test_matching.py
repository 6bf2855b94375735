from __future__ import annotations

from conftest import make_port, make_target

from meshflash.matching import (
    MatchFallback,
    find_bootloader_port,
    find_target_by_hw_model,
    match_targets,
)
from meshflash.models import Architecture, HardwareTarget

RAK = make_target("rak4631", Architecture.NRF52840, "RAK WisBlock 4631", hw_model=9)
HELTEC = make_target("heltec-v3", Architecture.ESP32_S3, "Heltec V3", hw_model=43)


def test_matches_on_architecture_in_device_name() -> None:
    ports = [make_port("/dev/ttyACM0", "ESP32-S3 JTAG")]
    match = match_targets(ports, [RAK, HELTEC])
    assert match is not None
    assert match.port.path == "/dev/ttyACM0"
    assert match.target == HELTEC
    assert match.matched_on == "architecture"
    assert match.fallback is False


def test_platformio_target_is_preferred_over_display_name() -> None:
    ports = [make_port("/dev/ttyACM0", "RAK4631 Heltec V3")]
    match = match_targets(ports, [RAK, HELTEC])
    assert match.target == RAK
    assert match.matched_on == "platformio_target"


def test_first_matching_port_wins() -> None:
    ports = [
        make_port("/dev/ttyS0", "Unknown"),
        make_port("/dev/ttyACM1", "Heltec V3 serial"),
        make_port("/dev/ttyACM2", "RAK4631"),
    ]
    match = match_targets(ports, [RAK, HELTEC])
    assert match.port.path == "/dev/ttyACM1"
    assert match.target == HELTEC
    assert match.matched_on == "display_name"


def test_no_match_without_fallback_returns_none() -> None:
    ports = [make_port("/dev/ttyUSB0", "CP2102 USB to UART"), make_port("/dev/ttyUSB1", "Unknown")]
    assert match_targets(ports, [RAK, HELTEC]) is None
    assert match_targets(ports, [RAK, HELTEC], MatchFallback.NONE) is None


def test_last_port_fallback_returns_latest_port_without_target() -> None:
    ports = [make_port("/dev/ttyUSB0", "CP2102 USB to UART"), make_port("/dev/ttyUSB1", "Unknown")]
    match = match_targets(ports, [RAK, HELTEC], MatchFallback.LAST_PORT)
    assert match.port.path == "/dev/ttyUSB1"
    assert match.target is None
    assert match.fallback is True


def test_unrecognised_architecture_does_not_match_unknown_ports() -> None:
    pico2 = HardwareTarget.from_dict(
        {"hwModel": 95, "hwModelSlug": "RPI_PICO2", "platformioTarget": "pico2", "architecture": "rp2350",
         "activelySupported": True, "displayName": "Raspberry Pi Pico 2"}
    )
    assert pico2.architecture == Architecture.UNKNOWN
    ports = [make_port("/dev/ttyS0", "Unknown")]
    assert match_targets(ports, [pico2]) is None

    match = match_targets([make_port("/dev/ttyACM0", "RP2350 Boot")], [pico2])
    assert match.target == pico2
    assert match.matched_on == "architecture"


def test_catalog_architecture_spelled_unknown_never_matches() -> None:
    target = make_target("mystery", Architecture.UNKNOWN, "Mystery Board", hw_model=99)
    assert match_targets([make_port("/dev/ttyS0", "Unknown")], [target]) is None


def test_empty_port_list_never_matches() -> None:
    assert match_targets([], [RAK, HELTEC], MatchFallback.LAST_PORT) is None


def test_fallback_parse() -> None:
    assert MatchFallback.parse("last-port") == MatchFallback.LAST_PORT
    assert MatchFallback.parse(None) == MatchFallback.NONE
    assert MatchFallback.parse("bogus") == MatchFallback.NONE


def test_find_target_by_hw_model() -> None:
    assert find_target_by_hw_model([RAK, HELTEC], 43) == HELTEC
    assert find_target_by_hw_model([RAK, HELTEC], 1) is None


def test_bootloader_port_prefers_new_jtag_interface() -> None:
    before = [make_port("/dev/ttyACM0", "Heltec V3")]
    after = [
        make_port("/dev/ttyACM0", "Heltec V3"),
        make_port("/dev/ttyACM1", "Other device"),
        make_port("/dev/ttyACM2", "USB JTAG/serial debug unit"),
    ]
    port = find_bootloader_port(before, after, "/dev/ttyACM0")
    assert port.path == "/dev/ttyACM2"


def test_bootloader_port_falls_back_to_original_path() -> None:
    before = [make_port("/dev/ttyUSB0", "CP2102", "Silicon Labs")]
    after = [make_port("/dev/ttyUSB0", "CP2102", "Silicon Labs")]
    assert find_bootloader_port(before, after, "/dev/ttyUSB0").path == "/dev/ttyUSB0"


def test_bootloader_port_missing() -> None:
    before = [make_port("/dev/ttyACM0", "Heltec V3")]
    assert find_bootloader_port(before, [], "/dev/ttyACM0") is None
