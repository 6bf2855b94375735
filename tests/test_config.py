from __future__ import annotations

import json

from meshflash.config import ConfigManager, get_local_hardware_list


def test_values_are_persisted(config_manager, home) -> None:
    config_manager.set_value("port", "/dev/ttyACM0")
    assert json.loads((home / "config.json").read_text()) == {"port": "/dev/ttyACM0"}
    assert ConfigManager() is config_manager

    config_manager.set_value("port", None)
    assert config_manager.get_value("port", "none") == "none"
    assert json.loads((home / "config.json").read_text()) == {}


def test_invalid_config_file_is_reset(home) -> None:
    home.mkdir(parents=True)
    (home / "config.json").write_text("{not json")
    assert ConfigManager().get_value("port") is None


def test_local_hardware_list(home) -> None:
    assert get_local_hardware_list() is None
    home.mkdir(parents=True)
    (home / "hardware.json").write_text('{"hwModel": 1}')
    assert get_local_hardware_list() is None
    (home / "hardware.json").write_text('[{"hwModel": 1}]')
    assert get_local_hardware_list() == [{"hwModel": 1}]
