from __future__ import annotations

import base64
import json
import os
import zipfile

import pytest

from meshflash.constants import TZ_OPTION_NAME, TZ_PLACEHOLDER
from meshflash.errors import OptionParseError
from meshflash.models import CustomFirmwareOption, OptionType
from meshflash.options import (
    decode_hex_array,
    encode_hex_array,
    encode_options,
    extract_options,
    infer_type,
    make_label,
    parse_options_text,
)

USER_PREFS = """{
  // "USERPREFS_BUTTON_PIN": "36",
  "USERPREFS_CHANNEL_0_PSK": "{ 0x38, 0x4b, 0xbc }",
  "USERPREFS_CONFIG_LORA_REGION": "meshtastic_Config_LoRaConfig_RegionCode_EU_868" // region
  "USERPREFS_LORA_HOP_LIMIT": "3",
  "USERPREFS_URL": "https://meshtastic.org/e/#abc",
  // plain commentary without a pair
  "USERPREFS_EVENT_MODE": "true"
  // "USERPREFS_MQTT_ENABLED": "false"
}
"""


def test_scenario_round_trip() -> None:
    options = parse_options_text('{"USERPREFS_TEST_BOOL":"true","USERPREFS_CH":"{0x01,0x02}"}')
    assert [(o.name, o.type, o.value) for o in options] == [
        ("USERPREFS_TEST_BOOL", OptionType.BOOLEAN, "true"),
        ("USERPREFS_CH", OptionType.HEX_ARRAY, base64.b64encode(b"\x01\x02").decode()),
    ]
    assert json.loads(encode_options(options)) == {
        "USERPREFS_TEST_BOOL": "true",
        "USERPREFS_CH": "{ 0x01, 0x02 }",
        TZ_OPTION_NAME: TZ_PLACEHOLDER,
    }


def test_parses_commented_file_with_missing_commas() -> None:
    options = {o.name: o for o in parse_options_text(USER_PREFS)}
    assert set(options) == {
        "USERPREFS_BUTTON_PIN",
        "USERPREFS_CHANNEL_0_PSK",
        "USERPREFS_CONFIG_LORA_REGION",
        "USERPREFS_LORA_HOP_LIMIT",
        "USERPREFS_URL",
        "USERPREFS_EVENT_MODE",
        "USERPREFS_MQTT_ENABLED",
    }
    assert options["USERPREFS_BUTTON_PIN"].enabled is False
    assert options["USERPREFS_BUTTON_PIN"].type == OptionType.NUMBER
    assert options["USERPREFS_MQTT_ENABLED"].enabled is False
    assert options["USERPREFS_CHANNEL_0_PSK"].type == OptionType.HEX_ARRAY
    assert base64.b64decode(options["USERPREFS_CHANNEL_0_PSK"].value) == b"\x38\x4b\xbc"
    assert options["USERPREFS_URL"].value == "https://meshtastic.org/e/#abc"
    assert options["USERPREFS_CONFIG_LORA_REGION"].label == "Config Lora Region"


def test_encoding_is_idempotent() -> None:
    first = encode_options(parse_options_text(USER_PREFS))
    second = encode_options(parse_options_text(first))
    assert first == second
    assert "USERPREFS_BUTTON_PIN" not in json.loads(first)


def test_no_placeholder_without_options() -> None:
    assert json.loads(encode_options([])) == {}
    disabled = CustomFirmwareOption("USERPREFS_X", "X", OptionType.STRING, "x", enabled=False)
    assert json.loads(encode_options([disabled])) == {}


def test_existing_timezone_is_kept() -> None:
    options = parse_options_text('{"USERPREFS_TZ_STRING": "CET-1CEST"}')
    assert json.loads(encode_options(options)) == {TZ_OPTION_NAME: "CET-1CEST"}


@pytest.mark.parametrize(
    "value, expected",
    [
        ("true", OptionType.BOOLEAN),
        ("false", OptionType.BOOLEAN),
        ("42", OptionType.NUMBER),
        ("-1.5", OptionType.NUMBER),
        ("0x1F", OptionType.NUMBER),
        ("{ 0x01 }", OptionType.HEX_ARRAY),
        ("{}", OptionType.HEX_ARRAY),
        ("", OptionType.STRING),
        ("meshtastic_Config_LoRaConfig_RegionCode_US", OptionType.STRING),
    ],
)
def test_infer_type(value, expected) -> None:
    assert infer_type(value) == expected


def test_make_label() -> None:
    assert make_label("USERPREFS_LORA_HOP_LIMIT") == "Lora Hop Limit"
    assert make_label("CUSTOM_NAME") == "Custom Name"


def test_hex_arrays_round_trip_for_all_lengths() -> None:
    for length in range(65):
        data = os.urandom(length)
        assert decode_hex_array(encode_hex_array(data)) == data
    assert encode_hex_array(b"") == "{ }"
    assert decode_hex_array("{}") == b""


@pytest.mark.parametrize("literal", ["{ 0x01, 0xZZ }", "{ 0x100 }", "0x01, 0x02", "{ 1, 2 }"])
def test_malformed_hex_array(literal) -> None:
    with pytest.raises(OptionParseError):
        decode_hex_array(literal)


@pytest.mark.parametrize(
    "text",
    [
        '"USERPREFS_A": "1"',
        '{"USERPREFS_A" "1"}',
        '{"USERPREFS_A": "1"',
        '{"USERPREFS_A": "unterminated}',
        '{"USERPREFS_CH": "{ 0xQQ }"}',
    ],
)
def test_malformed_options_file(text) -> None:
    with pytest.raises(OptionParseError):
        parse_options_text(text)


def test_broken_commented_out_option_is_skipped() -> None:
    text = '{\n  // "USERPREFS_OLD_PSK": "{ 0xZZ }",\n  "USERPREFS_EVENT_MODE": "true"\n  // "USERPREFS_LAST": "{ 0x100 }"\n}\n'
    options = parse_options_text(text)
    assert [o.name for o in options] == ["USERPREFS_EVENT_MODE"]


def test_extract_from_directory(tmp_path) -> None:
    (tmp_path / "userPrefs.jsonc").write_text(USER_PREFS)
    assert len(extract_options(tmp_path)) == 7


def test_missing_options_file_yields_no_options(tmp_path) -> None:
    (tmp_path / "platformio.ini").write_text("[env]\n")
    assert extract_options(tmp_path) == []


def test_extract_from_source_zip(tmp_path) -> None:
    archive = tmp_path / "v2.5.6.abc.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("firmware-2.5.6.abc/userPrefs.jsonc", '{"USERPREFS_EVENT_MODE": "true"}')
        zf.writestr("firmware-2.5.6.abc/src/main.cpp", "int main() {}")
    options = extract_options(archive)
    assert [o.name for o in options] == ["USERPREFS_EVENT_MODE"]
    assert (tmp_path / "v2.5.6.abc" / "firmware-2.5.6.abc" / "userPrefs.jsonc").exists()
