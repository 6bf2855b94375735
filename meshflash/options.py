"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Firmware Option Codec Module

The firmware source ships a commented JSON file (userPrefs.jsonc) with one
preprocessor define per key. Entries that are commented out are defaults the
user may switch on. This module turns that file into typed options and
renders edited options back into the file the build expects.
"""

import os
import re
import json
import base64
import logging
import zipfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from meshflash.constants import OPTIONS_FILENAMES, OPTION_PREFIX, TZ_OPTION_NAME, TZ_PLACEHOLDER
from meshflash.errors import OptionParseError
from meshflash.archive import extract_source_archive
from meshflash.models import CustomFirmwareOption, OptionType
from meshflash.utils import is_hex_byte

logger = logging.getLogger("Options")

NUMBER_REGEX = re.compile(r"[+-]?(0[xX][0-9a-fA-F]+|(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?)")

STRING, LITERAL, PUNCT, COMMENT = "string", "literal", "punct", "comment"


def _tokenize(text: str) -> List[Tuple[str, str, int]]:
    """
    Splits options text into (kind, value, line) tokens. Comments are kept as
    tokens so commented-out entries can still be recognised.
    """
    tokens = []
    i, line, length = 0, 1, len(text)
    while i < length:
        ch = text[i]
        if ch == "\n":
            line += 1
            i += 1
        elif ch.isspace():
            i += 1
        elif ch in "{}:,":
            tokens.append((PUNCT, ch, line))
            i += 1
        elif ch == '"':
            value, i = _read_string(text, i, line)
            tokens.append((STRING, value, line))
        elif text.startswith("//", i):
            end = text.find("\n", i)
            end = length if end < 0 else end
            tokens.append((COMMENT, text[i + 2 : end], line))
            i = end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            if end < 0:
                raise OptionParseError(f"Unterminated block comment on line {line}")
            line += text.count("\n", i, end)
            i = end + 2
        else:
            start = i
            while i < length and not text[i].isspace() and text[i] not in '{}:,"':
                if text.startswith("//", i):
                    break
                i += 1
            tokens.append((LITERAL, text[start:i], line))
    return tokens


def _read_string(text: str, start: int, line: int) -> Tuple[str, int]:
    i = start + 1
    while i < len(text):
        if text[i] == "\\":
            i += 2
            continue
        if text[i] == "\n":
            break
        if text[i] == '"':
            try:
                return json.loads(text[start : i + 1]), i + 1
            except json.JSONDecodeError as e:
                raise OptionParseError(f"Invalid string on line {line}: {e}") from e
        i += 1
    raise OptionParseError(f"Unterminated string on line {line}")


def _commented_pair(comment: str) -> Optional[Tuple[str, str]]:
    """A comment holding exactly one "KEY": "value" pair, as a disabled entry."""
    try:
        tokens = [t for t in _tokenize(comment) if t[0] != COMMENT]
    except OptionParseError:
        return None
    if tokens and tokens[-1][:2] == (PUNCT, ","):
        tokens = tokens[:-1]
    if len(tokens) != 3:
        return None
    key, colon, value = tokens
    if key[0] != STRING or colon[:2] != (PUNCT, ":") or value[0] not in (STRING, LITERAL):
        return None
    return key[1], value[1]


def parse_options_text(text: str) -> List[CustomFirmwareOption]:
    """
    Parses the content of an options file. Commas between pairs are optional,
    since commenting out the last entry often leaves the file without one.
    """
    tokens = _tokenize(text)
    entries: Dict[str, CustomFirmwareOption] = {}

    def add(name: str, value: str, enabled: bool):
        existing = entries.get(name)
        if existing is not None and existing.enabled and not enabled:
            return
        try:
            entries[name] = build_option(name, value, enabled)
        except OptionParseError as e:
            if enabled:
                raise
            logger.warning(f"Ignoring commented out option {name}: {e}")

    pos = 0

    def next_token(expected: str):
        nonlocal pos
        while pos < len(tokens) and tokens[pos][0] == COMMENT:
            pair = _commented_pair(tokens[pos][1])
            if pair:
                add(*pair, enabled=False)
            pos += 1
        if pos >= len(tokens):
            raise OptionParseError(f"Unexpected end of options file, expected {expected}")
        token = tokens[pos]
        pos += 1
        return token

    token = next_token("'{'")
    if token[:2] != (PUNCT, "{"):
        raise OptionParseError(f"Expected '{{' on line {token[2]}, got '{token[1]}'")

    while True:
        token = next_token("a key or '}'")
        if token[:2] == (PUNCT, "}"):
            break
        if token[:2] == (PUNCT, ","):
            continue
        if token[0] != STRING:
            raise OptionParseError(f"Expected a quoted key on line {token[2]}, got '{token[1]}'")
        name = token[1]
        colon = next_token("':'")
        if colon[:2] != (PUNCT, ":"):
            raise OptionParseError(f"Expected ':' after '{name}' on line {colon[2]}")
        value = next_token(f"a value for '{name}'")
        if value[0] not in (STRING, LITERAL):
            raise OptionParseError(f"Expected a value for '{name}' on line {value[2]}")
        add(name, value[1], enabled=True)

    for kind, value, line in tokens[pos:]:
        if kind == COMMENT:
            pair = _commented_pair(value)
            if pair:
                add(*pair, enabled=False)
        else:
            raise OptionParseError(f"Unexpected '{value}' after the closing brace on line {line}")

    return list(entries.values())


def infer_type(value: str) -> OptionType:
    value = value.strip()
    if value.lower() in ("true", "false"):
        return OptionType.BOOLEAN
    if NUMBER_REGEX.fullmatch(value):
        return OptionType.NUMBER
    if value.startswith("{") and value.endswith("}"):
        return OptionType.HEX_ARRAY
    return OptionType.STRING


def make_label(name: str) -> str:
    """USERPREFS_LORA_REGION -> 'Lora Region'"""
    if name.startswith(OPTION_PREFIX):
        name = name[len(OPTION_PREFIX) :]
    return " ".join(part.capitalize() for part in name.split("_") if part)


def decode_hex_array(literal: str) -> bytes:
    """'{ 0x01, 0x02 }' -> b'\\x01\\x02'"""
    literal = literal.strip()
    if not (literal.startswith("{") and literal.endswith("}")):
        raise OptionParseError(f"Hex array must be enclosed in braces: {literal}")
    tokens = [t.strip() for t in literal[1:-1].split(",")]
    if tokens and not tokens[-1]:
        tokens.pop()
    data = bytearray()
    for token in tokens:
        if not is_hex_byte(token):
            raise OptionParseError(f"Invalid hex byte '{token}' in {literal}")
        data.append(int(token, 16))
    return bytes(data)


def encode_hex_array(data: bytes) -> str:
    if not data:
        return "{ }"
    return "{ " + ", ".join(f"0x{b:02x}" for b in data) + " }"


def build_option(name: str, value: str, enabled: bool = True) -> CustomFirmwareOption:
    option_type = infer_type(value)
    if option_type == OptionType.HEX_ARRAY:
        value = base64.b64encode(decode_hex_array(value)).decode("ascii")
    return CustomFirmwareOption(name, make_label(name), option_type, value, enabled)


def encode_options(options: Iterable[CustomFirmwareOption]) -> str:
    """
    Renders enabled options as the JSON object the firmware build reads.
    Disabled options are left out.
    """
    result = {}
    for option in options:
        if not option.enabled:
            continue
        if option.type == OptionType.HEX_ARRAY:
            try:
                data = base64.b64decode(option.value, validate=True)
            except ValueError as e:
                raise OptionParseError(f"Option {option.name} does not hold valid base64") from e
            result[option.name] = encode_hex_array(data)
        else:
            result[option.name] = option.value

    if result and TZ_OPTION_NAME not in result:
        result[TZ_OPTION_NAME] = TZ_PLACEHOLDER
    return json.dumps(result, indent=2)


def find_options_file(source_dir) -> Optional[Path]:
    root = Path(source_dir)
    for filename in OPTIONS_FILENAMES:
        if (root / filename).is_file():
            return root / filename
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in OPTIONS_FILENAMES:
            if filename in filenames:
                return Path(dirpath) / filename
    return None


def extract_options(archive_path) -> List[CustomFirmwareOption]:
    """
    Reads the customizable options of a firmware source, given either the
    source zip or an already extracted directory. A source without an options
    file has no options.
    """
    path = Path(archive_path)
    if path.is_file() and zipfile.is_zipfile(path):
        source_dir = extract_source_archive(path)
    elif path.is_dir():
        source_dir = path
    else:
        raise OptionParseError(f"Not a source archive or directory: {path}")

    options_file = find_options_file(source_dir)
    if options_file is None:
        logger.warning(f"No options file found in {source_dir}")
        return []

    logger.debug(f"Reading options from {options_file}")
    try:
        text = options_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise OptionParseError(f"Could not read {options_file}: {e}") from e
    options = parse_options_text(text)
    logger.info(f"Found {len(options)} firmware options in {options_file.name}")
    return options
