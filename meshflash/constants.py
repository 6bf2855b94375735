"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.
"""

HARDWARE_CATALOG_URL = "https://api.meshtastic.org/resource/deviceHardware"
FIRMWARE_RELEASES_URL = "https://api.meshtastic.org/github/firmware/list"

HTTP_TIMEOUT = 10  # seconds
DOWNLOAD_TIMEOUT = 30  # seconds
DOWNLOAD_CHUNK_SIZE = 8192
COPY_CHUNK_SIZE = 65536
RELEASE_LIMIT = 4

# Baud rates
TOUCH_BAUD_RATE = 1200
ROM_BAUD_RATE = 115200
FLASH_BAUD_RATE = 921600

# SLIP framing
SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD

# Serial timings (seconds)
READ_POLL_INTERVAL = 0.05
DEFAULT_FRAME_TIMEOUT = 3.0
TOUCH_HOLD_TIME = 0.25
RESET_PULSE_TIME = 0.1
TOUCH_SETTLE_DELAY = 2.0

# Redetection windows (seconds)
ERASE_SETTLE_DELAY = 4.0
DRIVE_WAIT_TIMEOUT = 30.0
PORT_WAIT_TIMEOUT = 20.0
POLL_INITIAL_DELAY = 0.5
POLL_MAX_DELAY = 4.0

# ESP32 flash layout (4MB partition table)
UPDATE_IMAGE_OFFSET = 0x10000
FACTORY_IMAGE_OFFSET = 0x0
OTA_IMAGE_OFFSET = 0x260000
LITTLEFS_IMAGE_OFFSET = 0x300000

# Firmware customization
OPTIONS_FILENAMES = ("userPrefs.jsonc", "userPrefs.json")
OPTION_PREFIX = "USERPREFS_"
TZ_OPTION_NAME = "USERPREFS_TZ_STRING"
TZ_PLACEHOLDER = "tzpl^ceholder".ljust(54)

# Removable drive erase images, looked up in the configured assets path
ERASE_IMAGES = {
    "nrf52840": "Meshtastic_nRF52_factory_erase_v2.uf2",
    "rp2040": "flash_nuke.uf2",
}

# Bootloader port re-identification hints
BOOTLOADER_NAME_HINTS = ("jtag",)
BOOTLOADER_MANUFACTURER_HINTS = ("espressif", "silicon labs", "wch", "ftdi")
