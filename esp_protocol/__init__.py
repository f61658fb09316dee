# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
ESP ROM bootloader protocol - Python client library.

This package talks to the serial bootloader of Espressif chips over a
USB-serial link: reset into download mode, sync, and write RAM or flash.

Example usage:
    from esp_protocol import ESPLoader, SerialTransport, ESP32Family, write_flash

    with SerialTransport("/dev/ttyUSB0") as transport:
        with ESPLoader(transport, chip=ESP32Family()) as loader:
            if not loader.connect():
                raise SystemExit("No bootloader found")

            print(f"MAC: {loader.read_mac()}")

            write_flash(
                loader,
                image=open("firmware.bin", "rb").read(),
                offset=0x10000,
                progress_callback=lambda sent, total: print(f"{sent}/{total}")
            )

            loader.hard_reset()
"""

from .channel import CommandChannel
from .checksum import checksum
from .chips import (
    ChipFamily,
    ChipInfo,
    ESP8266Family,
    ESP32Family,
    StubImage,
    detect_family,
)
from .flasher import write_flash, write_flash_file
from .loader import ESPLoader, Session
from .protocol import (
    Command,
    CommandResult,
    RomError,
    SecurityInfo,
    encode_command,
    decode_response,
    check_response,
    parse_security_info,
)
from .reader import SlipReader
from .reset import (
    ResetStrategy,
    ClassicReset,
    USBJTAGSerialReset,
    HardReset,
    construct_reset_sequence,
)
from .slip import slip_encode, slip_decode, SlipDecoder
from .transport import (
    BaseTransport,
    SerialTransport,
    LoaderError,
    TransportError,
    ConnectionClosedError,
    FrameTimeoutError,
    ProtocolError,
    MalformedResponseError,
    CommandFailedError,
    NotSupportedError,
    UploadError,
)

__version__ = "0.1.0"

__all__ = [
    # SLIP
    "slip_encode",
    "slip_decode",
    "SlipDecoder",
    # Checksum
    "checksum",
    # Protocol types
    "Command",
    "CommandResult",
    "RomError",
    "SecurityInfo",
    # Protocol encoding
    "encode_command",
    "decode_response",
    "check_response",
    "parse_security_info",
    # Engine
    "SlipReader",
    "CommandChannel",
    "ESPLoader",
    "Session",
    "write_flash",
    "write_flash_file",
    # Reset
    "ResetStrategy",
    "ClassicReset",
    "USBJTAGSerialReset",
    "HardReset",
    "construct_reset_sequence",
    # Chips
    "ChipFamily",
    "ChipInfo",
    "ESP8266Family",
    "ESP32Family",
    "StubImage",
    "detect_family",
    # Transport
    "BaseTransport",
    "SerialTransport",
    "LoaderError",
    "TransportError",
    "ConnectionClosedError",
    "FrameTimeoutError",
    "ProtocolError",
    "MalformedResponseError",
    "CommandFailedError",
    "NotSupportedError",
    "UploadError",
]
