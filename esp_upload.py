#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Flash tool for the ESP ROM bootloader via USB-serial.

Usage:
    python esp_upload.py --port /dev/ttyUSB0 chip-id
    python esp_upload.py --port /dev/ttyUSB0 write-flash firmware.bin --offset 0x10000
    python esp_upload.py --port /dev/ttyUSB0 hard-reset

Requirements:
    pip install pyserial
"""

import argparse
import logging
import sys
from pathlib import Path

from esp_protocol import (
    ChipFamily,
    ESP8266Family,
    ESP32Family,
    ESPLoader,
    LoaderError,
    SerialTransport,
    StubImage,
    TransportError,
    UploadError,
    write_flash_file,
)

CHIPS = {
    "auto": ChipFamily,
    "esp8266": ESP8266Family,
    "esp32": ESP32Family,
}


def cmd_chip_id(loader: ESPLoader):
    """Print chip identification."""
    info = loader.get_chip_info()

    print("Chip:")
    print(f"  Name:     {info.name}")
    if info.revision is not None:
        print(f"  Revision: {info.revision}")
    print(f"  Features: {', '.join(info.features)}")
    print(f"  MAC:      {info.mac}")


def cmd_read_reg(loader: ESPLoader, address: int):
    """Read a register."""
    value = loader.read_reg(address)
    print(f"0x{address:08x} = 0x{value:08x}")


def cmd_security_info(loader: ESPLoader):
    """Print security information."""
    info = loader.get_security_info()

    print("Security info:")
    print(f"  Flags:           0x{info.flags:08x}")
    print(f"  Flash crypt cnt: 0x{info.flash_crypt_cnt:02x}")
    print(f"  Key purposes:    {info.key_purposes.hex()}")
    if info.chip_id is not None:
        print(f"  Chip ID:         {info.chip_id}")
        print(f"  API version:     {info.api_version}")


def cmd_write_flash(loader: ESPLoader, path: Path, offset: int,
                    compress: bool, verify: bool):
    """Write a binary file to flash."""
    def progress(sent: int, total: int):
        pct = sent * 100 // total
        print(f"\rWriting: {pct:3d}% ({sent}/{total} bytes)", end="", flush=True)

    try:
        size = write_flash_file(
            loader, path, offset,
            compress=compress,
            verify=verify,
            progress_callback=progress,
        )
    except UploadError as e:
        print(f"\nFAILED: {e}")
        return False

    print(f"\rWrote {size} bytes at 0x{offset:08x}.          ")
    return True


def cmd_hard_reset(loader: ESPLoader):
    """Reset into the application."""
    print("Hard resetting... ", end="", flush=True)
    print("OK" if loader.hard_reset() else "FAILED")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Flash tool for the ESP ROM serial bootloader"
    )
    parser.add_argument(
        "--port", "-p",
        required=True,
        help="Serial port (e.g., /dev/ttyUSB0)"
    )
    parser.add_argument(
        "--baud", "-b",
        type=int,
        default=115200,
        help="Baud rate after connecting (default 115200)"
    )
    parser.add_argument(
        "--chip", "-c",
        choices=sorted(CHIPS),
        default="auto",
        help="Target chip family (default: detect)"
    )
    parser.add_argument(
        "--stub",
        type=Path,
        help="Stub loader JSON to upload after connecting"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("chip-id", help="Identify the chip")

    read_reg_parser = subparsers.add_parser("read-reg", help="Read a register")
    read_reg_parser.add_argument("address", type=lambda s: int(s, 0),
                                 help="Register address")

    subparsers.add_parser("security-info", help="Show security information")

    write_parser = subparsers.add_parser("write-flash", help="Write a binary to flash")
    write_parser.add_argument("file", type=Path, help="Firmware binary file")
    write_parser.add_argument("--offset", "-o", type=lambda s: int(s, 0), default=0,
                              help="Flash offset (default 0)")
    write_parser.add_argument("--no-compress", dest="compress", action="store_false",
                              help="Send raw blocks instead of a deflate stream")
    write_parser.add_argument("--no-verify", dest="verify", action="store_false",
                              help="Skip MD5 verification")

    subparsers.add_parser("hard-reset", help="Reset into the application")

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    if args.command == "write-flash" and not args.file.exists():
        print(f"Error: File not found: {args.file}")
        sys.exit(1)

    stub = StubImage.from_json(args.stub) if args.stub else None

    try:
        transport = SerialTransport(args.port)
    except TransportError as e:
        print(f"Error opening {args.port}: {e}")
        sys.exit(1)

    loader = ESPLoader(transport, chip=CHIPS[args.chip](stub=stub))
    ok = True
    try:
        loader.start()

        if args.command == "hard-reset":
            cmd_hard_reset(loader)
            return

        print("Connecting... ", end="", flush=True)
        if not loader.connect():
            print("FAILED")
            sys.exit(1)
        print("OK")

        if args.chip == "auto":
            loader.detect_chip()
        print(f"Chip is {loader.chip.CHIP_NAME}")

        if stub is not None:
            loader.load_stub()
        if args.baud != loader.session.baudrate:
            loader.change_baud(args.baud)

        if args.command == "chip-id":
            cmd_chip_id(loader)
        elif args.command == "read-reg":
            cmd_read_reg(loader, args.address)
        elif args.command == "security-info":
            cmd_security_info(loader)
        elif args.command == "write-flash":
            ok = cmd_write_flash(loader, args.file, args.offset,
                                 args.compress, args.verify)
    except LoaderError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        loader.release()
        transport.close()

    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
