# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Per-chip capabilities.

An ESPLoader is constructed with one ChipFamily instance and delegates
chip identification, MAC retrieval, erase-size policy, write-size
constants and the optional stub image to it.
"""

import base64
import json
import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple, Type

from .transport import NotSupportedError

if TYPE_CHECKING:
    from .loader import ESPLoader

logger = logging.getLogger(__name__)

# ROM address whose value identifies the chip family.
CHIP_DETECT_MAGIC_REG_ADDR = 0x40001000


@dataclass
class StubImage:
    """RAM-resident secondary loader: code and data segments plus entry point."""
    entry: int
    text: bytes
    text_start: int
    data: bytes = b""
    data_start: int = 0

    @classmethod
    def from_json(cls, path: Path) -> "StubImage":
        """
        Load a stub from the JSON layout shipped with flasher stubs
        (base64 "text"/"data" with their load addresses).
        """
        raw = json.loads(Path(path).read_text())
        return cls(
            entry=raw["entry"],
            text=base64.b64decode(raw["text"]),
            text_start=raw["text_start"],
            data=base64.b64decode(raw.get("data", "")),
            data_start=raw.get("data_start", 0),
        )

    def segments(self) -> List[Tuple[int, bytes]]:
        """(load address, bytes) for each non-empty segment."""
        return [
            (start, payload)
            for start, payload in ((self.text_start, self.text), (self.data_start, self.data))
            if payload
        ]


@dataclass
class ChipInfo:
    """Identification read from the chip."""
    name: str
    mac: str
    revision: Optional[int] = None
    features: List[str] = field(default_factory=list)


def format_mac(mac: Tuple[int, ...]) -> str:
    return ":".join(f"{b:02x}" for b in mac)


class ChipFamily:
    """
    Generic capability set.

    Identification and MAC retrieval have no generic implementation.
    get_erase_size() returns the requested size unchanged; real chips must
    override it with their erase-sector policy.
    """

    CHIP_NAME = "Espressif device"
    CHIP_DETECT_MAGIC_VALUE: Tuple[int, ...] = ()

    FLASH_WRITE_SIZE = 0x400
    STUB_FLASH_WRITE_SIZE = 0x4000
    RAM_WRITE_SIZE = 0x1800
    FLASH_SECTOR_SIZE = 0x1000
    STATUS_BYTES_LENGTH = 2

    # ROM support for FLASH_DEFL_* and SPI_FLASH_MD5; the stub has both.
    SUPPORTS_ROM_COMPRESSION = True
    SUPPORTS_ROM_MD5 = True

    def __init__(self, stub: Optional[StubImage] = None):
        self.stub = stub

    def read_mac(self, loader: "ESPLoader") -> str:
        raise NotSupportedError(f"read_mac not supported for {self.CHIP_NAME}")

    def get_chip_info(self, loader: "ESPLoader") -> ChipInfo:
        raise NotSupportedError(f"get_chip_info not supported for {self.CHIP_NAME}")

    def get_erase_size(self, offset: int, size: int) -> int:
        return size

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class ESP8266Family(ChipFamily):
    CHIP_NAME = "ESP8266"
    CHIP_DETECT_MAGIC_VALUE = (0xFFF0C101,)

    SUPPORTS_ROM_COMPRESSION = False
    SUPPORTS_ROM_MD5 = False

    OTP_MAC0 = 0x3FF00050
    OTP_MAC1 = 0x3FF00054
    OTP_MAC2 = 0x3FF00058
    OTP_MAC3 = 0x3FF0005C

    def _read_efuses(self, loader: "ESPLoader") -> int:
        words = [loader.read_reg(addr) for addr in
                 (self.OTP_MAC0, self.OTP_MAC1, self.OTP_MAC2, self.OTP_MAC3)]
        return words[3] << 96 | words[2] << 64 | words[1] << 32 | words[0]

    def read_mac(self, loader: "ESPLoader") -> str:
        mac0 = loader.read_reg(self.OTP_MAC0)
        mac1 = loader.read_reg(self.OTP_MAC1)
        mac3 = loader.read_reg(self.OTP_MAC3)

        if mac3 != 0:
            oui = ((mac3 >> 16) & 0xFF, (mac3 >> 8) & 0xFF, mac3 & 0xFF)
        elif ((mac1 >> 16) & 0xFF) == 0:
            oui = (0x18, 0xFE, 0x34)
        elif ((mac1 >> 16) & 0xFF) == 1:
            oui = (0xAC, 0xD0, 0x74)
        else:
            raise NotSupportedError("Unknown OUI in ESP8266 OTP")

        return format_mac(oui + ((mac1 >> 8) & 0xFF, mac1 & 0xFF, (mac0 >> 24) & 0xFF))

    def get_chip_info(self, loader: "ESPLoader") -> ChipInfo:
        efuses = self._read_efuses(loader)
        is_8285 = (efuses & ((1 << 4) | (1 << 80))) != 0
        features = ["WiFi"]
        if is_8285:
            features.append("Embedded Flash")
        return ChipInfo(
            name="ESP8285" if is_8285 else "ESP8266EX",
            mac=self.read_mac(loader),
            features=features,
        )

    def get_erase_size(self, offset: int, size: int) -> int:
        """
        Work around the ROM erase bug: the ROM erases the first block's
        head sectors twice, so ask for fewer sectors than we need.
        """
        sectors_per_block = 16
        sector_size = self.FLASH_SECTOR_SIZE
        num_sectors = (size + sector_size - 1) // sector_size
        start_sector = offset // sector_size

        head_sectors = sectors_per_block - (start_sector % sectors_per_block)
        if num_sectors < head_sectors:
            head_sectors = num_sectors

        if num_sectors < 2 * head_sectors:
            return (num_sectors + 1) // 2 * sector_size
        return (num_sectors - head_sectors) * sector_size


class ESP32Family(ChipFamily):
    CHIP_NAME = "ESP32"
    CHIP_DETECT_MAGIC_VALUE = (0x00F01D83,)

    # ESP32 ROM appends 4 status bytes; the stub uses 2.
    STATUS_BYTES_LENGTH = 4

    EFUSE_RD_REG_BASE = 0x3FF5A000
    DR_REG_SYSCON_BASE = 0x3FF66000
    APB_CTL_DATE_ADDR = DR_REG_SYSCON_BASE + 0x7C

    PACKAGES = {
        0: "ESP32-D0WDQ6",
        1: "ESP32-D0WD",
        2: "ESP32-D2WD",
        4: "ESP32-U4WDH",
        5: "ESP32-PICO-D4",
        6: "ESP32-PICO-V3-02",
    }

    def read_efuse(self, loader: "ESPLoader", n: int) -> int:
        return loader.read_reg(self.EFUSE_RD_REG_BASE + 4 * n)

    def read_mac(self, loader: "ESPLoader") -> str:
        words = [self.read_efuse(loader, 2), self.read_efuse(loader, 1)]
        bitstring = struct.pack(">II", *words)
        # First two bytes are the efuse CRC.
        return format_mac(tuple(bitstring[2:8]))

    def get_pkg_version(self, word3: int) -> int:
        pkg_version = (word3 >> 9) & 0x07
        pkg_version += ((word3 >> 2) & 0x1) << 3
        return pkg_version

    def get_chip_revision(self, loader: "ESPLoader", word3: int) -> int:
        word5 = self.read_efuse(loader, 5)
        apb_ctl_date = loader.read_reg(self.APB_CTL_DATE_ADDR)

        rev_bit0 = (word3 >> 15) & 0x1
        rev_bit1 = (word5 >> 20) & 0x1
        rev_bit2 = (apb_ctl_date >> 31) & 0x1
        combined = rev_bit2 << 2 | rev_bit1 << 1 | rev_bit0
        return {0: 0, 1: 1, 3: 2, 7: 3}.get(combined, 0)

    def get_chip_info(self, loader: "ESPLoader") -> ChipInfo:
        word3 = self.read_efuse(loader, 3)
        pkg_version = self.get_pkg_version(word3)

        features = ["WiFi"]
        if not word3 & (1 << 1):
            features.append("BT")
        features.append("Single Core" if word3 & (1 << 0) else "Dual Core")

        return ChipInfo(
            name=self.PACKAGES.get(pkg_version, f"ESP32 (unknown package {pkg_version})"),
            mac=self.read_mac(loader),
            revision=self.get_chip_revision(loader, word3),
            features=features,
        )


CHIP_FAMILIES: List[Type[ChipFamily]] = [ESP8266Family, ESP32Family]


def detect_family(magic: int) -> Type[ChipFamily]:
    """
    Map the value at CHIP_DETECT_MAGIC_REG_ADDR to a chip family.

    Raises:
        NotSupportedError: If no known family matches
    """
    for family in CHIP_FAMILIES:
        if magic in family.CHIP_DETECT_MAGIC_VALUE:
            return family
    raise NotSupportedError(f"Unknown chip magic value 0x{magic:08x}")
