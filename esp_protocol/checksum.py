# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Payload checksum used by the ROM bootloader.

Data-bearing write commands (MEM_DATA, FLASH_DATA, FLASH_DEFL_DATA) carry
this value in the checksum field of the command header. The ROM rejects
the block with an invalid-CRC error if it does not match.
"""

CHECKSUM_SEED = 0xEF


def checksum(data: bytes, seed: int = CHECKSUM_SEED) -> int:
    """
    Compute the bootloader checksum of a payload.

    Args:
        data: Bytes to compute checksum for
        seed: Initial value (default 0xEF)

    Returns:
        Checksum value, widened to 32 bits for the packet header
    """
    value = seed
    for byte in data:
        value ^= byte
    return value & 0xFFFFFFFF
