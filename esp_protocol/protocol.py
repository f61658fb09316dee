# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
ROM bootloader protocol definitions and serialization.

Every request and response is an 8-byte little-endian header followed by
a data payload, carried inside a SLIP frame:

    request:  direction=0x00, opcode, length (u16), checksum (u32)
    response: direction=0x01, opcode, length (u16), value (u32)

Responses end with status bytes; the first of them is zero on success.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

from .slip import slip_encode
from .transport import CommandFailedError, MalformedResponseError

HEADER_FORMAT = "<BBHI"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

DIRECTION_REQUEST = 0x00
DIRECTION_RESPONSE = 0x01

STATUS_BYTES_LENGTH = 2

SYNC_PAYLOAD = b"\x07\x07\x12\x20" + b"\x55" * 32

SECURITY_INFO_SHORT_LENGTH = 12


class Command(IntEnum):
    """Bootloader opcodes."""
    FLASH_BEGIN = 0x02
    FLASH_DATA = 0x03
    FLASH_END = 0x04
    MEM_BEGIN = 0x05
    MEM_END = 0x06
    MEM_DATA = 0x07
    SYNC = 0x08
    WRITE_REG = 0x09
    READ_REG = 0x0A
    SPI_SET_PARAMS = 0x0B
    SPI_ATTACH = 0x0D
    CHANGE_BAUDRATE = 0x0F
    FLASH_DEFL_BEGIN = 0x10
    FLASH_DEFL_DATA = 0x11
    FLASH_DEFL_END = 0x12
    SPI_FLASH_MD5 = 0x13
    GET_SECURITY_INFO = 0x14

    # Stub loader only
    ERASE_FLASH = 0xD0
    ERASE_REGION = 0xD1

    def __str__(self) -> str:
        return self.name


class RomError(IntEnum):
    """Error codes reported in the second status byte."""
    INVALID_RECV_MSG = 0x05
    FAILED_TO_ACT = 0x06
    INVALID_CRC = 0x07
    FLASH_WRITE_ERR = 0x08
    FLASH_READ_ERR = 0x09
    FLASH_READ_LEN_ERR = 0x0A
    DEFLATE_ERR = 0x0B

    def __str__(self) -> str:
        return self.name


@dataclass
class ResponsePacket:
    """A decoded response frame, before status checking."""
    direction: int
    command: int
    value: int
    data: bytes


@dataclass
class CommandResult:
    """Successful command outcome."""
    value: int
    data: bytes = b""

    @property
    def result(self) -> Union[int, bytes]:
        """Extra response data when present, otherwise the header value."""
        return self.data if self.data else self.value


@dataclass
class SecurityInfo:
    """Parsed GET_SECURITY_INFO result."""
    flags: int
    flash_crypt_cnt: int
    key_purposes: bytes
    chip_id: Optional[int] = None
    api_version: Optional[int] = None


def pack_u32(*values: int) -> bytes:
    """Pack integers as consecutive little-endian u32 fields."""
    return struct.pack(f"<{len(values)}I", *values)


def encode_command(command: int, data: bytes = b"", checksum: int = 0) -> bytes:
    """
    Build a SLIP-framed command packet.

    Args:
        command: Opcode
        data: Command payload
        checksum: Payload checksum for data-bearing writes, else 0

    Returns:
        Frame ready to be written to the transport
    """
    header = struct.pack(
        HEADER_FORMAT, DIRECTION_REQUEST, command, len(data), checksum
    )
    return slip_encode(header + data)


def encode_response(command: int, value: int = 0, data: bytes = b"") -> bytes:
    """Build a SLIP-framed response packet (device side, used by tests)."""
    header = struct.pack(
        HEADER_FORMAT, DIRECTION_RESPONSE, command, len(data), value
    )
    return slip_encode(header + data)


def decode_response(payload: bytes) -> ResponsePacket:
    """
    Decode the header of a received frame.

    Args:
        payload: Frame payload (SLIP already removed)

    Returns:
        ResponsePacket with the raw data section

    Raises:
        MalformedResponseError: If the frame is shorter than a header
    """
    if len(payload) < HEADER_SIZE:
        raise MalformedResponseError(
            f"Truncated response: {len(payload)} bytes, header needs {HEADER_SIZE}"
        )
    direction, command, _length, value = struct.unpack_from(HEADER_FORMAT, payload)
    return ResponsePacket(
        direction=direction,
        command=command,
        value=value,
        data=bytes(payload[HEADER_SIZE:]),
    )


def check_response(
    response: ResponsePacket, status_length: int = STATUS_BYTES_LENGTH
) -> CommandResult:
    """
    Validate the trailing status bytes of a response.

    Args:
        response: Decoded response
        status_length: Number of trailing status bytes for this target

    Returns:
        CommandResult whose data excludes the status bytes

    Raises:
        MalformedResponseError: Fewer bytes than the status length
        CommandFailedError: Non-zero result byte
    """
    data = response.data
    if len(data) < status_length:
        raise MalformedResponseError(
            f"Only got {len(data)} byte status response"
        )

    status = data[len(data) - status_length:]
    if status[0] != 0:
        message = None
        if len(status) > 1 and status[1] in RomError._value2member_map_:
            message = (
                f"Command 0x{response.command:02x} failed: {RomError(status[1])}"
                f" (status {status.hex()})"
            )
        raise CommandFailedError(response.command, status, message)

    return CommandResult(value=response.value, data=data[:len(data) - status_length])


def parse_security_info(res: bytes) -> SecurityInfo:
    """
    Parse the GET_SECURITY_INFO result buffer.

    A 12-byte result has no identification fields. Longer results carry
    chip_id at offset 12 and api_version at offset 16; bytes missing at
    the end of a short buffer read as zero.

    Raises:
        MalformedResponseError: If fewer than 12 bytes are present
    """
    if len(res) < SECURITY_INFO_SHORT_LENGTH:
        raise MalformedResponseError(
            f"Security info too short: {len(res)} bytes"
        )

    flags, flash_crypt_cnt = struct.unpack_from("<IB", res)
    info = SecurityInfo(
        flags=flags,
        flash_crypt_cnt=flash_crypt_cnt,
        key_purposes=bytes(res[5:12]),
    )
    if len(res) > SECURITY_INFO_SHORT_LENGTH:
        padded = bytes(res[:20]).ljust(20, b"\x00")
        info.chip_id, info.api_version = struct.unpack_from("<II", padded, 12)
    return info
