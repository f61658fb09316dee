# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Tests for protocol encoding/decoding."""

import struct

import pytest
from esp_protocol.protocol import (
    HEADER_SIZE,
    SYNC_PAYLOAD,
    Command,
    CommandResult,
    ResponsePacket,
    RomError,
    check_response,
    decode_response,
    encode_command,
    encode_response,
    pack_u32,
    parse_security_info,
)
from esp_protocol.slip import slip_decode
from esp_protocol.transport import CommandFailedError, MalformedResponseError


def response(data: bytes, value: int = 0, command: int = Command.READ_REG) -> ResponsePacket:
    return ResponsePacket(direction=1, command=command, value=value, data=data)


class TestCommandEnum:
    """Tests for Command enum."""

    def test_values(self):
        """Opcodes match the ROM protocol."""
        assert Command.FLASH_BEGIN == 0x02
        assert Command.FLASH_DATA == 0x03
        assert Command.FLASH_END == 0x04
        assert Command.MEM_BEGIN == 0x05
        assert Command.MEM_END == 0x06
        assert Command.MEM_DATA == 0x07
        assert Command.SYNC == 0x08
        assert Command.READ_REG == 0x0A
        assert Command.CHANGE_BAUDRATE == 0x0F
        assert Command.FLASH_DEFL_BEGIN == 0x10
        assert Command.FLASH_DEFL_DATA == 0x11
        assert Command.FLASH_DEFL_END == 0x12
        assert Command.GET_SECURITY_INFO == 0x14

    def test_str(self):
        """Command __str__ returns name."""
        assert str(Command.SYNC) == "SYNC"
        assert str(RomError.INVALID_CRC) == "INVALID_CRC"


class TestEncodeCommand:
    """Tests for encode_command."""

    def test_header_layout(self):
        """8-byte little-endian header followed by data."""
        frames = slip_decode(encode_command(Command.READ_REG, b"\x00\x10\x00\x40"))
        assert len(frames) == 1
        payload = frames[0]
        assert payload[:HEADER_SIZE] == b"\x00\x0a\x04\x00\x00\x00\x00\x00"
        assert payload[HEADER_SIZE:] == b"\x00\x10\x00\x40"

    def test_checksum_field(self):
        """Checksum occupies the last four header bytes."""
        payload = slip_decode(encode_command(Command.FLASH_DATA, b"\x01", 0xEE))[0]
        assert struct.unpack_from("<I", payload, 4)[0] == 0xEE

    def test_framed(self):
        """Output starts and ends with the SLIP delimiter."""
        frame = encode_command(Command.SYNC, SYNC_PAYLOAD)
        assert frame[0] == 0xC0 and frame[-1] == 0xC0

    def test_sync_payload(self):
        """SYNC payload is 36 bytes of magic and 0x55 fill."""
        assert len(SYNC_PAYLOAD) == 36
        assert SYNC_PAYLOAD[:4] == b"\x07\x07\x12\x20"
        assert set(SYNC_PAYLOAD[4:]) == {0x55}

    def test_pack_u32(self):
        assert pack_u32(1, 0x12345678) == b"\x01\x00\x00\x00\x78\x56\x34\x12"


class TestDecodeResponse:
    """Tests for decode_response."""

    def test_fields(self):
        """Header fields are unpacked."""
        payload = slip_decode(encode_response(Command.READ_REG, 0xDEADBEEF, b"\x00\x00"))[0]
        resp = decode_response(payload)
        assert resp.direction == 1
        assert resp.command == Command.READ_REG
        assert resp.value == 0xDEADBEEF
        assert resp.data == b"\x00\x00"

    def test_truncated_header(self):
        """Frames shorter than a header are malformed."""
        with pytest.raises(MalformedResponseError, match="Truncated"):
            decode_response(b"\x01\x08\x00")


class TestCheckResponse:
    """Tests for status checking."""

    def test_success_returns_value(self):
        """Status-only responses yield the header value."""
        result = check_response(response(b"\x00\x00", value=42))
        assert result == CommandResult(value=42, data=b"")
        assert result.result == 42

    def test_extra_data_is_result(self):
        """Bytes before the status are the result."""
        result = check_response(response(b"\xaa\xbb\x00\x00", value=42))
        assert result.data == b"\xaa\xbb"
        assert result.result == b"\xaa\xbb"

    def test_failure_carries_status(self):
        """Non-zero result raises with the raw status bytes."""
        with pytest.raises(CommandFailedError) as exc_info:
            check_response(response(b"\x01\x07"))
        assert exc_info.value.status == b"\x01\x07"
        assert exc_info.value.error_code == RomError.INVALID_CRC
        assert exc_info.value.command == Command.READ_REG
        assert "INVALID_CRC" in str(exc_info.value)

    def test_failure_unknown_code(self):
        """Unknown error codes still raise."""
        with pytest.raises(CommandFailedError, match="0102"):
            check_response(response(b"\x01\x02"))

    def test_one_status_byte_is_malformed(self):
        """A single trailing byte is not a valid status."""
        with pytest.raises(MalformedResponseError, match="1 byte status"):
            check_response(response(b"\x00"))

    def test_four_byte_status(self):
        """ESP32 ROM appends four status bytes."""
        result = check_response(response(b"\x00\x00\x00\x00"), status_length=4)
        assert result.data == b""
        with pytest.raises(CommandFailedError):
            check_response(response(b"\x01\x05\x00\x00"), status_length=4)


class TestSecurityInfo:
    """Tests for parse_security_info."""

    BASE = struct.pack("<IB", 0x11223344, 0x05) + bytes(range(1, 8))

    def test_short_form(self):
        """12 bytes: no chip id or api version."""
        info = parse_security_info(self.BASE)
        assert info.flags == 0x11223344
        assert info.flash_crypt_cnt == 0x05
        assert info.key_purposes == bytes(range(1, 8))
        assert info.chip_id is None
        assert info.api_version is None

    def test_long_form(self):
        """20 bytes: both trailing fields."""
        info = parse_security_info(self.BASE + struct.pack("<II", 9, 3))
        assert info.chip_id == 9
        assert info.api_version == 3

    def test_eighteen_bytes(self):
        """18 bytes: both fields populated from offsets 12 and 16."""
        info = parse_security_info(self.BASE + struct.pack("<I", 5) + b"\x02\x00")
        assert info.chip_id == 5
        assert info.api_version == 2

    def test_too_short(self):
        with pytest.raises(MalformedResponseError):
            parse_security_info(b"\x00" * 11)
