# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
SLIP (RFC 1055) framing.

Every packet exchanged with the bootloader is wrapped in 0xC0 delimiters,
with 0xC0 and 0xDB escaped inside the frame.
"""

import logging
from typing import List

logger = logging.getLogger(__name__)

SLIP_END = 0xC0
SLIP_ESC = 0xDB
SLIP_ESC_END = 0xDC
SLIP_ESC_ESC = 0xDD


def slip_encode(data: bytes) -> bytes:
    """
    Encode data into a SLIP frame.

    Args:
        data: Raw bytes to encode

    Returns:
        SLIP-encoded bytes with a delimiter on both ends
    """
    output = bytearray([SLIP_END])

    for byte in data:
        if byte == SLIP_END:
            output.extend((SLIP_ESC, SLIP_ESC_END))
        elif byte == SLIP_ESC:
            output.extend((SLIP_ESC, SLIP_ESC_ESC))
        else:
            output.append(byte)

    output.append(SLIP_END)
    return bytes(output)


class SlipDecoder:
    """
    Incremental SLIP decoder.

    Bytes may arrive in arbitrary fragments; partial frames are kept
    between calls to feed().
    """

    def __init__(self):
        self._buffer = bytearray()
        self._escaped = False

    def reset(self) -> None:
        """Drop any partially received frame."""
        self._buffer.clear()
        self._escaped = False

    @property
    def pending(self) -> int:
        """Number of bytes buffered for the frame in progress."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[bytes]:
        """
        Consume raw bytes and return every frame they complete.

        Args:
            data: Bytes read from the transport

        Returns:
            Decoded frame payloads, in arrival order
        """
        frames = []

        for byte in data:
            if self._escaped:
                self._escaped = False
                if byte == SLIP_ESC_END:
                    self._buffer.append(SLIP_END)
                elif byte == SLIP_ESC_ESC:
                    self._buffer.append(SLIP_ESC)
                else:
                    logger.warning("Invalid SLIP escape: 0x%02x", byte)
                    self._buffer.append(byte)
            elif byte == SLIP_ESC:
                self._escaped = True
            elif byte == SLIP_END:
                if self._buffer:
                    frames.append(bytes(self._buffer))
                    self._buffer.clear()
            else:
                self._buffer.append(byte)

        return frames


def slip_decode(data: bytes) -> List[bytes]:
    """
    Decode every complete frame in a byte string.

    Args:
        data: SLIP-encoded bytes (one or more frames)

    Returns:
        Decoded frame payloads; a trailing incomplete frame is dropped
    """
    return SlipDecoder().feed(data)
