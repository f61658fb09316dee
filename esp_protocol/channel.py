# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Request/response command channel.

One command may be outstanding at a time: the device has a single
response buffer, so the channel serializes callers with a lock.
"""

import logging
import queue
import threading
import time
from typing import List

from .protocol import (
    DIRECTION_RESPONSE,
    HEADER_SIZE,
    STATUS_BYTES_LENGTH,
    CommandResult,
    check_response,
    decode_response,
    encode_command,
)
from .reader import SlipReader
from .transport import BaseTransport, FrameTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 3.0


class CommandChannel:
    """
    Sends command packets and matches them to response frames.

    Args:
        transport: Transport the frames are written to
        reader: Background reader decoding the transport's input
        status_length: Trailing status bytes expected in responses
    """

    def __init__(
        self,
        transport: BaseTransport,
        reader: SlipReader,
        status_length: int = STATUS_BYTES_LENGTH,
    ):
        self.transport = transport
        self.reader = reader
        self.status_length = status_length
        self._lock = threading.Lock()
        # Frames skipped while waiting for the last command's response.
        self.discarded: List[bytes] = []

    def command(
        self,
        opcode: int,
        data: bytes = b"",
        checksum: int = 0,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 1,
    ) -> CommandResult:
        """
        Send a command and wait for its response.

        Args:
            opcode: Command opcode
            data: Command payload
            checksum: Payload checksum (data-bearing writes only)
            timeout: Seconds to wait for a response per attempt
            retries: Total number of attempts

        Returns:
            CommandResult with the header value and any extra data

        Raises:
            FrameTimeoutError: No matching response after all attempts
            MalformedResponseError: Response without status bytes
            CommandFailedError: Device reported failure
            TransportError: I/O failure or session closed
        """
        if retries < 1:
            raise ValueError("retries must be at least 1")

        frame = encode_command(opcode, data, checksum)

        with self._lock:
            self.discarded = []
            for attempt in range(1, retries + 1):
                logger.debug(
                    "TX cmd=0x%02x len=%d attempt=%d/%d",
                    opcode, len(data), attempt, retries,
                )
                self.transport.write(frame)
                try:
                    response = self._await_response(opcode, timeout)
                except FrameTimeoutError:
                    logger.debug("Timeout waiting for 0x%02x response", opcode)
                    continue
                return check_response(response, self.status_length)

        raise FrameTimeoutError(
            f"Timeout waiting for response to command 0x{opcode:02x}"
            f" after {retries} attempt(s)"
        )

    def _await_response(self, opcode: int, timeout: float):
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise FrameTimeoutError()
            try:
                payload = self.reader.read_frame(timeout=remaining)
            except queue.Empty:
                raise FrameTimeoutError() from None

            if len(payload) < HEADER_SIZE:
                logger.warning("Discarding short frame: %s", payload.hex())
                self.discarded.append(payload)
                continue

            response = decode_response(payload)
            if response.direction != DIRECTION_RESPONSE:
                logger.warning("Discarding non-response frame: %s", payload.hex())
                self.discarded.append(payload)
                continue
            if response.command != opcode:
                logger.warning(
                    "Discarding response to 0x%02x while waiting for 0x%02x",
                    response.command, opcode,
                )
                self.discarded.append(payload)
                continue
            return response
