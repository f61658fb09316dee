# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Transport layer for ROM bootloader communication.

Defines the error taxonomy, the narrow capability interface the protocol
engine needs from a byte-stream transport, and a pyserial implementation.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import serial
from serial.tools import list_ports

logger = logging.getLogger(__name__)

# CDC ACM class request carrying DTR (bit 0) and RTS (bit 1).
SET_CONTROL_LINE_STATE = 0x22
CONTROL_LINE_DTR = 0x01
CONTROL_LINE_RTS = 0x02


class LoaderError(Exception):
    """Base exception for bootloader errors."""
    pass


class TransportError(LoaderError):
    """Underlying I/O failure."""
    pass


class ConnectionClosedError(TransportError):
    """The session was released while a command was outstanding."""
    pass


class FrameTimeoutError(LoaderError):
    """No response frame within the command's timeout."""
    pass


class ProtocolError(LoaderError):
    """Protocol-level error (unexpected response, etc.)."""
    pass


class MalformedResponseError(ProtocolError):
    """Response too short to carry a status."""
    pass


class CommandFailedError(ProtocolError):
    """The device reported a non-zero status for a command."""

    def __init__(self, command: int, status: bytes, message: Optional[str] = None):
        self.command = command
        self.status = bytes(status)
        if message is None:
            message = (
                f"Command 0x{command:02x} failed with status {self.status.hex()}"
            )
        super().__init__(message)

    @property
    def error_code(self) -> int:
        """ROM error code (second status byte)."""
        return self.status[1] if len(self.status) > 1 else 0


class NotSupportedError(LoaderError):
    """Operation has no implementation for this chip or transport."""
    pass


class UploadError(LoaderError):
    """Error during a high-level flash write."""
    pass


class BaseTransport(ABC):
    """
    Capability set consumed by the protocol engine.

    Implementations own the underlying device handle; the engine never
    opens or closes it.
    """

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Send raw bytes."""

    @abstractmethod
    def read(self) -> bytes:
        """
        Read whatever bytes are available.

        Blocks for a short, implementation-defined interval and returns
        b"" when nothing arrived.
        """

    @abstractmethod
    def set_baudrate(self, baudrate: int) -> None:
        """Change the host-side baud rate."""

    @abstractmethod
    def set_dtr(self, state: bool) -> None:
        """Drive the data-terminal-ready line."""

    @abstractmethod
    def set_rts(self, state: bool) -> None:
        """Drive the request-to-send line."""

    def control_transfer(self, request: int, value: int, index: int = 0) -> None:
        """Issue a vendor/class control request on the USB interface."""
        raise NotSupportedError(
            f"{type(self).__name__} has no control transfer support"
        )

    @property
    def vendor_id(self) -> Optional[int]:
        """USB vendor id, if the transport sits on a USB device."""
        return None

    @property
    def product_id(self) -> Optional[int]:
        """USB product id, if the transport sits on a USB device."""
        return None

    def close(self) -> None:
        """Release the underlying device."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class SerialTransport(BaseTransport):
    """
    USB-serial transport backed by pyserial.

    Can be used as a context manager:
        with SerialTransport("/dev/ttyUSB0") as t:
            loader = ESPLoader(t)
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 115200,
        timeout: float = 0.05,
    ):
        """
        Open a serial port.

        Args:
            port: Serial port path (e.g., "/dev/ttyUSB0")
            baudrate: Initial baud rate (default 115200)
            timeout: Read poll interval in seconds (default 0.05)
        """
        try:
            self._ser = serial.Serial(port, baudrate, timeout=timeout)
        except serial.SerialException as e:
            raise TransportError(f"Serial open failed: {e}") from e
        self._vid, self._pid = self._lookup_usb_ids(port)
        logger.info("Opened serial port %s@%d", port, baudrate)

    @staticmethod
    def _lookup_usb_ids(port: str):
        for info in list_ports.comports():
            if info.device == port:
                return info.vid, info.pid
        return None, None

    @property
    def port(self) -> str:
        """Return the serial port name."""
        return self._ser.port

    @property
    def vendor_id(self) -> Optional[int]:
        return self._vid

    @property
    def product_id(self) -> Optional[int]:
        return self._pid

    def close(self) -> None:
        """Close the serial connection."""
        if self._ser and self._ser.is_open:
            self._ser.close()
            logger.info("Closed serial port %s", self._ser.port)

    def write(self, data: bytes) -> None:
        try:
            self._ser.write(data)
            self._ser.flush()
        except serial.SerialException as e:
            raise TransportError(f"Write failed: {e}") from e

    def read(self) -> bytes:
        try:
            return self._ser.read(self._ser.in_waiting or 1)
        except serial.SerialException as e:
            raise TransportError(f"Read failed: {e}") from e

    def set_baudrate(self, baudrate: int) -> None:
        try:
            self._ser.baudrate = baudrate
        except (serial.SerialException, ValueError) as e:
            raise TransportError(f"Cannot set baud rate {baudrate}: {e}") from e

    def set_dtr(self, state: bool) -> None:
        try:
            self._ser.dtr = state
        except serial.SerialException as e:
            raise TransportError(f"Cannot set DTR: {e}") from e

    def set_rts(self, state: bool) -> None:
        try:
            self._ser.rts = state
            # Some drivers only latch DTR when RTS is written.
            self._ser.dtr = self._ser.dtr
        except serial.SerialException as e:
            raise TransportError(f"Cannot set RTS: {e}") from e

    def control_transfer(self, request: int, value: int, index: int = 0) -> None:
        """
        Emulate a CDC control request through the serial driver.

        Only SET_CONTROL_LINE_STATE is reachable via pyserial; the value
        bits are applied as DTR/RTS in a single step.
        """
        if request != SET_CONTROL_LINE_STATE:
            raise NotSupportedError(
                f"Control request 0x{request:02x} not available over pyserial"
            )
        try:
            self._ser.dtr = bool(value & CONTROL_LINE_DTR)
            self._ser.rts = bool(value & CONTROL_LINE_RTS)
        except serial.SerialException as e:
            raise TransportError(f"Control transfer failed: {e}") from e

    def __repr__(self) -> str:
        return f"SerialTransport(port={self._ser.port!r})"
