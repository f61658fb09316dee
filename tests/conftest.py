# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""Pytest configuration and an in-memory bootloader for unit tests."""

import queue
import struct

import pytest

from esp_protocol.protocol import Command, encode_response
from esp_protocol.slip import SlipDecoder
from esp_protocol.transport import BaseTransport, TransportError


class DeviceSimulator:
    """
    Answers command frames the way the ROM bootloader would.

    Every opcode succeeds with value 0 unless a handler is installed.
    Handlers receive (data, checksum) and return the raw bytes to send
    back (zero or more SLIP frames).
    """

    def __init__(self, status_length: int = 2):
        self.status_length = status_length
        self.requests = []
        self.registers = {}
        self.handlers = {}

    def ok(self, opcode: int, value: int = 0, data: bytes = b"") -> bytes:
        status = b"\x00" * self.status_length
        return encode_response(opcode, value, data + status)

    def on(self, opcode: int, handler):
        self.handlers[opcode] = handler

    def respond(self, opcode: int, value: int = 0, data: bytes = b""):
        self.on(opcode, lambda _data, _chk: self.ok(opcode, value, data))

    def fail(self, opcode: int, status: bytes = b"\x01\x05"):
        self.on(opcode, lambda _data, _chk: encode_response(opcode, 0, status))

    def silence(self, opcode: int):
        self.on(opcode, lambda _data, _chk: b"")

    def count(self, opcode: int) -> int:
        return sum(1 for op, _, _ in self.requests if op == opcode)

    def payloads(self, opcode: int):
        return [data for op, data, _ in self.requests if op == opcode]

    def handle(self, payload: bytes) -> bytes:
        direction, opcode, length, chk = struct.unpack_from("<BBHI", payload)
        assert direction == 0x00
        data = payload[8:]
        assert len(data) == length
        self.requests.append((opcode, data, chk))

        if opcode in self.handlers:
            return self.handlers[opcode](data, chk)
        if opcode == Command.READ_REG:
            (addr,) = struct.unpack("<I", data)
            return self.ok(opcode, self.registers.get(addr, 0))
        return self.ok(opcode)


class FakeTransport(BaseTransport):
    """Transport wired straight to a DeviceSimulator."""

    def __init__(self, device: DeviceSimulator = None, vid=None, pid=None):
        self.device = device or DeviceSimulator()
        self.written = []
        self.signals = []
        self.baudrate = 115200
        self.read_error = None
        self.closed = False
        self._vid = vid
        self._pid = pid
        self._rx = queue.Queue()
        self._decoder = SlipDecoder()

    @property
    def vendor_id(self):
        return self._vid

    @property
    def product_id(self):
        return self._pid

    def inject(self, data: bytes) -> None:
        """Queue bytes as if the device had sent them."""
        self._rx.put(data)

    def write(self, data: bytes) -> None:
        self.written.append(data)
        for payload in self._decoder.feed(data):
            response = self.device.handle(payload)
            if response:
                self._rx.put(response)

    def read(self) -> bytes:
        if self.read_error is not None:
            raise self.read_error
        try:
            return self._rx.get(timeout=0.01)
        except queue.Empty:
            return b""

    def set_baudrate(self, baudrate: int) -> None:
        self.baudrate = baudrate

    def set_dtr(self, state: bool) -> None:
        self.signals.append(("dtr", state))

    def set_rts(self, state: bool) -> None:
        self.signals.append(("rts", state))

    def control_transfer(self, request: int, value: int, index: int = 0) -> None:
        self.signals.append(("ctrl", request, value))

    def close(self) -> None:
        self.closed = True


class BrokenTransport(FakeTransport):
    """Transport whose control lines fail."""

    def set_dtr(self, state: bool) -> None:
        raise TransportError("DTR failed")


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--device",
        action="store",
        default=None,
        help="Serial port of a board in reach of its bootloader (e.g., /dev/ttyUSB0)",
    )


@pytest.fixture(scope="session")
def device_port(request):
    """Serial port of a real device, or None."""
    return request.config.getoption("--device")


@pytest.fixture
def device():
    return DeviceSimulator()


@pytest.fixture
def transport(device):
    return FakeTransport(device)


@pytest.fixture
def loader(transport):
    """Started ESPLoader on the fake transport, released after the test."""
    from esp_protocol.loader import ESPLoader

    loader = ESPLoader(transport)
    loader.start()
    yield loader
    loader.release()
