# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
ROM bootloader engine.

ESPLoader owns one transport for the lifetime of a session. It runs the
connect/sync handshake, the RAM and flash write workflows, and register
level introspection on top of the command channel.

Example:
    with SerialTransport("/dev/ttyUSB0") as transport:
        with ESPLoader(transport, chip=ESP32Family()) as loader:
            if not loader.connect():
                raise SystemExit("No bootloader found")
            print(loader.read_mac())
"""

import logging
import queue
import time
from dataclasses import dataclass
from typing import Optional

from .channel import DEFAULT_TIMEOUT, CommandChannel
from .checksum import checksum
from .chips import CHIP_DETECT_MAGIC_REG_ADDR, ChipFamily, ChipInfo, StubImage, detect_family
from .protocol import (
    STATUS_BYTES_LENGTH,
    SYNC_PAYLOAD,
    Command,
    CommandResult,
    SecurityInfo,
    pack_u32,
    parse_security_info,
)
from .reader import SlipReader, wait_for_frame
from .reset import DEFAULT_RESET_DELAY, HardReset, ResetStrategy, construct_reset_sequence
from .transport import (
    BaseTransport,
    FrameTimeoutError,
    LoaderError,
    MalformedResponseError,
    NotSupportedError,
    ProtocolError,
)

logger = logging.getLogger(__name__)

BEGIN_TIMEOUT = 5.0
MEM_END_TIMEOUT = 0.05
SYNC_TRIES = 5
SYNC_TIMEOUT = 0.1
SYNC_BACKOFF = 0.05
BAUD_SETTLE_DELAY = 0.05
STUB_GREETING = b"OHAI"
STUB_GREETING_TIMEOUT = 1.0

MD5_TIMEOUT_PER_MB = 8.0
ERASE_REGION_TIMEOUT_PER_MB = 30.0
CHIP_ERASE_TIMEOUT = 120.0


def timeout_per_mb(seconds_per_mb: float, size_bytes: int) -> float:
    """Scale a per-megabyte timeout, never below the default."""
    return max(seconds_per_mb * (size_bytes / 1e6), DEFAULT_TIMEOUT)


@dataclass
class Session:
    """Mutable state of one bootloader session."""
    baudrate: int = 115200
    is_stub: bool = False
    vendor_id: Optional[int] = None
    product_id: Optional[int] = None


class ESPLoader:
    """
    Bootloader protocol engine bound to a single transport.

    Args:
        transport: Byte-stream transport to the device
        chip: Chip capability set (default: generic, no identification)
        baudrate: Baud rate the transport is currently running at
        reset_delay: Base IO0 hold time for classic resets
    """

    def __init__(
        self,
        transport: BaseTransport,
        chip: Optional[ChipFamily] = None,
        baudrate: int = 115200,
        reset_delay: float = DEFAULT_RESET_DELAY,
    ):
        self.transport = transport
        self.chip = chip if chip is not None else ChipFamily()
        self.reset_delay = reset_delay
        self.session = Session(
            baudrate=baudrate,
            vendor_id=transport.vendor_id,
            product_id=transport.product_id,
        )
        self._reader = SlipReader(transport)
        self._channel = CommandChannel(
            transport, self._reader, self.chip.STATUS_BYTES_LENGTH
        )

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    def start(self) -> None:
        """Start the background frame reader. Required before any command."""
        self._reader.start()

    def release(self) -> None:
        """Stop the frame reader; no further commands are possible."""
        self._reader.stop()

    @property
    def is_stub(self) -> bool:
        return self.session.is_stub

    @property
    def flash_write_size(self) -> int:
        if self.session.is_stub:
            return self.chip.STUB_FLASH_WRITE_SIZE
        return self.chip.FLASH_WRITE_SIZE

    def command(
        self,
        opcode: int,
        data: bytes = b"",
        checksum: int = 0,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 1,
    ) -> CommandResult:
        """Issue a raw command on the session's channel."""
        return self._channel.command(opcode, data, checksum, timeout, retries)

    # Connection

    def sync(self) -> int:
        """Send SYNC and return the response value."""
        return self.command(Command.SYNC, SYNC_PAYLOAD, timeout=SYNC_TIMEOUT).value

    def _connect_attempt(self, reset_strategy: ResetStrategy) -> bool:
        reset_strategy.reset()

        for _ in range(SYNC_TRIES):
            try:
                self.sync()
                return True
            except LoaderError as e:
                logger.debug("Sync failed: %s", e)
                time.sleep(SYNC_BACKOFF)

        return False

    def connect(self, attempts: int = 7) -> bool:
        """
        Reset the device into its bootloader and synchronize.

        Tries each reset strategy for the transport up to `attempts` times.

        Returns:
            True once a SYNC succeeds, False if every attempt failed
        """
        self.session.vendor_id = self.transport.vendor_id
        self.session.product_id = self.transport.product_id
        reset_sequence = construct_reset_sequence(self.transport, self.reset_delay)

        for reset_strategy in reset_sequence:
            for attempt in range(attempts):
                if not self._reader.running:
                    logger.info("Session released, aborting connect")
                    return False
                logger.debug("Connect attempt %d with %r", attempt + 1, reset_strategy)
                try:
                    if self._connect_attempt(reset_strategy):
                        logger.info("Connected to %s", self.chip.CHIP_NAME)
                        return True
                except LoaderError as e:
                    logger.debug("Connect attempt failed: %s", e)

        logger.warning("Failed to connect")
        return False

    # Introspection

    def read_reg(self, addr: int) -> int:
        """Read a 32-bit register or memory word."""
        return self.command(Command.READ_REG, pack_u32(addr)).value

    def write_reg(
        self, addr: int, value: int, mask: int = 0xFFFFFFFF, delay_us: int = 0
    ) -> None:
        """Write a 32-bit register, optionally masked."""
        self.command(Command.WRITE_REG, pack_u32(addr, value, mask, delay_us))

    def read_mac(self) -> str:
        return self.chip.read_mac(self)

    def get_chip_info(self) -> ChipInfo:
        return self.chip.get_chip_info(self)

    def get_erase_size(self, offset: int, size: int) -> int:
        return self.chip.get_erase_size(offset, size)

    def get_security_info(self) -> SecurityInfo:
        res = self.command(Command.GET_SECURITY_INFO).data
        if not res:
            raise MalformedResponseError("Failed getting security info")
        return parse_security_info(res)

    def detect_chip(self) -> ChipFamily:
        """
        Identify the connected chip and install its capability set.

        The stub image of the current family, if any, is carried over.
        """
        magic = self.read_reg(CHIP_DETECT_MAGIC_REG_ADDR)
        family = detect_family(magic)
        if not isinstance(self.chip, family):
            self.chip = family(stub=self.chip.stub)
            if not self.session.is_stub:
                self._channel.status_length = self.chip.STATUS_BYTES_LENGTH
        logger.info("Detected %s (magic 0x%08x)", self.chip.CHIP_NAME, magic)
        return self.chip

    # RAM

    def mem_begin(self, size: int, blocks: int, blocksize: int, offset: int) -> None:
        self.command(
            Command.MEM_BEGIN,
            pack_u32(size, blocks, blocksize, offset),
            timeout=BEGIN_TIMEOUT,
        )

    def mem_block(self, data: bytes, seq: int) -> None:
        self.command(
            Command.MEM_DATA,
            pack_u32(len(data), seq, 0, 0) + data,
            checksum(data),
        )

    def mem_finish(self, entrypoint: int = 0) -> None:
        """End a RAM download; a zero entry point means "do not jump"."""
        self.command(
            Command.MEM_END,
            pack_u32(1 if entrypoint == 0 else 0, entrypoint),
            timeout=MEM_END_TIMEOUT,
        )

    # Flash

    def flash_begin(self, size: int, offset: int) -> int:
        """
        Start a flash write session.

        Returns:
            Number of FLASH_DATA blocks the device expects
        """
        write_size = self.flash_write_size
        num_blocks = (size + write_size - 1) // write_size
        erase_size = self.get_erase_size(offset, size)

        self.command(
            Command.FLASH_BEGIN,
            pack_u32(erase_size, num_blocks, write_size, offset),
            timeout=BEGIN_TIMEOUT,
        )
        return num_blocks

    def flash_block(self, data: bytes, seq: int) -> None:
        self.command(
            Command.FLASH_DATA,
            pack_u32(len(data), seq, 0, 0) + data,
            checksum(data),
        )

    def flash_finish(self, reboot: bool = False) -> None:
        # The device expects 0 for "run user code", 1 for "stay".
        self.command(Command.FLASH_END, pack_u32(0 if reboot else 1))

    def flash_defl_begin(self, size: int, compsize: int, offset: int) -> int:
        """
        Start a compressed flash write session.

        Args:
            size: Uncompressed image size
            compsize: Compressed payload size
            offset: Flash offset

        Returns:
            Number of FLASH_DEFL_DATA blocks the device expects
        """
        write_size = self.flash_write_size
        num_blocks = (compsize + write_size - 1) // write_size
        erase_blocks = (size + write_size - 1) // write_size

        if self.session.is_stub:
            # Stub erases as it goes and wants the real byte count.
            erase_size = size
        else:
            erase_size = erase_blocks * write_size

        logger.info("Compressed %d bytes to %d...", size, compsize)
        self.command(
            Command.FLASH_DEFL_BEGIN,
            pack_u32(erase_size, num_blocks, write_size, offset),
            timeout=BEGIN_TIMEOUT,
        )
        return num_blocks

    def flash_defl_block(self, data: bytes, seq: int) -> None:
        self.command(
            Command.FLASH_DEFL_DATA,
            pack_u32(len(data), seq, 0, 0) + data,
            checksum(data),
        )

    def flash_defl_finish(self, reboot: bool = False) -> None:
        self.command(Command.FLASH_DEFL_END, pack_u32(0 if reboot else 1))

    def flash_md5sum(self, offset: int, size: int) -> str:
        """
        MD5 of a flash region, computed on the device.

        Returns:
            Lowercase hex digest
        """
        res = self.command(
            Command.SPI_FLASH_MD5,
            pack_u32(offset, size, 0, 0),
            timeout=timeout_per_mb(MD5_TIMEOUT_PER_MB, size),
        ).data
        if len(res) == 32:
            return res.decode("ascii").lower()  # ROM: hex text
        if len(res) == 16:
            return res.hex()  # stub: raw digest
        raise MalformedResponseError(f"Unexpected MD5 response length {len(res)}")

    def erase_flash(self) -> None:
        """Erase the whole flash chip (stub only)."""
        self._require_stub("erase_flash")
        self.command(Command.ERASE_FLASH, timeout=CHIP_ERASE_TIMEOUT)

    def erase_region(self, offset: int, size: int) -> None:
        """Erase a sector-aligned flash region (stub only)."""
        self._require_stub("erase_region")
        sector = self.chip.FLASH_SECTOR_SIZE
        if offset % sector or size % sector:
            raise ValueError(f"Offset and size must be multiples of 0x{sector:x}")
        self.command(
            Command.ERASE_REGION,
            pack_u32(offset, size),
            timeout=timeout_per_mb(ERASE_REGION_TIMEOUT_PER_MB, size),
        )

    def _require_stub(self, operation: str) -> None:
        if not self.session.is_stub:
            raise NotSupportedError(f"{operation} requires the stub loader")

    # Session control

    def load_stub(self) -> Optional[StubImage]:
        """
        Upload and start the chip family's stub loader.

        Returns:
            The stub that is now running, or None if the family has none
        """
        stub = self.chip.stub
        if stub is None:
            logger.info("No stub available for %s", self.chip.CHIP_NAME)
            return None
        if self.session.is_stub:
            return stub

        block_size = self.chip.RAM_WRITE_SIZE
        for start, payload in stub.segments():
            blocks = (len(payload) + block_size - 1) // block_size
            self.mem_begin(len(payload), blocks, block_size, start)
            for seq in range(blocks):
                self.mem_block(payload[seq * block_size:(seq + 1) * block_size], seq)

        try:
            self.mem_finish(stub.entry)
        except FrameTimeoutError:
            logger.debug("No MEM_END response, stub may already be running")

        # The greeting can overtake or replace the MEM_END response.
        if STUB_GREETING not in self._channel.discarded:
            try:
                wait_for_frame(self._reader, STUB_GREETING, STUB_GREETING_TIMEOUT)
            except queue.Empty:
                raise ProtocolError("Stub loader did not send its greeting") from None

        self.session.is_stub = True
        self._channel.status_length = STATUS_BYTES_LENGTH
        logger.info("Stub running")
        return stub

    def change_baud(self, baud: int, old_baud: Optional[int] = None) -> None:
        """
        Switch the device and the transport to a new baud rate.

        Args:
            baud: New baud rate
            old_baud: Current rate (default: the session's rate)
        """
        if old_baud is None:
            old_baud = self.session.baudrate
        logger.info("Changing baud rate from %d to %d", old_baud, baud)

        # The stub reconfigures its own UART and needs the old rate.
        second = old_baud if self.session.is_stub else 0
        self.command(Command.CHANGE_BAUDRATE, pack_u32(baud, second))

        self.transport.set_baudrate(baud)
        self.session.baudrate = baud
        time.sleep(BAUD_SETTLE_DELAY)
        logger.info("Changed.")

    def hard_reset(self) -> bool:
        """Leave the bootloader and start the application."""
        return HardReset(self.transport).reset()
