# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Background frame reader.

A daemon thread drains the transport, runs the bytes through a
SlipDecoder, and hands each completed frame to a single-slot queue.
Consumers take one frame at a time with read_frame().
"""

import logging
import queue
import threading
import time
from typing import Optional

from .slip import SlipDecoder
from .transport import BaseTransport, ConnectionClosedError, TransportError

logger = logging.getLogger(__name__)

# Posted into the slot when the reader stops.
_CLOSED = object()


class SlipReader:
    """
    Continuous SLIP decoder over a transport.

    Args:
        transport: Byte-stream transport to read from
    """

    def __init__(self, transport: BaseTransport):
        self.transport = transport
        self._decoder = SlipDecoder()
        self._slot: "queue.Queue" = queue.Queue(maxsize=1)
        self._running = False
        self._stopped = False
        self._error: Optional[TransportError] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the receiver thread."""
        with self._lock:
            if self._running:
                return
            if self._stopped:
                raise ConnectionClosedError("Reader already stopped")
            self._running = True
            self._thread = threading.Thread(
                target=self._receive_loop,
                name="SLIP-Reader",
                daemon=True,
            )
            self._thread.start()
        logger.info("SLIP reader started")

    def stop(self) -> None:
        """
        Stop the receiver thread.

        Safe to call more than once. A read_frame() blocked in another
        thread is woken with ConnectionClosedError.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._running = False
            self._post(_CLOSED, force=True)
            thread, self._thread = self._thread, None

        if thread and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        logger.info("SLIP reader stopped")

    def read_frame(self, timeout: Optional[float] = None) -> bytes:
        """
        Wait for the next decoded frame.

        Args:
            timeout: Seconds to wait, or None to wait forever

        Returns:
            Frame payload

        Raises:
            queue.Empty: If no frame arrived within timeout
            ConnectionClosedError: If the reader is or gets stopped
            TransportError: If the transport failed while reading
        """
        if not self._running:
            if self._error is not None:
                raise self._error
            raise ConnectionClosedError("Reader is not running")

        item = self._slot.get(timeout=timeout)
        if item is _CLOSED:
            # Leave the sentinel for any later reader.
            self._post(_CLOSED, force=True)
            raise ConnectionClosedError("Connection closed")
        if isinstance(item, Exception):
            raise item
        return item

    def _post(self, item, force: bool = False) -> bool:
        """Place an item in the slot; with force, replace whatever is there."""
        while True:
            try:
                self._slot.put_nowait(item)
                return True
            except queue.Full:
                if not force:
                    return False
            try:
                self._slot.get_nowait()
            except queue.Empty:
                pass

    def _deliver(self, item) -> None:
        # The slot holds one frame; wait for the consumer while running.
        while self._running:
            try:
                self._slot.put(item, timeout=0.05)
                return
            except queue.Full:
                continue

    def _receive_loop(self) -> None:
        """Main receive loop (runs in thread)."""
        while self._running:
            try:
                data = self.transport.read()
            except TransportError as e:
                logger.error("Receive error: %s", e)
                self._error = e
                self._post(e, force=True)
                self._running = False
                break

            if not data:
                continue

            for frame in self._decoder.feed(data):
                logger.debug("RX frame: %s", frame.hex())
                self._deliver(frame)
                if not self._running:
                    break

        self._decoder.reset()


def wait_for_frame(reader: SlipReader, expected: bytes, timeout: float) -> None:
    """
    Read frames until one equals `expected`.

    Raises:
        queue.Empty: If the deadline passes first
    """
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise queue.Empty
        frame = reader.read_frame(timeout=remaining)
        if frame == expected:
            return
        logger.debug("Skipping frame while waiting for %r: %s", expected, frame.hex())
