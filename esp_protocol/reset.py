# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
Reset strategies.

Boards behind a USB-to-serial bridge wire DTR/RTS to the chip's boot-mode
pin (IO0) and enable pin (EN) through a transistor pair:

    DTR  RTS  ->  EN   IO0
     1    1       1     1
     0    0       1     1
     1    0       1     0
     0    1       0     1

Chips with an integrated USB-Serial/JTAG peripheral interpret the CDC
control-line state directly instead.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import List

from .transport import (
    CONTROL_LINE_DTR,
    CONTROL_LINE_RTS,
    SET_CONTROL_LINE_STATE,
    BaseTransport,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_RESET_DELAY = 0.05
# Second classic attempt for boards with a slower EN capacitor.
EXTRA_RESET_DELAY = 0.5

USB_JTAG_SERIAL_PID = 0x1001


class ResetStrategy(ABC):
    """A timed sequence that puts the chip into (or out of) bootloader mode."""

    def __init__(self, transport: BaseTransport):
        self.transport = transport

    def reset(self) -> bool:
        """
        Run the sequence.

        Returns:
            True if the sequence completed, False on transport failure
        """
        try:
            self._reset()
        except TransportError as e:
            logger.warning("%s failed: %s", self, e)
            return False
        return True

    @abstractmethod
    def _reset(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class ClassicReset(ResetStrategy):
    """DTR/RTS sequence for boards behind a generic USB-serial bridge."""

    def __init__(self, transport: BaseTransport, delay: float = DEFAULT_RESET_DELAY):
        super().__init__(transport)
        self.delay = delay

    def _reset(self) -> None:
        self.transport.set_dtr(False)  # IO0 high
        self.transport.set_rts(True)   # EN low, chip in reset
        time.sleep(0.1)
        self.transport.set_dtr(True)   # IO0 low
        self.transport.set_rts(False)  # EN high, chip out of reset
        time.sleep(self.delay)
        self.transport.set_dtr(False)  # IO0 high, done

    def __repr__(self) -> str:
        return f"ClassicReset(delay={self.delay})"


class USBJTAGSerialReset(ResetStrategy):
    """Control-line requests for the integrated USB-Serial/JTAG peripheral."""

    def _set_lines(self, dtr: bool, rts: bool) -> None:
        value = (CONTROL_LINE_DTR if dtr else 0) | (CONTROL_LINE_RTS if rts else 0)
        self.transport.control_transfer(SET_CONTROL_LINE_STATE, value)

    def _reset(self) -> None:
        self._set_lines(dtr=False, rts=False)  # idle
        time.sleep(0.1)
        self._set_lines(dtr=True, rts=False)   # IO0 low
        time.sleep(0.1)
        # Pass through (1,1) rather than (0,0) on the way into reset.
        self._set_lines(dtr=True, rts=True)
        self._set_lines(dtr=False, rts=True)   # reset
        time.sleep(0.1)
        self._set_lines(dtr=False, rts=False)  # out of reset


class HardReset(ResetStrategy):
    """Pulse EN to leave the bootloader and run the application."""

    def _reset(self) -> None:
        self.transport.set_rts(True)
        time.sleep(0.1)
        self.transport.set_rts(False)


def construct_reset_sequence(
    transport: BaseTransport, delay: float = DEFAULT_RESET_DELAY
) -> List[ResetStrategy]:
    """
    Pick the reset strategies to try, in order, for a transport.

    Args:
        transport: Transport whose USB product id selects the strategy
        delay: Base IO0 hold time for classic resets

    Returns:
        Strategies to attempt during connect
    """
    if transport.product_id == USB_JTAG_SERIAL_PID:
        logger.info("Detected integrated USB Serial/JTAG")
        return [USBJTAGSerialReset(transport)]

    return [
        ClassicReset(transport, delay),
        ClassicReset(transport, delay + EXTRA_RESET_DELAY),
    ]
