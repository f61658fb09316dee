# SPDX-License-Identifier: MIT
# Copyright (c) 2026 ADNT Sarl <info@adnt.io>

"""
High-level flash writing on top of ESPLoader.

The engine only moves pre-chunked payloads; this module compresses the
image, slices it into write-size blocks and verifies the result.
"""

import hashlib
import logging
import zlib
from pathlib import Path
from typing import Callable, Optional

from .loader import ESPLoader
from .transport import UploadError

logger = logging.getLogger(__name__)


def write_flash(
    loader: ESPLoader,
    image: bytes,
    offset: int = 0,
    compress: bool = True,
    verify: bool = True,
    reboot: bool = False,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> None:
    """
    Write an image to flash.

    Args:
        loader: Connected loader
        image: Raw image bytes
        offset: Flash offset to write at
        compress: Send a deflate stream (FLASH_DEFL_*) instead of raw blocks
        verify: Compare the on-device MD5 with the image afterwards
        reboot: Run the application when the write session ends
        progress_callback: Optional callback(bytes_sent, total_bytes)

    Raises:
        UploadError: If verification fails

    Compression and verification are dropped when only a ROM without
    those commands is running.
    """
    if not loader.is_stub:
        if compress and not loader.chip.SUPPORTS_ROM_COMPRESSION:
            logger.info("%s ROM has no compressed writes, sending raw blocks",
                        loader.chip.CHIP_NAME)
            compress = False
        if verify and not loader.chip.SUPPORTS_ROM_MD5:
            logger.warning("%s ROM cannot compute MD5, skipping verification",
                           loader.chip.CHIP_NAME)
            verify = False

    if compress:
        payload = zlib.compress(image, 9)
        num_blocks = loader.flash_defl_begin(len(image), len(payload), offset)
        send_block = loader.flash_defl_block
    else:
        payload = image
        num_blocks = loader.flash_begin(len(image), offset)
        send_block = loader.flash_block

    block_size = loader.flash_write_size
    total = len(payload)
    logger.info(
        "Writing %d bytes (%d on the wire) at 0x%08x in %d blocks",
        len(image), total, offset, num_blocks,
    )

    for seq in range(num_blocks):
        block = payload[seq * block_size:(seq + 1) * block_size]
        if not compress and len(block) < block_size:
            # Raw writes always send full blocks.
            block = block + b"\xff" * (block_size - len(block))
        send_block(block, seq)
        if progress_callback:
            progress_callback(min((seq + 1) * block_size, total), total)

    if verify:
        expected = hashlib.md5(image).hexdigest()
        actual = loader.flash_md5sum(offset, len(image))
        if actual != expected:
            raise UploadError(
                f"MD5 mismatch at 0x{offset:08x}: flash {actual}, image {expected}"
            )
        logger.info("Hash of data verified.")

    if compress:
        loader.flash_defl_finish(reboot)
    else:
        loader.flash_finish(reboot)


def write_flash_file(
    loader: ESPLoader,
    path: Path,
    offset: int = 0,
    compress: bool = True,
    verify: bool = True,
    reboot: bool = False,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> int:
    """
    Write a binary file to flash.

    Returns:
        Number of image bytes written

    Raises:
        UploadError: If verification fails
        FileNotFoundError: If the file does not exist
    """
    image = Path(path).read_bytes()
    write_flash(loader, image, offset, compress, verify, reboot, progress_callback)
    return len(image)
