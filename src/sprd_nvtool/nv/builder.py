"""
NV Blob Builder
===============

Serializes NV items back into the blob layout read by parser.py.

The 4-byte header is written as zeros. Stamping the real checksum into
it is a separate step (do_nv_checksum), done on the assembled image
just before it is written to the device; build_nv_image does both.
"""

import logging
import struct
from pathlib import Path
from typing import Iterable, Union

from sprd_nvtool.comms.checksum import do_nv_checksum
from sprd_nvtool.errors import ValidationError
from sprd_nvtool.nv.items import NVItem
from sprd_nvtool.nv.parser import ALIGNMENT, HEADER_SIZE

logger = logging.getLogger(__name__)


def build_nv(items: Iterable[NVItem]) -> bytes:
    """
    Build an NV blob from items in list order.

    Args:
        items: Items to serialize.

    Returns:
        Blob with a zero header and every record padded to 4 bytes.

    Raises:
        ValidationError: If an item payload does not fit the 16-bit
                         length field.

    Example:
        >>> build_nv([NVItem(5, b"\\xaa\\xbb")]).hex()
        '0000000005000200aabb0000'
    """
    blob = bytearray(HEADER_SIZE)

    for item in items:
        if item.length > 0xFFFF:
            raise ValidationError(
                f"{item.display_name}: payload of {item.length} bytes exceeds 65535"
            )
        blob += struct.pack("<HH", item.id, item.length)
        blob += item.data
        blob += bytes(-item.length % ALIGNMENT)

    return bytes(blob)


def build_nv_image(items: Iterable[NVItem]) -> tuple[bytes, int]:
    """
    Build an NV blob ready to be written to the device.

    Returns:
        Tuple of (image with checksum header, write checksum).
    """
    image = bytearray(build_nv(items))
    write_checksum = do_nv_checksum(image)
    logger.debug("Built NV image: %d bytes, checksum 0x%X", len(image), write_checksum)
    return bytes(image), write_checksum


def write_nv_file(filepath: Union[str, Path], items: Iterable[NVItem]) -> int:
    """
    Build the blob and write it to disk.

    Returns:
        Number of bytes written.
    """
    data = build_nv(items)
    Path(filepath).write_bytes(data)
    return len(data)
