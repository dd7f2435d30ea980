"""
NV Blob Parser
==============

This module reads the device's NV parameter blob into a list of NVItem
objects and assigns each item a type, name and description.

Blob Layout
-----------
    Offset 0:  4-byte header (checksum slot, opaque to the parser)
    Offset 4:  records, each
                 ID (2, LE) | LEN (2, LE) | PAYLOAD (LEN) | PAD (0-3 zero bytes)
               padded so the next record starts on a 4-byte boundary

Scanning stops silently at the first record whose header or payload
would run past the end of the buffer; flash dumps are normally padded
with erased bytes after the last record.

Type Resolution
---------------
Each item is resolved in this order:

1. The profile mapping table, keyed "NV_XXXX"
2. The built-in table (IMEI1 / IMEI2)
3. Inference from the payload (see infer_type)

Mapping tables are passed in per call and never stored, so parsing with
one profile cannot leak into a parse with another.
"""

import logging
import struct
from pathlib import Path
from typing import Final, Iterable, Iterator, Mapping, Optional, Union

from sprd_nvtool.errors import NVFormatError, ValidationError
from sprd_nvtool.nv.items import (
    DEFAULT_TYPE_MAPPINGS,
    IMEI_SIZE,
    IPV4_SIZE,
    MAC_SIZE,
    NVItem,
    NVItemType,
    TypeMapping,
    mapping_key,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Blob header, reserved for the image checksum
HEADER_SIZE: Final[int] = 4

# ID + LEN
RECORD_HEADER_SIZE: Final[int] = 4

# Record alignment
ALIGNMENT: Final[int] = 4

# Share of printable-or-NUL bytes for a payload to count as a string
STRING_THRESHOLD: Final[float] = 0.8


def align(offset: int) -> int:
    """Round an offset up to the next record boundary."""
    return (offset + ALIGNMENT - 1) & ~(ALIGNMENT - 1)


# =============================================================================
# Record Scanning
# =============================================================================

def iter_records(buffer: bytes) -> Iterator[NVItem]:
    """
    Yield the raw records of an NV blob, untyped.

    Args:
        buffer: Complete NV blob including the 4-byte header.

    Yields:
        NVItem objects with id, data and payload offset set.
    """
    view = memoryview(buffer)
    size = len(view)
    offset = HEADER_SIZE

    while offset + RECORD_HEADER_SIZE <= size:
        item_id, length = struct.unpack_from("<HH", view, offset)
        start = offset + RECORD_HEADER_SIZE
        end = start + length

        if end > size:
            logger.debug(
                "Record 0x%04X at offset %d runs past end of buffer (%d > %d), stopping",
                item_id, offset, end, size,
            )
            break

        yield NVItem(item_id, view[start:end].tobytes(), start)
        offset = align(end)


# =============================================================================
# Type Inference
# =============================================================================

def _is_bcd(data: bytes) -> bool:
    return all((b & 0x0F) <= 9 and (b >> 4) <= 9 for b in data)


def _is_plausible_mac(data: bytes) -> bool:
    return any(b != 0x00 for b in data) and any(b != 0xFF for b in data)


def _is_string_data(data: bytes) -> bool:
    textual = sum(1 for b in data if b == 0 or 32 <= b <= 126)
    return textual >= len(data) * STRING_THRESHOLD


def infer_type(data: bytes) -> NVItemType:
    """
    Guess an item type from its payload.

    Rules, first match wins:

    - empty -> Binary
    - 8 bytes, every nibble 0-9 -> IMEI
    - 6 bytes, not all 0x00 and not all 0xFF -> MAC
    - exactly 4 bytes -> IPv4
    - at least 80% printable ASCII or NUL -> String
    - 4 / 2 / 1 bytes -> UInt32 / UInt16 / UInt8
    - otherwise Binary

    Example:
        >>> infer_type(bytes(6))  # all-zero, so not a MAC
        <NVItemType.STRING: 'String'>
        >>> infer_type(bytes([0x21, 0x43, 0x65, 0x87, 0x09, 0x21, 0x43, 0x65]))
        <NVItemType.IMEI: 'IMEI'>
    """
    if not data:
        return NVItemType.BINARY

    length = len(data)
    if length == IMEI_SIZE and _is_bcd(data):
        return NVItemType.IMEI
    if length == MAC_SIZE and _is_plausible_mac(data):
        return NVItemType.MAC
    if length == IPV4_SIZE:
        return NVItemType.IPV4
    if _is_string_data(data):
        return NVItemType.STRING
    if length == 4:
        return NVItemType.UINT32
    if length == 2:
        return NVItemType.UINT16
    if length == 1:
        return NVItemType.UINT8
    return NVItemType.BINARY


def resolve_types(
    items: Iterable[NVItem],
    mappings: Optional[Mapping[str, TypeMapping]] = None,
    defaults: Mapping[int, TypeMapping] = DEFAULT_TYPE_MAPPINGS,
) -> None:
    """
    Assign type, name and description to each item in place.

    Args:
        items: Items to resolve.
        mappings: Profile mappings keyed "NV_XXXX" (optional).
        defaults: Built-in mappings keyed by id.
    """
    for item in items:
        mapping = mappings.get(mapping_key(item.id)) if mappings else None
        if mapping is None:
            mapping = defaults.get(item.id)

        if mapping is not None:
            item.apply_mapping(mapping)
        else:
            item.type = infer_type(item.data)


# =============================================================================
# Public Entry Points
# =============================================================================

def parse_nv(
    buffer: bytes,
    mappings: Optional[Mapping[str, TypeMapping]] = None,
    defaults: Mapping[int, TypeMapping] = DEFAULT_TYPE_MAPPINGS,
) -> list[NVItem]:
    """
    Parse an NV blob into typed items.

    Args:
        buffer: Complete NV blob including the 4-byte header.
        mappings: Profile mappings keyed "NV_XXXX" (optional).
        defaults: Built-in mappings keyed by id.

    Returns:
        Items in blob order. Duplicate ids are kept.

    Raises:
        ValidationError: If the buffer is shorter than the header.

    Example:
        >>> blob = bytes([0, 0, 0, 0, 0x05, 0x00, 0x02, 0x00, 0xAA, 0xBB, 0, 0])
        >>> items = parse_nv(blob)
        >>> items[0].id, items[0].data
        (5, b'\\xaa\\xbb')
    """
    if len(buffer) < HEADER_SIZE:
        raise ValidationError(
            f"NV buffer too short: {len(buffer)} bytes (header is {HEADER_SIZE})"
        )

    items = list(iter_records(buffer))
    resolve_types(items, mappings, defaults)

    logger.debug("Parsed %d NV items from %d bytes", len(items), len(buffer))
    return items


def parse_nv_file(
    filepath: Union[str, Path],
    mappings: Optional[Mapping[str, TypeMapping]] = None,
) -> list[NVItem]:
    """
    Read and parse an NV image file.

    Raises:
        NVFormatError: If the file cannot be read.
        ValidationError: If the file is shorter than the header.
    """
    return parse_nv(read_nv_file(filepath), mappings)


def read_nv_file(filepath: Union[str, Path]) -> bytes:
    """
    Read an NV image from disk.

    Raises:
        NVFormatError: If the file cannot be read.
    """
    filepath = Path(filepath)
    try:
        return filepath.read_bytes()
    except OSError as e:
        raise NVFormatError(f"Cannot read NV image {filepath}: {e}") from e


def check_nv_size(buffer: bytes, expected: int) -> None:
    """
    Verify an NV image has the size the device profile expects.

    Raises:
        ValidationError: On a size mismatch.
    """
    if len(buffer) != expected:
        raise ValidationError(
            f"NV image is {len(buffer)} bytes (0x{len(buffer):X}), "
            f"profile expects {expected} bytes (0x{expected:X})"
        )


def find_item(items: Iterable[NVItem], item_id: int) -> Optional[NVItem]:
    """Return the first item with the given id, or None."""
    for item in items:
        if item.id == item_id:
            return item
    return None
