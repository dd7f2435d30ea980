"""
Checksum Engine for the SPRD Boot Protocol
==========================================

This module implements the two 16-bit checksums spoken by the boot ROM
and its stage loaders, plus the NV image checksum that accompanies an NV
write.

Checksum Algorithms
-------------------
**CRC16L** (CRC-CCITT, X.25 polynomial, non-reflected):
- Polynomial: x^16 + x^12 + x^5 + 1 (0x1021)
- Initial value: 0x0000
- Bits processed MSB first, no final XOR

**FrmChk** (ones' complement word sum):
- Big-endian 16-bit words summed with end-around carry
- An odd trailing byte is the high half of a final word
- The folded sum is complemented

Which algorithm a frame uses depends on the firmware that is currently
running: the boot ROM and the stage loaders do not all agree. The session
starts in CRC16L mode and the frame codec switches mode when an incoming
frame only validates under the other algorithm.

Usage
-----
    from sprd_nvtool.comms.checksum import ChecksumMode, checksum

    crc = checksum(b"\\x00\\x00\\x00\\x00", ChecksumMode.CRC16L)
"""

from enum import Enum
from typing import Final

from sprd_nvtool.errors import ValidationError

# =============================================================================
# Constants
# =============================================================================

# CRC16L generator polynomial (CCITT / X.25)
CRC16L_POLY: Final[int] = 0x1021

# Initial CRC register value
CRC_INITIAL: Final[int] = 0x0000

# Mask for 16-bit values
CRC_MASK: Final[int] = 0xFFFF


class ChecksumMode(Enum):
    """Frame checksum algorithm expected by the running firmware stage."""
    CRC16L = "crc16l"
    FRMCHK = "frmchk"

    @property
    def other(self) -> "ChecksumMode":
        """Return the alternate mode."""
        return ChecksumMode.FRMCHK if self is ChecksumMode.CRC16L else ChecksumMode.CRC16L


# =============================================================================
# Lookup Table Generation
# =============================================================================

def _crc16l_bitwise(data: bytes, initial: int = CRC_INITIAL) -> int:
    """
    Bit-serial CRC16L, one input bit at a time.

    For each bit the register is shifted left; the polynomial is XORed in
    when the bit shifted out was set, and XORed in again when the input
    bit is set.
    """
    crc = initial
    for byte in data:
        bit = 0x80
        while bit:
            if crc & 0x8000:
                crc = ((crc << 1) & CRC_MASK) ^ CRC16L_POLY
            else:
                crc = (crc << 1) & CRC_MASK
            if byte & bit:
                crc ^= CRC16L_POLY
            bit >>= 1
    return crc


def _generate_crc_table() -> tuple[int, ...]:
    """
    Generate the 256-entry CRC16L lookup table.

    Entry n is the register after feeding byte n into a zero register,
    so the table-driven update below produces the same value as the
    bit-serial definition.

    Returns:
        Tuple of 256 CRC values, one per byte value.
    """
    return tuple(_crc16l_bitwise(bytes([value])) for value in range(256))


# Pre-computed lookup table, built once at import time
CRC_TABLE: Final[tuple[int, ...]] = _generate_crc_table()


# =============================================================================
# Checksum Functions
# =============================================================================

def crc16l(data: bytes, initial: int = CRC_INITIAL) -> int:
    """
    Calculate the CRC16L checksum of a byte sequence.

    Args:
        data: Input bytes. For frames this is the unescaped
              TYPE, LEN and PAYLOAD fields.
        initial: Initial register value, for incremental calculation.

    Returns:
        16-bit CRC value (0x0000 to 0xFFFF).

    Example:
        >>> hex(crc16l(b"123456789"))
        '0x31c3'
        >>> hex(crc16l(bytes([0x80])))
        '0x9188'
    """
    crc = initial
    for byte in data:
        crc = ((crc << 8) & CRC_MASK) ^ CRC_TABLE[((crc >> 8) ^ byte) & 0xFF]
    return crc


def frmchk(data: bytes, big_endian: bool = True) -> int:
    """
    Calculate the FrmChk ones' complement checksum.

    Args:
        data: Input bytes.
        big_endian: Combine byte pairs high byte first (the wire order).

    Returns:
        16-bit checksum value.

    Example:
        >>> hex(frmchk(bytes([0x00, 0x01, 0xF2, 0x03, 0xF4, 0xF5, 0xF6, 0xF7])))
        '0x220d'
    """
    total = 0
    length = len(data)
    index = 0

    while index + 1 < length:
        if big_endian:
            word = (data[index] << 8) | data[index + 1]
        else:
            word = data[index] | (data[index + 1] << 8)
        total += word
        total = (total & 0xFFFF) + (total >> 16)  # end-around carry
        index += 2

    if index < length:
        word = data[index] << 8 if big_endian else data[index]
        total += word
        total = (total & 0xFFFF) + (total >> 16)

    return ~total & CRC_MASK


def checksum(data: bytes, mode: ChecksumMode) -> int:
    """
    Calculate a frame checksum under the given mode.

    Args:
        data: Unescaped frame header and payload.
        mode: Algorithm to use.

    Returns:
        16-bit checksum value.
    """
    if mode is ChecksumMode.CRC16L:
        return crc16l(data)
    return frmchk(data)


def do_nv_checksum(buffer: bytearray) -> int:
    """
    Stamp an NV image with its CRC and return the write checksum.

    The CRC16L of everything after the first two bytes is written
    big-endian into bytes 0-1 of the buffer. The unsigned sum of every
    byte of the patched buffer is then returned; this is the value that
    accompanies the START packet of an NV write.

    Args:
        buffer: Complete NV image, modified in place.

    Returns:
        Byte sum of the patched image.

    Raises:
        ValidationError: If the buffer is shorter than 2 bytes.

    Example:
        >>> image = bytearray([0x00, 0x00, 0x80])
        >>> do_nv_checksum(image)
        409
        >>> bytes(image[:2]).hex()
        '9188'
    """
    if len(buffer) < 2:
        raise ValidationError(f"NV buffer too small for a checksum: {len(buffer)} bytes")

    crc = crc16l(bytes(buffer[2:]))
    buffer[0] = (crc >> 8) & 0xFF
    buffer[1] = crc & 0xFF

    return sum(buffer)


def crc_to_bytes(crc: int) -> bytes:
    """
    Convert a checksum to its big-endian wire form.

    Example:
        >>> crc_to_bytes(0x3B5A)
        b';Z'
    """
    return bytes([(crc >> 8) & 0xFF, crc & 0xFF])


def crc_from_bytes(data: bytes) -> int:
    """
    Convert big-endian wire bytes to a checksum value.

    Raises:
        ValueError: If data is less than 2 bytes.
    """
    if len(data) < 2:
        raise ValueError(f"Checksum requires 2 bytes, got {len(data)}")
    return (data[0] << 8) | data[1]


# =============================================================================
# Reference Values for Testing
# =============================================================================

# Published check values for the algorithms above
CRC16L_REFERENCE_VALUES: Final[dict[bytes, int]] = {
    b"": 0x0000,
    bytes([0x01]): 0x1021,
    bytes([0x80]): 0x9188,
    b"123456789": 0x31C3,
}

FRMCHK_REFERENCE_VALUES: Final[dict[bytes, int]] = {
    b"": 0xFFFF,
    bytes([0x12]): 0xEDFF,
    b"123456789": 0xF62A,
    bytes([0x00, 0x01, 0xF2, 0x03, 0xF4, 0xF5, 0xF6, 0xF7]): 0x220D,
}
