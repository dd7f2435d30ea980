"""
NV Item Definitions
===================

This module defines the data structures for items of the device's
non-volatile (NV) parameter blob, and the per-type conversions between
an item's raw bytes and the text shown to (and typed by) the user.

Item Types
----------
- Binary: raw bytes, shown as upper-case hex
- String: UTF-8 text, trailing NULs dropped
- UInt32 / UInt16 / UInt8: little-endian unsigned integers
- IMEI: 15-digit IMEI in swapped-nibble BCD (8 bytes)
- MAC: 6-byte hardware address, "AA:BB:CC:DD:EE:FF"
- IPv4: 4-byte address, dotted decimal
- Custom: treated as Binary

IMEI Encoding
-------------
The first byte carries the first digit in its high nibble and 0xA in
its low nibble. Each following byte packs two digits, the first of the
pair in the low nibble:

    "355027161482626" -> 3A 55 20 17 16 84 62 62

Conversion Failures
-------------------
The conversions are lossy on bad input and never raise:

- empty text clears the item for every type
- unparseable integers leave the bytes unchanged
- malformed MAC / IPv4 text becomes all-zero bytes
- malformed IMEI or hex text becomes empty bytes
"""

import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Final, Mapping, Optional


# =============================================================================
# Enumeration Types
# =============================================================================

class NVItemType(Enum):
    """
    Interpretation of an NV item's payload.

    Values are the names used in device-profile JSON files.
    """
    BINARY = "Binary"
    STRING = "String"
    UINT32 = "UInt32"
    UINT16 = "UInt16"
    UINT8 = "UInt8"
    IMEI = "IMEI"
    MAC = "MAC"
    IPV4 = "IPv4"
    CUSTOM = "Custom"

    @classmethod
    def from_name(cls, name: str) -> "NVItemType":
        """
        Look up a type by its profile name, ignoring case.

        Raises:
            ValueError: If the name is not a known type.
        """
        wanted = name.strip().lower()
        for member in cls:
            if member.value.lower() == wanted or member.name.lower() == wanted:
                return member
        raise ValueError(f"Unknown NV item type: {name!r}")


# Byte width of the integer types
UINT_WIDTHS: Final[dict[NVItemType, int]] = {
    NVItemType.UINT32: 4,
    NVItemType.UINT16: 2,
    NVItemType.UINT8: 1,
}

IMEI_SIZE: Final[int] = 8
IMEI_DIGITS: Final[int] = 15
MAC_SIZE: Final[int] = 6
IPV4_SIZE: Final[int] = 4

_HEX_RE = re.compile(r"[0-9A-Fa-f]*")
_HEX_OCTET_RE = re.compile(r"[0-9A-Fa-f]{1,2}")
_UNSIGNED_RE = re.compile(r"\s*\+?([0-9]+)\s*")


# =============================================================================
# Type Mappings
# =============================================================================

@dataclass(frozen=True)
class TypeMapping:
    """
    How to present one NV id.

    Attributes:
        type: Payload interpretation
        name: Display name (e.g. "IMEI1")
        description: Longer description
    """
    type: NVItemType
    name: str = ""
    description: str = ""


def mapping_key(item_id: int) -> str:
    """
    Return the profile mapping key for an NV id.

    Example:
        >>> mapping_key(0x179)
        'NV_0179'
    """
    return f"NV_{item_id:04X}"


# Built-in mappings used when a profile does not name an id
DEFAULT_TYPE_MAPPINGS: Final[Mapping[int, TypeMapping]] = MappingProxyType({
    0x0005: TypeMapping(NVItemType.IMEI, "IMEI1", "International Mobile Equipment Identity"),
    0x0179: TypeMapping(NVItemType.IMEI, "IMEI2", "International Mobile Equipment Identity"),
})


# =============================================================================
# Conversions
# =============================================================================

def bytes_to_text(data: bytes, item_type: NVItemType) -> str:
    """
    Render item bytes as text according to the item type.

    Args:
        data: Item payload.
        item_type: How to interpret the payload.

    Returns:
        Display text, or "" when the payload is too short for the type.
    """
    if not data:
        return ""

    if item_type is NVItemType.STRING:
        return data.decode("utf-8", errors="replace").rstrip("\x00")

    if item_type in UINT_WIDTHS:
        width = UINT_WIDTHS[item_type]
        if len(data) < width:
            return ""
        return str(int.from_bytes(data[:width], "little"))

    if item_type is NVItemType.IMEI:
        return imei_to_text(data)

    if item_type is NVItemType.MAC:
        if len(data) < MAC_SIZE:
            return ""
        return ":".join(f"{b:02X}" for b in data[:MAC_SIZE])

    if item_type is NVItemType.IPV4:
        if len(data) < IPV4_SIZE:
            return ""
        return ".".join(str(b) for b in data[:IPV4_SIZE])

    return data.hex().upper()


def text_to_bytes(text: str, item_type: NVItemType) -> Optional[bytes]:
    """
    Convert user text into item bytes according to the item type.

    Args:
        text: Text entered by the user.
        item_type: How to encode the text.

    Returns:
        New payload, or None when the payload should stay unchanged
        (an integer that does not parse).
    """
    if not text:
        return b""

    if item_type is NVItemType.STRING:
        return text.encode("utf-8")

    if item_type in UINT_WIDTHS:
        width = UINT_WIDTHS[item_type]
        match = _UNSIGNED_RE.fullmatch(text)
        if match is None:
            return None
        value = int(match.group(1))
        if value >= 1 << (8 * width):
            return None
        return value.to_bytes(width, "little")

    if item_type is NVItemType.IMEI:
        return text_to_imei(text)

    if item_type is NVItemType.MAC:
        parts = text.split(":")
        if len(parts) != MAC_SIZE or not all(_HEX_OCTET_RE.fullmatch(p) for p in parts):
            return bytes(MAC_SIZE)
        return bytes(int(p, 16) for p in parts)

    if item_type is NVItemType.IPV4:
        parts = [p.strip() for p in text.split(".")]
        if len(parts) != IPV4_SIZE:
            return bytes(IPV4_SIZE)
        if not all(p.isascii() and p.isdigit() and int(p) <= 0xFF for p in parts):
            return bytes(IPV4_SIZE)
        return bytes(int(p) for p in parts)

    return hex_to_bytes(text)


def imei_to_text(data: bytes) -> str:
    """
    Decode an 8-byte BCD IMEI.

    Each byte contributes its low nibble then its high nibble; the first
    nibble (the 0xA marker) is dropped, leaving 15 digits.

    Returns:
        The IMEI, or "" unless exactly 8 bytes are given.
    """
    if len(data) != IMEI_SIZE:
        return ""
    nibbles = "".join(f"{b & 0x0F:X}{(b >> 4) & 0x0F:X}" for b in data)
    return nibbles[1:1 + IMEI_DIGITS]


def text_to_imei(text: str) -> bytes:
    """
    Encode a 15-digit IMEI as 8 BCD bytes.

    Returns:
        Encoded IMEI, or b"" if the text is not exactly 15 digits.
    """
    imei = text.strip()
    if len(imei) != IMEI_DIGITS or not (imei.isascii() and imei.isdigit()):
        return b""

    digits = [int(c) for c in imei]
    result = bytearray([(digits[0] << 4) | 0x0A])
    for i in range(1, IMEI_DIGITS, 2):
        result.append((digits[i + 1] << 4) | digits[i])
    return bytes(result)


def hex_to_bytes(text: str) -> bytes:
    """
    Parse hex text, ignoring spaces and dashes.

    Odd-length input is left-padded with a zero. Anything that is not
    hex yields b"".

    Example:
        >>> hex_to_bytes("0a bc")
        b'\\n\\xbc'
        >>> hex_to_bytes("abc")
        b'\\n\\xbc'
    """
    clean = text.replace(" ", "").replace("-", "")
    if not _HEX_RE.fullmatch(clean):
        return b""
    if len(clean) % 2:
        clean = "0" + clean
    return bytes.fromhex(clean)


def bytes_to_hex(data: bytes) -> str:
    """Lower-case hex bytes separated by spaces."""
    return " ".join(f"{b:02x}" for b in data)


# =============================================================================
# NV Item
# =============================================================================

@dataclass
class NVItem:
    """
    One tag-length-value record of an NV blob.

    Attributes:
        id: 16-bit NV identifier (not necessarily unique in a blob)
        data: Record payload
        offset: Byte offset of the payload within the source blob
        type: Payload interpretation used by `text`
        name: Display name from a type mapping
        description: Description from a type mapping

    Example:
        >>> item = NVItem(0x0005, b"", type=NVItemType.IMEI)
        >>> item.text = "355027161482626"
        >>> item.hex
        '3a 55 20 17 16 84 62 62'
    """
    id: int
    data: bytes = b""
    offset: int = 0
    type: NVItemType = NVItemType.BINARY
    name: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self) -> None:
        if not 0 <= self.id <= 0xFFFF:
            raise ValueError(f"NV id out of range: {self.id}")
        self.data = bytes(self.data)

    @property
    def length(self) -> int:
        """Payload length in bytes."""
        return len(self.data)

    @property
    def display_name(self) -> str:
        """Mapped name, or NV_XXXX when the id has none."""
        return self.name or mapping_key(self.id)

    @property
    def text(self) -> str:
        """Payload rendered according to the item type."""
        return bytes_to_text(self.data, self.type)

    @text.setter
    def text(self, value: str) -> None:
        data = text_to_bytes(value, self.type)
        if data is not None:
            self.data = data

    @property
    def hex(self) -> str:
        """Payload as lower-case, space separated hex."""
        return bytes_to_hex(self.data)

    @hex.setter
    def hex(self, value: str) -> None:
        self.data = hex_to_bytes(value)

    def apply_mapping(self, mapping: TypeMapping) -> None:
        """Take type, name and description from a mapping."""
        self.type = mapping.type
        self.name = mapping.name or None
        self.description = mapping.description or None

    def __str__(self) -> str:
        return f"{self.display_name} ({self.type.value}, {self.length} bytes): {self.text}"
