"""
Frame Codec for the SPRD Boot Protocol
======================================

This module implements packet framing for the boot ROM / stage loader
protocol. Every request and every reply is one HDLC-style frame.

Frame Format
------------
    | 0x7E | TYPE (2, BE) | LEN (2, BE) | PAYLOAD (LEN) | CRC (2, BE) | 0x7E |

- TYPE: command code (PC to device) or reply code (device to PC)
- LEN: payload length in bytes
- CRC: checksum over TYPE, LEN and PAYLOAD under the session's
  current checksum mode (see checksum.py)

Byte Stuffing
-------------
Inside the flags, any 0x7E or 0x7D byte is sent as 0x7D followed by the
byte XOR 0x20:

    0x7E -> 0x7D 0x5E
    0x7D -> 0x7D 0x5D

Terse Replies
-------------
Some firmware stages answer with a single unframed status byte. A reply
with no flag bytes at all is interpreted by its first byte (ACK, VER or
INVALID_CMD). Such replies never carry flash data.

Checksum Mode Detection
-----------------------
The codec owns the session's ChecksumMode. Decoding verifies a frame
under the current mode first; if that fails but the other algorithm
matches, the codec switches to the other mode and keeps it for all later
frames in both directions.
"""

import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Final

from sprd_nvtool.comms.checksum import (
    ChecksumMode,
    checksum,
    crc_from_bytes,
    crc_to_bytes,
)
from sprd_nvtool.errors import ChecksumError, ProtocolError

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Constants
# =============================================================================

# Frame delimiter
FRAME_FLAG: Final[int] = 0x7E

# Escape byte for stuffing
ESCAPE_BYTE: Final[int] = 0x7D

# Value XORed into an escaped byte
ESCAPE_XOR: Final[int] = 0x20

# TYPE + LEN
HEADER_SIZE: Final[int] = 4

# Checksum trailer
CHECKSUM_SIZE: Final[int] = 2

# Largest payload the 16-bit LEN field can describe
MAX_PAYLOAD_SIZE: Final[int] = 0xFFFF


class Command(IntEnum):
    """Request codes sent from the PC to the boot ROM or stage loader."""
    CONNECT = 0x00
    START_DATA = 0x01
    MIDST_DATA = 0x02
    END_DATA = 0x03
    EXEC_DATA = 0x04
    RESET = 0x05
    READ_FLASH = 0x06
    ERASE_FLASH = 0x0A
    CHECK_BAUD = 0x7E


class Reply(IntEnum):
    """Reply codes sent by the device."""
    ACK = 0x80
    VER = 0x81
    INVALID_CMD = 0x82
    READ_FLASH = 0x93
    READ_NVITEM = 0x95


# Status bytes accepted in an unframed reply
TERSE_REPLIES: Final[frozenset[int]] = frozenset(
    {Reply.ACK, Reply.VER, Reply.INVALID_CMD}
)


def describe_type(value: int) -> str:
    """Return a readable name for a command or reply code."""
    for enum_class in (Reply, Command):
        try:
            return enum_class(value).name
        except ValueError:
            continue
    return f"0x{value:04X}"


# =============================================================================
# Packet Data Structure
# =============================================================================

@dataclass
class Packet:
    """
    One logical boot-protocol packet.

    Attributes:
        type: Command or reply code (16-bit)
        payload: Packet payload (0-65535 bytes)
        framed: False for a terse single-byte reply
    """
    type: int
    payload: bytes = b""
    framed: bool = field(default=True, compare=False)

    def __post_init__(self) -> None:
        if not 0 <= self.type <= 0xFFFF:
            raise ValueError(f"Packet type out of range: {self.type}")
        if len(self.payload) > MAX_PAYLOAD_SIZE:
            raise ValueError(
                f"Payload too large: {len(self.payload)} bytes (max {MAX_PAYLOAD_SIZE})"
            )

    @property
    def header(self) -> bytes:
        """Return the TYPE and LEN fields."""
        return struct.pack(">HH", self.type, len(self.payload))

    def __str__(self) -> str:
        return f"{describe_type(self.type)} ({len(self.payload)} bytes)"


# =============================================================================
# Byte Stuffing
# =============================================================================

def escape(data: bytes) -> bytes:
    """
    Byte-stuff the contents of a frame.

    Args:
        data: Unescaped TYPE, LEN, PAYLOAD and CRC bytes.

    Returns:
        Data with every flag and escape byte stuffed.

    Example:
        >>> escape(bytes([0x01, 0x7E, 0x7D]))
        b'\\x01}^}]'
    """
    result = bytearray()
    for byte in data:
        if byte in (FRAME_FLAG, ESCAPE_BYTE):
            result.append(ESCAPE_BYTE)
            result.append(byte ^ ESCAPE_XOR)
        else:
            result.append(byte)
    return bytes(result)


def unescape(data: bytes) -> bytes:
    """
    Remove byte stuffing from the contents of a frame.

    Raises:
        ProtocolError: If the data ends in a lone escape byte.
    """
    result = bytearray()
    index = 0
    while index < len(data):
        byte = data[index]
        if byte == ESCAPE_BYTE:
            index += 1
            if index >= len(data):
                raise ProtocolError("Frame ends with a dangling escape byte")
            result.append(data[index] ^ ESCAPE_XOR)
        else:
            result.append(byte)
        index += 1
    return bytes(result)


def frame_complete(buffer: bytes) -> bool:
    """
    Check whether received bytes hold a complete reply.

    A reply is complete when it contains an opening and a closing flag,
    or when it contains no flag at all (a terse status reply).
    """
    if not buffer:
        return False
    flags = buffer.count(FRAME_FLAG)
    return flags >= 2 or flags == 0


# =============================================================================
# Frame Codec
# =============================================================================

class FrameCodec:
    """
    Encoder/decoder for boot-protocol frames.

    The codec holds the checksum mode of the session it belongs to. The
    mode is read when encoding and only ever changed by decode().

    Attributes:
        mode: Checksum algorithm currently expected by the device.

    Example:
        >>> codec = FrameCodec()
        >>> codec.encode(Command.CONNECT).hex()
        '7e0000000000007e'
    """

    def __init__(self, mode: ChecksumMode = ChecksumMode.CRC16L) -> None:
        self.mode = mode

    def encode(self, packet_type: int, payload: bytes = b"") -> bytes:
        """
        Encode a packet into a complete wire frame.

        Args:
            packet_type: Command code.
            payload: Packet payload.

        Returns:
            Flag-delimited, byte-stuffed frame.
        """
        packet = Packet(packet_type, bytes(payload))
        body = packet.header + packet.payload
        crc = checksum(body, self.mode)
        return (
            bytes([FRAME_FLAG])
            + escape(body + crc_to_bytes(crc))
            + bytes([FRAME_FLAG])
        )

    def encode_packet(self, packet: Packet) -> bytes:
        """Encode an existing Packet."""
        return self.encode(packet.type, packet.payload)

    def decode(self, data: bytes) -> Packet:
        """
        Decode one reply.

        Args:
            data: Raw received bytes, containing one frame or a terse
                  status byte.

        Returns:
            The decoded Packet.

        Raises:
            ProtocolError: If the frame is malformed or the reply code of
                           a terse reply is unknown.
            ChecksumError: If neither checksum mode validates the frame.
        """
        start = data.find(FRAME_FLAG)
        end = data.find(FRAME_FLAG, start + 1) if start >= 0 else -1

        if start < 0 or end < 0:
            return self._decode_terse(data)

        body = unescape(data[start + 1:end])
        if len(body) < HEADER_SIZE:
            raise ProtocolError(f"Frame too short: {len(body)} bytes after unescaping")

        packet_type, length = struct.unpack(">HH", body[:HEADER_SIZE])
        if len(body) - HEADER_SIZE < length + CHECKSUM_SIZE:
            raise ProtocolError(
                f"Frame truncated: LEN={length} but only "
                f"{len(body) - HEADER_SIZE} bytes follow the header"
            )

        covered = body[:HEADER_SIZE + length]
        payload = body[HEADER_SIZE:HEADER_SIZE + length]
        received = crc_from_bytes(body[HEADER_SIZE + length:HEADER_SIZE + length + CHECKSUM_SIZE])

        calculated = checksum(covered, self.mode)
        if calculated != received:
            alternate = self.mode.other
            if checksum(covered, alternate) != received:
                raise ChecksumError(received, calculated)
            logger.info(
                "Checksum mode switched: %s -> %s", self.mode.name, alternate.name
            )
            self.mode = alternate

        return Packet(packet_type, payload)

    def _decode_terse(self, data: bytes) -> Packet:
        """Interpret an unframed reply by its first byte."""
        if not data:
            raise ProtocolError("Empty reply")

        status = data[0]
        if status not in TERSE_REPLIES:
            raise ProtocolError(
                f"Unframed reply with unknown status byte 0x{status:02X}"
            )

        logger.debug("Terse reply: %s", describe_type(status))
        return Packet(status, b"", framed=False)
