"""
SPRD Boot-Mode Communication Module
===================================

This module talks to Spreadtrum (SPRD) devices in boot mode over a
serial link: it frames requests, verifies replies, uploads the two stage
loaders and then reads, writes and erases flash through the stage-2
loader.

Module Structure
----------------
The comms module is organized into several submodules:

- **checksum**: CRC16L and FrmChk frame checksums, NV image checksum
- **frame**: Packet framing, byte stuffing, checksum-mode detection
- **transport**: Serial port utilities and the pyserial transport
- **session**: Boot session state machine and flash primitives
- **nvtransfer**: NV read/write and flash dump workflows (import it
  directly: ``from sprd_nvtool.comms.nvtransfer import read_nv``)

Quick Start
-----------
**Reading the NV blob**:

    from sprd_nvtool.comms import BootSession, SerialTransport, find_sprd_port
    from sprd_nvtool.profile import load_profile

    profile = load_profile("device.json")
    session = BootSession(profile)

    with SerialTransport(find_sprd_port()) as transport:
        session.connect(transport)
        blob = session.read_flash(profile.nv_base_address, profile.nv_data_size)
        session.reset()

Serial Settings
---------------
- Baud rate: 115200
- 8 data bits, no parity, 1 stop bit
- No flow control

Error Handling
--------------
All communication errors inherit from `CommsError`:

- `TransportError`: Port cannot be opened, read or written
- `TimeoutError`: No reply within the bounded attempts
- `ProtocolError`: Malformed frame, bad checksum or rejected command
- `SessionError`: Session busy, not ready, or transport already in use

These exceptions are defined in `sprd_nvtool.errors`.

Thread Safety
-------------
A BootSession runs one operation at a time and serializes its own wire
traffic. cancel() is safe to call from another thread.
"""

# =============================================================================
# Public API Exports
# =============================================================================

# Checksums
from sprd_nvtool.comms.checksum import (
    CRC16L_POLY,
    CRC16L_REFERENCE_VALUES,
    CRC_INITIAL,
    CRC_TABLE,
    FRMCHK_REFERENCE_VALUES,
    ChecksumMode,
    checksum,
    crc16l,
    crc_from_bytes,
    crc_to_bytes,
    do_nv_checksum,
    frmchk,
)

# Framing
from sprd_nvtool.comms.frame import (
    ESCAPE_BYTE,
    FRAME_FLAG,
    MAX_PAYLOAD_SIZE,
    Command,
    FrameCodec,
    Packet,
    Reply,
    describe_type,
    escape,
    frame_complete,
    unescape,
)

# Serial transport
from sprd_nvtool.comms.transport import (
    DEFAULT_BAUD_RATE,
    SPRD_BOOT_PRODUCT_ID,
    SPRD_VENDOR_ID,
    PortInfo,
    SerialTransport,
    Transport,
    find_sprd_port,
    format_port_list,
    list_serial_ports,
    wait_for_sprd_port,
)

# Boot session
from sprd_nvtool.comms.session import (
    BootSession,
    ProgressCallback,
    RetryPolicy,
    SessionConfig,
    SessionState,
)

__all__ = [
    # Checksums
    "CRC16L_POLY",
    "CRC_INITIAL",
    "CRC_TABLE",
    "CRC16L_REFERENCE_VALUES",
    "FRMCHK_REFERENCE_VALUES",
    "ChecksumMode",
    "crc16l",
    "frmchk",
    "checksum",
    "do_nv_checksum",
    "crc_to_bytes",
    "crc_from_bytes",
    # Framing
    "FRAME_FLAG",
    "ESCAPE_BYTE",
    "MAX_PAYLOAD_SIZE",
    "Command",
    "Reply",
    "Packet",
    "FrameCodec",
    "describe_type",
    "escape",
    "unescape",
    "frame_complete",
    # Transport
    "DEFAULT_BAUD_RATE",
    "SPRD_VENDOR_ID",
    "SPRD_BOOT_PRODUCT_ID",
    "Transport",
    "PortInfo",
    "SerialTransport",
    "list_serial_ports",
    "find_sprd_port",
    "wait_for_sprd_port",
    "format_port_list",
    # Session
    "BootSession",
    "SessionState",
    "SessionConfig",
    "RetryPolicy",
    "ProgressCallback",
]
