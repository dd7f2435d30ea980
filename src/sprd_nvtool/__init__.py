"""
SPRD NV Tool - Boot-Mode Flasher and NV Parameter Editor
========================================================

This package reads and writes the flash of Spreadtrum (SPRD) feature
phone chipsets through their boot ROM, and decodes / re-encodes the
tag-length-value NV parameter blob (IMEI, calibration, network settings)
stored in that flash.

Main Components
---------------
- **comms**: Boot protocol (sprdlink)
    Frame codec, checksums, serial transport and the boot session that
    uploads the FDL1 / FDL2 stage loaders and drives flash I/O

- **nv**: NV blob codec (sprdnv)
    Parses the blob into typed items, edits them as text and rebuilds
    the blob byte for byte

- **profile**: Device profiles
    Stage loaders, addresses and NV type mappings for one device model

Quick Start
-----------
Edit an NV backup offline:
    >>> from sprd_nvtool.nv import parse_nv_file, find_item, write_nv_file
    >>> items = parse_nv_file("nv_data.bin")
    >>> find_item(items, 0x0005).text = "355027161482626"
    >>> write_nv_file("nv_patched.bin", items)

Or use the command-line tools:
    $ sprdlink --profile device.json read-nv nv_data.bin
    $ sprdnv set nv_data.bin 0x0005 355027161482626
    $ sprdlink --profile device.json write-nv nv_data.bin --erase runtime

Version History
---------------
1.0.0 - Initial release with boot protocol, NV codec and CLI tools
"""

__version__ = "1.0.0"

# =============================================================================
# Public API Exports
# =============================================================================

from sprd_nvtool.errors import (
    CancelledError,
    ChecksumError,
    CommsError,
    InvalidCommandError,
    NVError,
    NVFormatError,
    ProfileError,
    ProtocolError,
    SessionError,
    SprdError,
    TimeoutError,
    TransportError,
    ValidationError,
)

__all__ = [
    "__version__",
    # Errors
    "SprdError",
    "CommsError",
    "TransportError",
    "TimeoutError",
    "ProtocolError",
    "ChecksumError",
    "InvalidCommandError",
    "SessionError",
    "CancelledError",
    "NVError",
    "ValidationError",
    "NVFormatError",
    "ProfileError",
]
