"""
SPRD NV Tool Error Hierarchy
============================

This module defines the exception hierarchy for the whole package.
All exceptions inherit from SprdError, allowing callers to catch every
tool-related error with a single except clause if desired.

Exception Hierarchy
-------------------
SprdError (base)
├── CommsError (boot-mode serial communication)
│   ├── TransportError - port cannot be opened, read or written
│   ├── TimeoutError - no response within the bounded attempts
│   ├── ProtocolError - malformed frame or unexpected reply
│   │   ├── ChecksumError - neither checksum mode validates a frame
│   │   └── InvalidCommandError - device rejected the command
│   ├── SessionError - session not connected, already connected or busy
│   └── CancelledError - operation cancelled between attempts/chunks
├── NVError (NV blob handling)
│   ├── ValidationError - buffer too short, size mismatch, bad value
│   └── NVFormatError - NV file cannot be read
└── ProfileError - device profile invalid or incomplete

Recovery Policy
---------------
Only TimeoutError conditions are retried, and only inside a single
request/response exchange or a single flash chunk. Everything else is
surfaced immediately. A failed staged write has to be restarted from the
beginning by the caller.
"""

from typing import Optional


# =============================================================================
# Base Exception Class
# =============================================================================

class SprdError(Exception):
    """
    Base exception for all SPRD NV tool errors.

    All exceptions in the package inherit from this class, allowing
    callers to catch all tool-related errors with a single except clause:

        try:
            session.connect(transport)
        except SprdError as e:
            print(f"Error: {e}")
    """
    pass


# =============================================================================
# Communication Exceptions
# =============================================================================

class CommsError(SprdError):
    """Base exception for boot-mode communication errors."""
    pass


class TransportError(CommsError):
    """
    Serial transport failure at the OS level.

    Raised when:
    - Serial port not found
    - Permission denied
    - Port busy or unplugged during a write/read

    Never retried by the protocol engine.
    """
    pass


class TimeoutError(CommsError):
    """
    Communication timeout error.

    Raised when every attempt of a bounded exchange expired without a
    response from the device. This could indicate:
    - Device not in boot mode
    - Cable disconnected
    - Stage loader crashed after execution

    Note:
        This is a tool-specific TimeoutError, distinct from the Python
        builtin TimeoutError. It inherits from CommsError for consistent
        error handling in the comms package.
    """

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class ProtocolError(CommsError):
    """
    Boot protocol error.

    Raised when a frame is malformed, its length field disagrees with its
    payload, or the device answers with a reply type the current operation
    does not expect. Fatal for the current operation, never retried.
    """
    pass


class ChecksumError(ProtocolError):
    """
    Frame checksum verification failed under both checksum modes.

    Attributes:
        expected: Checksum carried by the frame.
        actual: Checksum calculated under the session's current mode.
    """

    def __init__(self, expected: int, actual: int, message: str = ""):
        self.expected = expected
        self.actual = actual
        if not message:
            message = f"Checksum mismatch: frame carries {expected:04X}, calculated {actual:04X}"
        super().__init__(message)


class InvalidCommandError(ProtocolError):
    """
    The device answered a request with the "invalid command" reply.

    Attributes:
        command: Command code that was rejected (None if unknown).
    """

    def __init__(self, command: Optional[int] = None, message: str = ""):
        self.command = command
        if not message:
            if command is None:
                message = "Device rejected the command"
            else:
                message = f"Device rejected command 0x{command:02X}"
        super().__init__(message)


class SessionError(CommsError):
    """
    Boot session used in the wrong state.

    Raised when a flash command is issued before the stage-2 loader is
    running, when connect is called on a session that is already
    connected, or when a second session tries to claim a transport that
    is already in use.
    """
    pass


class CancelledError(CommsError):
    """
    Operation cancelled by the caller.

    Cancellation is only observed between attempts or chunks, never in the
    middle of writing a frame.
    """
    pass


# =============================================================================
# NV Blob Exceptions
# =============================================================================

class NVError(SprdError):
    """Base exception for NV blob handling errors."""
    pass


class ValidationError(NVError):
    """
    NV data failed validation before any device interaction.

    Raised when:
    - The NV buffer is shorter than the 4-byte header
    - A loaded NV image does not have the size the profile expects
    - A value cannot be represented in an NV record
    """
    pass


class NVFormatError(NVError):
    """
    NV file cannot be read.

    Raised when an NV image on disk is missing or unreadable.
    """
    pass


# =============================================================================
# Profile Exceptions
# =============================================================================

class ProfileError(SprdError):
    """
    Device profile is invalid or incomplete.

    Raised when the profile JSON is malformed, contains out-of-range
    values, or when a session is started without both stage loaders.
    """
    pass
