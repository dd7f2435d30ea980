"""
Serial Transport for SPRD Boot Mode
===================================

This module provides the byte-stream transport the boot protocol runs
over, plus port enumeration and detection of Spreadtrum devices in boot
mode. It handles:

- Port enumeration and detection of SPRD boot-mode ports
- Waiting for a device to enumerate after it is plugged in
- Opening the port with the fixed boot-mode line settings
- Mapping pyserial failures onto TransportError

Serial Port Settings
--------------------
The boot ROM listens on the USB CDC port with these settings:
- Baud Rate: 115200
- Data Bits: 8
- Parity: None
- Stop Bits: 1
- Flow Control: None

Devices enumerate as USB VID 0x1782 (Spreadtrum). In boot mode the
product ID is 0x4D00. The device only stays in boot mode for a few
seconds after power-on with the boot key held, so the port should be
opened as soon as it appears (see wait_for_sprd_port).
"""

import logging
import time
from dataclasses import dataclass
from typing import Final, Optional, Protocol

import serial
import serial.tools.list_ports

from sprd_nvtool.errors import TransportError

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Boot ROM line speed
DEFAULT_BAUD_RATE: Final[int] = 115200

# Default read/write timeouts in seconds
DEFAULT_READ_TIMEOUT: Final[float] = 5.0
DEFAULT_WRITE_TIMEOUT: Final[float] = 5.0

# Spreadtrum USB identifiers
SPRD_VENDOR_ID: Final[int] = 0x1782
SPRD_BOOT_PRODUCT_ID: Final[int] = 0x4D00

# USB Vendor IDs shown in port listings
USB_VENDOR_IDS: Final[dict[int, str]] = {
    SPRD_VENDOR_ID: "Spreadtrum",
    0x0403: "FTDI",
    0x10C4: "Silicon Labs",
    0x067B: "Prolific",
    0x1A86: "QinHeng",
}


# =============================================================================
# Transport Interface
# =============================================================================

class Transport(Protocol):
    """
    Byte-stream transport consumed by BootSession.

    read() returns whatever bytes arrive within the timeout, possibly
    fewer than a full frame, and b"" when nothing arrived.
    """

    @property
    def is_open(self) -> bool: ...

    def open(self) -> None: ...

    def close(self) -> None: ...

    def write(self, data: bytes) -> None: ...

    def read(self, timeout: float) -> bytes: ...


# =============================================================================
# Port Information
# =============================================================================

@dataclass(frozen=True)
class PortInfo:
    """
    Information about an available serial port.

    Attributes:
        device: System device path (e.g., '/dev/ttyUSB0', 'COM3')
        description: Human-readable description from the driver
        manufacturer: Device manufacturer (if available)
        product: Product name (if available)
        serial_number: Device serial number (if available)
        vid: USB Vendor ID (None for non-USB ports)
        pid: USB Product ID (None for non-USB ports)
    """

    device: str
    description: str
    manufacturer: Optional[str]
    product: Optional[str]
    serial_number: Optional[str]
    vid: Optional[int]
    pid: Optional[int]

    @property
    def is_usb(self) -> bool:
        """Return True if this is a USB port."""
        return self.vid is not None

    @property
    def is_sprd(self) -> bool:
        """Return True for any Spreadtrum USB port."""
        return self.vid == SPRD_VENDOR_ID

    @property
    def is_boot_mode(self) -> bool:
        """Return True for a Spreadtrum port in boot (download) mode."""
        return self.is_sprd and self.pid == SPRD_BOOT_PRODUCT_ID

    @property
    def vendor_name(self) -> Optional[str]:
        """Return the vendor name for known USB devices."""
        if self.vid is not None:
            return USB_VENDOR_IDS.get(self.vid)
        return None

    def __str__(self) -> str:
        parts = [self.device]
        if self.description:
            parts.append(f"- {self.description}")
        if self.vendor_name:
            parts.append(f"({self.vendor_name})")
        if self.is_boot_mode:
            parts.append("[boot mode]")
        return " ".join(parts)


# =============================================================================
# Port Enumeration
# =============================================================================

def list_serial_ports() -> list[PortInfo]:
    """
    List all available serial ports on the system.

    Returns:
        List of PortInfo objects describing available ports.
    """
    ports = []

    for port in serial.tools.list_ports.comports():
        info = PortInfo(
            device=port.device,
            description=port.description or "",
            manufacturer=port.manufacturer,
            product=port.product,
            serial_number=port.serial_number,
            vid=port.vid,
            pid=port.pid,
        )
        ports.append(info)
        logger.debug(
            "Found port: %s (vid=%s, pid=%s)",
            port.device,
            f"{port.vid:04X}" if port.vid else "N/A",
            f"{port.pid:04X}" if port.pid else "N/A",
        )

    return ports


def find_sprd_port(ports: Optional[list[PortInfo]] = None) -> Optional[str]:
    """
    Attempt to auto-detect a Spreadtrum boot-mode port.

    Detection Priority:
    1. Spreadtrum VID with the boot-mode PID (1782:4D00)
    2. Any other Spreadtrum port
    3. None, never a random USB adapter

    Args:
        ports: Port list to search (default: enumerate the system).

    Returns:
        Device path of the detected port, or None if not found.
    """
    if ports is None:
        ports = list_serial_ports()

    for port in ports:
        if port.is_boot_mode:
            logger.info("Auto-detected boot-mode port: %s", port.device)
            return port.device

    for port in ports:
        if port.is_sprd:
            logger.info(
                "Using Spreadtrum port %s (pid=%04X, not the boot-mode PID)",
                port.device, port.pid or 0,
            )
            return port.device

    logger.debug("No Spreadtrum port found")
    return None


def wait_for_sprd_port(timeout: float = 30.0, poll_interval: float = 0.2) -> Optional[str]:
    """
    Poll until a Spreadtrum boot-mode port appears.

    The device leaves boot mode if nothing talks to it shortly after it
    enumerates, so callers should open the returned port immediately.

    Args:
        timeout: Seconds to wait before giving up.
        poll_interval: Seconds between enumerations.

    Returns:
        Device path, or None on timeout.
    """
    deadline = time.monotonic() + timeout
    while True:
        device = find_sprd_port()
        if device is not None:
            return device
        if time.monotonic() >= deadline:
            return None
        time.sleep(poll_interval)


def format_port_list(ports: list[PortInfo], verbose: bool = False) -> str:
    """
    Format a list of ports for display to the user.

    Args:
        ports: List of PortInfo objects to format.
        verbose: If True, include additional details.

    Returns:
        Formatted string with one port per line.
    """
    if not ports:
        return "No serial ports found."

    lines = []
    for port in ports:
        if verbose:
            line = f"  {port.device}"
            if port.description:
                line += f"\n    Description: {port.description}"
            if port.manufacturer:
                line += f"\n    Manufacturer: {port.manufacturer}"
            if port.vid is not None:
                line += f"\n    USB VID:PID: {port.vid:04X}:{port.pid or 0:04X}"
                if port.vendor_name:
                    line += f" ({port.vendor_name})"
            if port.serial_number:
                line += f"\n    Serial: {port.serial_number}"
            lines.append(line)
        else:
            lines.append(f"  {port}")

    return "\n".join(lines)


# =============================================================================
# Serial Transport
# =============================================================================

class SerialTransport:
    """
    Boot-mode transport over a pyserial port.

    The port is configured 115200 8N1 without flow control. Reads use a
    per-call timeout so the protocol engine controls every deadline.

    Example:
        >>> with SerialTransport("/dev/ttyUSB0") as transport:
        ...     session.connect(transport)
    """

    def __init__(
        self,
        device: str,
        baud_rate: int = DEFAULT_BAUD_RATE,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
    ) -> None:
        self.device = device
        self.baud_rate = baud_rate
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._port: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        """Return True if the port is open."""
        return self._port is not None and self._port.is_open

    def open(self) -> None:
        """
        Open and configure the serial port.

        Raises:
            TransportError: If the port cannot be opened.
        """
        if self.is_open:
            return

        logger.info("Opening serial port: %s at %d baud", self.device, self.baud_rate)

        try:
            self._port = serial.Serial(
                port=self.device,
                baudrate=self.baud_rate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.read_timeout,
                write_timeout=self.write_timeout,
                xonxoff=False,
                rtscts=False,
                dsrdtr=False,
            )
            self._port.reset_input_buffer()
            self._port.reset_output_buffer()
        except serial.SerialException as e:
            self._port = None
            raise TransportError(_describe_open_error(self.device, e)) from e

        logger.debug("Port opened: %s", self.device)

    def close(self) -> None:
        """Close the port, logging rather than raising on failure."""
        port, self._port = self._port, None
        if port is None:
            return

        try:
            if port.is_open:
                port.reset_input_buffer()
                port.reset_output_buffer()
                port.close()
                logger.debug("Serial port closed")
        except (serial.SerialException, OSError) as e:
            logger.warning("Error closing serial port: %s", e)

    def write(self, data: bytes) -> None:
        """
        Write bytes and wait for them to leave the output buffer.

        Raises:
            TransportError: If the port is closed or the write fails.
        """
        port = self._require_port()
        try:
            port.write(data)
            port.flush()
        except serial.SerialException as e:
            raise TransportError(f"Write to {self.device} failed: {e}") from e

    def read(self, timeout: float) -> bytes:
        """
        Read whatever arrives within the timeout.

        Blocks until at least one byte arrives (or the timeout expires),
        then returns everything already buffered.

        Raises:
            TransportError: If the port is closed or the read fails.
        """
        port = self._require_port()
        try:
            port.timeout = timeout
            waiting = port.in_waiting
            return bytes(port.read(max(1, waiting)))
        except serial.SerialException as e:
            raise TransportError(f"Read from {self.device} failed: {e}") from e

    def reset_input_buffer(self) -> None:
        """Discard any unread bytes."""
        port = self._require_port()
        try:
            port.reset_input_buffer()
        except serial.SerialException as e:
            raise TransportError(f"Cannot flush {self.device}: {e}") from e

    def _require_port(self) -> serial.Serial:
        if self._port is None or not self._port.is_open:
            raise TransportError(f"Serial port {self.device} is not open")
        return self._port

    def __enter__(self) -> "SerialTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"SerialTransport({self.device!r}, {self.baud_rate}, {state})"


def _describe_open_error(device: str, error: Exception) -> str:
    """Build a helpful message for a failed port open."""
    message = str(error)

    if "Permission denied" in message:
        return (
            f"Permission denied accessing {device}. "
            "You may need to add your user to the 'dialout' group: "
            "sudo usermod -a -G dialout $USER"
        )
    if "No such file" in message or "not found" in message.lower():
        return (
            f"Serial port not found: {device}. "
            "Use 'sprdlink ports' to list available ports."
        )
    if "busy" in message.lower() or "in use" in message.lower():
        return (
            f"Serial port {device} is busy. "
            "Close any other programs using the port."
        )
    return f"Cannot open {device}: {error}"
