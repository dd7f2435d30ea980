"""
Boot Session State Machine
==========================

This module drives a device in boot mode: it brings up the two stage
loaders and then exposes the flash primitives the stage-2 loader offers.

Connect Sequence
----------------
    DISCONNECTED
        | CHECK_BAUD probe (single raw 0x7E), CONNECT
    BAUD_CHECKED -> CONNECTED
        | START / MIDST x N / END with the FDL1 image
    STAGE1_LOADED
        | EXEC, settle delay
    STAGE1_EXECUTING
        | CHECK_BAUD, CONNECT again (the link resets when FDL1 starts)
        | START / MIDST x N / END with the FDL2 image
    STAGE2_LOADED
        | EXEC, settle delay
    STAGE2_EXECUTING -> READY

Any failure moves the session to ABORTED. An aborted session may be
connected again; the whole sequence restarts from the probe.

Exchanges
---------
The protocol is half-duplex: every request is written once and its reply
is awaited for a bounded number of attempts (RetryPolicy). Only silence
is retried. An INVALID_CMD reply, a malformed frame or an unexpected
reply type ends the operation at once. Flash read requests are the one
exception to "written once": they are idempotent, so each attempt
re-sends the READ_FLASH request for the chunk.

Concurrency
-----------
One operation runs at a time per session; a second call while one is
running fails with SessionError instead of waiting. A transport can be
claimed by only one session at a time. cancel() may be called from any
thread and is observed between attempts and between chunks, never in the
middle of a frame. Each operation has its own cancel flag, so a request
made while the session is idle does not leak into the next operation.
Cancelling a task awaiting one of the async wrappers cancels the
operation that task started, even if its worker thread has not reached
it yet.

Usage:
    profile = load_profile("device.json")
    session = BootSession(profile)

    with SerialTransport("/dev/ttyUSB0") as transport:
        session.connect(transport)
        blob = session.read_flash(profile.nv_base_address, profile.nv_data_size)
        session.reset()
"""

import asyncio
import contextvars
import logging
import os
import struct
import threading
import time
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Final, Iterator, Optional, TypeVar

from sprd_nvtool.comms.checksum import ChecksumMode
from sprd_nvtool.comms.frame import (
    Command,
    FrameCodec,
    Packet,
    Reply,
    describe_type,
    frame_complete,
)
from sprd_nvtool.comms.transport import Transport
from sprd_nvtool.errors import (
    CancelledError,
    InvalidCommandError,
    ProtocolError,
    SessionError,
    TimeoutError,
)
from sprd_nvtool.profile import MAX_PACKET_SIZE, DeviceProfile, StageImage

# Configure module logger
logger = logging.getLogger(__name__)

T = TypeVar("T")

# Type alias for progress callback: (bytes_done, total_bytes) -> None
ProgressCallback = Callable[[int, int], None]


# =============================================================================
# Constants
# =============================================================================

# CHECK_BAUD is sent as a bare flag byte, not as a frame
BAUD_PROBE: Final[bytes] = bytes([Command.CHECK_BAUD])

# Cancel flag of the task awaiting an async wrapper, seen by its worker thread
_task_cancel: contextvars.ContextVar[Optional[threading.Event]] = contextvars.ContextVar(
    "sprd_nvtool_task_cancel", default=None
)


class SessionState(Enum):
    """Position of a session in the connect sequence."""
    DISCONNECTED = "Disconnected"
    BAUD_CHECKED = "BaudChecked"
    CONNECTED = "Connected"
    STAGE1_LOADED = "Stage1Loaded"
    STAGE1_EXECUTING = "Stage1Executing"
    STAGE2_LOADED = "Stage2Loaded"
    STAGE2_EXECUTING = "Stage2Executing"
    READY = "Ready"
    ABORTED = "Aborted"


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded-attempt discipline for one exchange.

    Attributes:
        timeout: Seconds to wait for a reply in one attempt
        attempts: Number of attempts before giving up
        backoff: Fixed pause between attempts (seconds)
    """
    timeout: float
    attempts: int = 3
    backoff: float = 0.5

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError(f"Retry timeout must be positive, got {self.timeout}")
        if self.attempts < 1:
            raise ValueError(f"Retry attempts must be at least 1, got {self.attempts}")
        if self.backoff < 0:
            raise ValueError(f"Retry backoff cannot be negative, got {self.backoff}")


@dataclass
class SessionConfig:
    """
    Timing configuration of a BootSession.

    Attributes:
        handshake_policy: CHECK_BAUD probe
        ack_policy: Every request answered by ACK
        read_policy: Each READ_FLASH chunk
        settle_delay: Pause after EXEC, ERASE and RESET (seconds)
        poll_interval: Longest single transport read while waiting (seconds)
        checksum_mode: Checksum mode assumed until the device shows otherwise
    """
    handshake_policy: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(timeout=2.0, attempts=3, backoff=0.5)
    )
    ack_policy: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(timeout=3.0, attempts=3, backoff=0.5)
    )
    read_policy: RetryPolicy = field(
        default_factory=lambda: RetryPolicy(timeout=15.0, attempts=3, backoff=1.0)
    )
    settle_delay: float = 1.0
    poll_interval: float = 0.1
    checksum_mode: ChecksumMode = ChecksumMode.CRC16L

    @classmethod
    def from_env(cls) -> "SessionConfig":
        """
        Create a SessionConfig from environment variables.

        Environment variables (all optional):
            SPRDNV_ACK_TIMEOUT: Seconds to wait for an ACK
            SPRDNV_READ_TIMEOUT: Seconds to wait for a flash chunk
            SPRDNV_ATTEMPTS: Attempts for every exchange
            SPRDNV_SETTLE_DELAY: Pause after EXEC / ERASE / RESET
            SPRDNV_CHECKSUM: Initial checksum mode ("crc16l" or "frmchk")

        Returns:
            SessionConfig with values from environment variables.
        """
        config = cls()

        def number(name: str, convert: Callable[[str], T]) -> Optional[T]:
            value = os.environ.get(name)
            if not value:
                return None
            try:
                return convert(value)
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", name, value)
                return None

        if (attempts := number("SPRDNV_ATTEMPTS", int)) and attempts > 0:
            for name in ("handshake_policy", "ack_policy", "read_policy"):
                policy = getattr(config, name)
                setattr(config, name, RetryPolicy(policy.timeout, attempts, policy.backoff))

        if (timeout := number("SPRDNV_ACK_TIMEOUT", float)) and timeout > 0:
            policy = config.ack_policy
            config.ack_policy = RetryPolicy(timeout, policy.attempts, policy.backoff)

        if (timeout := number("SPRDNV_READ_TIMEOUT", float)) and timeout > 0:
            policy = config.read_policy
            config.read_policy = RetryPolicy(timeout, policy.attempts, policy.backoff)

        settle = number("SPRDNV_SETTLE_DELAY", float)
        if settle is not None and settle >= 0:
            config.settle_delay = settle

        if mode := os.environ.get("SPRDNV_CHECKSUM"):
            try:
                config.checksum_mode = ChecksumMode[mode.strip().upper()]
            except KeyError:
                logger.warning("Ignoring invalid SPRDNV_CHECKSUM=%r", mode)

        return config


# =============================================================================
# Transport Ownership
# =============================================================================

_claimed_transports: "weakref.WeakSet[object]" = weakref.WeakSet()
_claims_lock = threading.Lock()


def _claim(transport: Transport) -> None:
    with _claims_lock:
        if transport in _claimed_transports:
            raise SessionError("Transport is already in use by another session")
        _claimed_transports.add(transport)


def _release(transport: Transport) -> None:
    with _claims_lock:
        _claimed_transports.discard(transport)


# =============================================================================
# Boot Session
# =============================================================================

class BootSession:
    """
    Boot-mode session with one device.

    The session owns the checksum mode (through its FrameCodec), the
    connect state and the transport claim. The DeviceProfile it was
    created with is never replaced.

    Attributes:
        profile: Device profile snapshot
        config: Timing configuration
    """

    def __init__(
        self,
        profile: DeviceProfile,
        config: Optional[SessionConfig] = None,
    ):
        self.profile = profile
        self.config = config if config is not None else SessionConfig()
        self.codec = FrameCodec(self.config.checksum_mode)

        self._state = SessionState.DISCONNECTED
        self._transport: Optional[Transport] = None
        self._opened_transport = False
        self._rx_buffer = bytearray()

        # One operation at a time; one exchange at a time on the wire
        self._op_lock = threading.Lock()
        self._io_lock = threading.Lock()
        self._cancel = threading.Event()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def checksum_mode(self) -> ChecksumMode:
        """Checksum mode currently in use."""
        return self.codec.mode

    @property
    def is_ready(self) -> bool:
        """Return True once the stage-2 loader is running."""
        return self._state is SessionState.READY

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    def connect(self, transport: Transport) -> bool:
        """
        Run the full connect sequence up to READY.

        Args:
            transport: Transport to the device. It is opened if needed.

        Returns:
            True once the stage-2 loader is running.

        Raises:
            SessionError: If the session is busy or already connected, or
                          the transport belongs to another session.
            ProfileError: If the profile lacks a stage loader image.
            TimeoutError: If a handshake or load step got no reply.
            ProtocolError: If the device rejected a step.
            CancelledError: If cancel() was called.
        """
        with self._operation("connect"):
            if self._state not in (SessionState.DISCONNECTED, SessionState.ABORTED):
                raise SessionError(f"Session already connected ({self._state.value})")

            self.profile.require_stages()
            _claim(transport)

            self._transport = transport
            self._rx_buffer.clear()
            self.codec = FrameCodec(self.config.checksum_mode)

            try:
                if not transport.is_open:
                    transport.open()
                    self._opened_transport = True

                logger.info("Connecting to device with profile '%s'", self.profile.name)
                self._handshake()
                self._set_state(SessionState.CONNECTED)

                self._load_stage("FDL1", self.profile.fdl1)
                self._set_state(SessionState.STAGE1_LOADED)
                self._execute()
                self._set_state(SessionState.STAGE1_EXECUTING)

                self._handshake()

                self._load_stage("FDL2", self.profile.fdl2)
                self._set_state(SessionState.STAGE2_LOADED)
                self._execute()
                self._set_state(SessionState.STAGE2_EXECUTING)
            except BaseException:
                self._set_state(SessionState.ABORTED)
                self._release_transport()
                raise

            self._set_state(SessionState.READY)
            logger.info("Device ready (checksum mode %s)", self.codec.mode.name)
            return True

    def disconnect(self) -> None:
        """
        Give up the transport without talking to the device.

        Waits for a running operation to finish; call cancel() first to
        stop it early.
        """
        with self._op_lock:
            if self._transport is None:
                logger.debug("Not connected, nothing to disconnect")
                self._set_state(SessionState.DISCONNECTED)
                return
            self._release_transport()
            self._set_state(SessionState.DISCONNECTED)
            logger.info("Disconnected")

    def cancel(self) -> None:
        """Request cancellation of the running operation."""
        logger.debug("Cancellation requested")
        self._cancel.set()

    # -------------------------------------------------------------------------
    # Flash Operations
    # -------------------------------------------------------------------------

    def read_flash(
        self,
        address: int,
        size: int,
        progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        """
        Read a flash region in chunks.

        Each chunk requests BE32(address) BE32(chunk) BE32(offset) and
        must be answered by a READ_FLASH reply holding exactly that many
        bytes. A chunk that never arrives aborts the whole read; bytes
        already received are discarded.

        Args:
            address: Base address of the region.
            size: Number of bytes to read.
            progress: Called with (bytes_done, total) after each chunk.

        Returns:
            Exactly size bytes.

        Raises:
            SessionError: If the session is not READY.
            TimeoutError: If a chunk got no reply.
            ProtocolError: On INVALID_CMD, a wrong reply type or length.
            CancelledError: If cancel() was called.
        """
        if size < 0:
            raise ValueError(f"Read size cannot be negative: {size}")

        with self._operation("read flash"):
            self._require_ready()
            chunk_size = self.profile.read_chunk_size
            logger.info("Reading flash: address=0x%08X size=0x%X", address, size)

            data = bytearray()
            offset = 0
            while offset < size:
                self._check_cancelled()
                length = min(chunk_size, size - offset)
                data += self._read_chunk(address, offset, length)
                offset += length
                if progress:
                    progress(offset, size)

            logger.info("Flash read complete: %d bytes", len(data))
            return bytes(data)

    def write_data(
        self,
        max_packet_size: int,
        data: bytes,
        address: int,
        checksum: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> bool:
        """
        Write data with a START / MIDST x N / END sequence.

        Args:
            max_packet_size: Largest MIDST payload.
            data: Bytes to write.
            address: Target address.
            checksum: Appended to the START payload when given.
            progress: Called with (bytes_done, total) after each packet.

        Returns:
            True when END was acknowledged.

        Raises:
            SessionError: If the session is not READY.
            TimeoutError: If a step got no ACK.
            ProtocolError: If the device rejected a step.
            CancelledError: If cancel() was called.
        """
        with self._operation("write data"):
            self._require_ready()
            logger.info(
                "Writing %d bytes to 0x%08X%s", len(data), address,
                f" (checksum 0x{checksum:X})" if checksum is not None else "",
            )
            self._send_data(max_packet_size, data, address, checksum, progress)
            return True

    def erase_flash(self, address: int, size: int) -> bool:
        """
        Erase a flash region.

        Returns:
            True when the erase was acknowledged.
        """
        with self._operation("erase flash"):
            self._require_ready()
            logger.info("Erasing flash: address=0x%08X size=0x%X", address, size)
            self._send_expect_ack(Command.ERASE_FLASH, struct.pack(">II", address, size))
            time.sleep(self.config.settle_delay)
            return True

    def reset(self) -> bool:
        """
        Reset the device.

        The device leaves the loader, so the session is disconnected
        afterwards.

        Returns:
            True when the reset was acknowledged.
        """
        with self._operation("reset"):
            self._require_ready()
            logger.info("Resetting device")
            self._send_expect_ack(Command.RESET)
            time.sleep(self.config.settle_delay)
            self._release_transport()
            self._set_state(SessionState.DISCONNECTED)
            return True

    # -------------------------------------------------------------------------
    # Async Wrappers
    # -------------------------------------------------------------------------

    async def connect_async(self, transport: Transport) -> bool:
        """Awaitable connect(); cancelling the awaiting task cancels the session."""
        return await self._run_async(self.connect, transport)

    async def read_flash_async(
        self,
        address: int,
        size: int,
        progress: Optional[ProgressCallback] = None,
    ) -> bytes:
        """Awaitable read_flash()."""
        return await self._run_async(self.read_flash, address, size, progress)

    async def write_data_async(
        self,
        max_packet_size: int,
        data: bytes,
        address: int,
        checksum: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> bool:
        """Awaitable write_data()."""
        return await self._run_async(
            self.write_data, max_packet_size, data, address, checksum, progress
        )

    async def _run_async(self, func: Callable[..., T], *args) -> T:
        # to_thread copies the current context, so the worker sees this flag
        flag = threading.Event()
        token = _task_cancel.set(flag)
        try:
            return await asyncio.to_thread(func, *args)
        except asyncio.CancelledError:
            logger.debug("Awaiting task cancelled, cancelling its operation")
            flag.set()
            raise
        finally:
            _task_cancel.reset(token)

    # -------------------------------------------------------------------------
    # Sequence Steps
    # -------------------------------------------------------------------------

    def _handshake(self) -> None:
        """CHECK_BAUD probe followed by CONNECT."""
        logger.info("Checking baud rate")
        self._check_baud()
        if self._state is SessionState.DISCONNECTED or self._state is SessionState.ABORTED:
            self._set_state(SessionState.BAUD_CHECKED)

        logger.info("Sending CONNECT")
        self._send_expect_ack(Command.CONNECT)

    def _check_baud(self) -> None:
        with self._io_lock:
            self._rx_buffer.clear()
            self._write(BAUD_PROBE)
            policy = self.config.handshake_policy

            def attempt() -> Optional[bytes]:
                received = self._collect(policy.timeout)
                return received or None

            response = self._retry(attempt, policy, "CHECK_BAUD")
            self._rx_buffer.clear()
            logger.debug("CHECK_BAUD response: %s", response.hex())

    def _load_stage(self, label: str, stage: StageImage) -> None:
        logger.info(
            "Loading %s: %d bytes to 0x%08X in %d-byte packets",
            label, len(stage.data), stage.address, stage.packet_size,
        )
        self._send_data(stage.packet_size, stage.data, stage.address, None, None)

    def _execute(self) -> None:
        """Send EXEC; the loader jumps without acknowledging."""
        logger.info("Executing loaded stage")
        with self._io_lock:
            self._write(self.codec.encode(Command.EXEC_DATA))
        time.sleep(self.config.settle_delay)

    def _send_data(
        self,
        max_packet_size: int,
        data: bytes,
        address: int,
        checksum: Optional[int],
        progress: Optional[ProgressCallback],
    ) -> None:
        if not 0 < max_packet_size <= MAX_PACKET_SIZE:
            raise ValueError(
                f"Packet size must be between 1 and {MAX_PACKET_SIZE}, got {max_packet_size}"
            )

        header = struct.pack(">II", address, len(data))
        if checksum is not None:
            header += struct.pack(">I", checksum & 0xFFFFFFFF)
        self._send_expect_ack(Command.START_DATA, header)

        total = len(data)
        for offset in range(0, total, max_packet_size):
            self._check_cancelled()
            packet = data[offset:offset + max_packet_size]
            self._send_expect_ack(Command.MIDST_DATA, packet)
            if progress:
                progress(offset + len(packet), total)

        self._send_expect_ack(Command.END_DATA)

    def _read_chunk(self, address: int, offset: int, length: int) -> bytes:
        frame = self.codec.encode(
            Command.READ_FLASH, struct.pack(">III", address, length, offset)
        )
        policy = self.config.read_policy

        def attempt() -> Optional[Packet]:
            self._rx_buffer.clear()
            self._write(frame)
            return self._receive(policy.timeout)

        with self._io_lock:
            reply = self._retry(attempt, policy, f"READ_FLASH at offset 0x{offset:X}")

        if reply.type == Reply.INVALID_CMD:
            raise InvalidCommandError(Command.READ_FLASH)
        if reply.type != Reply.READ_FLASH:
            raise ProtocolError(
                f"Unexpected reply to READ_FLASH: {describe_type(reply.type)}"
            )
        if len(reply.payload) != length:
            raise ProtocolError(
                f"READ_FLASH at offset 0x{offset:X} returned {len(reply.payload)} bytes, "
                f"expected {length}"
            )
        return reply.payload

    # -------------------------------------------------------------------------
    # Exchanges
    # -------------------------------------------------------------------------

    def _send_expect_ack(self, command: Command, payload: bytes = b"") -> None:
        """Send one request and require an ACK."""
        frame = self.codec.encode(command, payload)
        policy = self.config.ack_policy

        with self._io_lock:
            self._rx_buffer.clear()
            self._write(frame)
            reply = self._retry(
                lambda: self._receive(policy.timeout), policy, command.name
            )

        if reply.type == Reply.ACK:
            return
        if reply.type == Reply.INVALID_CMD:
            raise InvalidCommandError(command)
        raise ProtocolError(
            f"Expected ACK to {command.name}, got {describe_type(reply.type)}"
        )

    def _retry(
        self,
        attempt: Callable[[], Optional[T]],
        policy: RetryPolicy,
        what: str,
    ) -> T:
        """
        Run attempt() until it returns a result or the attempts run out.

        attempt() returns None for "no response"; any exception it raises
        ends the exchange immediately.

        Raises:
            TimeoutError: If every attempt returned None.
            CancelledError: If cancel() was called between attempts.
        """
        for number in range(1, policy.attempts + 1):
            self._check_cancelled()
            result = attempt()
            if result is not None:
                return result

            logger.warning("%s attempt %d/%d: no response", what, number, policy.attempts)
            if number < policy.attempts:
                time.sleep(policy.backoff)

        raise TimeoutError(
            f"{what}: no response after {policy.attempts} attempts",
            attempts=policy.attempts,
        )

    def _receive(self, timeout: float) -> Optional[Packet]:
        """Wait for one complete reply and decode it, None on silence."""
        received = self._collect(timeout)
        if not received:
            return None
        self._rx_buffer.clear()
        packet = self.codec.decode(received)
        logger.debug("Received %s", packet)
        return packet

    def _collect(self, timeout: float) -> bytes:
        """
        Read until the buffer holds a complete reply or the timeout expires.

        Bytes that arrive late stay buffered for the next attempt of the
        same exchange.

        Returns:
            The buffered reply, or b"" if it is still incomplete.
        """
        transport = self._require_transport()
        deadline = time.monotonic() + timeout

        while not frame_complete(self._rx_buffer):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return b""
            chunk = transport.read(min(self.config.poll_interval, remaining))
            if chunk:
                logger.debug("RX %d bytes: %s", len(chunk), chunk.hex())
                self._rx_buffer += chunk

        return bytes(self._rx_buffer)

    def _write(self, data: bytes) -> None:
        transport = self._require_transport()
        logger.debug("TX %d bytes: %s", len(data), data.hex())
        transport.write(data)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @contextmanager
    def _operation(self, what: str) -> Iterator[None]:
        if not self._op_lock.acquire(blocking=False):
            raise SessionError(f"Cannot {what}: another operation is in progress")
        self._cancel = _task_cancel.get() or threading.Event()
        try:
            yield
        finally:
            self._op_lock.release()

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug("Session state: %s -> %s", self._state.value, state.value)
            self._state = state

    def _require_ready(self) -> None:
        if self._state is not SessionState.READY:
            raise SessionError(
                f"Device not ready (session state {self._state.value}); connect first"
            )

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise SessionError("Session has no transport")
        return self._transport

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise CancelledError("Operation cancelled")

    def _release_transport(self) -> None:
        transport = self._transport
        if transport is None:
            return
        if self._opened_transport:
            transport.close()
        _release(transport)
        self._transport = None
        self._opened_transport = False
        self._rx_buffer.clear()
