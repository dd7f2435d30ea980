"""
Shared Test Fixtures
====================

Deterministic stand-ins for the pieces of a boot session that touch the
outside world:

- FakeClock: monotonic time and sleep that only move when told to
- ScriptedTransport: in-memory transport whose replies come from a
  responder callable, released on the fake clock
- FakeDevice: responder that behaves like a boot ROM / loader pair

The clock is patched into sprd_nvtool.comms.session, so retry timeouts
and backoff delays cost no real time.
"""

import struct
from typing import Callable, Optional, Union

import pytest

from sprd_nvtool.comms import session as session_module
from sprd_nvtool.comms.checksum import ChecksumMode
from sprd_nvtool.comms.frame import (
    Command,
    FrameCodec,
    Packet,
    Reply,
    unescape,
)
from sprd_nvtool.comms.session import BootSession, SessionConfig, SessionState
from sprd_nvtool.profile import DeviceProfile, StageImage

Response = Union[None, bytes, tuple[float, bytes]]


# =============================================================================
# Fake Clock
# =============================================================================

class FakeClock:
    """Replacement for the time module as used by the session."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Scripted Transport
# =============================================================================

class ScriptedTransport:
    """
    In-memory transport.

    Every write is passed to the responder, which returns None (no
    reply), the reply bytes, or (delay, reply bytes). Replies become
    readable once the fake clock reaches their release time.
    """

    def __init__(self, clock: FakeClock, responder: Optional[Callable[[bytes], Response]] = None):
        self.clock = clock
        self.responder = responder or (lambda data: None)
        self.written: list[bytes] = []
        self._pending: list[tuple[float, bytes]] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def write(self, data: bytes) -> None:
        self.written.append(bytes(data))
        reply = self.responder(bytes(data))
        if reply is None:
            return
        delay = 0.0
        if isinstance(reply, tuple):
            delay, reply = reply
        self._pending.append((self.clock.now + delay, reply))

    def read(self, timeout: float) -> bytes:
        ready = [entry for entry in self._pending if entry[0] <= self.clock.now]
        if not ready and self._pending:
            release = min(entry[0] for entry in self._pending)
            if release <= self.clock.now + timeout:
                self.clock.now = release
                ready = [entry for entry in self._pending if entry[0] <= self.clock.now]

        if not ready:
            self.clock.advance(timeout)
            return b""

        for entry in ready:
            self._pending.remove(entry)
        return b"".join(data for _, data in ready)


# =============================================================================
# Fake Device
# =============================================================================

def parse_request(data: bytes) -> Packet:
    """Decode a request frame without checking or adapting its checksum."""
    body = unescape(data[1:-1])
    packet_type, length = struct.unpack(">HH", body[:4])
    return Packet(packet_type, body[4:4 + length])


class FakeDevice:
    """
    Responder that answers like a boot ROM followed by the loaders.

    Replies are encoded with a fixed checksum mode. Individual commands
    can be overridden through `handlers` (command code -> callable taking
    the request Packet and returning a reply).

    Attributes:
        requests: Every decoded request, in order (the raw probe is not
                  recorded).
        probes: Number of CHECK_BAUD probes received.
        flash: Flash contents keyed by base address.
    """

    def __init__(self, mode: ChecksumMode = ChecksumMode.CRC16L):
        self.codec = FrameCodec(mode)
        self.requests: list[Packet] = []
        self.probes = 0
        self.flash: dict[int, bytes] = {}
        self.handlers: dict[int, Callable[[Packet], Response]] = {}

    def ack(self) -> bytes:
        return self.codec.encode(Reply.ACK)

    def __call__(self, data: bytes) -> Response:
        if data == bytes([Command.CHECK_BAUD]):
            self.probes += 1
            handler = self.handlers.get(Command.CHECK_BAUD)
            if handler is not None:
                return handler(Packet(Command.CHECK_BAUD))
            return self.codec.encode(Reply.VER, b"SPRD3\x00")

        request = parse_request(data)
        self.requests.append(request)

        handler = self.handlers.get(request.type)
        if handler is not None:
            return handler(request)

        if request.type == Command.EXEC_DATA:
            return None
        if request.type == Command.READ_FLASH:
            base, size, offset = struct.unpack(">III", request.payload)
            region = self.flash.get(base, b"")
            chunk = region[offset:offset + size]
            chunk += bytes(size - len(chunk))
            return self.codec.encode(Reply.READ_FLASH, chunk)
        return self.ack()

    def types(self) -> list[int]:
        """Request codes received so far."""
        return [request.type for request in self.requests]

    def requests_of(self, command: Command) -> list[Packet]:
        return [request for request in self.requests if request.type == command]


# =============================================================================
# Fixtures
# =============================================================================

FDL1_IMAGE = bytes(range(0x30))
FDL2_IMAGE = b"\xAA" * 0x20


@pytest.fixture
def clock(monkeypatch) -> FakeClock:
    """Fake clock patched into the session module."""
    fake = FakeClock()
    monkeypatch.setattr(session_module, "time", fake)
    return fake


@pytest.fixture
def profile() -> DeviceProfile:
    """Small profile: 3 FDL1 packets, 1 FDL2 packet, 16-byte read chunks."""
    return DeviceProfile(
        name="Test device",
        fdl1=StageImage(FDL1_IMAGE, address=0x6200, packet_size=0x10),
        fdl2=StageImage(FDL2_IMAGE, address=0x80100000, packet_size=0x20),
        nv_base_address=0x90000001,
        nv_data_size=0x40,
        read_chunk_size=0x10,
        nv_write_packet_size=0x20,
    )


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def transport(clock, device) -> ScriptedTransport:
    return ScriptedTransport(clock, device)


@pytest.fixture
def session(profile) -> BootSession:
    return BootSession(profile, SessionConfig())


@pytest.fixture
def ready_session(session, transport, device, clock) -> BootSession:
    """Session that has completed the connect sequence, history cleared."""
    session.connect(transport)
    device.requests.clear()
    device.probes = 0
    transport.written.clear()
    clock.sleeps.clear()
    yield session
    if session.state is not SessionState.DISCONNECTED:
        session.disconnect()


@pytest.fixture
def make_transport(clock) -> Callable[..., ScriptedTransport]:
    """Factory for transports with a custom responder."""
    def factory(responder: Optional[Callable[[bytes], Response]] = None) -> ScriptedTransport:
        return ScriptedTransport(clock, responder)
    return factory


@pytest.fixture
def make_device() -> Callable[..., FakeDevice]:
    """Factory for devices answering in a given checksum mode."""
    return FakeDevice
