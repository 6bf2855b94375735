from __future__ import annotations

import threading
import time

import pytest
import serial

from meshflash import transport as transport_module
from meshflash.errors import (
    TransportClosedError,
    TransportError,
    TransportOpenError,
    TransportTimeoutError,
)
from meshflash.transport import FramedSerialTransport, baud_touch, slip_decode, slip_encode


class FakeSerial:
    instances: list["FakeSerial"] = []

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.is_open = True
        self.chunks: list[bytes] = []
        self.written = bytearray()
        self.flushes = 0
        self.dtr = None
        self.rts = None
        self.break_condition = None
        self.signal_log: list[tuple[str, bool]] = []
        FakeSerial.instances.append(self)

    def __setattr__(self, name, value) -> None:
        if name in ("dtr", "rts") and "signal_log" in self.__dict__:
            self.signal_log.append((name, value))
        object.__setattr__(self, name, value)

    @property
    def in_waiting(self) -> int:
        return len(self.chunks[0]) if self.chunks else 0

    def read(self, size: int = 1) -> bytes:
        return self.chunks.pop(0) if self.chunks else b""

    def write(self, data: bytes) -> int:
        self.written += data
        return len(data)

    def flush(self) -> None:
        self.flushes += 1

    def reset_input_buffer(self) -> None:
        self.chunks.clear()

    def close(self) -> None:
        self.is_open = False


@pytest.fixture
def fake_serial(monkeypatch):
    FakeSerial.instances = []
    monkeypatch.setattr(transport_module.serial, "Serial", FakeSerial)
    return FakeSerial


@pytest.fixture
def opened(fake_serial):
    transport = FramedSerialTransport("/dev/ttyACM0")
    transport.open(115200)
    return transport, fake_serial.instances[-1]


def test_open_passes_line_settings(fake_serial) -> None:
    transport = FramedSerialTransport("/dev/ttyUSB0")
    transport.open(921600, stop_bits=2, parity="even", flow_control="hardware")
    kwargs = fake_serial.instances[-1].kwargs
    assert kwargs["port"] == "/dev/ttyUSB0"
    assert kwargs["baudrate"] == 921600
    assert kwargs["parity"] == serial.PARITY_EVEN
    assert kwargs["stopbits"] == serial.STOPBITS_TWO
    assert kwargs["rtscts"] is True
    assert transport.is_open


def test_reopen_closes_previous_handle_first(opened, fake_serial) -> None:
    transport, first = opened
    transport.open(921600)
    second = fake_serial.instances[-1]
    assert first.is_open is False
    assert second is not first
    assert transport.baud_rate == 921600


def test_open_failure_is_typed(monkeypatch) -> None:
    def broken(**kwargs):
        raise serial.SerialException("could not open port")

    monkeypatch.setattr(transport_module.serial, "Serial", broken)
    transport = FramedSerialTransport("/dev/ttyACM9")
    with pytest.raises(TransportOpenError):
        transport.open(115200)


def test_frame_split_across_two_reads(opened) -> None:
    transport, ser = opened
    ser.chunks = [b"\xc0\x01\x02", b"\x03\xc0"]
    assert transport.read_frame(timeout=0.2) == b"\xc0\x01\x02\x03\xc0"
    assert transport.buffered == 0


def test_junk_and_back_to_back_delimiters(opened) -> None:
    transport, ser = opened
    ser.chunks = [b"\xaa\xbb\xc0\x01\xc0\xc0\xc0\x02\xc0"]
    assert transport.read_frame(timeout=0.2) == b"\xc0\x01\xc0"
    assert transport.read_frame(timeout=0.2) == b"\xc0\x02\xc0"
    with pytest.raises(TransportTimeoutError):
        transport.read_frame(timeout=0.1)


def test_partial_frame_stays_buffered_after_timeout(opened) -> None:
    transport, ser = opened
    ser.chunks = [b"\xc0\x10\x11"]
    with pytest.raises(TransportTimeoutError):
        transport.read_frame(timeout=0.1)
    assert transport.buffered == 3
    ser.chunks = [b"\x12\xc0"]
    assert transport.read_frame(timeout=0.1) == b"\xc0\x10\x11\x12\xc0"


def test_write_frame_escapes_and_flushes(opened) -> None:
    transport, ser = opened
    transport.write_frame(b"\x01\xc0\xdb\x02")
    assert bytes(ser.written) == b"\xc0\x01\xdb\xdc\xdb\xdd\x02\xc0"
    assert ser.flushes == 1


def test_slip_decode_reverses_encode() -> None:
    payload = bytes([0x00, 0xC0, 0xDB, 0xDC, 0xDD, 0xFF])
    assert slip_decode(slip_encode(payload)) == payload
    with pytest.raises(TransportError):
        slip_decode(b"\xc0\xdb\x01\xc0")


def test_set_signals_only_touches_given_lines(opened) -> None:
    transport, ser = opened
    transport.set_signals(dtr=False)
    assert ser.dtr is False
    assert ser.rts is None
    transport.set_signals(rts=True, brk=True)
    assert ser.dtr is False
    assert ser.rts is True
    assert ser.break_condition is True


def test_pulse_reset_asserts_then_releases_rts(opened, no_sleep) -> None:
    transport, ser = opened
    transport.pulse_reset()
    assert ser.signal_log[-2:] == [("rts", True), ("rts", False)]
    assert no_sleep == [0.1]


def test_close_is_idempotent_and_blocks_io(opened) -> None:
    transport, ser = opened
    transport.close()
    transport.close()
    assert ser.is_open is False
    with pytest.raises(TransportClosedError):
        transport.write(b"\x00")
    with pytest.raises(TransportClosedError):
        transport.read_frame(timeout=0.1)
    with pytest.raises(TransportClosedError):
        transport.open(115200)


def test_baud_touch_opens_at_1200_and_closes(fake_serial, no_sleep) -> None:
    baud_touch("/dev/ttyACM0")
    ser = fake_serial.instances[-1]
    assert ser.kwargs["baudrate"] == 1200
    assert ser.is_open is False


def test_endless_noise_still_times_out(opened) -> None:
    transport, ser = opened
    ser.read = lambda size=1: b"A"
    started = time.monotonic()
    with pytest.raises(TransportTimeoutError):
        transport.read_frame(timeout=0.2)
    assert time.monotonic() - started < 2


def test_close_from_another_thread_interrupts_read(opened) -> None:
    transport, ser = opened

    def slow_read(size=1):
        time.sleep(0.01)
        if not ser.is_open:
            raise serial.SerialException("Attempting to use a port that is not open")
        return b""

    ser.read = slow_read
    closer = threading.Timer(0.1, transport.close)
    closer.start()
    try:
        with pytest.raises(TransportClosedError):
            transport.read_frame(timeout=5)
    finally:
        closer.join()


def test_write_interrupted_by_close_is_reported_as_closed(opened) -> None:
    transport, ser = opened

    def closing_write(data):
        transport.close()
        raise serial.SerialException("write failed")

    ser.write = closing_write
    with pytest.raises(TransportClosedError):
        transport.write(b"\x01\x02")
