"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Framed Serial Transport Module

Presents a raw serial port as a duplex byte stream for a bootloader protocol
client. Incoming bytes are split into SLIP frames; emitted frames keep both
0xC0 delimiters, which is what the protocol client expects to parse.
"""

import time
import logging
import threading
from collections import deque
from typing import Optional

import serial
import serial.serialutil

from meshflash.constants import (
    SLIP_END,
    SLIP_ESC,
    SLIP_ESC_END,
    SLIP_ESC_ESC,
    READ_POLL_INTERVAL,
    DEFAULT_FRAME_TIMEOUT,
    TOUCH_BAUD_RATE,
    TOUCH_HOLD_TIME,
    RESET_PULSE_TIME,
)
from meshflash.errors import (
    TransportError,
    TransportOpenError,
    TransportClosedError,
    TransportTimeoutError,
)

logger = logging.getLogger("Transport")

PARITIES = {
    "none": serial.PARITY_NONE,
    "even": serial.PARITY_EVEN,
    "odd": serial.PARITY_ODD,
}
STOP_BITS = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}


def slip_encode(payload: bytes) -> bytes:
    """Wraps payload in SLIP delimiters, escaping END and ESC bytes."""
    encoded = bytearray([SLIP_END])
    for byte in payload:
        if byte == SLIP_END:
            encoded += bytes([SLIP_ESC, SLIP_ESC_END])
        elif byte == SLIP_ESC:
            encoded += bytes([SLIP_ESC, SLIP_ESC_ESC])
        else:
            encoded.append(byte)
    encoded.append(SLIP_END)
    return bytes(encoded)


def slip_decode(frame: bytes) -> bytes:
    """Strips the delimiters from a frame and reverses the escaping."""
    body = frame
    if body[:1] == bytes([SLIP_END]):
        body = body[1:]
    if body[-1:] == bytes([SLIP_END]):
        body = body[:-1]

    decoded = bytearray()
    escaped = False
    for byte in body:
        if escaped:
            if byte == SLIP_ESC_END:
                decoded.append(SLIP_END)
            elif byte == SLIP_ESC_ESC:
                decoded.append(SLIP_ESC)
            else:
                raise TransportError(f"Invalid SLIP escape sequence 0xDB 0x{byte:02X}")
            escaped = False
        elif byte == SLIP_ESC:
            escaped = True
        else:
            decoded.append(byte)
    if escaped:
        raise TransportError("SLIP frame ends inside an escape sequence")
    return bytes(decoded)


class FramedSerialTransport:
    """
    Duplex byte-stream adapter over a pyserial port.

    The transport never retries: every pyserial failure surfaces as a
    TransportError and retry policy is left to the caller. Once close() has
    been called the transport is finished and all further I/O raises
    TransportClosedError.

    Example:
        transport = FramedSerialTransport("/dev/ttyACM0")
        transport.open(115200)
        transport.write_frame(b"\\x00\\x08")
        frame = transport.read_frame()
        transport.close()
    """

    def __init__(self, port: str):
        self.port = port
        self.baud_rate: Optional[int] = None
        self._ser: Optional[serial.Serial] = None
        self._closed = False
        self._buffer = bytearray()
        self._frames = deque()
        self._write_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._ser is not None and self._ser.is_open

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def buffered(self) -> int:
        """Number of bytes held for a frame that has not completed yet."""
        return len(self._buffer)

    def open(
        self,
        baud_rate: int,
        data_bits: int = 8,
        stop_bits: int = 1,
        parity: str = "none",
        flow_control: str = "none",
    ) -> None:
        """
        Opens the port, or reopens it with new settings. An already open
        handle is always closed first; reconfiguring a live handle is not
        reliable on every OS driver.
        """
        if self._closed:
            raise TransportClosedError(f"Transport for {self.port} is closed.")
        if parity not in PARITIES:
            raise ValueError(f"Unsupported parity: {parity}")
        if stop_bits not in STOP_BITS:
            raise ValueError(f"Unsupported stop bits: {stop_bits}")
        if flow_control not in ("none", "hardware"):
            raise ValueError(f"Unsupported flow control: {flow_control}")

        if self._ser is not None:
            logger.debug(f"Closing {self.port} before reopening at {baud_rate} baud.")
            self._close_handle()

        try:
            self._ser = serial.Serial(
                port=self.port,
                baudrate=baud_rate,
                bytesize=data_bits,
                parity=PARITIES[parity],
                stopbits=STOP_BITS[stop_bits],
                rtscts=flow_control == "hardware",
                timeout=READ_POLL_INTERVAL,
            )
        except (OSError, ValueError, serial.SerialException) as e:
            self._ser = None
            raise TransportOpenError(f"Could not open {self.port} at {baud_rate} baud: {e}") from e

        self.baud_rate = baud_rate
        logger.debug(f"Opened {self.port} at {baud_rate} baud.")

    def set_signals(
        self,
        dtr: Optional[bool] = None,
        rts: Optional[bool] = None,
        brk: Optional[bool] = None,
    ) -> None:
        """Sets only the control lines that are given; others stay untouched."""
        ser = self._require_open()
        try:
            if dtr is not None:
                ser.dtr = dtr
            if rts is not None:
                ser.rts = rts
            if brk is not None:
                ser.break_condition = brk
        except (OSError, serial.SerialException) as e:
            raise TransportError(f"Could not set control lines on {self.port}: {e}") from e
        logger.debug(f"Signals on {self.port}: dtr={dtr} rts={rts} brk={brk}")

    def pulse_reset(self, hold: float = RESET_PULSE_TIME) -> None:
        """Asserts RTS (wired to EN/RESET on most boards), holds, then releases."""
        self.set_signals(rts=True)
        time.sleep(hold)
        self.set_signals(rts=False)

    def write(self, data: bytes) -> int:
        """Writes data and waits until the OS has drained it to the wire."""
        ser = self._require_open()
        with self._write_lock:
            try:
                written = ser.write(data)
                ser.flush()
            except serial.SerialTimeoutException as e:
                if self._closed:
                    raise TransportClosedError(f"Transport for {self.port} was closed during a write.") from e
                raise TransportError(f"Timeout writing to {self.port}: {e}") from e
            except (OSError, serial.SerialException) as e:
                if self._closed:
                    raise TransportClosedError(f"Transport for {self.port} was closed during a write.") from e
                raise TransportError(f"Serial error writing to {self.port}: {e}") from e
        if written is not None and written != len(data):
            raise TransportError(f"Incomplete write to {self.port}: {written}/{len(data)} bytes")
        logger.debug(f">>> {bytes(data).hex().upper()}")
        return len(data)

    def write_frame(self, payload: bytes) -> int:
        return self.write(slip_encode(payload))

    def read_frame(self, timeout: float = DEFAULT_FRAME_TIMEOUT) -> bytes:
        """
        Returns the next complete frame, delimiters included. Bytes of a frame
        that is still incomplete stay buffered for the next call. The timeout
        is wall-clock time, so a line that keeps sending bytes without ever
        completing a frame still times out.
        """
        deadline = time.monotonic() + timeout
        while not self._frames:
            ser = self._require_open()
            chunk = self._read_chunk(ser)
            if chunk:
                self._ingest(chunk)
                if self._frames:
                    break
            if time.monotonic() >= deadline:
                raise TransportTimeoutError(
                    f"No complete frame from {self.port} within {timeout:.1f}s "
                    f"({len(self._buffer)} bytes buffered)"
                )
        return self._frames.popleft()

    def reset_input(self) -> None:
        """Drops buffered bytes, pending frames and the OS input buffer."""
        ser = self._require_open()
        self._buffer.clear()
        self._frames.clear()
        try:
            ser.reset_input_buffer()
        except (OSError, serial.SerialException) as e:
            raise TransportError(f"Could not flush input on {self.port}: {e}") from e

    def close(self) -> None:
        """Closes the port. Safe to call any number of times."""
        if self._closed:
            return
        self._closed = True
        self._close_handle()
        self._buffer.clear()
        self._frames.clear()
        logger.debug(f"Closed {self.port}.")

    def _close_handle(self) -> None:
        ser, self._ser = self._ser, None
        if ser is None:
            return
        try:
            ser.close()
        except (OSError, serial.SerialException) as e:
            logger.warning(f"Error closing port {self.port}: {e}")

    def _require_open(self) -> serial.Serial:
        if self._closed:
            raise TransportClosedError(f"Transport for {self.port} is closed.")
        if self._ser is None:
            raise TransportError(f"Port {self.port} is not open.")
        return self._ser

    def _read_chunk(self, ser: serial.Serial) -> bytes:
        try:
            return ser.read(max(1, ser.in_waiting))
        except (OSError, serial.SerialException) as e:
            if self._closed:
                raise TransportClosedError(f"Transport for {self.port} was closed during a read.") from e
            raise TransportError(f"Serial error reading from {self.port}: {e}") from e

    def _ingest(self, data: bytes) -> None:
        """Appends data to the buffer and moves every completed frame to the queue."""
        self._buffer.extend(data)
        while True:
            start = self._buffer.find(SLIP_END)
            if start < 0:
                if self._buffer:
                    logger.debug(f"Discarding {len(self._buffer)} bytes outside a frame")
                    self._buffer.clear()
                return
            if start > 0:
                logger.debug(f"Discarding {start} bytes before frame start")
                del self._buffer[:start]
            end = self._buffer.find(SLIP_END, 1)
            if end < 0:
                return
            if end == 1:
                # Back-to-back delimiters: the second one opens the next frame.
                del self._buffer[:1]
                continue
            self._frames.append(bytes(self._buffer[: end + 1]))
            del self._buffer[: end + 1]


def baud_touch(port: str, baud_rate: int = TOUCH_BAUD_RATE, hold: float = TOUCH_HOLD_TIME) -> None:
    """
    Opens the port at a magic baud rate, holds it briefly and closes it. Native
    USB bootloaders (nRF52, RP2040, ESP32-S3) take this as a request to reset
    into update mode.
    """
    logger.debug(f"{baud_rate} baud touch on {port}")
    transport = FramedSerialTransport(port)
    try:
        transport.open(baud_rate)
        time.sleep(hold)
    finally:
        transport.close()
