"""
SkyPointer Serial Protocol Library

This module implements the ASCII line protocol spoken by the SkyPointer
laser pointing device. It provides command creation, response parsing,
calibration register encoding and asynchronous communication over Serial
or TCP.

Every command is a single letter followed by space separated arguments and
a carriage return (``"G 800 400\\r"``). The device answers every command
with one CR terminated line.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Optional, Tuple

import numpy as np
import serial_asyncio

logger = logging.getLogger(__name__)

# Protocol constants
SKYPOINTER_TIMEOUT = 2.0
MAX_MSG_SIZE = 16
TERMINATOR = b"\r"
N_CALIB_REGS = 3
FLUSH_TIMEOUT = 0.01
MAX_FLUSH_READS = 100

# Constants for step calculations
STEPS_PER_REVOLUTION = 3200
STEPS_PER_DEGREE = STEPS_PER_REVOLUTION / 360.0
DEGREES_PER_STEP = 360.0 / STEPS_PER_REVOLUTION

VERSION_MAJOR_OFFSET = 12
VERSION_MINOR_OFFSET = 14


class SkyPointerError(Exception):
    """Base exception for SkyPointer errors."""


class TransportError(SkyPointerError):
    """The command could not be exchanged with the device."""


class TransportWriteError(TransportError):
    """Writing the command failed or the session is not open."""


class TransportTimeoutError(TransportError):
    """No complete response arrived before the timeout."""


class ProtocolError(SkyPointerError):
    """The device answered, but the answer is not usable."""


class ShortResponseError(ProtocolError):
    """The response is too short for the requested field."""


class ParseFailureError(ProtocolError):
    """The response does not have the expected format."""


class DuplicateSyncPointError(SkyPointerError):
    """A sync point with the same observed attitude is already stored."""


class SPCommands(Enum):
    """Enumeration of SkyPointer commands."""

    GOTO = "G"
    MOVE = "M"
    STOP = "S"
    HOME = "H"
    QUIT = "Q"
    LASER = "L"
    SET_TIMEOUT = "T"
    GET_POSITION = "P"
    GET_VERSION = "I"
    READ_CALIB = "R"
    WRITE_CALIB = "W"


class SPCommand:
    """
    Represents a single SkyPointer command line.

    Attributes:
        command (SPCommands): The command to execute.
        args (tuple): Arguments, rendered with ``str()`` and joined by spaces.
    """

    def __init__(self, command: SPCommands, *args):
        self.command = command
        self.args = args

    def fill_buf(self) -> bytes:
        """
        Serializes the command into a byte buffer for transmission.

        Returns:
            bytes: The complete line (LETTER [ARG ...] CR).
        """
        parts = [self.command.value] + [str(a) for a in self.args]
        return " ".join(parts).encode("ascii") + TERMINATOR

    @classmethod
    def parse_buf(cls, buf: bytes):
        """
        Parses a received command line. Used by the device simulator.

        Raises:
            ParseFailureError: If the letter is unknown or the buffer is empty.
        """
        text = buf.decode("ascii", errors="replace").strip()
        if not text:
            raise ParseFailureError("Empty command")
        fields = text.split()
        try:
            command = SPCommands(fields[0])
        except ValueError:
            raise ParseFailureError(f"Unknown command: {text!r}") from None
        return cls(command, *fields[1:])

    def __repr__(self):
        return f"SPCommand(cmd={self.command.name}, args={self.args})"


def float_to_bits(value) -> int:
    """
    Returns the raw IEEE-754 binary32 bit pattern of ``value``.

    ``numpy.float32`` values are reinterpreted as they are, without any
    conversion, so NaN payloads survive.
    """
    return int(np.asarray(value, dtype=np.float32).view(np.uint32))


def bits_to_float(bits: int) -> np.float32:
    """Reinterprets a 32-bit unsigned integer as a binary32 float."""
    if not 0 <= bits <= 0xFFFFFFFF:
        raise ValueError("Value out of range for 32-bit unsigned integer")
    return np.array([bits], dtype=np.uint32).view(np.float32)[0]


def encode_calib_value(value) -> str:
    """Encodes a calibration value as 8 hex digits of its bit pattern."""
    return f"{float_to_bits(value):08x}"


def decode_calib_value(text: str) -> np.float32:
    """
    Decodes the hex bit pattern of a calibration register.

    Raises:
        ParseFailureError: If ``text`` is not 1 to 8 hex digits.
    """
    if not re.fullmatch(r"[0-9A-Fa-f]{1,8}", text):
        raise ParseFailureError(f"Invalid calibration value: {text!r}")
    return bits_to_float(int(text, 16))


def decode_version(response: str) -> str:
    """
    Extracts the firmware version from the version query response.

    The device answers with a fixed banner (``"SkyPointer v3.1"``); the
    major digit sits at offset 12 and the minor digit at offset 14.

    Raises:
        ShortResponseError: If the response does not reach offset 14.
    """
    if len(response) <= VERSION_MINOR_OFFSET:
        raise ShortResponseError(
            f"Version response too short ({len(response)} chars): {response!r}"
        )
    return f"{response[VERSION_MAJOR_OFFSET]}.{response[VERSION_MINOR_OFFSET]}"


def parse_position(response: str) -> Tuple[int, int]:
    """Parses a ``P <az> <alt>`` response into step counts."""
    m = re.fullmatch(r"P\s+(-?\d+)\s+(-?\d+)\s*", response)
    if not m:
        raise ParseFailureError(f"Invalid position response: {response!r}")
    return int(m.group(1)), int(m.group(2))


def parse_calib_register(response: str) -> np.float32:
    """Parses a ``R <hex>`` response into the register value."""
    fields = response.split()
    if len(fields) != 2 or fields[0] != "R":
        raise ParseFailureError(f"Invalid calibration response: {response!r}")
    return decode_calib_value(fields[1])


def steps_to_degrees(steps: float) -> float:
    return 360.0 * steps / STEPS_PER_REVOLUTION


def degrees_to_steps(degrees: float) -> int:
    return int(round(degrees * STEPS_PER_DEGREE))


class SPCommunicator:
    """
    Handles asynchronous communication with the SkyPointer.

    Supports Serial (via pyserial-asyncio) and TCP (via socket:// prefix).
    Owns the stream for its whole lifetime; nothing else reads or writes it.

    Attributes:
        port (str): Device path (e.g. /dev/ttyACM0) or URL (socket://host:port).
        baudrate (int): Communication speed (default 115200).
        timeout (float): Response timeout in seconds.
    """

    def __init__(
        self, port: str, baudrate: int = 115200, timeout: float = SKYPOINTER_TIMEOUT
    ):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.connected = False
        self.lock = asyncio.Lock()

    async def connect(self) -> bool:
        """
        Opens the serial port or TCP connection.

        Returns:
            bool: True if successful, False otherwise.
        """
        try:
            if self.port.startswith("socket://"):
                host, port = self.port[9:].split(":")
                self.reader, self.writer = await asyncio.open_connection(
                    host, int(port)
                )
            else:
                self.reader, self.writer = await serial_asyncio.open_serial_connection(
                    url=self.port, baudrate=self.baudrate
                )
            self.connected = True
            logger.info("Connected to %s at %d baud.", self.port, self.baudrate)
            return True
        except (OSError, ValueError) as e:
            logger.error("Error connecting to %s: %s", self.port, e)
            self.connected = False
            return False

    async def disconnect(self):
        """Closes the connection."""
        if self.writer and self.connected:
            self.connected = False
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except OSError as e:
                logger.debug("Error while closing %s: %s", self.port, e)
            logger.info("Disconnected from %s", self.port)

    async def _flush_input(self) -> None:
        """Discards any unread input so a stale line is never taken as the answer."""
        serial = getattr(self.writer.transport, "serial", None)
        if serial is not None:
            serial.reset_input_buffer()
        for _ in range(MAX_FLUSH_READS):
            try:
                stale = await asyncio.wait_for(
                    self.reader.read(MAX_MSG_SIZE), timeout=FLUSH_TIMEOUT
                )
            except asyncio.TimeoutError:
                return
            if not stale:
                return
            logger.debug("Discarded stale input %r", stale)

    async def execute(self, command: SPCommand) -> str:
        """
        Sends a command and waits for the CR terminated response.

        Args:
            command (SPCommand): Command to send.

        Returns:
            str: The response payload without the terminator (may be empty).

        Raises:
            TransportWriteError: The session is closed or the write failed.
            TransportTimeoutError: No complete response within the timeout.
            ProtocolError: The response line exceeds MAX_MSG_SIZE.
        """
        if not self.connected or not self.writer:
            raise TransportWriteError(f"Not connected to {self.port}")

        async with self.lock:
            tx_buf = command.fill_buf()
            logger.debug("CMD (%s)", tx_buf.decode("ascii").rstrip())
            await self._flush_input()
            try:
                self.writer.write(tx_buf)
                await self.writer.drain()
            except OSError as e:
                logger.error("Write of %r failed: %s", command, e)
                raise TransportWriteError(str(e)) from e

            try:
                rx_buf = await asyncio.wait_for(
                    self.reader.readuntil(TERMINATOR), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                logger.error("Timeout waiting for response to %r", command)
                raise TransportTimeoutError(
                    f"No response to {command.command.name} within {self.timeout}s"
                ) from None
            except asyncio.IncompleteReadError as e:
                logger.error("Connection closed while waiting for %r", command)
                raise TransportTimeoutError("Connection closed by device") from e

            if len(rx_buf) > MAX_MSG_SIZE:
                raise ProtocolError(f"Response too long ({len(rx_buf)} bytes)")

            response = rx_buf[: -len(TERMINATOR)].decode("ascii", errors="replace")
            if response:
                logger.debug("RES (%s)", response)
            return response
