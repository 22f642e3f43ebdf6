"""MI48 Thermal Camera Driver.

Serial protocol, register access, and frame streaming for MI48 (SenXor)
USB-CDC thermal camera modules.

Supports:
- MI0801 / MI0802: 80×62 resolution
- MI0301: 32×32 resolution
- Panther: 160×120 resolution

Register commands and image frames share one serial stream. Every frame on
the wire looks like::

    "   #" LEN(4 hex) TYPE(4 ascii) PAYLOAD(LEN - 8 bytes) CRC(4 bytes)

Commands sent by the host carry no CRC and count only TYPE + body in LEN.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Callable, Protocol

import collections
import dataclasses
import logging
import math
import string
import threading
import time

import numpy as np
import serial
from serial.tools import list_ports


if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Device constants
VENDOR_ID = 0x0416
PRODUCT_IDS: dict[int, str] = {
    0xB002: "EVK",
    0xB020: "XPRO",
    0x9393: "XCAM",
}

# Wire protocol constants
MARKER = b"   #"
LENGTH_FIELD_SIZE = 4
TYPE_TAG_SIZE = 4
TRAILER_SIZE = 4
FRAME_OVERHEAD = TYPE_TAG_SIZE + TRAILER_SIZE  # Counted in LEN besides payload
COMMAND_BODY_SIZE = 8
COMMAND_FILLER = "X"
DEFAULT_TRAILER = b"XXXX"

DEFAULT_QUEUE_SIZE = 10
OFFSET_STEP = 0.05  # °C per OFFSET_CORR LSB


class MI48Error(Exception):
    """Base class for MI48 driver errors."""

    pass


class TransportError(MI48Error):
    """Raised when the serial port cannot be opened, read or written."""

    pass


class ProtocolDecodeError(MI48Error):
    """Raised when bytes on the wire do not form a valid frame."""

    pass


class UnknownDeviceError(MI48Error):
    """Raised when the camera reports a type code missing from the catalog."""

    pass


class InvalidArgumentError(MI48Error, ValueError):
    """Raised for requests the device cannot honour."""

    pass


class ChannelClosed(Exception):
    """Raised by FrameChannel.get() once the channel is closed and drained."""

    pass


# =============================================================================
# Register Catalog
# =============================================================================


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class Register:
    """An addressable run of 8-bit device registers."""

    address: int
    length: int = 1  # Number of consecutive register bytes
    read_only: bool = False

    def __post_init__(self) -> None:
        if self.length < 1:
            raise ValueError(f"Register length must be positive, got {self.length}")
        if self.address < 0 or self.address + self.length - 1 > 0xFF:
            raise ValueError(
                f"Register 0x{self.address:02X}+{self.length} outside 0x00-0xFF"
            )

    @property
    def addresses(self) -> range:
        """Byte addresses covered by this register, ascending."""
        return range(self.address, self.address + self.length)


FRAME_MODE = Register(address=0xB1)
FW_VERSION = Register(address=0xB2, length=2, read_only=True)
FRAME_RATE = Register(address=0xB4)
POWER_DOWN_1 = Register(address=0xB5)
STATUS = Register(address=0xB6, read_only=True)
CLK_SPEED = Register(address=0xB7)
SENXOR_TYPE = Register(address=0xBA, read_only=True)
SENSITIVITY_FACTOR = Register(address=0xC2)
EMISSIVITY = Register(address=0xCA)
OFFSET_CORR = Register(address=0xCB)
FILTER_CONTROL = Register(address=0xD0)
FILTER_SETTING_1_LSB = Register(address=0xD1)
FILTER_SETTING_1_MSB = Register(address=0xD2)
FILTER_SETTING_2 = Register(address=0xD3)
NETD_CONFIG = Register(address=0xD4)
NETD_FACTOR = Register(address=0xD5)
NETD_PIXEL_X = Register(address=0xD6)
NETD_PIXEL_Y = Register(address=0xD7)
USER_FLASH_CTRL = Register(address=0xD8)
SENXOR_ID = Register(address=0xE0, length=6, read_only=True)


class FrameMode(IntEnum):
    """FRAME_MODE register values."""

    GET_SINGLE_FRAME = 1
    CONTINUOUS_STREAM = 2
    NO_HEADER = 32
    LOW_NETD_ROW_IN_HEADER = 64


class MedianFilter(IntEnum):
    """Median filter kernel size (0 disables)."""

    DISABLED = 0
    KERNEL_3 = 3
    KERNEL_5 = 5


CAMERA_TYPES: dict[int, str] = {
    0: "MI0801 non-MP",
    1: "MI0801",
    2: "MI0301",
    3: "MI0802",
    8: "panther",
}

# Maximum frame rate (Hz) at divisor 1; other types are unknown (0.0)
MAX_FPS: dict[int, float] = {
    0: 25.5,
    1: 25.5,
    2: 28.57,
}


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class SensorGeometry:
    """Sensor pixel geometry."""

    width: int  # Columns
    height: int  # Rows

    @property
    def shape(self) -> tuple[int, int]:
        """Numpy array shape (rows, columns)."""
        return self.height, self.width

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def byte_size(self) -> int:
        """Pixel buffer size in bytes (2 bytes per pixel)."""
        return 2 * self.pixel_count


SENSOR_GEOMETRY: dict[int, SensorGeometry] = {
    0: SensorGeometry(width=80, height=62),
    1: SensorGeometry(width=80, height=62),
    2: SensorGeometry(width=32, height=32),
    3: SensorGeometry(width=80, height=62),
    8: SensorGeometry(width=160, height=120),
}


def get_sensor_geometry(type_code: int) -> SensorGeometry:
    """Get the sensor geometry for a camera type code.

    Args:
        type_code: Value of the SENXOR_TYPE register.

    Returns:
        Sensor geometry.

    Raises:
        UnknownDeviceError: If the type code is not in the catalog.
    """
    try:
        return SENSOR_GEOMETRY[type_code]
    except KeyError:
        raise UnknownDeviceError(f"Unknown camera type: {type_code}") from None


def get_max_fps(type_code: int) -> float:
    """Maximum frame rate for a camera type, or 0.0 when unknown."""
    return MAX_FPS.get(type_code, 0.0)


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class CameraIdentity:
    """Camera identity resolved once during initialization."""

    type_code: int
    model_name: str
    serial_info: str
    firmware_version: str
    max_fps: float


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class FilterSettings:
    """On-chip noise filter configuration."""

    temporal: int = 125  # 16-bit threshold, 0 disables
    rolling_average: int = 4  # 8-bit window, 0 disables
    median: MedianFilter = MedianFilter.DISABLED

    def __post_init__(self) -> None:
        if not 0 <= self.temporal <= 0xFFFF:
            raise InvalidArgumentError(f"Temporal filter out of range: {self.temporal}")
        if not 0 <= self.rolling_average <= 0xFF:
            raise InvalidArgumentError(
                f"Rolling average out of range: {self.rolling_average}"
            )

    def control_byte(self) -> int:
        """FILTER_CONTROL value enabling the configured filters."""
        control = 0x00
        if self.temporal > 0:
            control |= 0x03
        if self.rolling_average > 0:
            control |= 0x04
        if self.median != MedianFilter.DISABLED:
            control |= 0x40
            if self.median > MedianFilter.KERNEL_3:
                control |= 0x20
        return control


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class NETDConfig:
    """Noise-equivalent temperature difference compensation."""

    enabled: bool = False
    row_in_frame: bool = False
    factor: int = 0x14
    x: int = 0  # Reference pixel column
    y: int = 0  # Reference pixel row

    def __post_init__(self) -> None:
        for name in ("factor", "x", "y"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFF:
                raise InvalidArgumentError(f"NETD {name} out of range: {value}")

    def config_byte(self) -> int:
        """NETD_CONFIG value (bit0 enabled, bit1 row in frame)."""
        config = 0x00
        if self.enabled:
            config |= 0x01
            if self.row_in_frame:
                config |= 0x02
        return config


DEFAULT_FILTER_SETTINGS = FilterSettings()
DEFAULT_NETD_CONFIG = NETDConfig()


def format_firmware_version(data: bytes) -> str:
    """Format FW_VERSION bytes as "major.minor.build"."""
    return f"{data[0] >> 4 & 0xF}.{data[0] & 0xF}.{data[1]}"


def format_serial_info(data: bytes) -> str:
    """Format the six SENXOR_ID bytes (year, week, fab, 3-byte serial)."""
    return (
        f"Week: {data[1]:2d}; Year: {data[0] + 2000:4d}; "
        f"Fab: {data[2]:02X}; Serial: {data[3:].hex().upper()}"
    )


# =============================================================================
# Frame Codec (Pure Functions)
# =============================================================================


class ByteStream(Protocol):
    """Byte-oriented transport; serial.Serial satisfies it."""

    def read(self, size: int = 1) -> bytes: ...

    def write(self, data: bytes) -> int | None: ...


class PacketKind(str, Enum):
    """Known frame type tags."""

    IMAGE = "GFRA"
    READ_REGISTER = "RREG"
    WRITE_REGISTER = "WREG"
    UNRECOGNIZED = "????"

    @classmethod
    def from_tag(cls, type_tag: str) -> PacketKind:
        try:
            return cls(type_tag)
        except ValueError:
            return cls.UNRECOGNIZED


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True)
class Packet:
    """One decoded frame."""

    type_tag: str
    payload: bytes
    trailer: bytes = DEFAULT_TRAILER  # CRC, not validated

    @property
    def declared_length(self) -> int:
        return len(self.payload) + FRAME_OVERHEAD

    @property
    def kind(self) -> PacketKind:
        return PacketKind.from_tag(self.type_tag)


def read_exact(stream: ByteStream, size: int) -> bytes:
    """Read exactly `size` bytes from the stream.

    Raises:
        TransportError: If the underlying read fails.
        ProtocolDecodeError: If the stream ends (or times out) first.
    """
    buf = bytearray()
    while len(buf) < size:
        try:
            chunk = stream.read(size - len(buf))
        except OSError as exc:  # serial.SerialException is an OSError
            raise TransportError(f"Serial read failed: {exc}") from exc
        if not chunk:
            raise ProtocolDecodeError(f"Short read: got {len(buf)} of {size} bytes")
        buf += chunk
    return bytes(buf)


def parse_length_field(field: bytes) -> int:
    """Decode the 4-character ASCII hex length field.

    Raises:
        ProtocolDecodeError: If the field is not hex or below FRAME_OVERHEAD.
    """
    text = field.decode("ascii", errors="replace")
    if len(text) != LENGTH_FIELD_SIZE or not all(c in string.hexdigits for c in text):
        raise ProtocolDecodeError(f"Invalid packet length field: {field!r}")
    length = int(text, 16)
    if length < FRAME_OVERHEAD:
        raise ProtocolDecodeError(
            f"Packet length {length} shorter than {FRAME_OVERHEAD}-byte overhead"
        )
    return length


def decode_header(stream: ByteStream) -> tuple[str, int]:
    """Synchronize on the next frame marker and decode its header.

    The marker is found with a rolling 4-byte window, so leading garbage is
    skipped. There is no upper bound on how much is skipped.

    Returns:
        Tuple of (type_tag, payload_length).
    """
    window = read_exact(stream, len(MARKER))
    while window != MARKER:
        window = window[1:] + read_exact(stream, 1)
    length = parse_length_field(read_exact(stream, LENGTH_FIELD_SIZE))
    type_tag = read_exact(stream, TYPE_TAG_SIZE).decode("ascii", errors="replace")
    return type_tag, length - FRAME_OVERHEAD


def read_payload(stream: ByteStream, payload_length: int) -> bytes:
    return read_exact(stream, payload_length)


def read_trailer(stream: ByteStream) -> bytes:
    """Read the 4-byte CRC trailer. The value is passed through unchecked."""
    return read_exact(stream, TRAILER_SIZE)


def read_packet(stream: ByteStream) -> Packet:
    """Read one complete frame (header, payload, trailer)."""
    type_tag, payload_length = decode_header(stream)
    payload = read_payload(stream, payload_length)
    trailer = read_trailer(stream)
    return Packet(type_tag=type_tag, payload=payload, trailer=trailer)


def _check_type_tag(type_tag: str) -> None:
    if len(type_tag) != TYPE_TAG_SIZE or not type_tag.isascii():
        raise ValueError(f"Type tag must be 4 ASCII characters, got {type_tag!r}")


def encode_command(type_tag: str, body: str) -> bytes:
    """Build a host command frame.

    Format: "   #" + LEN(4 hex) + TYPE + body, where LEN = len(TYPE + body).

    Args:
        type_tag: 4-character command type (e.g. "RREG").
        body: ASCII-hex command body.

    Returns:
        Encoded command.
    """
    _check_type_tag(type_tag)
    command = type_tag + body
    if len(command) > 0xFFFF:
        raise ValueError(f"Command too long: {len(command)} characters")
    return MARKER + f"{len(command):04X}{command}".encode("ascii")


def encode_frame(
    type_tag: str,
    payload: bytes,
    trailer: bytes = DEFAULT_TRAILER,
) -> bytes:
    """Build a device-side frame (as emitted by the camera).

    Args:
        type_tag: 4-character frame type (e.g. "GFRA").
        payload: Frame payload.
        trailer: 4-byte CRC trailer.

    Returns:
        Encoded frame, decodable by read_packet().
    """
    _check_type_tag(type_tag)
    if len(trailer) != TRAILER_SIZE:
        raise ValueError(f"Trailer must be {TRAILER_SIZE} bytes, got {len(trailer)}")
    length = len(payload) + FRAME_OVERHEAD
    if length > 0xFFFF:
        raise ValueError(f"Payload too long: {len(payload)} bytes")
    return MARKER + f"{length:04X}{type_tag}".encode("ascii") + payload + trailer


def register_command_body(address: int, value: int | None = None) -> str:
    """Body of an RREG (address only) or WREG (address + value) command."""
    body = f"{address:02X}" if value is None else f"{address:02X}{value:02X}"
    return body.ljust(COMMAND_BODY_SIZE, COMMAND_FILLER)


# =============================================================================
# Image Frames
# =============================================================================


@dataclasses.dataclass(kw_only=True, frozen=True, slots=True, eq=False)
class ImageFrame:
    """A 16-bit thermal image delivered by the stream."""

    pixels: NDArray[np.uint16]  # Shape (height, width)
    index: int  # Sequence number within the stream
    timestamp: float  # Host receive time (time.time())

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


def extract_image(payload: bytes, geometry: SensorGeometry) -> NDArray[np.uint16]:
    """Extract the pixel buffer from a GFRA payload.

    The pixels occupy the tail of the payload; any device header in front of
    them is dropped. Pixels are big-endian 16-bit, row-major.

    Raises:
        ProtocolDecodeError: If the payload is smaller than the pixel buffer.
    """
    expected = geometry.byte_size
    if len(payload) < expected:
        raise ProtocolDecodeError(
            f"Invalid thermal image frame: {len(payload) // 2} words "
            f"(of {geometry.pixel_count} words expected)"
        )
    pixels = np.frombuffer(payload[len(payload) - expected :], dtype=">u2")
    return pixels.reshape(geometry.shape).astype(np.uint16)


class FrameChannel:
    """Bounded, closable hand-off of frames from the stream thread.

    Frames still queued when the channel closes can be received; after that
    get() raises ChannelClosed and iteration stops. The exception that ended
    the stream, if any, is kept in `error`.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        if maxsize < 1:
            raise ValueError(f"maxsize must be positive, got {maxsize}")
        self.maxsize = maxsize
        self.error: Exception | None = None
        self._frames: collections.deque[ImageFrame] = collections.deque()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._frames)

    def put(self, frame: ImageFrame, cancelled: threading.Event | None = None) -> bool:
        """Queue a frame, blocking while the channel is full.

        Returns:
            False if the channel closed or `cancelled` was set before the
            frame could be queued.
        """
        with self._cond:
            while len(self._frames) >= self.maxsize and not self._closed:
                if cancelled is not None and cancelled.is_set():
                    return False
                self._cond.wait(timeout=0.1)
            if self._closed:
                return False
            self._frames.append(frame)
            self._cond.notify_all()
            return True

    def get(self, timeout: float | None = None) -> ImageFrame:
        """Receive the next frame.

        Raises:
            ChannelClosed: If the channel is closed and empty.
            TimeoutError: If no frame arrived within `timeout` seconds.
        """
        with self._cond:
            if not self._cond.wait_for(
                lambda: bool(self._frames) or self._closed, timeout=timeout
            ):
                raise TimeoutError(f"No frame received within {timeout}s")
            if self._frames:
                frame = self._frames.popleft()
                self._cond.notify_all()
                return frame
            raise ChannelClosed("Frame stream closed")

    def close(self, error: Exception | None = None) -> None:
        with self._cond:
            if error is not None and self.error is None:
                self.error = error
            self._closed = True
            self._cond.notify_all()

    def __iter__(self) -> Iterator[ImageFrame]:
        while True:
            try:
                yield self.get()
            except ChannelClosed:
                return


# =============================================================================
# Device Discovery
# =============================================================================


def list_candidates() -> list[tuple[int | None, int | None, str]]:
    """List serial ports as (vid, pid, port_name) tuples."""
    return [(port.vid, port.pid, port.device) for port in list_ports.comports()]


def find_serial_port(
    candidates: Sequence[tuple[int | None, int | None, str]] | None = None,
) -> str:
    """Find the serial port an MI48 module is attached to.

    Args:
        candidates: (vid, pid, port_name) tuples; defaults to list_candidates().

    Returns:
        Port name of the first matching device.

    Raises:
        TransportError: If no MI48 device is attached.
    """
    if candidates is None:
        candidates = list_candidates()
    for vid, pid, port_name in candidates:
        if vid == VENDOR_ID and pid in PRODUCT_IDS:
            logger.debug("Found MI48 %s on %s", PRODUCT_IDS[pid], port_name)
            return port_name
    raise TransportError(f"No MI48 device found (VID=0x{VENDOR_ID:04X})")


# =============================================================================
# Camera Class (Stateful)
# =============================================================================


@dataclasses.dataclass(kw_only=True, slots=True)
class StreamStats:
    """Packet counters for the current stream."""

    packets_read: int = 0  # Packets decoded by the stream thread
    frames_delivered: int = 0  # Image frames queued to the consumer
    packets_ignored: int = 0  # Command responses seen by the stream thread


@dataclasses.dataclass(kw_only=True, slots=True)
class MI48Camera:
    """MI48 Thermal Camera interface.

    Owns the serial port, the lock that serializes all reads from it, and
    the identity resolved by init().
    """

    port: ByteStream | None = None  # serial.Serial or compatible
    identity: CameraIdentity | None = None
    geometry: SensorGeometry | None = None
    queue_size: int = DEFAULT_QUEUE_SIZE
    stats: StreamStats = dataclasses.field(default_factory=StreamStats)
    _transport_lock: threading.Lock = dataclasses.field(
        default_factory=threading.Lock,
        repr=False,
    )
    _stream_thread: threading.Thread | None = dataclasses.field(
        default=None,
        repr=False,
    )
    _stream_stop: threading.Event | None = dataclasses.field(
        default=None,
        repr=False,
    )

    def connect(self, port_name: str | None = None, timeout: float | None = None) -> None:
        """Open the serial port.

        Args:
            port_name: Serial port; auto-detected when None.
            timeout: Read timeout in seconds; None blocks indefinitely.
        """
        if port_name is None:
            port_name = find_serial_port()
        try:
            # Baud rate is irrelevant for a USB-CDC device
            self.port = serial.Serial(port_name, timeout=timeout)
        except serial.SerialException as exc:
            raise TransportError(f"Failed to open MI48 device on {port_name}: {exc}") from exc
        logger.debug("Opened %s", port_name)

    def disconnect(self) -> None:
        """Stop any stream and close the serial port."""
        if self._stream_stop is not None:
            self._stream_stop.set()
        port, self.port = self.port, None
        close = getattr(port, "close", None)
        if close is not None:
            close()
        # Closing the port unblocks a pending read in the stream thread
        if self._stream_thread is not None:
            self._stream_thread.join(timeout=2.0)
            self._stream_thread = None

    def __enter__(self) -> MI48Camera:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    def init(self) -> CameraIdentity:
        """Resolve the camera identity and apply default settings.

        Returns:
            Camera identity.

        Raises:
            UnknownDeviceError: If the camera type is not in the catalog.
        """
        type_code = self.read_register(SENXOR_TYPE)[0]
        model_name = CAMERA_TYPES.get(type_code)
        if model_name is None:
            raise UnknownDeviceError(f"Unknown camera type: {type_code}")
        geometry = get_sensor_geometry(type_code)

        identity = CameraIdentity(
            type_code=type_code,
            model_name=model_name,
            serial_info=format_serial_info(self.read_register(SENXOR_ID)),
            firmware_version=format_firmware_version(self.read_register(FW_VERSION)),
            max_fps=get_max_fps(type_code),
        )
        self.identity = identity
        self.geometry = geometry

        self.set_filters(DEFAULT_FILTER_SETTINGS)
        self.set_temperature_offset(0.0)
        self.set_netd(DEFAULT_NETD_CONFIG)

        logger.info(
            "MI48 %s (%dx%d), firmware %s, %s",
            identity.model_name,
            geometry.width,
            geometry.height,
            identity.firmware_version,
            identity.serial_info,
        )
        return identity

    @property
    def max_fps(self) -> float:
        return self.identity.max_fps if self.identity is not None else 0.0

    @property
    def streaming(self) -> bool:
        return self._stream_thread is not None and self._stream_thread.is_alive()

    # Transaction engine

    def execute(self, type_tag: str, body: str) -> bytes:
        """Send a command and wait for the response with the same type tag.

        Holds the transport lock for the whole exchange; packets with other
        tags (e.g. streamed frames) are discarded. Waits indefinitely unless
        the port has a read timeout.

        Returns:
            Response payload.
        """
        port = self._require_port()
        command = encode_command(type_tag, body)
        with self._transport_lock:
            self._write(port, command)
            while True:
                packet = read_packet(port)
                if packet.type_tag == type_tag:
                    logger.debug("%s %s -> %r", type_tag, body, packet.payload)
                    return packet.payload
                logger.debug(
                    "Discarding %s packet while waiting for %s", packet.type_tag, type_tag
                )

    def read_register(self, register: Register) -> bytes:
        """Read all bytes of a register, one RREG command per address.

        Returns:
            Register value, one byte per address in ascending order.
        """
        response = bytearray()
        for address in register.addresses:
            payload = self.execute(PacketKind.READ_REGISTER.value, register_command_body(address))
            if not payload:
                raise ProtocolDecodeError(
                    f"Empty response reading register 0x{address:02X}"
                )
            response += payload
        try:
            return bytes.fromhex(response.decode("ascii"))
        except ValueError as exc:
            raise ProtocolDecodeError(
                f"Failed to decode register value {bytes(response)!r}"
            ) from exc

    def write_register(self, register: Register, value: int) -> None:
        """Write one byte to a register.

        Raises:
            InvalidArgumentError: If the register is read-only or the value
                does not fit in a byte. Nothing is sent in that case.
        """
        if register.read_only:
            raise InvalidArgumentError(f"Register 0x{register.address:02X} is read-only")
        if not 0 <= value <= 0xFF:
            raise InvalidArgumentError(
                f"Value {value} out of range for register 0x{register.address:02X}"
            )
        self.execute(
            PacketKind.WRITE_REGISTER.value,
            register_command_body(register.address, int(value)),
        )

    # Register groups (written in order, not transactional)

    def set_filters(self, settings: FilterSettings) -> None:
        """Configure the on-chip filters. FILTER_CONTROL is written last."""
        lsb = msb = setting2 = 0
        if settings.temporal > 0:
            lsb = settings.temporal & 0xFF
            msb = (settings.temporal & 0xFF00) >> 8
        if settings.rolling_average > 0:
            setting2 = settings.rolling_average

        self.write_register(FILTER_SETTING_1_LSB, lsb)
        self.write_register(FILTER_SETTING_1_MSB, msb)
        self.write_register(FILTER_SETTING_2, setting2)
        self.write_register(FILTER_CONTROL, settings.control_byte())

    def set_netd(self, config: NETDConfig) -> None:
        """Configure NETD compensation. NETD_CONFIG is written last."""
        self.write_register(NETD_FACTOR, config.factor)
        self.write_register(NETD_PIXEL_Y, config.y)
        self.write_register(NETD_PIXEL_X, config.x)
        self.write_register(NETD_CONFIG, config.config_byte())

    def set_temperature_offset(self, offset: float) -> None:
        """Set the temperature offset in 0.05°C steps.

        Negative offsets are stored as 256 - |steps|.

        Args:
            offset: Offset in °C, -6.4 to 6.35.
        """
        if not math.isfinite(offset):
            raise InvalidArgumentError(f"Temperature offset must be finite, got {offset}")
        steps = offset / OFFSET_STEP
        steps = int(abs(steps) + 0.5) * (-1 if steps < 0 else 1)  # Round half away from zero
        if not -128 <= steps <= 127:
            raise InvalidArgumentError(
                f"Temperature offset {offset} out of range (-6.4 to 6.35°C)"
            )
        self.write_register(OFFSET_CORR, 256 - abs(steps) if steps < 0 else steps)

    def set_frame_rate(self, fps: float) -> float:
        """Set the frame rate to the nearest achievable value.

        The device divides its maximum rate by an integer, so the actual rate
        may differ from the request.

        Args:
            fps: Target frame rate, 0 < fps <= max_fps.

        Returns:
            Actual frame rate.
        """
        max_fps = self.max_fps
        if not 0 < fps <= max_fps:
            raise InvalidArgumentError(
                f"Invalid target frame rate {fps}, must be 0 < target <= {max_fps}"
            )
        divisor = int(max_fps / fps + 0.5)
        self.write_register(FRAME_RATE, divisor)
        return max_fps / divisor

    def get_frame_rate(self) -> float:
        """Read the current frame rate from the divisor register."""
        divisor = self.read_register(FRAME_RATE)[0]
        if divisor == 0:
            raise InvalidArgumentError("Invalid frame rate divisor: 0")
        return self.max_fps / divisor

    # Streaming engine

    def start_stream(self) -> tuple[Callable[[], None], FrameChannel]:
        """Switch the camera to continuous mode and start the stream thread.

        Cancellation is checked between packets only; a read already waiting
        on the port is not interrupted. Cancelling does not tell the camera
        to stop sending.

        Returns:
            Tuple of (cancel, channel). The channel closes when the stream
            ends; `channel.error` holds the cause if it ended on an error.
        """
        port = self._require_port()
        if self.geometry is None:
            raise RuntimeError("Camera not initialized")
        if self.streaming:
            raise RuntimeError("Stream already running")

        self.write_register(FRAME_MODE, FrameMode.CONTINUOUS_STREAM)

        self.stats = StreamStats()
        channel = FrameChannel(self.queue_size)
        stop = threading.Event()
        thread = threading.Thread(
            target=self._stream_worker,
            args=(port, self.geometry, channel, stop),
            name="mi48-stream",
            daemon=True,
        )
        self._stream_stop = stop
        self._stream_thread = thread
        thread.start()
        logger.info("Stream started")
        return stop.set, channel

    def cancel_stream(self, wait: bool = True) -> None:
        """Cancel the running stream and optionally wait for its thread."""
        if self._stream_stop is not None:
            self._stream_stop.set()
        thread = self._stream_thread
        if wait and thread is not None:
            thread.join()

    # Private methods

    def _stream_worker(
        self,
        port: ByteStream,
        geometry: SensorGeometry,
        channel: FrameChannel,
        stop: threading.Event,
    ) -> None:
        error: Exception | None = None
        try:
            while not stop.is_set():
                # One whole packet per lock hold
                with self._transport_lock:
                    packet = read_packet(port)
                self.stats.packets_read += 1

                kind = packet.kind
                if kind == PacketKind.UNRECOGNIZED:
                    raise ProtocolDecodeError(
                        f"Unexpected packet type {packet.type_tag!r} in stream"
                    )
                if kind != PacketKind.IMAGE:
                    self.stats.packets_ignored += 1
                    continue

                frame = ImageFrame(
                    pixels=extract_image(packet.payload, geometry),
                    index=self.stats.frames_delivered,
                    timestamp=time.time(),
                )
                if not channel.put(frame, stop):
                    break
                self.stats.frames_delivered += 1
        except MI48Error as exc:
            logger.error("Failed to read packet, stopping stream: %s", exc)
            error = exc
        except Exception as exc:
            logger.exception("Stream thread failed: %s", exc)
            error = exc
        finally:
            channel.close(error)
            logger.info("Stream closed after %d frames", self.stats.frames_delivered)

    def _require_port(self) -> ByteStream:
        if self.port is None:
            raise RuntimeError("Not connected")
        return self.port

    @staticmethod
    def _write(port: ByteStream, data: bytes) -> None:
        try:
            port.write(data)
        except OSError as exc:
            raise TransportError(f"Serial write failed: {exc}") from exc


def open_camera(
    port_name: str | None = None,
    timeout: float | None = None,
    queue_size: int = DEFAULT_QUEUE_SIZE,
) -> MI48Camera:
    """Open and initialize an MI48 camera.

    Args:
        port_name: Serial port; auto-detected when None.
        timeout: Serial read timeout in seconds; None blocks indefinitely.
        queue_size: Capacity of the frame channel returned by start_stream().

    Returns:
        Initialized camera.
    """
    camera = MI48Camera(queue_size=queue_size)
    camera.connect(port_name, timeout=timeout)
    try:
        camera.init()
    except Exception:
        camera.disconnect()
        raise
    return camera
