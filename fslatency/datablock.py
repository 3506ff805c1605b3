"""Binary layout of the UDP messages sent from the agent to the server."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

MAGIC = b"fslatency      \x00"
MAGIC_LEN = 16
HOSTNAME_LEN = 64
TEXT_LEN = 64
VERSION_MAJOR = 0
VERSION_MINOR = 1
DATABLOCK_ARRAY_LEN = 8
# Marks a data block that holds no valid measurement (about 31 years).
EXTREME_BIG_INTERVAL = 1000000000.0

_NANOS_PER_SECOND = 1_000_000_000

_DATABLOCK = struct.Struct("<Qqqqqdddd")
_HEADER = struct.Struct(f"<{MAGIC_LEN}sHH{HOSTNAME_LEN}s{TEXT_LEN}sqq")

DATABLOCK_SIZE = _DATABLOCK.size
MESSAGE_SIZE = _HEADER.size + DATABLOCK_ARRAY_LEN * DATABLOCK_SIZE
NAME_KEY_LEN = HOSTNAME_LEN + TEXT_LEN


class MessageFormatError(ValueError):
    """Raised when bytes cannot be decoded as a data block or message."""


@dataclass(frozen=True, order=True)
class Timespec:
    """A point in time (or an interval) as whole seconds plus nanoseconds."""

    sec: int = 0
    nsec: int = 0

    @classmethod
    def from_seconds(cls, seconds: float) -> Timespec:
        """Build a timespec from a float number of seconds."""
        sec, nsec = divmod(round(seconds * _NANOS_PER_SECOND), _NANOS_PER_SECOND)
        return cls(int(sec), int(nsec))

    def to_seconds(self) -> float:
        """Return the value as a float number of seconds."""
        return self.sec + self.nsec / _NANOS_PER_SECOND

    def is_zero(self) -> bool:
        """True if both seconds and nanoseconds are zero."""
        return self.sec == 0 and self.nsec == 0


@dataclass(frozen=True)
class DataBlock:
    """Summary of the measurements taken during one reporting interval."""

    measurementcount: int = 0
    starttime: Timespec = field(default_factory=Timespec)
    endtime: Timespec = field(default_factory=Timespec)
    min: float = 0.0
    max: float = 0.0
    sumx: float = 0.0
    sumxx: float = 0.0

    @classmethod
    def empty(cls) -> DataBlock:
        """A block that carries no valid measurement."""
        return cls(min=EXTREME_BIG_INTERVAL)

    def pack(self) -> bytes:
        """Encode the block in its wire layout."""
        return _DATABLOCK.pack(
            self.measurementcount,
            self.starttime.sec,
            self.starttime.nsec,
            self.endtime.sec,
            self.endtime.nsec,
            self.min,
            self.max,
            self.sumx,
            self.sumxx,
        )

    @classmethod
    def unpack(cls, data: bytes) -> DataBlock:
        """Decode a block from exactly DATABLOCK_SIZE bytes."""
        if len(data) != DATABLOCK_SIZE:
            raise MessageFormatError(
                f"data block must be {DATABLOCK_SIZE} bytes, got {len(data)}"
            )
        count, ssec, snsec, esec, ensec, mn, mx, sumx, sumxx = _DATABLOCK.unpack(data)
        return cls(count, Timespec(ssec, snsec), Timespec(esec, ensec), mn, mx, sumx, sumxx)

    def describe(self) -> str:
        """Human readable multi-line description, for debugging."""
        return "\n".join(
            [
                f" number of measurements: {self.measurementcount}",
                f"   starttime: {self.starttime.sec}.{self.starttime.nsec:09d}",
                f"   endtime  : {self.endtime.sec}.{self.endtime.nsec:09d}",
                f"   min  : {self.min:f}",
                f"   max  : {self.max:f}",
                f"   sumX : {self.sumx:f}",
                f"   sumXX: {self.sumxx:f}",
            ]
        )


def _encode_field(value: str, length: int) -> bytes:
    return value.encode("utf-8", "surrogateescape")[:length].ljust(length, b"\0")


def _decode_field(raw: bytes) -> str:
    return raw.rstrip(b"\0").decode("utf-8", "surrogateescape")


def _default_blocks() -> tuple[DataBlock, ...]:
    return tuple(DataBlock() for _ in range(DATABLOCK_ARRAY_LEN))


@dataclass(frozen=True)
class MessageBlock:
    """One UDP datagram: client identity plus the latest data blocks, newest first."""

    hostname: str = ""
    text: str = ""
    precision: Timespec = field(default_factory=Timespec)
    blocks: tuple[DataBlock, ...] = field(default_factory=_default_blocks)
    major: int = VERSION_MAJOR
    minor: int = VERSION_MINOR
    magic: bytes = MAGIC

    def __post_init__(self) -> None:
        blocks = tuple(self.blocks)
        if len(blocks) != DATABLOCK_ARRAY_LEN:
            raise ValueError(
                f"a message holds exactly {DATABLOCK_ARRAY_LEN} data blocks, got {len(blocks)}"
            )
        object.__setattr__(self, "blocks", blocks)

    def pack(self) -> bytes:
        """Encode the message in its wire layout; long names are truncated."""
        header = _HEADER.pack(
            self.magic,
            self.major,
            self.minor,
            _encode_field(self.hostname, HOSTNAME_LEN),
            _encode_field(self.text, TEXT_LEN),
            self.precision.sec,
            self.precision.nsec,
        )
        return header + b"".join(block.pack() for block in self.blocks)

    @classmethod
    def unpack(cls, data: bytes) -> MessageBlock:
        """Decode a message from exactly MESSAGE_SIZE bytes."""
        if len(data) != MESSAGE_SIZE:
            raise MessageFormatError(
                f"message must be {MESSAGE_SIZE} bytes, got {len(data)}"
            )
        magic, major, minor, hostname, text, psec, pnsec = _HEADER.unpack_from(data)
        body = memoryview(data)[_HEADER.size:]
        blocks = tuple(
            DataBlock.unpack(bytes(body[offset:offset + DATABLOCK_SIZE]))
            for offset in range(0, len(body), DATABLOCK_SIZE)
        )
        return cls(
            hostname=_decode_field(hostname),
            text=_decode_field(text),
            precision=Timespec(psec, pnsec),
            blocks=blocks,
            major=major,
            minor=minor,
            magic=magic,
        )

    def name_key(self) -> bytes:
        """The hostname and text fields together, as they appear on the wire."""
        return _encode_field(self.hostname, HOSTNAME_LEN) + _encode_field(self.text, TEXT_LEN)

    def is_compatible(self) -> bool:
        """True if magic and protocol version match this implementation."""
        magic = bytes(self.magic)[:MAGIC_LEN].ljust(MAGIC_LEN, b"\0")
        return (
            self.major == VERSION_MAJOR
            and self.minor == VERSION_MINOR
            and magic == MAGIC
        )