"""
Compact binary encodings for tiny-agg aggregate states.

Every serialized state starts with a two byte header (format tag, version)
followed by the algorithm parameters and a variable length payload. Integers
are written as unsigned LEB128 varints, signed integers are zigzag mapped
first, and sorted or near-sorted sequences are stored as deltas (or deltas of
deltas for timestamps) so that small steps take a single byte.

Decoding never trusts the buffer: truncation, trailing bytes and header
mismatches all raise UnsupportedFormat.
"""

import struct
from typing import Iterator, List, NamedTuple, Sequence, Union

from tiny_agg.core.errors import UnsupportedFormat

BytesLike = Union[bytes, bytearray, memoryview]

_F64 = struct.Struct("<d")
_U32 = struct.Struct("<I")
_I64 = struct.Struct("<q")

HEADER_SIZE = 2


class Header(NamedTuple):
    """Fixed header present at the start of every serialized state."""

    tag: int
    version: int


def zigzag_encode(value: int) -> int:
    """Map a signed integer of any size onto an unsigned one (0, -1, 1, -2, ...)."""
    return value << 1 if value >= 0 else ((-value) << 1) - 1


def zigzag_decode(value: int) -> int:
    """Inverse of zigzag_encode."""
    return (value >> 1) ^ -(value & 1)


def float_to_bits(value: float) -> int:
    """Reinterpret a float64 as a signed 64-bit integer."""
    return _I64.unpack(_F64.pack(value))[0]


def bits_to_float(bits: int) -> float:
    """Reinterpret a signed 64-bit integer as a float64."""
    return _F64.unpack(_I64.pack(bits))[0]


def _wrap_i64(value: int) -> int:
    # Differences of two int64 bit patterns can leave the signed range.
    value &= 0xFFFFFFFFFFFFFFFF
    return value - (1 << 64) if value >= (1 << 63) else value


class ByteWriter:
    """Append-only buffer with helpers for the primitive encodings."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def header(self, tag: int, version: int) -> "ByteWriter":
        self._buf.append(tag & 0xFF)
        self._buf.append(version & 0xFF)
        return self

    def u8(self, value: int) -> "ByteWriter":
        if not 0 <= value <= 0xFF:
            raise ValueError(f"Value {value} does not fit in one byte")
        self._buf.append(value)
        return self

    def u32(self, value: int) -> "ByteWriter":
        self._buf += _U32.pack(value)
        return self

    def f64(self, value: float) -> "ByteWriter":
        self._buf += _F64.pack(value)
        return self

    def varint(self, value: int) -> "ByteWriter":
        """Write an unsigned LEB128 varint."""
        if value < 0:
            raise ValueError(f"Varint must be non-negative, got {value}")
        while True:
            byte = value & 0x7F
            value >>= 7
            if value:
                self._buf.append(byte | 0x80)
            else:
                self._buf.append(byte)
                return self

    def svarint(self, value: int) -> "ByteWriter":
        """Write a signed integer as a zigzag varint."""
        return self.varint(zigzag_encode(value))

    def raw(self, data: BytesLike) -> "ByteWriter":
        self._buf += data
        return self

    def deltas(self, values: Sequence[int]) -> "ByteWriter":
        """Write a count followed by zigzag deltas between successive values."""
        self.varint(len(values))
        previous = 0
        for value in values:
            self.svarint(value - previous)
            previous = value
        return self

    def delta_of_deltas(self, values: Sequence[int]) -> "ByteWriter":
        """
        Write a count followed by delta-of-delta encoded integers.

        Evenly spaced timestamps collapse to a run of zero bytes after the
        first two entries.
        """
        self.varint(len(values))
        previous = 0
        previous_delta = 0
        for value in values:
            delta = value - previous
            self.svarint(delta - previous_delta)
            previous = value
            previous_delta = delta
        return self

    def float_deltas(self, values: Sequence[float]) -> "ByteWriter":
        """
        Write floats losslessly as deltas of their IEEE-754 bit patterns.

        Close, sorted floats (such as centroid means) share their high bits, so
        the deltas are small.
        """
        self.varint(len(values))
        previous = 0
        for value in values:
            bits = float_to_bits(value)
            self.svarint(_wrap_i64(bits - previous))
            previous = bits
        return self

    def f64_array(self, values: Sequence[float]) -> "ByteWriter":
        self.varint(len(values))
        self._buf += struct.pack(f"<{len(values)}d", *values)
        return self

    def __len__(self) -> int:
        return len(self._buf)

    def getvalue(self) -> bytes:
        return bytes(self._buf)


class ByteReader:
    """
    Cursor over a serialized buffer.

    The reader wraps the buffer in a memoryview, so slicing with raw() never
    copies. All reads raise UnsupportedFormat when the buffer is too short.
    """

    def __init__(self, data: BytesLike, offset: int = 0):
        self._view = memoryview(data).cast("B")
        self._pos = offset

    @property
    def position(self) -> int:
        return self._pos

    def remaining(self) -> int:
        return len(self._view) - self._pos

    def _take(self, size: int) -> memoryview:
        if size < 0 or self._pos + size > len(self._view):
            raise UnsupportedFormat(
                f"Truncated buffer: need {size} bytes at offset {self._pos}, "
                f"have {len(self._view) - self._pos}"
            )
        chunk = self._view[self._pos : self._pos + size]
        self._pos += size
        return chunk

    def header(self) -> Header:
        chunk = self._take(HEADER_SIZE)
        return Header(chunk[0], chunk[1])

    def u8(self) -> int:
        return self._take(1)[0]

    def u32(self) -> int:
        return _U32.unpack(self._take(4))[0]

    def f64(self) -> float:
        return _F64.unpack(self._take(8))[0]

    def varint(self) -> int:
        result = 0
        shift = 0
        while True:
            byte = self._take(1)[0]
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
            if shift > 70:
                raise UnsupportedFormat("Varint is too long")

    def svarint(self) -> int:
        return zigzag_decode(self.varint())

    def raw(self, size: int) -> memoryview:
        return self._take(size)

    def deltas(self) -> List[int]:
        return list(self.iter_deltas(self.varint()))

    def iter_deltas(self, count: int) -> Iterator[int]:
        """Lazily decode ``count`` zigzag deltas written by ByteWriter.deltas."""
        value = 0
        for _ in range(count):
            value += self.svarint()
            yield value

    def delta_of_deltas(self) -> List[int]:
        count = self.varint()
        values = []
        previous = 0
        delta = 0
        for _ in range(count):
            delta += self.svarint()
            previous += delta
            values.append(previous)
        return values

    def float_deltas(self) -> List[float]:
        return list(self.iter_float_deltas(self.varint()))

    def iter_float_deltas(self, count: int) -> Iterator[float]:
        bits = 0
        for _ in range(count):
            bits = _wrap_i64(bits + self.svarint())
            yield bits_to_float(bits)

    def f64_array(self) -> List[float]:
        count = self.varint()
        return list(struct.unpack(f"<{count}d", self._take(8 * count)))

    def skip_varints(self, count: int) -> None:
        for _ in range(count):
            self.varint()

    def expect_end(self) -> None:
        if self._pos != len(self._view):
            raise UnsupportedFormat(
                f"{len(self._view) - self._pos} trailing bytes after payload"
            )


def read_header(data: BytesLike, expected_tag: int, expected_version: int) -> ByteReader:
    """
    Validate the header of a serialized state and return a reader positioned
    after it.

    Raises:
        UnsupportedFormat: If the tag or version differ from the expected ones.
    """
    reader = ByteReader(data)
    header = reader.header()
    if header.tag != expected_tag:
        raise UnsupportedFormat(
            f"Format tag {header.tag} does not match expected tag {expected_tag}"
        )
    if header.version != expected_version:
        raise UnsupportedFormat(
            f"Unsupported format version {header.version} for tag {header.tag} "
            f"(expected {expected_version})"
        )
    return reader


def peek_header(data: BytesLike) -> Header:
    """Read the header without validating it."""
    return ByteReader(data).header()

