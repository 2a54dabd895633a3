"""
Unit tests for the binary encoding helpers.
"""

import math
import unittest

from tiny_agg.core.encoding import (
    ByteReader,
    ByteWriter,
    Header,
    bits_to_float,
    float_to_bits,
    peek_header,
    read_header,
    zigzag_decode,
    zigzag_encode,
)
from tiny_agg.core.errors import UnsupportedFormat


class TestZigzag(unittest.TestCase):
    """Test cases for zigzag integer mapping."""

    def test_small_values_interleave(self):
        """Signed values map onto 0, 1, 2, ... alternating by sign."""
        self.assertEqual(zigzag_encode(0), 0)
        self.assertEqual(zigzag_encode(-1), 1)
        self.assertEqual(zigzag_encode(1), 2)
        self.assertEqual(zigzag_encode(-2), 3)
        self.assertEqual(zigzag_encode(2), 4)

    def test_decode_inverts_encode(self):
        for value in (0, 1, -1, 63, -64, 2**40, -(2**40), 2**63 - 1, -(2**63)):
            self.assertEqual(zigzag_decode(zigzag_encode(value)), value)

    def test_values_beyond_64_bits(self):
        for value in (2**64, -(2**64), 2**65 + 3, -(2**65) - 3):
            self.assertEqual(zigzag_decode(zigzag_encode(value)), value)
        self.assertEqual(zigzag_encode(-(2**64)), 2**65 - 1)

    def test_extreme_timestamp_deltas(self):
        """Differences of 64-bit timestamps overflow 64 bits but still round trip."""
        values = [-(2**63), 2**63 - 1, -(2**62), 2**62, 0]
        data = ByteWriter().delta_of_deltas(values).deltas(values).getvalue()
        reader = ByteReader(data)
        self.assertEqual(reader.delta_of_deltas(), values)
        self.assertEqual(reader.deltas(), values)
        reader.expect_end()

    def test_float_bits(self):
        self.assertEqual(float_to_bits(1.0), 0x3FF0000000000000)
        self.assertEqual(bits_to_float(0x4000000000000000), 2.0)


class TestByteWriter(unittest.TestCase):
    """Test cases for ByteWriter and ByteReader."""

    def test_varint_layout(self):
        """Varints use seven bits per byte with the high bit as continuation."""
        self.assertEqual(ByteWriter().varint(0).getvalue(), b"\x00")
        self.assertEqual(ByteWriter().varint(127).getvalue(), b"\x7f")
        self.assertEqual(ByteWriter().varint(128).getvalue(), b"\x80\x01")
        self.assertEqual(ByteWriter().varint(300).getvalue(), b"\xac\x02")

    def test_negative_varint_rejected(self):
        with self.assertRaises(ValueError):
            ByteWriter().varint(-1)

    def test_u8_range(self):
        with self.assertRaises(ValueError):
            ByteWriter().u8(256)

    def test_mixed_fields(self):
        """Fields written in sequence are read back in the same order."""
        data = (
            ByteWriter()
            .header(3, 1)
            .u8(14)
            .u32(0xDEADBEEF)
            .varint(1_000_000)
            .svarint(-12345)
            .f64(math.pi)
            .getvalue()
        )
        reader = ByteReader(data)
        self.assertEqual(reader.header(), Header(3, 1))
        self.assertEqual(reader.u8(), 14)
        self.assertEqual(reader.u32(), 0xDEADBEEF)
        self.assertEqual(reader.varint(), 1_000_000)
        self.assertEqual(reader.svarint(), -12345)
        self.assertEqual(reader.f64(), math.pi)
        reader.expect_end()

    def test_deltas(self):
        values = [5, 9, 9, 100, -3]
        reader = ByteReader(ByteWriter().deltas(values).getvalue())
        self.assertEqual(reader.deltas(), values)

    def test_delta_of_deltas_compresses_regular_series(self):
        """Evenly spaced timestamps cost one byte each after the first two."""
        start = 1_700_000_000_000_000
        times = [start + i * 1_000_000 for i in range(100)]
        data = ByteWriter().delta_of_deltas(times).getvalue()
        self.assertLess(len(data), 120)
        self.assertEqual(ByteReader(data).delta_of_deltas(), times)

    def test_float_deltas_are_lossless(self):
        values = [-1e300, -2.5, -0.0, 0.0, 1e-300, 0.1, 0.30000000000000004, 1e300]
        reader = ByteReader(ByteWriter().float_deltas(values).getvalue())
        decoded = reader.float_deltas()
        self.assertEqual(
            [float_to_bits(v) for v in decoded], [float_to_bits(v) for v in values]
        )

    def test_f64_array(self):
        values = [1.5, -2.25, float("inf")]
        reader = ByteReader(ByteWriter().f64_array(values).getvalue())
        self.assertEqual(reader.f64_array(), values)

    def test_raw_is_zero_copy(self):
        """raw() returns a slice of the caller's buffer."""
        buf = bytearray(b"\x00abc")
        reader = ByteReader(buf)
        reader.u8()
        chunk = reader.raw(3)
        self.assertIsInstance(chunk, memoryview)
        buf[1] = ord("z")
        self.assertEqual(bytes(chunk), b"zbc")


class TestMalformedInput(unittest.TestCase):
    """Malformed buffers raise UnsupportedFormat."""

    def test_truncated(self):
        data = ByteWriter().f64(1.0).getvalue()[:5]
        with self.assertRaises(UnsupportedFormat):
            ByteReader(data).f64()

    def test_unterminated_varint(self):
        with self.assertRaises(UnsupportedFormat):
            ByteReader(b"\x80\x80").varint()

    def test_trailing_bytes(self):
        reader = ByteReader(b"\x01\x02")
        reader.u8()
        with self.assertRaises(UnsupportedFormat):
            reader.expect_end()

    def test_header_checks(self):
        data = ByteWriter().header(2, 1).getvalue()
        self.assertEqual(peek_header(data), Header(2, 1))
        read_header(data, 2, 1)
        with self.assertRaises(UnsupportedFormat):
            read_header(data, 3, 1)
        with self.assertRaises(UnsupportedFormat):
            read_header(data, 2, 2)
        with self.assertRaises(UnsupportedFormat):
            peek_header(b"\x02")


if __name__ == "__main__":
    unittest.main()
