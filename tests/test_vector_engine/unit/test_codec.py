"""Unit tests for the embedding codec.

Tests cover:
- Quantization error bounds
- Lossless raw mode
- Validation of inputs and corrupt payloads
"""

import zlib

import numpy as np
import pytest
from pydantic import ValidationError

from vector_engine.codec import CodecConfig, VectorCodec, dequantize, quantize
from vector_engine.errors import CompressionFailure, DecompressionFailure, DimensionMismatch


class TestQuantize:
    """Tests for min/max scalar quantization."""

    def test_codes_span_full_range(self):
        """The minimum maps to code 0 and the maximum to 2**bits - 1."""
        codes, v_min, v_max = quantize(np.array([-1.0, 0.0, 1.0], dtype=np.float32), 8)
        assert codes.dtype == np.uint8
        assert codes.tolist() == [0, 128, 255]
        assert (v_min, v_max) == (-1.0, 1.0)

    def test_wide_codes_use_uint16(self):
        """More than 8 bits needs 16-bit codes."""
        codes, _, _ = quantize(np.array([0.0, 1.0], dtype=np.float32), 12)
        assert codes.dtype == np.uint16
        assert codes.tolist() == [0, 4095]

    def test_constant_vector(self):
        """A constant vector round-trips exactly."""
        vector = np.full(5, 0.25, dtype=np.float32)
        codes, v_min, v_max = quantize(vector, 8)
        np.testing.assert_allclose(dequantize(codes, v_min, v_max, 8), vector)

    def test_invalid_bits(self):
        """Bits outside 1..16 are rejected."""
        with pytest.raises(ValueError, match="bits"):
            quantize(np.array([1.0, 2.0]), 0)
        with pytest.raises(ValueError):
            quantize(np.array([1.0, 2.0]), 17)


class TestVectorCodec:
    """Tests for compress/decompress."""

    @pytest.mark.parametrize("bits", [4, 8, 12, 16])
    def test_round_trip_error_within_half_step(self, bits):
        """Reconstruction error is at most half a quantization step."""
        rng = np.random.default_rng(bits)
        vector = rng.normal(size=256).astype(np.float32)
        codec = VectorCodec(256, CodecConfig(quantization_bits=bits))

        restored = codec.decompress(codec.compress(vector))

        step = (vector.max() - vector.min()) / ((1 << bits) - 1)
        assert restored.dtype == np.float32
        assert np.max(np.abs(restored - vector)) <= step / 2 + 1e-5

    def test_raw_mode_is_lossless(self):
        """Disabling quantization keeps float32 values exactly."""
        vector = np.array([0.1, -2.5, 3.14159, 1e-7], dtype=np.float32)
        codec = VectorCodec(config=CodecConfig(quantization_bits=None))

        np.testing.assert_array_equal(codec.decompress(codec.compress(vector)), vector)

    def test_quantized_payload_is_smaller(self):
        """8-bit quantization compresses well below raw float32 size."""
        vector = np.random.default_rng(0).normal(size=512).astype(np.float32)
        codec = VectorCodec()
        compressed = codec.compress(vector)

        assert len(compressed) < 512 * 4
        assert codec.compression_ratio(512, compressed) > 1.0

    def test_dimension_mismatch(self):
        """Vectors of the wrong length are rejected."""
        with pytest.raises(DimensionMismatch):
            VectorCodec(4).compress([1.0, 2.0])

    @pytest.mark.parametrize("bad", [[], [1.0, float("nan")], [float("inf")]])
    def test_invalid_vectors(self, bad):
        """Empty and non-finite vectors cannot be compressed."""
        with pytest.raises(CompressionFailure) as exc_info:
            VectorCodec().compress(bad)
        assert exc_info.value.code == 1001

    def test_corrupt_bytes(self):
        """Garbage input fails to decompress."""
        with pytest.raises(DecompressionFailure):
            VectorCodec().decompress(b"not zlib data")

    def test_truncated_payload(self):
        """A valid zlib stream with a short body is reported as corrupt."""
        codec = VectorCodec()
        raw = zlib.decompress(codec.compress([1.0, 2.0, 3.0]))
        with pytest.raises(DecompressionFailure, match="Expected"):
            codec.decompress(zlib.compress(raw[:-1]))

    def test_unknown_magic(self):
        """Payloads from another encoder are rejected."""
        with pytest.raises(DecompressionFailure, match="Unknown vector encoding"):
            VectorCodec().decompress(zlib.compress(b"XXXX" + b"\x00" * 20))

    def test_config_validation(self):
        """Out-of-range compression settings fail validation."""
        with pytest.raises(ValidationError):
            CodecConfig(compression_level=10)
        with pytest.raises(ValidationError):
            CodecConfig(quantization_bits=32)
