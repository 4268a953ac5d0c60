"""Embedding codec: optional linear quantization followed by zlib compression.

Encoded layout (before compression), little-endian:

    magic   4s   b"VEC1"
    bits    B    0 = raw float32 payload, otherwise bits per component
    dim     I    number of components
    min     f    per-vector minimum (quantized payloads only)
    max     f    per-vector maximum (quantized payloads only)
    payload      float32[dim] | uint8[dim] (bits <= 8) | uint16[dim]

Quantization is lossy: each component is reconstructed within
``(max - min) / (2**bits - 1)`` of the original.
"""

from __future__ import annotations

import struct
import zlib

import numpy as np
from loguru import logger
from pydantic import BaseModel, Field

from vector_engine.errors import CompressionFailure, DecompressionFailure, DimensionMismatch
from vector_engine.similarity import VectorLike

_MAGIC = b"VEC1"
_HEADER = struct.Struct("<4sBI")
_RANGE = struct.Struct("<ff")
FLOAT32_SIZE = 4


class CodecConfig(BaseModel):
    """Configuration for embedding compression.

    Attributes:
        quantization_bits: Bits per component (None stores raw float32)
        compression_level: zlib level, 0 (store) to 9 (smallest)
    """

    quantization_bits: int | None = Field(default=8, ge=1, le=16)
    compression_level: int = Field(default=6, ge=0, le=9)


def quantize(vector: np.ndarray, bits: int) -> tuple[np.ndarray, float, float]:
    """Quantize a float32 vector to integer codes using per-vector min/max scaling.

    Returns:
        Tuple of (codes, min, max); codes are ``round(normalized * (2**bits - 1))``
    """
    if not 1 <= bits <= 16:
        raise ValueError(f"bits must be between 1 and 16, got {bits}")
    levels = (1 << bits) - 1
    v_min = float(vector.min())
    v_max = float(vector.max())
    value_range = v_max - v_min
    if value_range == 0.0:
        codes = np.zeros(vector.shape[0], dtype=np.float64)
    else:
        codes = np.rint((vector.astype(np.float64) - v_min) / value_range * levels)
    dtype = np.uint8 if bits <= 8 else np.uint16
    return codes.astype(dtype), v_min, v_max


def dequantize(codes: np.ndarray, v_min: float, v_max: float, bits: int) -> np.ndarray:
    """Invert ``quantize`` with the affine map ``code / (2**bits - 1) * range + min``."""
    levels = (1 << bits) - 1
    value_range = v_max - v_min
    restored = codes.astype(np.float64) / levels * value_range + v_min
    return restored.astype(np.float32)


class VectorCodec:
    """Compresses single embedding vectors to bytes and back.

    Args:
        dimension: Expected dimensionality; None accepts any length
        config: Quantization and compression settings
    """

    def __init__(self, dimension: int | None = None, config: CodecConfig | None = None):
        self.dimension = dimension
        self.config = config or CodecConfig()

    def _check_dimension(self, actual: int) -> None:
        if self.dimension is not None and actual != self.dimension:
            raise DimensionMismatch(self.dimension, actual)

    def compress(self, vector: VectorLike) -> bytes:
        """Encode and compress one embedding.

        Raises:
            DimensionMismatch: If the vector length differs from ``dimension``
            CompressionFailure: If the vector is empty or contains non-finite values
        """
        try:
            array = np.asarray(vector, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise CompressionFailure(f"Embedding is not numeric: {e}") from e
        if array.ndim != 1 or array.shape[0] == 0:
            raise CompressionFailure(f"Embedding must be a non-empty 1-D vector, got {array.shape}")
        self._check_dimension(array.shape[0])
        if not np.all(np.isfinite(array)):
            raise CompressionFailure("Embedding contains non-finite values")

        bits = self.config.quantization_bits
        header = _HEADER.pack(_MAGIC, bits or 0, array.shape[0])
        if bits is None:
            body = array.astype("<f4").tobytes()
        else:
            codes, v_min, v_max = quantize(array, bits)
            body = _RANGE.pack(v_min, v_max) + codes.astype(codes.dtype.newbyteorder("<")).tobytes()

        try:
            return zlib.compress(header + body, self.config.compression_level)
        except zlib.error as e:
            raise CompressionFailure(f"zlib compression failed: {e}") from e

    def decompress(self, data: bytes) -> np.ndarray:
        """Decompress bytes produced by ``compress`` into a float32 vector.

        Raises:
            DecompressionFailure: If the bytes are corrupt or truncated
        """
        try:
            raw = zlib.decompress(data)
        except zlib.error as e:
            raise DecompressionFailure(f"zlib decompression failed: {e}") from e

        if len(raw) < _HEADER.size:
            raise DecompressionFailure("Encoded vector is truncated")
        magic, bits, dim = _HEADER.unpack_from(raw)
        if magic != _MAGIC:
            raise DecompressionFailure(f"Unknown vector encoding {magic!r}")
        offset = _HEADER.size

        if bits == 0:
            expected = offset + dim * FLOAT32_SIZE
            if len(raw) != expected:
                raise DecompressionFailure(f"Expected {expected} bytes, got {len(raw)}")
            vector = np.frombuffer(raw, dtype="<f4", offset=offset, count=dim).astype(np.float32)
        else:
            dtype = np.dtype("<u1") if bits <= 8 else np.dtype("<u2")
            expected = offset + _RANGE.size + dim * dtype.itemsize
            if len(raw) != expected:
                raise DecompressionFailure(f"Expected {expected} bytes, got {len(raw)}")
            v_min, v_max = _RANGE.unpack_from(raw, offset)
            codes = np.frombuffer(raw, dtype=dtype, offset=offset + _RANGE.size, count=dim)
            vector = dequantize(codes, v_min, v_max, bits)

        self._check_dimension(vector.shape[0])
        return vector

    def compression_ratio(self, vector_length: int, compressed: bytes) -> float:
        """``original float32 size / compressed size``."""
        ratio = (vector_length * FLOAT32_SIZE) / max(len(compressed), 1)
        logger.debug(f"Compressed {vector_length}-dim vector to {len(compressed)} bytes ({ratio:.2f}x)")
        return ratio
