"""Packing, serialization and compression of Gaussian splats in the SPZ format."""

from __future__ import annotations

import os
import struct
import zlib
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from .splat_types import (
    CoordinateConverter,
    CoordinateSystem,
    GaussianCloud,
    SpzError,
    coordinate_converter,
)

__all__ = [
    "UnpackedGaussian",
    "PackedGaussian",
    "PackedGaussians",
    "PackOptions",
    "UnpackOptions",
    "degree_for_dim",
    "dim_for_degree",
    "check_cloud_sizes",
    "compress_gzipped",
    "decompress_gzipped",
    "pack_gaussians",
    "unpack_gaussians",
    "serialize_packed_gaussians",
    "deserialize_packed_gaussians",
    "save_spz",
    "load_spz",
    "load_spz_packed",
    "load_spz_packed_file",
    "save_spz_file",
    "load_spz_file",
]

# DC colour components are scaled by less than the SH constant (0.282) so that base colours
# slightly out of range can still be represented.
COLOR_SCALE = np.float32(0.15)

MAGIC = 0x5053474E  # "NGSP" in little-endian
VERSION = 2
FLAG_ANTIALIASED = 0x1
MAX_POINTS_TO_READ = 10_000_000
FRACTIONAL_BITS = 12
SH1_BITS = 5
SH_REST_BITS = 4

_HEADER = struct.Struct("<IIIBBBB")

_F32 = np.float32


def degree_for_dim(dim: int) -> int:
    """Spherical harmonics degree for a number of coefficients per channel."""
    if dim < 3:
        return 0
    if dim < 8:
        return 1
    if dim < 15:
        return 2
    return 3


def dim_for_degree(degree: int) -> int:
    """Number of coefficients per channel for a spherical harmonics degree."""
    dims = {0: 0, 1: 3, 2: 8, 3: 15}
    try:
        return dims[degree]
    except KeyError:
        raise SpzError(f"unsupported SH degree: {degree}") from None


def check_cloud_sizes(cloud: GaussianCloud) -> None:
    """Raise SpzError unless every array of the cloud matches its point count and degree."""
    n = cloud.num_points
    if n < 0:
        raise SpzError(f"negative point count: {n}")
    if not 0 <= cloud.sh_degree <= 3:
        raise SpzError(f"unsupported SH degree: {cloud.sh_degree}")
    expected = {
        "positions": n * 3,
        "scales": n * 3,
        "rotations": n * 4,
        "alphas": n,
        "colors": n * 3,
        "sh": n * dim_for_degree(cloud.sh_degree) * 3,
    }
    for name, size in expected.items():
        actual = getattr(cloud, name).size
        if actual != size:
            raise SpzError(f"{name} has {actual} values, expected {size}")


def _check_packed_sizes(packed: PackedGaussians, sh_dim: int, uses_float16: bool) -> None:
    n = packed.num_points
    expected = {
        "positions": n * 3 * (2 if uses_float16 else 3),
        "scales": n * 3,
        "rotations": n * 3,
        "alphas": n,
        "colors": n * 3,
        "sh": n * sh_dim * 3,
    }
    for name, size in expected.items():
        actual = len(getattr(packed, name))
        if actual != size:
            raise SpzError(f"packed {name} has {actual} bytes, expected {size}")


@dataclass
class PackOptions:
    """Options for packing: the coordinate system the input cloud is in."""

    from_: CoordinateSystem = CoordinateSystem.UNSPECIFIED


@dataclass
class UnpackOptions:
    """Options for unpacking: the coordinate system the output cloud should be in."""

    to: CoordinateSystem = CoordinateSystem.UNSPECIFIED


@dataclass
class UnpackedGaussian:
    """A single Gaussian inflated back to floating point values."""

    position: tuple[float, ...]
    rotation: tuple[float, ...]  # x, y, z, w
    scale: tuple[float, ...]  # log scale
    color: tuple[float, ...]  # SH DC component
    alpha: float  # before sigmoid
    sh_r: tuple[float, ...]
    sh_g: tuple[float, ...]
    sh_b: tuple[float, ...]


def _zeros(n: int) -> tuple[int, ...]:
    return (0,) * n


@dataclass
class PackedGaussian:
    """A single low-precision Gaussian, always holding room for full spherical harmonics."""

    position: tuple[int, ...] = field(default_factory=lambda: _zeros(9))
    rotation: tuple[int, ...] = field(default_factory=lambda: _zeros(3))
    scale: tuple[int, ...] = field(default_factory=lambda: _zeros(3))
    color: tuple[int, ...] = field(default_factory=lambda: _zeros(3))
    alpha: int = 0
    sh_r: tuple[int, ...] = field(default_factory=lambda: _zeros(15))
    sh_g: tuple[int, ...] = field(default_factory=lambda: _zeros(15))
    sh_b: tuple[int, ...] = field(default_factory=lambda: _zeros(15))

    def unpack(
        self, uses_float16: bool, fractional_bits: int, converter: CoordinateConverter
    ) -> UnpackedGaussian:
        """Inflate this Gaussian, applying the converter's sign flips."""
        raw_pos = _u8(self.position)
        with np.errstate(all="ignore"):
            if uses_float16:
                pos = _decode_half(raw_pos[:6])
            else:
                pos = _decode_fixed(raw_pos[:9], fractional_bits)
            pos = pos * np.array(converter.flip_p, dtype=_F32)
            rot = _decode_rotations(_u8(self.rotation))[0]
            rot[:3] *= np.array(converter.flip_q, dtype=_F32)
            scale = _decode_scales(_u8(self.scale))
            color = _decode_colors(_u8(self.color))
            alpha = _decode_alphas(_u8([self.alpha]))[0]
            flip_sh = np.array(converter.flip_sh, dtype=_F32)
            sh_r = flip_sh * _decode_sh(_u8(self.sh_r))
            sh_g = flip_sh * _decode_sh(_u8(self.sh_g))
            sh_b = flip_sh * _decode_sh(_u8(self.sh_b))
        return UnpackedGaussian(
            position=_floats(pos),
            rotation=_floats(rot),
            scale=_floats(scale),
            color=_floats(color),
            alpha=float(alpha),
            sh_r=_floats(sh_r),
            sh_g=_floats(sh_g),
            sh_b=_floats(sh_b),
        )


@dataclass
class PackedGaussians:
    """A whole splat in low precision, stored as separate (non-interleaved) byte arrays."""

    num_points: int = 0
    sh_degree: int = 0
    fractional_bits: int = 0
    antialiased: bool = False
    positions: bytes = b""
    scales: bytes = b""
    rotations: bytes = b""
    alphas: bytes = b""
    colors: bytes = b""
    sh: bytes = b""

    def uses_float16(self) -> bool:
        """True for the legacy layout with half-precision positions."""
        return len(self.positions) == self.num_points * 3 * 2

    def at(self, i: int) -> PackedGaussian:
        """The packed Gaussian at index i, with missing SH coefficients set to 128."""
        if not 0 <= i < self.num_points:
            raise IndexError(f"gaussian index out of range: {i}")
        position_bytes = 6 if self.uses_float16() else 9
        start3 = i * 3
        position = tuple(self.positions[i * position_bytes : (i + 1) * position_bytes])
        sh_dim = dim_for_degree(self.sh_degree)
        coeffs = self.sh[i * sh_dim * 3 : (i + 1) * sh_dim * 3]
        pad = (128,) * (15 - sh_dim)
        return PackedGaussian(
            position=position + _zeros(9 - position_bytes),
            rotation=tuple(self.rotations[start3 : start3 + 3]),
            scale=tuple(self.scales[start3 : start3 + 3]),
            color=tuple(self.colors[start3 : start3 + 3]),
            alpha=self.alphas[i],
            sh_r=tuple(coeffs[0::3]) + pad,
            sh_g=tuple(coeffs[1::3]) + pad,
            sh_b=tuple(coeffs[2::3]) + pad,
        )

    def unpack(self, i: int, converter: CoordinateConverter) -> UnpackedGaussian:
        """Inflate the Gaussian at index i."""
        return self.at(i).unpack(self.uses_float16(), self.fractional_bits, converter)


def _u8(values) -> np.ndarray:
    return np.array(values, dtype=np.uint8).reshape(-1)


def _floats(arr: np.ndarray) -> tuple[float, ...]:
    return tuple(float(v) for v in arr)


def _round_away(x: np.ndarray) -> np.ndarray:
    """Round half away from zero, in double precision."""
    x = np.asarray(x, dtype=np.float64)
    return np.where(x >= 0, np.floor(x + 0.5), np.ceil(x - 0.5))


def _to_uint8(x: np.ndarray) -> np.ndarray:
    r = np.nan_to_num(_round_away(x), nan=0.0)
    return np.clip(r, 0, 255).astype(np.uint8)


def _quantize_sh(x: np.ndarray, bucket: int) -> np.ndarray:
    """Quantize to 8 bits, rounding to the nearest bucket centre; 0 maps to a centre."""
    q = _round_away(x.astype(_F32) * _F32(128.0)) + 128.0
    q = np.nan_to_num(np.clip(q, -(2**30), 2**30), nan=0.0).astype(np.int64)
    t = q + bucket // 2
    t = np.where(t >= 0, t // bucket, -((-t) // bucket)) * bucket
    return np.clip(t, 0, 255).astype(np.uint8)


def _decode_fixed(raw: np.ndarray, fractional_bits: int) -> np.ndarray:
    b = raw.reshape(-1, 3).astype(np.int64)
    v = b[:, 0] | (b[:, 1] << 8) | (b[:, 2] << 16)
    v = np.where(v & 0x800000, v - (1 << 24), v)
    scale = _F32(1.0 / (1 << fractional_bits))
    return v.astype(_F32) * scale


def _decode_half(raw: np.ndarray) -> np.ndarray:
    return np.frombuffer(raw.tobytes(), dtype="<f2").astype(_F32)


def _decode_scales(raw: np.ndarray) -> np.ndarray:
    return raw.astype(_F32) / _F32(16.0) - _F32(10.0)


def _decode_rotations(raw: np.ndarray) -> np.ndarray:
    xyz = raw.reshape(-1, 3).astype(_F32) * (_F32(1.0) / _F32(127.5)) + _F32(-1.0)
    sq = xyz[:, 0] * xyz[:, 0] + xyz[:, 1] * xyz[:, 1] + xyz[:, 2] * xyz[:, 2]
    w = np.sqrt(np.maximum(_F32(0.0), _F32(1.0) - sq))
    return np.concatenate([xyz, w[:, None]], axis=1).astype(_F32)


def _decode_alphas(raw: np.ndarray) -> np.ndarray:
    x = raw.astype(_F32) / _F32(255.0)
    return np.log(x / (_F32(1.0) - x))


def _decode_colors(raw: np.ndarray) -> np.ndarray:
    return ((raw.astype(_F32) / _F32(255.0)) - _F32(0.5)) / COLOR_SCALE


def _decode_sh(raw: np.ndarray) -> np.ndarray:
    return (raw.astype(_F32) - _F32(128.0)) / _F32(128.0)


def compress_gzipped(data: bytes) -> bytes:
    """Compress bytes into a gzip stream."""
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, 16 + zlib.MAX_WBITS, 9)
    return compressor.compress(bytes(data)) + compressor.flush()


def decompress_gzipped(data: bytes) -> bytes:
    """Decompress a complete gzip stream, raising SpzError if it is corrupt or truncated."""
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    try:
        out = decompressor.decompress(bytes(data)) + decompressor.flush()
    except zlib.error as exc:
        raise SpzError(f"invalid gzip data: {exc}") from exc
    if not decompressor.eof:
        raise SpzError("gzip stream is truncated")
    return out


def pack_gaussians(cloud: GaussianCloud, options: PackOptions | None = None) -> PackedGaussians:
    """Quantize a cloud into the packed representation, in RUB coordinates."""
    options = options or PackOptions()
    check_cloud_sizes(cloud)
    n = cloud.num_points
    sh_dim = dim_for_degree(cloud.sh_degree)
    c = coordinate_converter(options.from_, CoordinateSystem.RUB)

    with np.errstate(all="ignore"):
        # 24-bit fixed point positions with 12 fractional bits (~0.25 mm resolution).
        pos = cloud.positions.reshape(-1, 3) * np.array(c.flip_p, dtype=_F32)
        pos = pos * _F32(1 << FRACTIONAL_BITS)
        fixed = np.nan_to_num(np.clip(_round_away(pos), -(2**31), 2**31 - 1), nan=0.0)
        fixed = fixed.astype(np.int64).reshape(-1) & 0xFFFFFF
        positions = np.stack([fixed & 0xFF, (fixed >> 8) & 0xFF, (fixed >> 16) & 0xFF], axis=1)

        scales = _to_uint8((cloud.scales + _F32(10.0)) * _F32(16.0))

        # Normalize, make w non-negative, then store xyz; w is derived when unpacking.
        q = cloud.rotations.reshape(-1, 4)
        length = np.sqrt(q[:, 0] * q[:, 0] + q[:, 1] * q[:, 1] + q[:, 2] * q[:, 2] + q[:, 3] * q[:, 3])
        q = q / length[:, None]
        xyz = q[:, :3] * np.array(c.flip_q, dtype=_F32)
        factor = np.where(q[:, 3] < 0, _F32(-127.5), _F32(127.5)).astype(_F32)
        rotations = _to_uint8(xyz * factor[:, None] + _F32(127.5))

        alphas = _to_uint8((_F32(1.0) / (_F32(1.0) + np.exp(-cloud.alphas))) * _F32(255.0))

        colors = _to_uint8(cloud.colors * (COLOR_SCALE * _F32(255.0)) + _F32(0.5 * 255.0))

        if sh_dim > 0:
            coeffs = cloud.sh.reshape(n, sh_dim, 3) * np.array(c.flip_sh[:sh_dim], dtype=_F32)[:, None]
            sh = np.empty(coeffs.shape, dtype=np.uint8)
            sh[:, :3] = _quantize_sh(coeffs[:, :3], 1 << (8 - SH1_BITS))
            sh[:, 3:] = _quantize_sh(coeffs[:, 3:], 1 << (8 - SH_REST_BITS))
        else:
            sh = np.zeros(0, dtype=np.uint8)

    return PackedGaussians(
        num_points=n,
        sh_degree=cloud.sh_degree,
        fractional_bits=FRACTIONAL_BITS,
        antialiased=cloud.antialiased,
        positions=positions.astype(np.uint8).tobytes(),
        scales=scales.tobytes(),
        rotations=rotations.tobytes(),
        alphas=alphas.tobytes(),
        colors=colors.tobytes(),
        sh=sh.tobytes(),
    )


def unpack_gaussians(packed: PackedGaussians, options: UnpackOptions | None = None) -> GaussianCloud:
    """Inflate packed Gaussians into a cloud in the requested coordinate system."""
    options = options or UnpackOptions()
    sh_dim = dim_for_degree(packed.sh_degree)
    uses_float16 = packed.uses_float16()
    _check_packed_sizes(packed, sh_dim, uses_float16)

    raw_pos = np.frombuffer(packed.positions, dtype=np.uint8)
    with np.errstate(all="ignore"):
        if uses_float16:
            positions = _decode_half(raw_pos)
        else:
            positions = _decode_fixed(raw_pos, packed.fractional_bits)
        cloud = GaussianCloud(
            num_points=packed.num_points,
            sh_degree=packed.sh_degree,
            antialiased=packed.antialiased,
            positions=positions,
            scales=_decode_scales(np.frombuffer(packed.scales, dtype=np.uint8)),
            rotations=_decode_rotations(np.frombuffer(packed.rotations, dtype=np.uint8)),
            alphas=_decode_alphas(np.frombuffer(packed.alphas, dtype=np.uint8)),
            colors=_decode_colors(np.frombuffer(packed.colors, dtype=np.uint8)),
            sh=_decode_sh(np.frombuffer(packed.sh, dtype=np.uint8)),
        )
    cloud.convert_coordinates(CoordinateSystem.RUB, options.to)
    return cloud


def serialize_packed_gaussians(packed: PackedGaussians) -> bytes:
    """Header followed by positions, alphas, colours, scales, rotations and SH."""
    header = _HEADER.pack(
        MAGIC,
        VERSION,
        packed.num_points,
        packed.sh_degree,
        packed.fractional_bits,
        FLAG_ANTIALIASED if packed.antialiased else 0,
        0,
    )
    return b"".join(
        [
            header,
            bytes(packed.positions),
            bytes(packed.alphas),
            bytes(packed.colors),
            bytes(packed.scales),
            bytes(packed.rotations),
            bytes(packed.sh),
        ]
    )


def deserialize_packed_gaussians(data: bytes) -> PackedGaussians:
    """Parse the uncompressed packed layout, raising SpzError on malformed input."""
    data = bytes(data)
    if len(data) < _HEADER.size:
        raise SpzError("header not found")
    magic, version, num_points, sh_degree, fractional_bits, flags, _ = _HEADER.unpack_from(data)
    if magic != MAGIC:
        raise SpzError("header not found")
    if not 1 <= version <= 2:
        raise SpzError(f"version not supported: {version}")
    if num_points > MAX_POINTS_TO_READ:
        raise SpzError(f"too many points: {num_points}")
    if sh_degree > 3:
        raise SpzError(f"unsupported SH degree: {sh_degree}")

    sh_dim = dim_for_degree(sh_degree)
    uses_float16 = version == 1
    sizes = [
        ("positions", num_points * 3 * (2 if uses_float16 else 3)),
        ("alphas", num_points),
        ("colors", num_points * 3),
        ("scales", num_points * 3),
        ("rotations", num_points * 3),
        ("sh", num_points * sh_dim * 3),
    ]
    sections: dict[str, bytes] = {}
    offset = _HEADER.size
    for name, size in sizes:
        chunk = data[offset : offset + size]
        if len(chunk) != size:
            raise SpzError("read error")
        sections[name] = chunk
        offset += size

    return PackedGaussians(
        num_points=num_points,
        sh_degree=sh_degree,
        fractional_bits=fractional_bits,
        antialiased=bool(flags & FLAG_ANTIALIASED),
        **sections,
    )


def save_spz(cloud: GaussianCloud, options: PackOptions | None = None) -> bytes:
    """Encode a cloud as compressed SPZ bytes."""
    return compress_gzipped(serialize_packed_gaussians(pack_gaussians(cloud, options)))


def load_spz_packed(data: bytes) -> PackedGaussians:
    """Decompress and parse SPZ bytes without inflating them."""
    return deserialize_packed_gaussians(decompress_gzipped(data))


def load_spz(data: bytes, options: UnpackOptions | None = None) -> GaussianCloud:
    """Decode compressed SPZ bytes into a cloud."""
    return unpack_gaussians(load_spz_packed(data), options)


def load_spz_packed_file(path: str | os.PathLike) -> PackedGaussians:
    """Read an SPZ file without inflating it."""
    return load_spz_packed(Path(path).read_bytes())


def save_spz_file(cloud: GaussianCloud, options: PackOptions | None, path: str | os.PathLike) -> None:
    """Write a cloud to an SPZ file."""
    Path(path).write_bytes(save_spz(cloud, options))


def load_spz_file(path: str | os.PathLike, options: UnpackOptions | None = None) -> GaussianCloud:
    """Read a cloud from an SPZ file."""
    return load_spz(Path(path).read_bytes(), options)