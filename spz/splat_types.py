"""Core types for Gaussian splats: coordinate systems, the point cloud and math helpers."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

__all__ = [
    "SpzError",
    "CoordinateSystem",
    "CoordinateConverter",
    "GaussianCloud",
    "half_to_float",
    "float_to_half",
    "dot",
    "squared_norm",
    "norm",
    "normalized",
    "axis_angle_quat",
    "rotate_vector",
    "quat_multiply",
    "axes_match",
    "coordinate_converter",
]


class SpzError(Exception):
    """Raised when splat data is malformed or cannot be processed."""


class CoordinateSystem(enum.IntEnum):
    """Axis conventions; each name spells the directions of the x, y and z axes."""

    UNSPECIFIED = 0
    LDB = 1  # Left Down Back
    RDB = 2  # Right Down Back
    LUB = 3  # Left Up Back
    RUB = 4  # Right Up Back, Three.js coordinate system
    LDF = 5  # Left Down Front
    RDF = 6  # Right Down Front, PLY coordinate system
    LUF = 7  # Left Up Front, GLB coordinate system
    RUF = 8  # Right Up Front, Unity coordinate system


_ONES3 = (1.0, 1.0, 1.0)
_ONES15 = (1.0,) * 15


@dataclass(frozen=True)
class CoordinateConverter:
    """Sign flips that carry data from one coordinate system to another."""

    flip_p: tuple[float, float, float] = _ONES3
    flip_q: tuple[float, float, float] = _ONES3  # w is never flipped
    flip_sh: tuple[float, ...] = _ONES15


def axes_match(a: CoordinateSystem, b: CoordinateSystem) -> tuple[bool, bool, bool]:
    """Tell, per axis, whether two coordinate systems point the same way."""
    a_num = int(a) - 1
    b_num = int(b) - 1
    if a_num < 0 or b_num < 0:
        return (True, True, True)
    return tuple(((a_num >> bit) & 1) == ((b_num >> bit) & 1) for bit in range(3))  # type: ignore[return-value]


def coordinate_converter(from_: CoordinateSystem, to: CoordinateSystem) -> CoordinateConverter:
    """Build the converter from one coordinate system to another."""
    x_match, y_match, z_match = axes_match(from_, to)
    x = 1.0 if x_match else -1.0
    y = 1.0 if y_match else -1.0
    z = 1.0 if z_match else -1.0
    return CoordinateConverter(
        flip_p=(x, y, z),
        flip_q=(y * z, x * z, x * y),
        flip_sh=(y, z, x, x * y, y * z, 1.0, x * z, 1.0, y, x * y * z, y, z, x, z, x),
    )


def _float_array(values) -> np.ndarray:
    return np.array(values, dtype=np.float32).reshape(-1)


def _empty() -> np.ndarray:
    return np.zeros(0, dtype=np.float32)


@dataclass(eq=False)
class GaussianCloud:
    """A point cloud of Gaussians stored as flat float32 arrays.

    Per point: xyz position, xyz log-scales, xyzw quaternion, pre-sigmoid alpha,
    rgb colour as the SH DC component and 0 to 45 spherical harmonics coefficients
    ordered coefficient-major, colour channel fastest.
    """

    num_points: int = 0
    sh_degree: int = 0
    antialiased: bool = False
    positions: np.ndarray = field(default_factory=_empty)
    scales: np.ndarray = field(default_factory=_empty)
    rotations: np.ndarray = field(default_factory=_empty)
    alphas: np.ndarray = field(default_factory=_empty)
    colors: np.ndarray = field(default_factory=_empty)
    sh: np.ndarray = field(default_factory=_empty)

    def __post_init__(self) -> None:
        self.positions = _float_array(self.positions)
        self.scales = _float_array(self.scales)
        self.rotations = _float_array(self.rotations)
        self.alphas = _float_array(self.alphas)
        self.colors = _float_array(self.colors)
        self.sh = _float_array(self.sh)

    def convert_coordinates(self, from_: CoordinateSystem, to: CoordinateSystem) -> None:
        """Convert positions, rotations and spherical harmonics in place."""
        c = coordinate_converter(from_, to)
        if self.positions.size % 3 or self.rotations.size % 4:
            raise SpzError("positions or rotations have an incomplete element")
        pos = self.positions.reshape(-1, 3)
        pos *= np.array(c.flip_p, dtype=np.float32)
        rot = self.rotations.reshape(-1, 4)
        rot[:, :3] *= np.array(c.flip_q, dtype=np.float32)

        num_coeffs = self.sh.size // 3
        if self.num_points <= 0 or num_coeffs == 0:
            return
        per_point = num_coeffs // self.num_points
        if per_point == 0:
            return
        if per_point > len(c.flip_sh):
            raise SpzError(f"too many spherical harmonics coefficients per point: {per_point}")
        groups = num_coeffs // per_point
        block = self.sh[: groups * per_point * 3].reshape(groups, per_point, 3)
        block *= np.array(c.flip_sh[:per_point], dtype=np.float32)[:, None]

    def rotate_180_deg_about_x(self) -> None:
        """Rotate 180 degrees about x in place, swapping between RUB and RDF."""
        self.convert_coordinates(CoordinateSystem.RUB, CoordinateSystem.RDF)

    def median_volume(self) -> float:
        """Median ellipsoid volume of the Gaussians; 0.01 for an empty cloud."""
        if self.num_points == 0:
            return 0.01
        s = self.scales[: (self.scales.size // 3) * 3].reshape(-1, 3)
        sums = np.sort(s[:, 0] + s[:, 1] + s[:, 2])
        if sums.size == 0:
            raise SpzError("cloud has points but no scales")
        median = float(sums[sums.size // 2])
        return float(np.float32((math.pi * 4 / 3) * math.exp(median)))


def half_to_float(h: int) -> float:
    """Decode an IEEE 754 half-precision bit pattern."""
    sign = (h >> 15) & 0x1
    exponent = (h >> 10) & 0x1F
    mantissa = h & 0x3FF
    sign_mul = -1.0 if sign == 1 else 1.0
    if exponent == 0:
        return sign_mul * 2.0**-14 * mantissa / 1024.0
    if exponent == 31:
        return math.nan if mantissa != 0 else sign_mul * math.inf
    return sign_mul * 2.0 ** (exponent - 15) * (1.0 + mantissa / 1024.0)


def float_to_half(f: float) -> int:
    """Encode a float as a half-precision bit pattern, truncating the mantissa."""
    with np.errstate(over="ignore"):
        bits = int(np.array([f], dtype=np.float32).view(np.uint32)[0])
    sign = (bits >> 31) & 0x01
    exponent = (bits >> 23) & 0xFF
    mantissa = bits & 0x7FFFFF

    if exponent == 0xFF:
        return (sign << 15) | (0x7C00 if mantissa == 0 else 0x7C01)

    centered_exp = exponent - 127
    if centered_exp > 15:
        return (sign << 15) | 0x7C00
    if centered_exp > -15:
        return (sign << 15) | ((centered_exp + 15) << 10) | (mantissa >> 13)

    full_mantissa = 0x800000 | mantissa
    shift = -(centered_exp + 14)
    return (sign << 15) | ((full_mantissa >> shift) >> 13)


def dot(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product of two equal-length vectors."""
    return sum(x * y for x, y in zip(a, b))


def squared_norm(v: Sequence[float]) -> float:
    """Squared Euclidean length."""
    return dot(v, v)


def norm(v: Sequence[float]) -> float:
    """Euclidean length of a vector or quaternion."""
    return math.sqrt(squared_norm(v))


def normalized(v: Sequence[float]) -> tuple[float, ...]:
    """Scale a vector or quaternion to unit length."""
    n = norm(v)
    if n == 0:
        raise SpzError("cannot normalize a zero-length vector")
    return tuple(x / n for x in v)


def axis_angle_quat(scaled_axis: Sequence[float]) -> tuple[float, float, float, float]:
    """Quaternion (w, x, y, z) for a rotation given as axis scaled by angle."""
    a0, a1, a2 = scaled_axis
    theta_squared = a0 * a0 + a1 * a1 + a2 * a2
    if theta_squared > 0.0:
        theta = math.sqrt(theta_squared)
        half_theta = theta * 0.5
        k = math.sin(half_theta) / theta
        return normalized((math.cos(half_theta), a0 * k, a1 * k, a2 * k))  # type: ignore[return-value]
    k = 0.5
    return normalized((1.0, a0 * k, a1 * k, a2 * k))  # type: ignore[return-value]


def rotate_vector(q: Sequence[float], p: Sequence[float]) -> tuple[float, float, float]:
    """Rotate a 3-vector by a unit quaternion (w, x, y, z)."""
    w, x, y, z = q
    vx, vy, vz = p
    x2, y2, z2 = x + x, y + y, z + z
    wx2, wy2, wz2 = w * x2, w * y2, w * z2
    xx2, xy2, xz2 = x * x2, x * y2, x * z2
    yy2, yz2, zz2 = y * y2, y * z2, z * z2
    return (
        vx * (1.0 - (yy2 + zz2)) + vy * (xy2 - wz2) + vz * (xz2 + wy2),
        vx * (xy2 + wz2) + vy * (1.0 - (xx2 + zz2)) + vz * (yz2 - wx2),
        vx * (xz2 - wy2) + vy * (yz2 + wx2) + vz * (1.0 - (xx2 + yy2)),
    )


def quat_multiply(a: Sequence[float], b: Sequence[float]) -> tuple[float, float, float, float]:
    """Normalized Hamilton product of two quaternions (w, x, y, z)."""
    w, x, y, z = a
    qw, qx, qy, qz = b
    return normalized(  # type: ignore[return-value]
        (
            w * qw - x * qx - y * qy - z * qz,
            w * qx + x * qw + y * qz - z * qy,
            w * qy - x * qz + y * qw + z * qx,
            w * qz + x * qy - y * qx + z * qw,
        )
    )