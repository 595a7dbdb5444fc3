"""Reading and writing Gaussian splats as binary little-endian PLY files."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import BinaryIO

import numpy as np

from .packing import PackOptions, UnpackOptions, degree_for_dim
from .splat_types import CoordinateSystem, GaussianCloud, SpzError, coordinate_converter

__all__ = ["load_splat_from_ply", "save_splat_to_ply"]

_MAX_PLY_POINTS = 10 * 1024 * 1024
_MAX_SH_VALUES = 45
_VERTEX_PREFIX = "element vertex "
_PROPERTY_PREFIX = "property float "
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _read_line(stream: BinaryIO) -> str | None:
    raw = stream.readline()
    if not raw:
        return None
    if raw.endswith(b"\n"):
        raw = raw[:-1]
    return raw.decode("latin-1")


def _parse_header(stream: BinaryIO, path: str) -> tuple[int, dict[str, int]]:
    if _read_line(stream) != "ply":
        raise SpzError(f"{path}: not a .ply file")
    if _read_line(stream) != "format binary_little_endian 1.0":
        raise SpzError(f"{path}: unsupported .ply format")
    line = _read_line(stream)
    if line is None or not line.startswith(_VERTEX_PREFIX):
        raise SpzError(f"{path}: missing vertex count")
    match = _LEADING_INT.match(line[len(_VERTEX_PREFIX) :])
    if match is None:
        raise SpzError(f"{path}: invalid vertex count")
    num_points = int(match.group(1))
    if num_points <= 0 or num_points > _MAX_PLY_POINTS:
        raise SpzError(f"{path}: invalid vertex count: {num_points}")

    fields: dict[str, int] = {}
    index = 0
    while True:
        line = _read_line(stream)
        if line == "end_header":
            break
        if line is None or not line.startswith(_PROPERTY_PREFIX):
            raise SpzError(f"{path}: unsupported property data type: {line or ''}")
        fields[line[len(_PROPERTY_PREFIX) :]] = index
        index += 1
    return num_points, fields


def _indices(fields: dict[str, int], names: list[str]) -> list[int]:
    missing = [name for name in names if name not in fields]
    if missing:
        raise SpzError(f"missing field: {missing[0]}")
    return [fields[name] for name in names]


def load_splat_from_ply(
    path: str | os.PathLike, options: UnpackOptions | None = None
) -> GaussianCloud:
    """Load a splat from a PLY file, converting from RDF to the requested coordinates."""
    options = options or UnpackOptions()
    name = os.fspath(path)
    try:
        stream = open(path, "rb")
    except OSError as exc:
        raise SpzError(f"unable to open: {name}") from exc

    with stream:
        num_points, fields = _parse_header(stream, name)

        position_idx = _indices(fields, ["x", "y", "z"])
        scale_idx = _indices(fields, ["scale_0", "scale_1", "scale_2"])
        rot_idx = _indices(fields, ["rot_1", "rot_2", "rot_3", "rot_0"])
        alpha_idx = _indices(fields, ["opacity"])
        color_idx = _indices(fields, ["f_dc_0", "f_dc_1", "f_dc_2"])

        # Spherical harmonics are optional and their count depends on the degree.
        sh_idx: list[int] = []
        for i in range(_MAX_SH_VALUES):
            key = f"f_rest_{i}"
            if key not in fields:
                break
            sh_idx.append(fields[key])
        sh_dim = len(sh_idx) // 3

        stride = len(fields)
        all_idx = position_idx + scale_idx + rot_idx + alpha_idx + color_idx + sh_idx
        if any(i >= stride for i in all_idx):
            raise SpzError(f"{name}: duplicate property names in header")

        count = num_points * stride
        payload = stream.read(count * 4)
        if len(payload) != count * 4:
            raise SpzError(f"unable to load data from: {name}")

    values = np.frombuffer(payload, dtype="<f4").astype(np.float32).reshape(num_points, stride)

    # Stored as [N, channel, coeff]; the cloud wants [N, coeff, channel].
    if sh_dim > 0:
        sh = values[:, sh_idx[: 3 * sh_dim]].reshape(num_points, 3, sh_dim)
        sh = sh.transpose(0, 2, 1).reshape(-1)
    else:
        sh = np.zeros(0, dtype=np.float32)

    cloud = GaussianCloud(
        num_points=num_points,
        sh_degree=degree_for_dim(sh_dim),
        positions=values[:, position_idx].reshape(-1),
        scales=values[:, scale_idx].reshape(-1),
        rotations=values[:, rot_idx].reshape(-1),
        alphas=values[:, alpha_idx].reshape(-1),
        colors=values[:, color_idx].reshape(-1),
        sh=sh,
    )
    cloud.convert_coordinates(CoordinateSystem.RDF, options.to)
    return cloud


def save_splat_to_ply(
    cloud: GaussianCloud, options: PackOptions | None, path: str | os.PathLike
) -> None:
    """Write a splat as a binary PLY file in RDF coordinates."""
    options = options or PackOptions()
    n = cloud.num_points
    expected = {
        "positions": n * 3,
        "scales": n * 3,
        "rotations": n * 4,
        "alphas": n,
        "colors": n * 3,
    }
    for field_name, size in expected.items():
        actual = getattr(cloud, field_name).size
        if actual != size:
            raise SpzError(f"{field_name} has {actual} values, expected {size}")
    if n <= 0:
        raise SpzError(f"cannot write a cloud with {n} points")

    sh_dim = cloud.sh.size // n // 3
    c = coordinate_converter(options.from_, CoordinateSystem.RDF)
    if sh_dim > len(c.flip_sh):
        raise SpzError(f"too many spherical harmonics coefficients per point: {sh_dim}")

    positions = cloud.positions.reshape(n, 3) * np.array(c.flip_p, dtype=np.float32)
    normals = np.zeros((n, 3), dtype=np.float32)
    colors = cloud.colors.reshape(n, 3)
    if sh_dim > 0:
        coeffs = cloud.sh[: n * sh_dim * 3].reshape(n, sh_dim, 3)
        coeffs = coeffs * np.array(c.flip_sh[:sh_dim], dtype=np.float32)[:, None]
        sh = coeffs.transpose(0, 2, 1).reshape(n, 3 * sh_dim)
    else:
        sh = np.zeros((n, 0), dtype=np.float32)
    alphas = cloud.alphas.reshape(n, 1)
    scales = cloud.scales.reshape(n, 3)
    rot = cloud.rotations.reshape(n, 4)
    rotations = np.concatenate(
        [rot[:, 3:4], rot[:, :3] * np.array(c.flip_q, dtype=np.float32)], axis=1
    )
    values = np.concatenate(
        [positions, normals, colors, sh, alphas, scales, rotations], axis=1
    ).astype("<f4")

    header = [
        "ply",
        "format binary_little_endian 1.0",
        f"element vertex {n}",
        *(f"property float {p}" for p in ("x", "y", "z", "nx", "ny", "nz")),
        *(f"property float f_dc_{i}" for i in range(3)),
        *(f"property float f_rest_{i}" for i in range(sh_dim * 3)),
        "property float opacity",
        *(f"property float scale_{i}" for i in range(3)),
        *(f"property float rot_{i}" for i in range(4)),
        "end_header",
    ]
    data = ("\n".join(header) + "\n").encode("ascii") + values.tobytes()
    try:
        Path(path).write_bytes(data)
    except OSError as exc:
        raise SpzError(f"failed to write to: {os.fspath(path)}") from exc