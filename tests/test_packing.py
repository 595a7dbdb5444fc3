import struct

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from spz.packing import (
    PackOptions,
    PackedGaussians,
    UnpackOptions,
    check_cloud_sizes,
    compress_gzipped,
    decompress_gzipped,
    degree_for_dim,
    deserialize_packed_gaussians,
    dim_for_degree,
    load_spz,
    load_spz_file,
    load_spz_packed,
    load_spz_packed_file,
    pack_gaussians,
    save_spz,
    save_spz_file,
    serialize_packed_gaussians,
    unpack_gaussians,
)
from spz.splat_types import (
    CoordinateConverter,
    CoordinateSystem,
    GaussianCloud,
    SpzError,
    coordinate_converter,
    float_to_half,
)


def make_cloud(n=20, degree=3, seed=0, antialiased=False):
    rng = np.random.default_rng(seed)
    q = rng.uniform(-0.5, 0.5, size=(n, 4))
    q[:, 3] = np.abs(q[:, 3]) + 1.0
    sh_dim = dim_for_degree(degree)
    return GaussianCloud(
        num_points=n,
        sh_degree=degree,
        antialiased=antialiased,
        positions=rng.uniform(-5, 5, size=n * 3),
        scales=rng.uniform(-5, 0, size=n * 3),
        rotations=q.reshape(-1),
        alphas=rng.uniform(-2, 2, size=n),
        colors=rng.uniform(-1, 1, size=n * 3),
        sh=rng.uniform(-0.9, 0.9, size=n * sh_dim * 3),
    )


def test_degree_dim_tables():
    assert [degree_for_dim(d) for d in (0, 2, 3, 7, 8, 14, 15)] == [0, 0, 1, 1, 2, 2, 3]
    assert [dim_for_degree(d) for d in range(4)] == [0, 3, 8, 15]
    with pytest.raises(SpzError):
        dim_for_degree(4)


def test_check_cloud_sizes_rejects_mismatch():
    cloud = make_cloud(n=3)
    cloud.positions = cloud.positions[:-1]
    with pytest.raises(SpzError):
        check_cloud_sizes(cloud)
    with pytest.raises(SpzError):
        pack_gaussians(cloud)


def test_check_cloud_sizes_rejects_bad_degree():
    cloud = make_cloud(n=2, degree=0)
    cloud.sh_degree = 5
    with pytest.raises(SpzError):
        check_cloud_sizes(cloud)


def test_gzip_round_trip_and_magic():
    payload = bytes(range(256)) * 40
    compressed = compress_gzipped(payload)
    assert compressed[:2] == b"\x1f\x8b"
    assert decompress_gzipped(compressed) == payload


def test_decompress_rejects_truncated_and_garbage():
    compressed = compress_gzipped(b"hello world" * 100)
    with pytest.raises(SpzError):
        decompress_gzipped(compressed[:-10])
    with pytest.raises(SpzError):
        decompress_gzipped(b"not gzip data at all")


def test_pack_sizes_and_fractional_bits():
    cloud = make_cloud(n=7, degree=2)
    packed = pack_gaussians(cloud)
    assert packed.fractional_bits == 12
    assert len(packed.positions) == 7 * 9
    assert len(packed.rotations) == 7 * 3
    assert len(packed.sh) == 7 * 8 * 3
    assert not packed.uses_float16()


@pytest.mark.parametrize("degree", [0, 1, 2, 3])
def test_round_trip_within_quantization(degree):
    cloud = make_cloud(n=30, degree=degree, seed=degree)
    out = load_spz(save_spz(cloud))
    assert out.num_points == cloud.num_points
    assert out.sh_degree == degree
    np.testing.assert_allclose(out.positions, cloud.positions, atol=1.3e-4)
    np.testing.assert_allclose(out.scales, cloud.scales, atol=1 / 32 + 1e-5)
    np.testing.assert_allclose(out.colors, cloud.colors, atol=0.014)
    np.testing.assert_allclose(out.alphas, cloud.alphas, atol=0.1)
    q = cloud.rotations.reshape(-1, 4)
    q = q / np.linalg.norm(q, axis=1, keepdims=True)
    np.testing.assert_allclose(out.rotations.reshape(-1, 4), q, atol=0.02)
    if degree:
        sh_dim = dim_for_degree(degree)
        got = out.sh.reshape(-1, sh_dim, 3)
        want = cloud.sh.reshape(-1, sh_dim, 3)
        np.testing.assert_allclose(got[:, :3], want[:, :3], atol=0.04)
        np.testing.assert_allclose(got[:, 3:], want[:, 3:], atol=0.07)


def test_rotation_with_negative_w_is_flipped():
    cloud = make_cloud(n=5, degree=0)
    cloud.rotations.reshape(-1, 4)[:] *= -1
    out = unpack_gaussians(pack_gaussians(cloud))
    assert np.all(out.rotations.reshape(-1, 4)[:, 3] >= 0)
    q = -cloud.rotations.reshape(-1, 4)
    q = q / np.linalg.norm(q, axis=1, keepdims=True)
    np.testing.assert_allclose(out.rotations.reshape(-1, 4), q, atol=0.02)


def test_coordinate_conversion_round_trip():
    cloud = make_cloud(n=10, degree=1)
    data = save_spz(cloud, PackOptions(from_=CoordinateSystem.RDF))
    same = load_spz(data, UnpackOptions(to=CoordinateSystem.RDF))
    rub = load_spz(data, UnpackOptions(to=CoordinateSystem.RUB))
    np.testing.assert_allclose(same.positions, cloud.positions, atol=1.3e-4)
    p_same = same.positions.reshape(-1, 3)
    p_rub = rub.positions.reshape(-1, 3)
    np.testing.assert_array_equal(p_rub[:, 0], p_same[:, 0])
    np.testing.assert_array_equal(p_rub[:, 1:], -p_same[:, 1:])


def test_serialize_header_and_layout():
    cloud = make_cloud(n=4, degree=1, antialiased=True)
    packed = pack_gaussians(cloud)
    data = serialize_packed_gaussians(packed)
    assert data[:4] == b"NGSP"
    magic, version, n, degree, bits, flags, reserved = struct.unpack_from("<IIIBBBB", data)
    assert (magic, version, n, degree, bits, flags, reserved) == (0x5053474E, 2, 4, 1, 12, 1, 0)
    assert data[16 : 16 + 36] == packed.positions
    assert data[16 + 36 : 16 + 40] == packed.alphas
    assert len(data) == 16 + 4 * (9 + 1 + 3 + 3 + 3 + 9)


def test_deserialize_round_trip():
    packed = pack_gaussians(make_cloud(n=6, degree=2, antialiased=True))
    again = deserialize_packed_gaussians(serialize_packed_gaussians(packed))
    assert again == packed


def test_deserialize_errors():
    good = serialize_packed_gaussians(pack_gaussians(make_cloud(n=3, degree=1)))
    with pytest.raises(SpzError):
        deserialize_packed_gaussians(b"\x00" * 16)
    with pytest.raises(SpzError):
        deserialize_packed_gaussians(good[:10])
    with pytest.raises(SpzError):
        deserialize_packed_gaussians(good[:-1])
    with pytest.raises(SpzError):
        deserialize_packed_gaussians(struct.pack("<IIIBBBB", 0x5053474E, 3, 0, 0, 0, 0, 0))
    with pytest.raises(SpzError):
        deserialize_packed_gaussians(struct.pack("<IIIBBBB", 0x5053474E, 2, 0, 4, 0, 0, 0))
    with pytest.raises(SpzError):
        deserialize_packed_gaussians(
            struct.pack("<IIIBBBB", 0x5053474E, 2, 10_000_001, 0, 0, 0, 0)
        )


def test_legacy_float16_positions():
    halves = [float_to_half(v) for v in (1.0, -2.0, 0.5)]
    data = (
        struct.pack("<IIIBBBB", 0x5053474E, 1, 1, 0, 0, 0, 0)
        + struct.pack("<3H", *halves)
        + bytes([128])
        + bytes([128, 128, 128])
        + bytes([160, 160, 160])
        + bytes([127, 127, 127])
    )
    packed = deserialize_packed_gaussians(data)
    assert packed.uses_float16()
    cloud = unpack_gaussians(packed)
    assert cloud.positions.tolist() == [1.0, -2.0, 0.5]
    single = packed.unpack(0, CoordinateConverter())
    assert single.position == (1.0, -2.0, 0.5)


def test_at_pads_spherical_harmonics():
    packed = pack_gaussians(make_cloud(n=3, degree=1))
    g = packed.at(1)
    assert g.sh_r[:3] == tuple(packed.sh[9:18:3])
    assert g.sh_g[:3] == tuple(packed.sh[10:18:3])
    assert g.sh_r[3:] == (128,) * 12
    assert g.position == tuple(packed.positions[9:18])
    with pytest.raises(IndexError):
        packed.at(3)


def test_single_unpack_matches_bulk_unpack():
    packed = pack_gaussians(make_cloud(n=5, degree=3))
    cloud = unpack_gaussians(packed)
    for i in range(5):
        g = packed.unpack(i, CoordinateConverter())
        np.testing.assert_allclose(g.position, cloud.positions[i * 3 : i * 3 + 3])
        np.testing.assert_allclose(g.rotation, cloud.rotations[i * 4 : i * 4 + 4])
        np.testing.assert_allclose(g.scale, cloud.scales[i * 3 : i * 3 + 3])
        np.testing.assert_allclose(g.alpha, cloud.alphas[i])
        sh = cloud.sh.reshape(5, 15, 3)[i]
        np.testing.assert_allclose(g.sh_b, sh[:, 2])


def test_single_unpack_applies_converter():
    packed = pack_gaussians(make_cloud(n=2, degree=1))
    plain = packed.unpack(0, CoordinateConverter())
    flipped = packed.unpack(0, coordinate_converter(CoordinateSystem.RUB, CoordinateSystem.RDF))
    assert flipped.position[0] == plain.position[0]
    assert flipped.position[1] == -plain.position[1]
    assert flipped.position[2] == -plain.position[2]
    assert flipped.rotation[3] == plain.rotation[3]


def test_empty_cloud_round_trip():
    out = load_spz(save_spz(GaussianCloud()))
    assert out.num_points == 0
    assert out.positions.size == 0


def test_antialiased_flag_survives():
    packed = load_spz_packed(save_spz(make_cloud(n=2, antialiased=True)))
    assert packed.antialiased is True
    assert unpack_gaussians(packed).antialiased is True


def test_unpack_rejects_inconsistent_packed():
    packed = PackedGaussians(num_points=2, positions=b"\x00" * 18, scales=b"\x00" * 6)
    with pytest.raises(SpzError):
        unpack_gaussians(packed)


def test_file_round_trip(tmp_path):
    cloud = make_cloud(n=8, degree=2)
    path = tmp_path / "cloud.spz"
    save_spz_file(cloud, PackOptions(), path)
    packed = load_spz_packed_file(path)
    assert packed.num_points == 8
    out = load_spz_file(path, UnpackOptions())
    np.testing.assert_allclose(out.positions, cloud.positions, atol=1.3e-4)


@settings(max_examples=50, deadline=None)
@given(st.lists(st.floats(-100, 100, width=32), min_size=3, max_size=3))
def test_position_quantization_bound(xyz):
    cloud = GaussianCloud(
        num_points=1,
        positions=xyz,
        scales=[0, 0, 0],
        rotations=[0, 0, 0, 1],
        alphas=[0],
        colors=[0, 0, 0],
    )
    out = unpack_gaussians(pack_gaussians(cloud))
    np.testing.assert_allclose(out.positions, np.array(xyz, dtype=np.float32), atol=1.3e-4)