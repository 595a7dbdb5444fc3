# spz

Read and write 3D Gaussian splats in the compact SPZ format and in binary
little-endian PLY files.

An SPZ file is a gzip-compressed stream of quantized Gaussians. Positions are
stored as 24-bit fixed point with 12 fractional bits, and log scales,
rotations (x, y, z of a normalized quaternion; w is derived), opacities and
colors take 8 bits each. Spherical harmonics (degree 0 to 3) are stored in
8 bits per coefficient, quantized to 5 bits for degree 1 and 4 bits for the
higher degrees when packing. Files of format version 1 (half-precision
positions) and version 2 are read; version 2 is written.

## Installation

```
pip install .
```

## Usage

```python
from spz.splat_types import CoordinateSystem
from spz.packing import PackOptions, UnpackOptions, load_spz_file, save_spz_file
from spz.ply import load_splat_from_ply, save_splat_to_ply

# Load a PLY (stored in RDF coordinates) into the right-up-back system.
cloud = load_splat_from_ply("scene.ply", UnpackOptions(to=CoordinateSystem.RUB))
print(cloud.num_points, cloud.sh_degree, cloud.median_volume())

# Write it as SPZ, telling the packer which system the data is in.
save_spz_file(cloud, PackOptions(from_=CoordinateSystem.RUB), "scene.spz")

# Read it back and write a PLY again.
restored = load_spz_file("scene.spz", UnpackOptions(to=CoordinateSystem.RUB))
save_splat_to_ply(restored, PackOptions(from_=CoordinateSystem.RUB), "roundtrip.ply")
```

### Modules

- `spz.splat_types`: `GaussianCloud` (flat float32 arrays of positions,
  scales, rotations in x, y, z, w order, alphas, colors and spherical
  harmonics), `CoordinateSystem`, `CoordinateConverter`,
  `coordinate_converter`, `SpzError`, half-precision helpers
  (`half_to_float`, `float_to_half`) and small vector and quaternion helpers
  (`normalized`, `axis_angle_quat`, `rotate_vector`, `quat_multiply`, ...).
- `spz.packing`: `pack_gaussians` / `unpack_gaussians` between a cloud and
  `PackedGaussians`; `serialize_packed_gaussians` /
  `deserialize_packed_gaussians` for the uncompressed byte layout;
  `save_spz(cloud, options)` returns compressed bytes and
  `load_spz(data, options)` decodes them; `load_spz_packed` and
  `load_spz_packed_file` give the quantized form, whose `at(i)` and
  `unpack(i, converter)` methods read single Gaussians; `save_spz_file` and
  `load_spz_file` work on files.
- `spz.ply`: `load_splat_from_ply` and `save_splat_to_ply`.

Options may be passed as `None` to use `UNSPECIFIED`.

## Coordinate systems

`CoordinateSystem` names the directions of the x, y and z axes, for example
`RUB` (right, up, back; used inside SPZ), `RDF` (PLY) and `LUF` (glTF).
`UNSPECIFIED` leaves data untouched. `GaussianCloud.convert_coordinates`
converts a cloud in place, flipping positions, rotations and spherical
harmonics as needed; `rotate_180_deg_about_x` swaps between RUB and RDF.

## Limits

- PLY input must be `binary_little_endian 1.0` with only `float` vertex
  properties; ASCII and big-endian PLY are not read. A PLY may hold at most
  10,485,760 vertices, an SPZ file at most 10,000,000 points.
- There is no command-line tool; the package is used as a library.

## Errors

Malformed input, inconsistent array sizes and unreadable files raise
`spz.splat_types.SpzError`.

## Running the tests

```
pip install ".[test]"
pytest
```