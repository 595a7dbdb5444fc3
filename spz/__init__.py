"""Read and write 3D Gaussian splats in the SPZ and binary PLY formats."""

__version__ = "1.1.0"
__all__ = ["splat_types", "packing", "ply"]