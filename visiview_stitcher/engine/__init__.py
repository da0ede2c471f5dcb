"""Registration and fusion of tile sets.

The orchestrator only relies on two entry points:

- compute_stitching(images, positions, dimensionality, compute_overlap, save_memory)
  returns one TranslationModel per tile.
- fuse_tiles(images, models, dimensionality, fusion_mode) returns the mosaic.
"""

from .fusion import FusionMode, PixelType, fuse_tiles
from .registration import StitchRequest, TranslationModel, compute_stitching

__all__ = [
    "FusionMode",
    "PixelType",
    "StitchRequest",
    "TranslationModel",
    "compute_stitching",
    "fuse_tiles",
]
