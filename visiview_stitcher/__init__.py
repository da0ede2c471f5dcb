"""VisiView Stitcher Package.

This package stitches tiled microscopy acquisitions recorded with VisiView /
MetaMorph into a single mosaic.

Main functionality:
- Dataset metadata: parse .nd descriptors and enumerate companion files
- Tile positions: decode Row/Col grid names or read .stg stage files
- Orchestration: choose single-stack, MIP or full-volume stitching
- Illumination correction: estimated Gaussian field or reference image
- Registration and fusion of the resulting tiles

The package exposes the main entry points at the top level for convenience.
"""

from .descriptor import DatasetDescriptor, parse_descriptor
from .companion_files import companion_files
from .engine import FusionMode, TranslationModel, compute_stitching, fuse_tiles
from .errors import (
    ConfigurationError,
    FormatError,
    FormatIncompatibilityError,
    GeometryError,
    IlluminationFitError,
    StitcherError,
)
from .positions import CalibrationModel, Position, Provenance, resolve
from .stitcher import FusionResult, StitchPath, StitchState, Stitcher, select_stitch_path

__all__ = [
    'DatasetDescriptor',
    'parse_descriptor',
    'companion_files',
    'FusionMode',
    'TranslationModel',
    'compute_stitching',
    'fuse_tiles',
    'ConfigurationError',
    'FormatError',
    'FormatIncompatibilityError',
    'GeometryError',
    'IlluminationFitError',
    'StitcherError',
    'CalibrationModel',
    'Position',
    'Provenance',
    'resolve',
    'FusionResult',
    'StitchPath',
    'StitchState',
    'Stitcher',
    'select_stitch_path',
]
