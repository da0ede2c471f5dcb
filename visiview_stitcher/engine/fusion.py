"""Compositing of registered tiles into a single mosaic.

Tiles are TCZYX arrays placed at whole-pixel offsets. The output keeps the
pixel representation of the input tiles (see PixelType); overlapping pixels
are combined according to a FusionMode.
"""
import enum
import logging
import warnings
from collections.abc import Sequence

import numpy as np

from ..errors import FormatIncompatibilityError, GeometryError
from .registration import TranslationModel

logger = logging.getLogger(__name__)

# Exponent applied to the distance-to-edge ramp when blending.
BLENDING_ALPHA = 1.5


class FusionMode(enum.Enum):
    blending = "blending"
    average = "average"
    median = "median"
    max = "max"
    min = "min"
    overlap_only = "overlap-only"
    """No combination: in overlaps, later tiles overwrite earlier ones."""


class PixelType(enum.Enum):
    """Sample representations the fusion supports."""

    GRAY8 = "uint8"
    GRAY16 = "uint16"
    GRAY32 = "float32"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @classmethod
    def from_dtype(cls, dtype: np.dtype) -> "PixelType":
        try:
            return cls(np.dtype(dtype).name)
        except ValueError as e:
            raise FormatIncompatibilityError(
                f"Unknown image type for fusion: {np.dtype(dtype).name}"
            ) from e

    def cast(self, data: np.ndarray) -> np.ndarray:
        if self is PixelType.GRAY32:
            return data.astype(np.float32)
        info = np.iinfo(self.dtype)
        return np.clip(np.rint(data), info.min, info.max).astype(self.dtype)


def blending_weights(shape: Sequence[int]) -> np.ndarray:
    """Per-pixel weight that falls off towards the tile borders.

    Axes of length 1 do not contribute, so single-plane tiles blend in 2D.
    """
    weights = np.ones(tuple(shape), dtype=np.float64)
    for axis, n in enumerate(shape):
        if n <= 1:
            continue
        idx = np.arange(n)
        ramp = np.minimum(idx + 1, n - idx).astype(np.float64)
        ramp /= ramp.max()
        view_shape = [1] * len(shape)
        view_shape[axis] = n
        weights = weights * ramp.reshape(view_shape)
    return weights**BLENDING_ALPHA


def _integer_offsets(models: Sequence[TranslationModel], dimensionality: int) -> np.ndarray:
    """(n_tiles, 3) integer z, y, x offsets with the minimum moved to the origin."""
    offsets = np.zeros((len(models), 3), dtype=np.int64)
    for i, model in enumerate(models):
        x, y = model.offset[0], model.offset[1]
        z = model.offset[2] if dimensionality == 3 and len(model.offset) > 2 else 0.0
        offsets[i] = np.rint([z, y, x])
    return offsets - offsets.min(axis=0)


def fuse_tiles(
    images: Sequence[np.ndarray],
    models: Sequence[TranslationModel],
    dimensionality: int,
    fusion_mode: FusionMode = FusionMode.blending,
) -> np.ndarray:
    """Fuse TCZYX tiles placed by ``models`` into one TCZYX image.

    Raises:
        GeometryError: If tiles and models differ in number, or tiles differ
            in their timepoint or channel counts.
        FormatIncompatibilityError: If the tiles' pixel type is unsupported
            or not shared by all tiles.
    """
    if len(images) != len(models):
        raise GeometryError(
            f"Number of images ({len(images)}) does not match number of models ({len(models)})"
        )
    if not images:
        raise GeometryError("Cannot fuse an empty tile set")

    pixel_type = PixelType.from_dtype(images[0].dtype)
    for image in images[1:]:
        if PixelType.from_dtype(image.dtype) is not pixel_type:
            raise FormatIncompatibilityError(
                f"Tiles mix pixel types {pixel_type.value} and {image.dtype}"
            )
    n_t, n_c = images[0].shape[:2]
    for image in images:
        if image.shape[:2] != (n_t, n_c):
            raise GeometryError(
                f"Tile with {image.shape[:2]} timepoints/channels, expected {(n_t, n_c)}"
            )

    offsets = _integer_offsets(models, dimensionality)
    extent = np.max(
        [offset + np.array(image.shape[2:]) for offset, image in zip(offsets, images)],
        axis=0,
    )
    output_shape = (n_t, n_c, *[int(v) for v in extent])
    logger.info(
        f"Fusing {len(images)} tiles ({pixel_type.value}) into {output_shape} "
        f"using {fusion_mode.value}"
    )

    def region(offset: np.ndarray, image: np.ndarray) -> tuple[slice, ...]:
        return (slice(None), slice(None)) + tuple(
            slice(o, o + n) for o, n in zip(offset, image.shape[2:])
        )

    if fusion_mode in (FusionMode.blending, FusionMode.average):
        accumulated = np.zeros(output_shape, dtype=np.float64)
        weight_sum = np.zeros(output_shape[2:], dtype=np.float64)
        for offset, image in zip(offsets, images):
            if fusion_mode is FusionMode.blending:
                weights = blending_weights(image.shape[2:])
            else:
                weights = np.ones(image.shape[2:], dtype=np.float64)
            r = region(offset, image)
            accumulated[r] += image * weights
            weight_sum[r[2:]] += weights
        fused = accumulated / np.where(weight_sum > 0, weight_sum, 1.0)

    elif fusion_mode in (FusionMode.max, FusionMode.min):
        combine = np.maximum if fusion_mode is FusionMode.max else np.minimum
        initial = -np.inf if fusion_mode is FusionMode.max else np.inf
        fused = np.full(output_shape, initial, dtype=np.float64)
        for offset, image in zip(offsets, images):
            r = region(offset, image)
            fused[r] = combine(fused[r], image)
        fused[~np.isfinite(fused)] = 0

    elif fusion_mode is FusionMode.median:
        # Holds every tile's contribution at once; memory grows with tile count.
        stack = np.full((len(images), *output_shape), np.nan, dtype=np.float32)
        for i, (offset, image) in enumerate(zip(offsets, images)):
            stack[(i, *region(offset, image))] = image
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            fused = np.nanmedian(stack, axis=0)
        fused = np.nan_to_num(fused, nan=0.0)

    elif fusion_mode is FusionMode.overlap_only:
        fused = np.zeros(output_shape, dtype=np.float64)
        for offset, image in zip(offsets, images):
            fused[region(offset, image)] = image

    else:
        raise ValueError(f"Unexpected FusionMode value: {fusion_mode}")

    return pixel_type.cast(fused)
