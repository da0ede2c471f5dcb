"""Illumination (flat-field) correction of tiles.

Two corrections are supported:

- Estimated: the reference channel of all tiles is averaged, projected along
  Z, and a 2D Gaussian is fitted to it. Each tile's reference channel is then
  divided by the fitted field scaled so that its peak maps to 1.
- From file: a reference image (one plane, or one plane per channel) is
  normalized to a maximum of 1 and every channel is divided by it.

In both cases per-channel camera offsets are subtracted first.
"""
import enum
import logging
import pathlib
from collections.abc import Sequence
from typing import Optional, Union

import numpy as np
import tifffile
from scipy.optimize import curve_fit

from .errors import ConfigurationError, GeometryError, IlluminationFitError

logger = logging.getLogger(__name__)

# Fitting on every pixel of a full frame is slow and gains nothing for a
# smooth field; fit on a grid of at most this many samples per axis.
MAX_FIT_SAMPLES_PER_AXIS = 256


class IlluminationCorrection(enum.Enum):
    none = "none"
    estimated = "estimated"
    from_file = "from-file"


def parse_offsets(
    offsets: Union[str, float, Sequence[float], None], channel_count: int
) -> list[float]:
    """Per-channel offsets from a scalar, a list, or a comma separated string.

    A single value is broadcast to every channel.

    Raises:
        GeometryError: If more than one value is given and the number of values
            differs from ``channel_count``.
        ConfigurationError: If a value is not a number.
    """
    if offsets is None:
        values: list[float] = []
    elif isinstance(offsets, str):
        tokens = [t.strip() for t in offsets.split(",") if t.strip()]
        try:
            values = [float(t) for t in tokens]
        except ValueError as e:
            raise ConfigurationError(f"Invalid illumination offsets: {offsets!r}") from e
    elif isinstance(offsets, (int, float)):
        values = [float(offsets)]
    else:
        values = [float(v) for v in offsets]

    if not values:
        return [0.0] * channel_count
    if len(values) == 1:
        return values * channel_count
    if len(values) != channel_count:
        raise GeometryError(
            f"Got {len(values)} illumination offsets for {channel_count} channels; "
            f"provide a single value or one per channel"
        )
    return values


def gaussian_2d(
    coords: np.ndarray, amplitude: float, x0: float, y0: float, b: float
) -> np.ndarray:
    x, y = coords
    return amplitude * np.exp(-b * ((x - x0) ** 2 + (y - y0) ** 2))


def fit_gaussian_field(image: np.ndarray) -> tuple[np.ndarray, dict[str, float]]:
    """Fit ``A * exp(-b * ((x - x0)^2 + (y - y0)^2))`` to a 2D image.

    Returns:
        The evaluated field (same shape as ``image``, float32) and the fitted
        parameters.

    Raises:
        IlluminationFitError: If the fit does not converge.
    """
    height, width = image.shape
    step_y = max(1, height // MAX_FIT_SAMPLES_PER_AXIS)
    step_x = max(1, width // MAX_FIT_SAMPLES_PER_AXIS)
    ys, xs = np.mgrid[0:height:step_y, 0:width:step_x]
    samples = image[::step_y, ::step_x].astype(np.float64)

    sigma = width / 3.0
    initial = (float(samples.max()), width / 2.0, height / 2.0, 1.0 / (2.0 * sigma**2))
    try:
        popt, _pcov = curve_fit(
            gaussian_2d,
            np.vstack((xs.ravel(), ys.ravel())),
            samples.ravel(),
            p0=initial,
            maxfev=5000,
        )
    except (RuntimeError, ValueError) as e:
        raise IlluminationFitError(f"Could not fit Gaussian illumination field: {e}") from e

    amplitude, x0, y0, b = (float(v) for v in popt)
    logger.info(f"Illumination field fit: A={amplitude:.1f} x0={x0:.1f} y0={y0:.1f} b={b:.3g}")
    full_y, full_x = np.mgrid[0:height, 0:width]
    field = gaussian_2d(np.stack((full_x, full_y)), amplitude, x0, y0, b)
    if not np.all(np.isfinite(field)) or field.max() <= 0:
        raise IlluminationFitError("Fitted illumination field is degenerate")
    return field.astype(np.float32), {"amplitude": amplitude, "x0": x0, "y0": y0, "b": b}


class IlluminationFieldEstimator:
    """Running per-pixel sum of one channel across tiles."""

    def __init__(self, channel: int):
        self.channel = channel
        self._sum: Optional[np.ndarray] = None
        self.count = 0

    def add(self, tile: np.ndarray) -> None:
        """Accumulate the reference channel of a TCZYX tile (all timepoints)."""
        if not 0 <= self.channel < tile.shape[1]:
            raise GeometryError(
                f"Illumination channel {self.channel} is out of range for "
                f"{tile.shape[1]} channels"
            )
        contribution = tile[:, self.channel].astype(np.float64).mean(axis=0)
        if self._sum is None:
            self._sum = contribution
        elif self._sum.shape != contribution.shape:
            raise GeometryError(
                f"Tile shape {contribution.shape} differs from {self._sum.shape}; "
                f"cannot estimate a shared illumination field"
            )
        else:
            self._sum += contribution
        self.count += 1

    def mean_projection(self) -> np.ndarray:
        """Maximum projection along Z of the mean reference channel."""
        if self._sum is None:
            raise IlluminationFitError("No tiles were added to the illumination estimate")
        return (self._sum / self.count).max(axis=0)

    def estimate(self) -> np.ndarray:
        field, _params = fit_gaussian_field(self.mean_projection())
        return field


def apply_field_correction(
    tile: np.ndarray, field: np.ndarray, channel: int, offsets: Sequence[float]
) -> np.ndarray:
    """Divide one channel of a TCZYX tile by ``field`` normalized to a peak of 1."""
    if tile.shape[-2:] != field.shape:
        raise GeometryError(
            f"Illumination field {field.shape} does not match tile plane {tile.shape[-2:]}"
        )
    corrected = tile.astype(np.float32)
    normalized = field / field.max()
    corrected[:, channel] = (corrected[:, channel] - offsets[channel]) / normalized
    return corrected


def load_reference_image(path: Union[str, pathlib.Path]) -> np.ndarray:
    """Read a flat-field reference as a (C, Y, X) float32 array, each plane max 1."""
    reference = tifffile.imread(path).astype(np.float32)
    if reference.ndim == 2:
        reference = reference[np.newaxis]
    elif reference.ndim != 3:
        raise GeometryError(
            f"Illumination reference must be 2D or (C, Y, X), got shape {reference.shape}"
        )
    for plane in reference:
        peak = plane.max()
        if peak <= 0:
            raise ConfigurationError(f"Illumination reference {path} has an empty plane")
        plane /= peak
    logger.info(f"Loaded illumination reference {path} with {reference.shape[0]} channels")
    return reference


def apply_reference_correction(
    tile: np.ndarray, reference: np.ndarray, offsets: Sequence[float]
) -> np.ndarray:
    """Subtract offsets and divide every channel of a TCZYX tile by the reference."""
    n_channels = tile.shape[1]
    if reference.shape[0] not in (1, n_channels):
        raise GeometryError(
            f"Illumination reference has {reference.shape[0]} channels, "
            f"tiles have {n_channels}"
        )
    if reference.shape[1:] != tile.shape[-2:]:
        raise GeometryError(
            f"Illumination reference {reference.shape[1:]} does not match "
            f"tile plane {tile.shape[-2:]}"
        )
    corrected = tile.astype(np.float32)
    for c in range(n_channels):
        plane = reference[c if reference.shape[0] > 1 else 0]
        offset = offsets[c if len(offsets) > 1 else 0]
        corrected[:, c] = (corrected[:, c] - offset) / plane
    return corrected
