"""Schematic preview of tile footprints.

The preview is a feedback surface only: nothing here may interrupt the
pipeline, so rendering problems are logged and otherwise ignored.
"""
import logging
import pathlib
from collections.abc import Iterator, Sequence
from typing import Optional, Union

import numpy as np
import skimage.io
from matplotlib.colors import hsv_to_rgb

from .positions import Position

logger = logging.getLogger(__name__)

PREVIEW_WIDTH = 256
PREVIEW_HEIGHT = 256
GOLDEN_RATIO_CONJUGATE = 0.61803


def new_canvas(width: int = PREVIEW_WIDTH, height: int = PREVIEW_HEIGHT) -> np.ndarray:
    return np.zeros((height, width, 3), dtype=np.uint8)


def golden_colors(hue: float = 0.0, saturation: float = 0.0) -> Iterator[np.ndarray]:
    """Endless sequence of well separated RGB colors (uint8).

    Each step advances hue and saturation by the golden ratio conjugate;
    saturation is then pulled into [0.5, 1] so no color is washed out.
    """
    while True:
        hue = (hue + GOLDEN_RATIO_CONJUGATE) % 1
        saturation = (saturation + GOLDEN_RATIO_CONJUGATE) % 1
        saturation = 0.5 * saturation + 0.5
        rgb = hsv_to_rgb((hue, saturation, 1.0))
        yield np.round(rgb * 255).astype(np.uint8)


def render(
    canvas: Optional[np.ndarray],
    positions: Sequence[Position],
    tile_width: int,
    tile_height: int,
) -> None:
    """Draw tile footprints onto ``canvas`` (an ``(H, W, 3)`` uint8 array) in place.

    The layout is scaled uniformly so the full bounding box fits the shorter
    canvas side. Overlapping footprints are XOR-combined so overlaps stay
    visible. An empty position list leaves the canvas blank.
    """
    if canvas is None:
        return
    if not positions:
        canvas[...] = 0
        return
    try:
        _render(canvas, positions, tile_width, tile_height)
    except Exception as e:
        logger.warning(f"Could not render layout preview: {e}")


def _render(
    canvas: np.ndarray, positions: Sequence[Position], tile_width: int, tile_height: int
) -> None:
    xs = np.array([p.x for p in positions], dtype=float)
    ys = np.array([p.y for p in positions], dtype=float)
    min_x, min_y = xs.min(), ys.min()
    max_x, max_y = xs.max() + tile_width, ys.max() + tile_height
    bounding_width = max_x - min_x
    bounding_height = max_y - min_y

    canvas_height, canvas_width = canvas.shape[:2]
    factor = max(bounding_width, bounding_height) / min(canvas_width, canvas_height)
    canvas[...] = 0
    if not np.isfinite(factor) or factor <= 0:
        return

    colors = golden_colors()
    for x, y in zip(xs, ys):
        left = int((x - min_x) / factor)
        top = int((y - min_y) / factor)
        right = min(canvas_width, left + max(1, int(tile_width / factor)))
        bottom = min(canvas_height, top + max(1, int(tile_height / factor)))
        canvas[top:bottom, left:right] ^= next(colors)


def save_preview(canvas: np.ndarray, path: Union[str, pathlib.Path]) -> None:
    path = pathlib.Path(path)
    path.parent.mkdir(exist_ok=True, parents=True)
    skimage.io.imsave(path, canvas, check_contrast=False)
    logger.info(f"Saved layout preview to {path}")
