"""Translation-only registration of a tile set.

For every pair of tiles whose initial footprints overlap, the relative shift
is estimated with phase correlation on the overlapping region. The periodic
ambiguity of the correlation peak is resolved by trying every wrapped
interpretation and keeping the one with the best normalized cross-correlation
(NCC). Links below REGISTRATION_THRESHOLD are dropped, and tile positions are
then propagated along a maximum spanning tree of the remaining links.

Tiles are TCZYX arrays; offsets are expressed as (x, y) or (x, y, z).
"""
import itertools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Optional

import networkx as nx
import numpy as np
from skimage.registration import phase_cross_correlation

from ..errors import ConfigurationError, GeometryError

logger = logging.getLogger(__name__)

REGISTRATION_THRESHOLD = 0.7
SUBPIXEL_UPSAMPLING = 10
MIN_OVERLAP_PIXELS = 25
# Overlaps thinner than this in x or y are not worth correlating.
MIN_OVERLAP_EXTENT = 4


@dataclass(frozen=True)
class TranslationModel:
    """Final placement of a tile: its offset in pixels."""

    offset: tuple[float, ...]

    @property
    def dimensionality(self) -> int:
        return len(self.offset)

    def apply(self, point: Sequence[float]) -> tuple[float, ...]:
        return tuple(p + o for p, o in zip(point, self.offset))


@dataclass
class StitchRequest:
    """Tiles paired 1:1 with their initial pixel positions."""

    images: Sequence[np.ndarray]
    positions: Sequence[Sequence[float]]
    dimensionality: int
    compute_overlap: bool
    save_memory: bool = False

    def __post_init__(self) -> None:
        if len(self.images) != len(self.positions):
            raise GeometryError(
                f"Number of images ({len(self.images)}) does not match "
                f"number of positions ({len(self.positions)})"
            )
        if not self.images:
            raise GeometryError("Cannot stitch an empty tile set")
        if self.dimensionality not in (2, 3):
            raise ConfigurationError(
                f"Dimensionality must be 2 or 3, got {self.dimensionality}"
            )
        for index, image in enumerate(self.images):
            if image.ndim != 5:
                raise GeometryError(
                    f"Tile {index} must be a TCZYX array, got shape {image.shape}"
                )

    def initial_offsets(self) -> np.ndarray:
        """(n_tiles, dimensionality) array of initial offsets in x, y[, z] order."""
        offsets = np.zeros((len(self.positions), self.dimensionality), dtype=float)
        for i, position in enumerate(self.positions):
            values = list(position)[: self.dimensionality]
            offsets[i, : len(values)] = values
        return offsets


def ncc(image1: np.ndarray, image2: np.ndarray) -> float:
    """Normalized cross-correlation of two equally shaped arrays, in [-1, 1].

    Returns -inf when the arrays are too small or flat to correlate.
    """
    if image1.shape != image2.shape or image1.size < MIN_OVERLAP_PIXELS:
        return float("-inf")
    a = image1.astype(np.float64) - image1.mean()
    b = image2.astype(np.float64) - image2.mean()
    denominator = np.sqrt(np.sum(a * a) * np.sum(b * b))
    if denominator == 0.0 or not np.isfinite(denominator):
        return float("-inf")
    return float(np.clip(np.sum(a * b) / denominator, -1.0, 1.0))


def registration_image(tile: np.ndarray, dimensionality: int) -> np.ndarray:
    """Channel mean of the first timepoint, as ZYX (3D) or YX (2D) float32."""
    volume = tile[0].astype(np.float32).mean(axis=0)
    if dimensionality == 2:
        return volume.max(axis=0)
    return volume


def _overlap_box(
    offset_a: np.ndarray, size_a: np.ndarray, offset_b: np.ndarray, size_b: np.ndarray
) -> Optional[tuple[np.ndarray, np.ndarray]]:
    lower = np.maximum(offset_a, offset_b)
    upper = np.minimum(offset_a + size_a, offset_b + size_b)
    extent = upper - lower
    if np.any(extent[:2] < MIN_OVERLAP_EXTENT) or np.any(extent < 1):
        return None
    return lower, upper


def _crop(image: np.ndarray, offset: np.ndarray, lower: np.ndarray, extent: np.ndarray) -> np.ndarray:
    # offset/lower/extent are in x, y[, z] order while arrays are [z,] y, x.
    start = np.floor(lower - offset).astype(int)[::-1]
    stop = start + extent.astype(int)[::-1]
    slices = tuple(slice(max(0, s), max(0, e)) for s, e in zip(start, stop))
    return image[slices]


def _aligned_overlap(
    reference: np.ndarray, moving: np.ndarray, shift: Sequence[int]
) -> tuple[np.ndarray, np.ndarray]:
    """Parts of the two crops that coincide once ``moving`` is shifted by ``shift``."""
    ref_slices, mov_slices = [], []
    for n, s in zip(reference.shape, shift):
        ref_slices.append(slice(max(0, s), min(n, n + s)))
        mov_slices.append(slice(max(0, -s), min(n, n - s)))
    return reference[tuple(ref_slices)], moving[tuple(mov_slices)]


def pairwise_shift(
    reference: np.ndarray, moving: np.ndarray
) -> tuple[Optional[np.ndarray], float]:
    """Shift (array axis order) that registers ``moving`` onto ``reference``.

    Returns the shift and its NCC score, or (None, -inf) when no interpretation
    of the correlation peak yields a usable overlap.
    """
    shift, _error, _phasediff = phase_cross_correlation(
        reference, moving, upsample_factor=SUBPIXEL_UPSAMPLING
    )
    # Phase correlation is periodic: a peak at s also stands for s - n.
    candidates_per_axis = []
    for s, n in zip(shift, reference.shape):
        alternative = s - n if s > 0 else s + n
        candidates_per_axis.append((s, alternative) if s != 0 else (s,))

    best_shift, best_score = None, float("-inf")
    for candidate in itertools.product(*candidates_per_axis):
        rounded = [int(round(c)) for c in candidate]
        ref_part, mov_part = _aligned_overlap(reference, moving, rounded)
        score = ncc(ref_part, mov_part)
        if score > best_score:
            best_shift, best_score = np.array(candidate, dtype=float), score
    return best_shift, best_score


def _link_graph(
    request: StitchRequest,
    offsets: np.ndarray,
    image_getter: Callable[[int], np.ndarray],
    threshold: float,
) -> nx.Graph:
    sizes = []
    for image in request.images:
        _t, _c, z, y, x = image.shape
        sizes.append(np.array([x, y, z][: request.dimensionality], dtype=float))

    graph = nx.Graph()
    graph.add_nodes_from(range(len(request.images)))
    for i, j in itertools.combinations(range(len(request.images)), 2):
        box = _overlap_box(offsets[i], sizes[i], offsets[j], sizes[j])
        if box is None:
            continue
        lower, upper = box
        extent = np.floor(upper - lower)
        reference = _crop(image_getter(i), offsets[i], lower, extent)
        moving = _crop(image_getter(j), offsets[j], lower, extent)
        if reference.shape != moving.shape or reference.size < MIN_OVERLAP_PIXELS:
            continue

        shift, score = pairwise_shift(reference, moving)
        if shift is None or score < threshold:
            logger.debug(f"Dropping link {i}-{j}: ncc {score:.3f} below {threshold}")
            continue
        # shift is in array order ([z,] y, x); links are stored in x, y[, z].
        relative = (offsets[j] - offsets[i]) + shift[::-1]
        graph.add_edge(i, j, weight=score, f=i, t=j, translation=relative)
        logger.debug(f"Link {i}-{j}: translation {relative}, ncc {score:.3f}")
    return graph


def _place_along_tree(tree: nx.Graph, initial: np.ndarray) -> np.ndarray:
    final = initial.copy()
    for component in nx.connected_components(tree):
        source = min(component)
        for parent, child in nx.bfs_edges(tree, source):
            edge = tree.edges[parent, child]
            if edge["f"] == parent:
                final[child] = final[parent] + edge["translation"]
            else:
                final[child] = final[parent] - edge["translation"]
    return final


def compute_stitching(
    images: Sequence[np.ndarray],
    positions: Sequence[Sequence[float]],
    dimensionality: int,
    compute_overlap: bool,
    save_memory: bool = False,
    threshold: float = REGISTRATION_THRESHOLD,
) -> list[TranslationModel]:
    """Register a tile set and return one TranslationModel per tile.

    Args:
        images: TCZYX tiles.
        positions: Initial pixel offsets, (x, y) or (x, y, z) per tile.
        dimensionality: 2 or 3. 3D offsets default to z=0.
        compute_overlap: If False, the initial positions are returned as-is.
        save_memory: Compute registration images on demand instead of caching
            them for every tile.
        threshold: Minimum NCC for a pairwise link to be trusted.

    Raises:
        GeometryError: If images and positions differ in number.
        ConfigurationError: If the dimensionality is unsupported.
    """
    request = StitchRequest(images, positions, dimensionality, compute_overlap, save_memory)
    offsets = request.initial_offsets()
    if not request.compute_overlap or len(request.images) == 1:
        return [TranslationModel(tuple(float(v) for v in o)) for o in offsets]

    if save_memory:
        def image_getter(i: int) -> np.ndarray:
            return registration_image(request.images[i], dimensionality)
    else:
        cache = [registration_image(image, dimensionality) for image in request.images]
        image_getter = cache.__getitem__

    graph = _link_graph(request, offsets, image_getter, threshold)
    if graph.number_of_edges() == 0:
        logger.warning("No reliable overlaps found; keeping initial tile positions.")
        return [TranslationModel(tuple(float(v) for v in o)) for o in offsets]

    tree = nx.maximum_spanning_tree(graph, weight="weight")
    isolated = [n for n in tree.nodes if tree.degree(n) == 0]
    if isolated:
        logger.warning(
            f"{len(isolated)} tiles have no reliable overlap and keep their initial positions."
        )
    logger.info(
        f"Registered {len(request.images)} tiles with {tree.number_of_edges()} links "
        f"in {nx.number_connected_components(tree)} components"
    )
    final = _place_along_tree(tree, offsets)
    return [TranslationModel(tuple(float(v) for v in o)) for o in final]
