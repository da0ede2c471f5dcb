"""Writers for fused mosaics and registered tile coordinates."""
import logging
import math
import pathlib
import time
from collections.abc import Sequence
from typing import Any, Optional, Union

import dask.array as da
import numpy as np
import ome_zarr.format
import ome_zarr.io
import ome_zarr.writer
import zarr
from aicsimageio import types as aics_types
from aicsimageio.writers import OmeTiffWriter

from .benchmarking_util import debug_timing
from .engine.registration import TranslationModel
from .positions import CalibrationModel

CHUNK_SIZE_LIMIT_PX = 4096
PYRAMID_BASE_SIZE_PX = 1024

CHANNEL_COLORS = {
    "405": 0x0000FF,  # Blue
    "DAPI": 0x0000FF,
    "488": 0x00FF00,  # Green
    "GFP": 0x00FF00,
    "FITC": 0x00FF00,
    "561": 0xFFCF00,  # Yellow
    "mCherry": 0xFFCF00,
    "TRITC": 0xFFCF00,
    "640": 0xFF0000,  # Red
    "Cy5": 0xFF0000,
}


def channel_color(channel_name: str) -> int:
    """Compute the color for display of a given channel name."""
    for key, value in CHANNEL_COLORS.items():
        if key.lower() in channel_name.lower():
            return value
    return 0xFFFFFF  # Default to white if no match found


def default_pyramid_levels(image_shape: Sequence[int]) -> int:
    height, width = image_shape[-2:]
    return max(1, math.ceil(np.log2(max(width, height) / PYRAMID_BASE_SIZE_PX)))


def chunks_for(image_shape: Sequence[int]) -> tuple[int, int, int, int, int]:
    height, width = image_shape[-2:]
    return (1, 1, 1, min(height, CHUNK_SIZE_LIMIT_PX), min(width, CHUNK_SIZE_LIMIT_PX))


def generate_pyramid(
    image: da.Array, num_levels: int, chunks: tuple[int, ...]
) -> list[da.Array]:
    pyramid = [image]
    for level in range(1, num_levels):
        scale_factor = 2**level
        factors = {0: 1, 1: 1, 2: 1, 3: scale_factor, 4: scale_factor}
        downsampled = da.coarsen(np.mean, image, factors, trim_excess=True)
        # Keep regular chunks at every level; downstream writers require them.
        pyramid.append(downsampled.astype(image.dtype).rechunk(chunks=chunks))
    return pyramid


def _display_max(image: np.ndarray) -> float:
    if np.issubdtype(image.dtype, np.integer):
        return float(np.iinfo(image.dtype).max)
    return float(np.max(image)) if image.size else 1.0


def save_ome_zarr(
    image: np.ndarray,
    output_path: pathlib.Path,
    calibration: CalibrationModel,
    channel_names: Sequence[str],
    name: str,
    num_pyramid_levels: Optional[int] = None,
) -> pathlib.Path:
    """Save a fused TCZYX image as a multiscale OME-ZARR.

    Args:
        image: The 5D image data array (TCZYX)
        output_path: Target ``.ome.zarr`` directory
        calibration: Physical pixel size of the full resolution level
        channel_names: One label per channel
        name: Image name stored in the metadata
        num_pyramid_levels: Number of levels; inferred from the size if None

    Returns:
        path to the saved OME-ZARR file
    """
    start_time = time.time()
    output_path.parent.mkdir(exist_ok=True, parents=True)
    logging.info(f"Writing OME-ZARR to: {output_path}")

    if num_pyramid_levels is None or num_pyramid_levels < 1:
        num_pyramid_levels = default_pyramid_levels(image.shape)
    chunks = chunks_for(image.shape)

    store = ome_zarr.io.parse_url(output_path, mode="w").store
    root = zarr.group(store=store)
    pyramid = generate_pyramid(
        da.from_array(image, chunks=chunks), num_pyramid_levels, chunks
    )

    transforms: list[list[dict[str, Any]]] = []
    for level in range(num_pyramid_levels):
        scale = 2**level
        transforms.append(
            [
                {
                    "type": "scale",
                    "scale": [
                        1,  # time
                        1,  # channels
                        float(calibration.z),
                        float(calibration.y * scale),
                        float(calibration.x * scale),
                    ],
                }
            ]
        )

    zarr_major_version = int(zarr.__version__.split(".")[0])
    datasets: list[dict[str, Any]] = []
    with debug_timing("write image data pyramid"):
        for pyramid_idx, level_data in enumerate(pyramid):
            array_name = str(pyramid_idx)
            if zarr_major_version >= 3:
                arr = root.create_array(
                    name=array_name,
                    shape=level_data.shape,
                    dtype=level_data.dtype,
                    chunks=chunks,
                )
            else:
                arr = root.zeros(
                    name=array_name,
                    shape=level_data.shape,
                    dtype=level_data.dtype,
                    chunks=chunks,
                )
            da.store(level_data, arr, compute=True)
            datasets.append({"path": array_name})

    fmt = ome_zarr.format.CurrentFormat()
    fmt.validate_coordinate_transformations(len(image.shape), len(pyramid), transforms)
    for dataset, transform in zip(datasets, transforms):
        dataset["coordinateTransformations"] = transform

    with debug_timing(".write_multiscale_metadata()"):
        ome_zarr.writer.write_multiscales_metadata(
            group=root,
            datasets=datasets,
            fmt=fmt,
            axes=[
                {"name": "t", "type": "time", "unit": "second"},
                {"name": "c", "type": "channel"},
                {"name": "z", "type": "space", "unit": "micrometer"},
                {"name": "y", "type": "space", "unit": "micrometer"},
                {"name": "x", "type": "space", "unit": "micrometer"},
            ],
            name=name,
        )

    display_max = _display_max(image)
    # Assigning to root.attrs writes the attributes through to the store.
    root.attrs["omero"] = {
        "id": 1,
        "name": name,
        "version": "0.4",
        "channels": [
            {
                "label": channel,
                "color": f"{channel_color(channel):06X}",
                "window": {"start": 0, "end": display_max, "min": 0, "max": display_max},
                "active": True,
                "coefficient": 1,
                "family": "linear",
            }
            for channel in channel_names
        ],
    }
    logging.info(f"Successfully saved OME-ZARR to: {output_path}")
    logging.info(f"Time to save {name}: {time.time() - start_time}")
    return output_path


def save_ome_tiff(
    image: np.ndarray,
    output_path: pathlib.Path,
    calibration: CalibrationModel,
    channel_names: Sequence[str],
    name: str,
) -> pathlib.Path:
    """Save a fused TCZYX image as OME-TIFF using aicsimageio."""
    start_time = time.time()
    output_path.parent.mkdir(exist_ok=True, parents=True)
    physical_pixel_sizes = aics_types.PhysicalPixelSizes(
        Z=calibration.z, Y=calibration.y, X=calibration.x
    )
    rgb_colors = [
        [c >> 16, (c >> 8) & 0xFF, c & 0xFF]
        for c in (channel_color(channel) for channel in channel_names)
    ]
    logging.info(f"Writing OME-TIFF to: {output_path}")
    OmeTiffWriter.save(
        data=image,
        uri=output_path,
        dim_order="TCZYX",
        channel_names=list(channel_names),
        image_name=name,
        physical_pixel_sizes=physical_pixel_sizes,
        channel_colors=rgb_colors,
    )
    logging.info(f"Successfully saved to: {output_path}")
    logging.info(f"Time to save {name}: {time.time() - start_time}")
    return output_path


def write_tile_configuration(
    output_path: Union[str, pathlib.Path],
    tile_names: Sequence[str],
    models: Sequence[TranslationModel],
    dimensionality: int,
) -> pathlib.Path:
    """Write registered offsets as a Fiji-style ``TileConfiguration.txt``."""
    if len(tile_names) != len(models):
        raise ValueError(
            f"Got {len(tile_names)} tile names for {len(models)} models"
        )
    output_path = pathlib.Path(output_path)
    output_path.parent.mkdir(exist_ok=True, parents=True)
    lines = [
        "# Define the number of dimensions we are working on",
        f"dim = {dimensionality}",
        "",
        "# Define the image coordinates",
    ]
    for tile_name, model in zip(tile_names, models):
        coords = ", ".join(f"{v:.4f}" for v in model.offset[:dimensionality])
        lines.append(f"{tile_name}; ; ({coords})")
    output_path.write_text("\n".join(lines) + "\n")
    logging.info(f"Wrote tile configuration to: {output_path}")
    return output_path
