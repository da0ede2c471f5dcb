import enum
import os
import pathlib
from datetime import datetime
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, model_validator

from .engine.fusion import FusionMode
from .illumination import IlluminationCorrection
from .image_loaders import DatasetSource

DATETIME_FORMAT = "%Y-%m-%d_%H-%M-%S.%f"


class OutputFormat(enum.Enum):
    ome_zarr = ".ome.zarr"
    ome_tiff = ".ome.tiff"


class OverlapMode(enum.Enum):
    none = "none"
    """Quick: trust the initial positions and do not compute overlaps."""
    via_mip = "via-mip"
    """Compute overlaps on the maximum intensity projection of each tile."""
    full = "full"
    """Compute overlaps on the full volume of each tile."""


class OutputMode(enum.Enum):
    coordinates = "coordinates"
    """Only write the registered tile coordinates."""
    mip = "mip"
    """Fuse the maximum intensity projections of the tiles."""
    full = "full"
    """Fuse the full volumes."""


def input_path_exists(path: str) -> str:
    """Pydantic validator to check the path exists."""
    if not os.path.exists(path):
        raise ValueError(f"Dataset descriptor does not exist: {path}")

    return path


class StitchingParameters(
    BaseModel,
    use_attribute_docstrings=True,
):
    """Parameters for stitching a VisiView / MetaMorph dataset."""

    descriptor_file: Annotated[str, AfterValidator(input_path_exists)]
    """The dataset to stitch: an .nd descriptor, or a container file with one series per tile."""

    dataset_source: DatasetSource = DatasetSource.format_reader
    """How tiles are read.

    format-reader opens the dataset with aicsimageio and treats every scene as
    a tile; companion-files reads the .stk/.tif files listed by the .nd file.
    """

    stage_file: Optional[pathlib.Path] = None
    """VisiView .stg stage position file.

    Only needed when the position names do not encode a Row/Col grid. If
    unset, a .stg file matching the descriptor name is used when one exists.
    """

    overlap_mode: OverlapMode = OverlapMode.none
    """Whether and how to compute tile overlaps before fusing."""

    output_mode: OutputMode = OutputMode.full
    """What to produce: coordinates only, a maximum projection, or the full volume."""

    fusion_mode: FusionMode = FusionMode.blending
    """How overlapping pixels are combined."""

    save_memory: bool = False
    """Trade speed for memory during registration.

    This is switched on automatically when the tiles would not comfortably fit
    into the available memory.
    """

    pixel_spacing_x: Optional[float] = None
    """Override the pixel size along x (micrometers) read from the image metadata."""

    pixel_spacing_y: Optional[float] = None
    """Override the pixel size along y; defaults to the x override."""

    pixel_spacing_z: Optional[float] = None
    """Override the slice spacing (micrometers)."""

    illumination_correction: IlluminationCorrection = IlluminationCorrection.none
    """Illumination correction applied to the tiles before registration."""

    illumination_reference: Optional[pathlib.Path] = None
    """Reference image for from-file illumination correction."""

    illumination_offsets: str = "0"
    """Camera offsets subtracted before illumination correction.

    Either one value for all channels or a comma separated value per channel.
    """

    illumination_channel: int = 0
    """0-based channel whose illumination field is estimated and corrected."""

    output_format: OutputFormat = OutputFormat.ome_zarr
    """Output format for the stitched data."""

    num_pyramid_levels: Optional[int] = None
    """Total number of pyramid levels (including the full-resolution one) in the output.

    Ignored if not writing to ome-zarr as the output format. The default, `None`
    means we infer the number of output levels based on the size of the image.
    """

    layout_preview: Optional[pathlib.Path] = None
    """If set, write a PNG preview of the initial tile layout here."""

    verbose: bool = False
    """Show debug-level logging."""

    @model_validator(mode="after")
    def _check_illumination_reference(self) -> "StitchingParameters":
        if (
            self.illumination_correction == IlluminationCorrection.from_file
            and self.illumination_reference is None
        ):
            raise ValueError("from-file illumination correction needs illumination_reference")
        return self

    @property
    def overrides_calibration(self) -> bool:
        return self.pixel_spacing_x is not None

    @property
    def compute_overlap(self) -> bool:
        return self.overlap_mode != OverlapMode.none

    @property
    def stitched_path(self) -> pathlib.Path:
        """Path of the fused image, next to the descriptor."""
        descriptor = pathlib.Path(self.descriptor_file)
        stem = descriptor.name.split(".")[0]
        return descriptor.parent / (
            f"{stem}_stitched_{datetime.now().strftime(DATETIME_FORMAT)}"
            f"{self.output_format.value}"
        )

    @property
    def tile_configuration_path(self) -> pathlib.Path:
        """Path of the registered tile coordinates, next to the descriptor."""
        descriptor = pathlib.Path(self.descriptor_file)
        return descriptor.parent / f"{descriptor.name}_TileConfiguration.txt"

    @classmethod
    def from_json_file(cls, json_path: str) -> "StitchingParameters":
        """Create parameters from a JSON file.

        Args:
            json_path: Path to JSON file containing parameters

        Returns:
            StitchingParameters: New instance with values from JSON
        """
        with open(json_path) as f:
            return cls.model_validate_json(f.read())

    def to_json_file(self, json_path: str) -> None:
        """Save parameters to a JSON file.

        Args:
            json_path: Path where JSON file should be saved
        """
        with open(json_path, "w") as f:
            f.write(self.model_dump_json(indent=2))
