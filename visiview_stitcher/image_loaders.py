"""Series sources: read a dataset one tile (series) at a time.

All sources normalize their output to 5D ``(T, C, Z, Y, X)`` arrays, whatever
the axis order of the underlying file format. The complexity of the formats is
handled once at this boundary and not scattered through the orchestrator.

Two sources are provided:

- FormatReaderSource opens the dataset through aicsimageio; every scene is
  one series (one tile).
- CompanionFileSource reads the ``.stk`` / ``.tif`` files listed by an ``.nd``
  descriptor directly, concatenating one position's files into a hyperstack.

Decoding problems are reported as FormatIncompatibilityError, distinct from
the OSError raised for missing or unreadable files.
"""
import enum
import logging
import pathlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

import numpy as np
import tifffile
from aicsimageio import AICSImage
from aicsimageio import exceptions as aics_exceptions

from .companion_files import TilePlan, companion_files
from .descriptor import DatasetDescriptor, parse_descriptor
from .errors import ConfigurationError, FormatIncompatibilityError
from .positions import CalibrationModel

logger = logging.getLogger(__name__)

DIMENSION_ORDER = "TCZYX"


class DatasetSource(enum.Enum):
    format_reader = "format-reader"
    companion_files = "companion-files"


@dataclass
class DatasetShape:
    """Dimensions and metadata shared by every series of a dataset."""

    series_count: int
    size_x: int
    size_y: int
    size_z: int = 1
    channel_count: int = 1
    timepoint_count: int = 1
    position_names: list[str] = field(default_factory=list)
    channel_names: list[str] = field(default_factory=list)
    calibration: Optional[CalibrationModel] = None
    """Pixel size from the image metadata, if the format records one."""
    dtype: np.dtype = field(default_factory=lambda: np.dtype(np.uint16))

    @property
    def bytes_per_series(self) -> int:
        return (
            self.timepoint_count
            * self.channel_count
            * self.size_z
            * self.size_y
            * self.size_x
            * np.dtype(self.dtype).itemsize
        )


def _calibration_or_none(
    x: Optional[float], y: Optional[float], z: Optional[float]
) -> Optional[CalibrationModel]:
    if not x:
        return None
    try:
        return CalibrationModel(x=float(x), y=float(y or x), z=float(z or 1.0))
    except ConfigurationError as e:
        logger.warning(f"Ignoring image calibration: {e}")
        return None


def _scalar(value) -> Optional[float]:
    """First finite number in an STK metadata value (scalar, Fraction or array)."""
    if value is None:
        return None
    values = np.ravel(np.asarray(value, dtype=np.float64))
    return float(values[0]) if values.size and np.isfinite(values[0]) else None


def _stack_depth(path: pathlib.Path) -> int:
    """Number of Z planes in a companion file (STK keeps them in one page)."""
    try:
        with tifffile.TiffFile(path) as tif:
            shape = tif.series[0].shape
    except tifffile.TiffFileError as e:
        raise FormatIncompatibilityError(f"Cannot decode {path}: {e}") from e
    return shape[0] if len(shape) == 3 else 1


class SeriesSource(ABC):
    """A dataset whose series can be read one at a time."""

    def __init__(self, path: Union[str, pathlib.Path]):
        self.path = pathlib.Path(path)

    @property
    @abstractmethod
    def shape(self) -> DatasetShape:
        pass

    @abstractmethod
    def read_series(self, index: int) -> np.ndarray:
        """Read one series as a ``(T, C, Z, Y, X)`` array."""
        pass

    def close(self) -> None:
        pass

    def __enter__(self) -> "SeriesSource":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}('{self.path.name}')"


class FormatReaderSource(SeriesSource):
    """Reads any container aicsimageio understands; one scene per series."""

    def __init__(self, path: Union[str, pathlib.Path]):
        super().__init__(path)
        try:
            self._image = AICSImage(self.path)
        except aics_exceptions.UnsupportedFileFormatError as e:
            raise FormatIncompatibilityError(
                f"No reader can open {self.path}: {e}"
            ) from e
        self._shape: Optional[DatasetShape] = None

    def _scene_names(self) -> list[str]:
        scenes = list(self._image.scenes)
        try:
            names = [image.name for image in self._image.ome_metadata.images]
        except (NotImplementedError, AttributeError, ValueError) as e:
            logger.debug(f"No OME image names for {self.path.name}: {e}")
            return scenes
        if len(names) != len(scenes) or not all(names):
            return scenes
        return names

    @property
    def shape(self) -> DatasetShape:
        if self._shape is None:
            image = self._image
            image.set_scene(0)
            dims = image.dims
            sizes = image.physical_pixel_sizes
            self._shape = DatasetShape(
                series_count=len(image.scenes),
                size_x=dims.X,
                size_y=dims.Y,
                size_z=dims.Z,
                channel_count=dims.C,
                timepoint_count=dims.T,
                position_names=self._scene_names(),
                channel_names=[str(c) for c in image.channel_names],
                calibration=_calibration_or_none(sizes.X, sizes.Y, sizes.Z),
                dtype=np.dtype(image.dtype),
            )
            logger.info(
                f"{self.path.name}: {self._shape.series_count} series of "
                f"{dims.X}x{dims.Y}x{dims.Z}, {dims.C} channels, {dims.T} timepoints"
            )
        return self._shape

    def read_series(self, index: int) -> np.ndarray:
        try:
            self._image.set_scene(index)
            return np.asarray(self._image.get_image_data(DIMENSION_ORDER))
        except (IndexError, KeyError, ValueError) as e:
            raise FormatIncompatibilityError(
                f"Cannot read series {index} of {self.path}: {e}"
            ) from e


class CompanionFileSource(SeriesSource):
    """Reads the per-position companion files listed by an ``.nd`` descriptor."""

    def __init__(
        self,
        path: Union[str, pathlib.Path],
        descriptor: Optional[DatasetDescriptor] = None,
    ):
        super().__init__(path)
        self.descriptor = descriptor if descriptor is not None else parse_descriptor(self.path)
        self.plan: TilePlan = companion_files(self.path, self.descriptor)
        self._shape: Optional[DatasetShape] = None

    def _read_file(self, path: pathlib.Path) -> np.ndarray:
        try:
            data = tifffile.imread(path)
        except tifffile.TiffFileError as e:
            raise FormatIncompatibilityError(f"Cannot decode {path}: {e}") from e
        if data.ndim == 2:
            data = data[np.newaxis]
        if data.ndim != 3:
            raise FormatIncompatibilityError(
                f"Expected a single plane or a Z stack in {path}, got shape {data.shape}"
            )
        return data

    def _stk_calibration(self, path: pathlib.Path) -> Optional[CalibrationModel]:
        try:
            with tifffile.TiffFile(path) as tif:
                metadata = tif.stk_metadata if tif.is_stk else None
        except tifffile.TiffFileError as e:
            raise FormatIncompatibilityError(f"Cannot decode {path}: {e}") from e
        if not metadata:
            return None
        return _calibration_or_none(
            _scalar(metadata.get("XCalibration")),
            _scalar(metadata.get("YCalibration")),
            _scalar(metadata.get("ZDistance")),
        )

    @property
    def shape(self) -> DatasetShape:
        if self._shape is None:
            if not self.plan:
                raise ConfigurationError(f"{self.path.name} lists no stage positions")
            first = self.plan[0][0]
            try:
                with tifffile.TiffFile(first) as tif:
                    page = tif.pages[0]
                    height, width = page.shape[:2]
                    dtype = page.dtype
            except tifffile.TiffFileError as e:
                raise FormatIncompatibilityError(f"Cannot decode {first}: {e}") from e
            depth = max(_stack_depth(f) for f in self.plan[0])
            self._shape = DatasetShape(
                series_count=len(self.plan),
                size_x=width,
                size_y=height,
                size_z=depth,
                channel_count=self.descriptor.channel_count,
                timepoint_count=self.descriptor.timepoint_count,
                position_names=self.descriptor.position_names,
                channel_names=self.descriptor.channel_names,
                calibration=self._stk_calibration(first),
                dtype=np.dtype(dtype),
            )
        return self._shape

    def read_series(self, index: int) -> np.ndarray:
        n_channels = self.descriptor.channel_count
        n_timepoints = self.descriptor.timepoint_count
        stacks = [self._read_file(f) for f in self.plan[index]]
        shapes = {s.shape for s in stacks}
        if len(shapes) != 1:
            raise FormatIncompatibilityError(
                f"Files of position {index + 1} have differing shapes: {sorted(shapes)}"
            )
        z, y, x = stacks[0].shape
        series = np.empty((n_timepoints, n_channels, z, y, x), dtype=stacks[0].dtype)
        for k, stack in enumerate(stacks):
            series[k // n_channels, k % n_channels] = stack
        return series


def create_series_source(
    path: Union[str, pathlib.Path], source: DatasetSource = DatasetSource.format_reader
) -> SeriesSource:
    """Factory function to create the series source for a dataset."""
    if source == DatasetSource.companion_files:
        return CompanionFileSource(path)
    elif source == DatasetSource.format_reader:
        return FormatReaderSource(path)
    else:
        raise RuntimeError(f"Unexpected DatasetSource value: {source}")
