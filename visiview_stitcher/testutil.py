import contextlib
import pathlib
import tempfile
from collections.abc import Mapping, Sequence
from typing import Generator, Optional, Union

import numpy as np
import skimage.filters

from .image_loaders import DatasetShape, SeriesSource
from .parameters import StitchingParameters
from .positions import CalibrationModel

PARAMETERS_FIXTURE_FILE = (
    pathlib.Path(__file__).parent.parent
    / "test_fixtures"
    / "parameters_test"
    / "parameters.json"
)

PathLike = Union[str, pathlib.Path]


def descriptor_entries(
    position_names: Sequence[str],
    wave_names: Sequence[str] = ("DAPI",),
    n_timepoints: int = 1,
    z_series: bool = False,
    wave_does_z: Optional[Sequence[bool]] = None,
) -> dict[str, str]:
    """Key/value entries of an ``.nd`` file as VisiView writes them."""

    def flag(value: bool) -> str:
        return "TRUE" if value else "FALSE"

    entries = {
        "NDInfoFile": "Version 1.0",
        "Description": "File recreated from images.",
        "DoTimelapse": flag(n_timepoints > 1),
        "NTimePoints": str(n_timepoints),
        "DoStage": flag(len(position_names) > 1),
        "NStagePositions": str(len(position_names)),
    }
    if len(position_names) > 1:
        for i, name in enumerate(position_names, start=1):
            entries[f"Stage{i}"] = name
    entries["DoWave"] = flag(len(wave_names) > 1)
    entries["NWavelengths"] = str(len(wave_names))
    for i, name in enumerate(wave_names, start=1):
        entries[f"WaveName{i}"] = name
        does_z = wave_does_z[i - 1] if wave_does_z is not None else z_series
        entries[f"WaveDoZ{i}"] = flag(does_z)
    entries["DoZSeries"] = flag(z_series)
    return entries


def write_descriptor(path: PathLike, entries: Mapping[str, str]) -> pathlib.Path:
    path = pathlib.Path(path)
    lines = [f'"{key}", "{value}"' for key, value in entries.items()]
    lines.append('"EndFile"')
    path.write_text("\n".join(lines) + "\n")
    return path


def write_stage_file(
    path: PathLike, records: Sequence[tuple[str, float, float]]
) -> pathlib.Path:
    """Write a ``.stg`` file with the fixed 4-line header and one line per record."""
    path = pathlib.Path(path)
    lines = [
        '"Stage Memory List", Version 6.0',
        '0, 0, 0, 0, 0, 0, 0, "um", "um"',
        "0",
        str(len(records)),
    ]
    for name, x, y in records:
        lines.append(f'"{name}", {x}, {y}, 0, 0, 0, FALSE, -9999, TRUE, TRUE, 0, -1, ""')
    path.write_text("\n".join(lines) + "\n")
    return path


def textured_image(height: int, width: int, seed: int = 0) -> np.ndarray:
    """Smooth random texture (uint16) with enough structure to register against."""
    rng = np.random.default_rng(seed)
    noise = rng.random((height, width))
    smooth = skimage.filters.gaussian(noise, sigma=2.0)
    smooth = (smooth - smooth.min()) / (smooth.max() - smooth.min())
    return (smooth * 60000).astype(np.uint16)


def as_tile(plane_or_stack: np.ndarray) -> np.ndarray:
    """Wrap a YX plane or ZYX stack as a single timepoint, single channel TCZYX tile."""
    if plane_or_stack.ndim == 2:
        plane_or_stack = plane_or_stack[np.newaxis]
    return plane_or_stack[np.newaxis, np.newaxis]


class InMemorySeriesSource(SeriesSource):
    """SeriesSource over TCZYX arrays held in memory, counting reads."""

    def __init__(
        self,
        series: Sequence[np.ndarray],
        position_names: Sequence[str],
        calibration: Optional[CalibrationModel] = None,
        channel_names: Optional[Sequence[str]] = None,
        path: PathLike = "in-memory.nd",
        fail_on_read: Optional[Exception] = None,
    ):
        super().__init__(path)
        self.series = list(series)
        first = self.series[0]
        t, c, z, y, x = first.shape
        self._shape = DatasetShape(
            series_count=len(self.series),
            size_x=x,
            size_y=y,
            size_z=z,
            channel_count=c,
            timepoint_count=t,
            position_names=list(position_names),
            channel_names=list(channel_names or [f"C{i}" for i in range(c)]),
            calibration=calibration,
            dtype=first.dtype,
        )
        self.fail_on_read = fail_on_read
        self.read_calls = 0
        self.open_count = 0
        self.closed = False

    @property
    def shape(self) -> DatasetShape:
        return self._shape

    def read_series(self, index: int) -> np.ndarray:
        self.read_calls += 1
        if self.fail_on_read is not None:
            raise self.fail_on_read
        return self.series[index]

    def __enter__(self) -> "InMemorySeriesSource":
        self.open_count += 1
        self.closed = False
        return self

    def close(self) -> None:
        self.closed = True


@contextlib.contextmanager
def temporary_dataset_params(
    position_names: Sequence[str],
    name: str = "experiment_1.nd",
    **overrides,
) -> Generator[StitchingParameters, None, None]:
    """Parameters for an ``.nd`` dataset written into a temporary directory.

    Only the descriptor is created; tiles are supplied by the caller, usually
    through an InMemorySeriesSource.
    """
    with tempfile.TemporaryDirectory() as d:
        descriptor = write_descriptor(
            pathlib.Path(d) / name, descriptor_entries(position_names)
        )
        params = StitchingParameters.from_json_file(str(PARAMETERS_FIXTURE_FILE))
        params.descriptor_file = str(descriptor)
        for key, value in overrides.items():
            setattr(params, key, value)
        yield params
