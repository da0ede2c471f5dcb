import enum
import logging
import pathlib
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

import numpy as np
import psutil
from tqdm import tqdm

from .benchmarking_util import debug_timing
from .descriptor import find_stage_file
from .engine import TranslationModel, compute_stitching, fuse_tiles
from .errors import ConfigurationError, GeometryError, StitcherError
from .illumination import (
    IlluminationCorrection,
    IlluminationFieldEstimator,
    apply_field_correction,
    apply_reference_correction,
    load_reference_image,
    parse_offsets,
)
from .image_loaders import DatasetShape, SeriesSource, create_series_source
from .layout_preview import new_canvas, render
from .output import save_ome_tiff, save_ome_zarr, write_tile_configuration
from .parameters import OutputFormat, OutputMode, OverlapMode, StitchingParameters
from .positions import CalibrationModel, Position, PositionResolution, TileSize, resolve

# Switch to the memory saving registration when all tiles together would take
# more than this fraction of the available memory.
MEMORY_FRACTION_LIMIT = 0.45


@dataclass
class ProgressCallbacks:
    update_progress: Callable[[int, int], None]
    loading_tiles: Callable[[], None]
    estimating_illumination: Callable[[], None]
    starting_registration: Callable[[], None]
    starting_fusion: Callable[[], None]
    finished: Callable[["FusionResult"], None]

    @classmethod
    def no_op(cls):
        return cls(
            update_progress=lambda _a, _b: None,
            loading_tiles=lambda: None,
            estimating_illumination=lambda: None,
            starting_registration=lambda: None,
            starting_fusion=lambda: None,
            finished=lambda _r: None,
        )


class StitchState(enum.Enum):
    AWAITING_DATASET = "awaiting-dataset"
    RESOLVING = "resolving"
    AWAITING_POSITIONS = "awaiting-positions"
    READY = "ready"
    STITCHING = "stitching"
    FUSED = "fused"
    FAILED = "failed"


class StitchPath(enum.Enum):
    SINGLE_STACK = "single-stack"
    """One series whose slices are the tiles."""
    MIP = "mip"
    """Every series reduced to its maximum intensity projection."""
    FULL_VOLUME = "full-volume"
    """Every series stitched in full."""


def select_stitch_path(
    shape: DatasetShape, overlap_mode: OverlapMode, output_mode: OutputMode
) -> StitchPath:
    """Choose how tiles are built from the series of a dataset."""
    wants_mip = overlap_mode == OverlapMode.via_mip or output_mode == OutputMode.mip
    if shape.series_count == 1 and shape.size_z > 1 and not wants_mip:
        return StitchPath.SINGLE_STACK
    if wants_mip:
        return StitchPath.MIP
    return StitchPath.FULL_VOLUME


def dimensionality_for(path: StitchPath, tiles: list[np.ndarray]) -> int:
    if path == StitchPath.FULL_VOLUME and any(tile.shape[2] > 1 for tile in tiles):
        return 3
    return 2


@dataclass
class FusionResult:
    """Output of a run; the caller owns everything in it."""

    image: Optional[np.ndarray]
    """Fused TCZYX image, or None when only coordinates were requested."""
    models: list[TranslationModel]
    positions: tuple[Position, ...]
    calibration: CalibrationModel
    channel_names: list[str]
    path: StitchPath
    dimensionality: int
    illumination_field: Optional[np.ndarray] = None
    output_paths: list[pathlib.Path] = field(default_factory=list)

    @property
    def tile_names(self) -> list[str]:
        return [p.name or f"tile_{p.index}" for p in self.positions]


@dataclass
class StitchingSession:
    """Per-run state, created when a run starts and released when it ends."""

    path: StitchPath
    positions: tuple[Position, ...]
    calibration: CalibrationModel
    offsets: list[float]
    save_memory: bool
    tiles: list[np.ndarray] = field(default_factory=list)
    estimator: Optional[IlluminationFieldEstimator] = None
    illumination_field: Optional[np.ndarray] = None

    def release(self) -> None:
        self.tiles = []
        self.estimator = None


class Stitcher:
    """Drives a dataset from its metadata to a fused mosaic.

    State moves AWAITING_DATASET -> RESOLVING -> AWAITING_POSITIONS / READY ->
    STITCHING -> FUSED / FAILED. Resolution problems leave the stitcher waiting
    for better inputs; stitching problems fail the run and are re-raised.

    Not safe for concurrent invocation; one run completes before the next begins.
    """

    def __init__(
        self,
        params: StitchingParameters,
        callbacks: ProgressCallbacks = ProgressCallbacks.no_op(),
        source_factory: Optional[Callable[[StitchingParameters], SeriesSource]] = None,
    ):
        self.params = params
        self.callbacks = callbacks
        self.source_factory = source_factory or (
            lambda p: create_series_source(p.descriptor_file, p.dataset_source)
        )
        self.tqdm_class = tqdm

        self.state = StitchState.AWAITING_DATASET
        self.shape: Optional[DatasetShape] = None
        self.calibration: Optional[CalibrationModel] = None
        self.calibration_override: Optional[CalibrationModel] = None
        self.stage_file: Optional[pathlib.Path] = params.stage_file
        self.resolution = PositionResolution()
        self.preview = new_canvas()
        self.message = ""
        self.failure: Optional[Exception] = None

    @property
    def positions(self) -> tuple[Position, ...]:
        return self.resolution.positions

    def load_dataset(self) -> PositionResolution:
        """Read the dataset shape and resolve initial positions."""
        self.state = StitchState.RESOLVING
        self.failure = None
        try:
            with self.source_factory(self.params) as source:
                self.shape = source.shape
        except (StitcherError, OSError) as e:
            logging.warning(f"Could not open dataset {self.params.descriptor_file}: {e}")
            self.shape = None
            self.failure = e
            self.resolution = PositionResolution(message=str(e))
            self.message = f"Could not open dataset: {e}"
            self.state = StitchState.AWAITING_DATASET
            return self.resolution

        self.calibration = self._initial_calibration()
        return self._resolve()

    def _initial_calibration(self) -> Optional[CalibrationModel]:
        assert self.shape is not None
        if self.calibration_override is not None:
            return self.calibration_override
        if not self.params.overrides_calibration:
            return self.shape.calibration
        metadata_z = self.shape.calibration.z if self.shape.calibration else 1.0
        try:
            return CalibrationModel(
                x=self.params.pixel_spacing_x,
                y=self.params.pixel_spacing_y or self.params.pixel_spacing_x,
                z=self.params.pixel_spacing_z or metadata_z,
            )
        except ConfigurationError as e:
            logging.warning(f"Ignoring calibration override: {e}")
            return None

    def update_calibration(
        self, x: float, y: Optional[float] = None, z: Optional[float] = None
    ) -> PositionResolution:
        """Override the calibration and re-resolve positions.

        As in the acquisition software, y follows x unless given explicitly.
        The override survives reloading the dataset.
        """
        try:
            self.calibration_override = CalibrationModel(
                x=x, y=y if y is not None else x, z=z if z is not None else 1.0
            )
        except ConfigurationError as e:
            self.calibration_override = None
            self.message = str(e)
        self.calibration = self.calibration_override
        return self._resolve()

    def set_stage_file(self, stage_file: Union[str, pathlib.Path, None]) -> PositionResolution:
        """Use a different stage position file and re-resolve positions."""
        self.stage_file = pathlib.Path(stage_file) if stage_file is not None else None
        return self._resolve()

    def _resolve(self) -> PositionResolution:
        if self.shape is None:
            return self.resolution
        self.state = StitchState.RESOLVING
        stage_file = self.stage_file or find_stage_file(self.params.descriptor_file)
        self.resolution = resolve(
            self.shape.position_names,
            TileSize(self.shape.size_x, self.shape.size_y, self.shape.size_z),
            self.calibration,
            stage_file,
        )
        self.message = self.resolution.message
        render(self.preview, self.resolution.positions, self.shape.size_x, self.shape.size_y)
        if self.resolution.resolved:
            self.state = StitchState.READY
            logging.info(
                f"Resolved {len(self.resolution.positions)} positions "
                f"({self.resolution.provenance.value})"
            )
        else:
            self.state = StitchState.AWAITING_POSITIONS
            logging.warning(f"Positions unresolved: {self.resolution.message}")
        return self.resolution

    @staticmethod
    def compute_mip(series: np.ndarray) -> np.ndarray:
        """Maximum intensity projection of a TCZYX series, keeping a Z axis of 1."""
        if series.size == 0:
            raise ValueError("Cannot compute MIP from an empty series")
        return series.max(axis=2, keepdims=True)

    def _exceeds_memory(self, shape: DatasetShape) -> bool:
        required = shape.bytes_per_series * shape.series_count
        # psutil's "available" tries to be a cross-platform measure of how much
        # memory can be used before the system starts swapping.
        available = psutil.virtual_memory().available
        return required > MEMORY_FRACTION_LIMIT * available

    def _new_session(self) -> StitchingSession:
        assert self.shape is not None
        shape = self.shape
        path = select_stitch_path(shape, self.params.overlap_mode, self.params.output_mode)

        correction = self.params.illumination_correction
        offsets = [0.0] * shape.channel_count
        if correction != IlluminationCorrection.none:
            offsets = parse_offsets(self.params.illumination_offsets, shape.channel_count)
        if correction == IlluminationCorrection.estimated and not (
            0 <= self.params.illumination_channel < shape.channel_count
        ):
            raise GeometryError(
                f"Illumination channel {self.params.illumination_channel} is out of "
                f"range for {shape.channel_count} channels"
            )

        save_memory = self.params.save_memory
        if not save_memory and self._exceeds_memory(shape):
            logging.info("Tiles do not comfortably fit into memory; enabling save_memory.")
            save_memory = True

        calibration = self.calibration
        if calibration is None:
            logging.warning("No pixel calibration known; writing output in pixel units.")
            calibration = CalibrationModel(1.0, 1.0, 1.0)

        session = StitchingSession(
            path=path,
            positions=self.resolution.positions,
            calibration=calibration,
            offsets=offsets,
            save_memory=save_memory,
        )
        if correction == IlluminationCorrection.estimated:
            session.estimator = IlluminationFieldEstimator(self.params.illumination_channel)
        return session

    def run(self) -> FusionResult:
        """Build tiles, register and fuse them.

        Raises:
            GeometryError: If no positions can be resolved, or the illumination
                offsets do not match the channels. Raised before any tile is read.
            StitcherError, OSError: If loading, correction, registration or
                fusion fails. The stitcher is left in the FAILED state.
        """
        if self.state in (StitchState.AWAITING_DATASET, StitchState.FUSED, StitchState.FAILED):
            self.load_dataset()
        if self.state == StitchState.AWAITING_DATASET:
            assert self.failure is not None
            raise self.failure
        if self.state != StitchState.READY:
            raise GeometryError(
                f"Initial tile positions cannot be determined. {self.message}".strip()
            )

        session = self._new_session()
        self.state = StitchState.STITCHING
        stime = time.time()
        try:
            result = self._stitch(session)
        except (StitcherError, OSError) as e:
            self.state = StitchState.FAILED
            self.failure = e
            logging.error(f"Stitching failed: {e}")
            raise
        finally:
            session.release()

        self.state = StitchState.FUSED
        logging.info(f"Time to stitch {len(result.models)} tiles: {time.time() - stime}")
        self.callbacks.finished(result)
        return result

    def _stitch(self, session: StitchingSession) -> FusionResult:
        assert self.shape is not None
        self.callbacks.loading_tiles()
        with self.source_factory(self.params) as source:
            session.tiles = self._load_tiles(source, session)

        self._correct_illumination(session)

        dimensionality = dimensionality_for(session.path, session.tiles)
        initial = [p.as_offset(dimensionality) for p in session.positions]
        logging.info(
            f"Stitching {len(session.tiles)} tiles along the {session.path.value} path "
            f"in {dimensionality}D"
        )
        self.callbacks.starting_registration()
        with debug_timing("compute_stitching"):
            models = compute_stitching(
                session.tiles,
                initial,
                dimensionality,
                self.params.compute_overlap,
                session.save_memory,
            )

        image = None
        if self.params.output_mode != OutputMode.coordinates:
            self.callbacks.starting_fusion()
            with debug_timing("fuse_tiles"):
                image = fuse_tiles(
                    session.tiles, models, dimensionality, self.params.fusion_mode
                )

        return FusionResult(
            image=image,
            models=models,
            positions=session.positions,
            calibration=session.calibration,
            channel_names=self._channel_names(),
            path=session.path,
            dimensionality=dimensionality,
            illumination_field=session.illumination_field,
        )

    def _channel_names(self) -> list[str]:
        assert self.shape is not None
        names = list(self.shape.channel_names)
        if len(names) != self.shape.channel_count:
            names = [f"C{c}" for c in range(self.shape.channel_count)]
        return names

    def _load_tiles(self, source: SeriesSource, session: StitchingSession) -> list[np.ndarray]:
        assert self.shape is not None
        if session.path == StitchPath.SINGLE_STACK:
            volume = source.read_series(0)
            self.callbacks.update_progress(1, 1)
            return [volume[:, :, z : z + 1] for z in range(volume.shape[2])]

        tiles = []
        n_series = self.shape.series_count
        for index in self.tqdm_class(
            range(n_series), desc="Loading tiles", disable=not self.params.verbose
        ):
            series = source.read_series(index)
            if session.path == StitchPath.MIP:
                if session.estimator is not None:
                    session.estimator.add(series)
                series = self.compute_mip(series)
            tiles.append(series)
            self.callbacks.update_progress(index + 1, n_series)
        return tiles

    def _correct_illumination(self, session: StitchingSession) -> None:
        correction = self.params.illumination_correction
        if correction == IlluminationCorrection.none:
            return

        if correction == IlluminationCorrection.estimated:
            assert session.estimator is not None
            self.callbacks.estimating_illumination()
            if session.estimator.count == 0:
                for tile in session.tiles:
                    session.estimator.add(tile)
            with debug_timing("estimate illumination field"):
                illumination_field = session.estimator.estimate()
            session.illumination_field = illumination_field
            session.tiles = [
                apply_field_correction(
                    tile, illumination_field, self.params.illumination_channel, session.offsets
                )
                for tile in session.tiles
            ]
        elif correction == IlluminationCorrection.from_file:
            assert self.params.illumination_reference is not None
            reference = load_reference_image(self.params.illumination_reference)
            session.tiles = [
                apply_reference_correction(tile, reference, session.offsets)
                for tile in session.tiles
            ]
        else:
            raise RuntimeError(f"Unexpected IlluminationCorrection value: {correction}")

    def save(self, result: FusionResult) -> list[pathlib.Path]:
        """Write the tile configuration and, if fused, the mosaic next to the dataset."""
        paths = [
            write_tile_configuration(
                self.params.tile_configuration_path,
                result.tile_names,
                result.models,
                result.dimensionality,
            )
        ]
        if result.image is not None:
            name = pathlib.Path(self.params.descriptor_file).name.split(".")[0]
            output_path = self.params.stitched_path
            if self.params.output_format == OutputFormat.ome_zarr:
                paths.append(
                    save_ome_zarr(
                        result.image,
                        output_path,
                        result.calibration,
                        result.channel_names,
                        name,
                        self.params.num_pyramid_levels,
                    )
                )
            elif self.params.output_format == OutputFormat.ome_tiff:
                paths.append(
                    save_ome_tiff(
                        result.image, output_path, result.calibration, result.channel_names, name
                    )
                )
            else:
                raise RuntimeError(f"Unexpected OutputFormat value: {self.params.output_format}")
        result.output_paths = paths
        return paths
