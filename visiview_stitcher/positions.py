"""Derivation of initial tile positions in pixel space.

Positions come from one of two disjoint sources:

- Grid-derived: every position name contains ``Row<r>_Col<c>``, and the tile
  lands at ``(c, r) * tile size * (1 - OVERLAP_FACTOR)``.
- Stage-file-derived: otherwise, the ``.stg`` file written by VisiView gives
  physical stage coordinates that are converted to pixels with the
  calibration.

The policy is all-or-nothing: a single name that does not match the grid
pattern makes the stage file mandatory for the whole dataset.
"""
import enum
import logging
import math
import pathlib
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional, Union

import pandas as pd

from .errors import ConfigurationError, FormatError

logger = logging.getLogger(__name__)

GRID_POSITION_RE = re.compile(r".*Row(\d+)_Col(\d+).*")
# Nominal tile overlap used by the VisiView grid acquisition.
OVERLAP_FACTOR = 0.1
# Records of a .stg file start after a fixed-format header.
STAGE_FILE_HEADER_LINES = 4


class Provenance(enum.Enum):
    GRID = "grid-derived"
    STAGE_FILE = "stage-file-derived"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class Position:
    """Initial pixel-space position of one tile."""

    index: int
    """1-based index of the tile in acquisition order."""
    x: float
    y: float
    z: Optional[float] = None
    name: Optional[str] = None
    provenance: Provenance = Provenance.UNRESOLVED

    def as_offset(self, dimensionality: int) -> tuple[float, ...]:
        if dimensionality == 2:
            return (self.x, self.y)
        return (self.x, self.y, self.z if self.z is not None else 0.0)


@dataclass(frozen=True)
class CalibrationModel:
    """Physical size of one pixel (micrometers) along each axis."""

    x: float
    y: float
    z: float = 1.0

    def __post_init__(self) -> None:
        for axis in ("x", "y", "z"):
            value = getattr(self, axis)
            if value is None or not math.isfinite(value) or value <= 0:
                raise ConfigurationError(
                    f"Calibration along {axis} must be positive, got {value}"
                )


@dataclass(frozen=True)
class PositionResolution:
    """Outcome of a resolution attempt."""

    positions: tuple[Position, ...] = ()
    message: str = ""
    stage_file_required: bool = False
    stage_file: Optional[pathlib.Path] = None

    @property
    def resolved(self) -> bool:
        return len(self.positions) > 0

    @property
    def provenance(self) -> Provenance:
        if not self.positions:
            return Provenance.UNRESOLVED
        return self.positions[0].provenance


@dataclass(frozen=True)
class TileSize:
    width: int
    height: int
    depth: int = 1


def positions_match_grid_pattern(position_names: Sequence[str]) -> bool:
    """True if every name contains a ``Row<r>_Col<c>`` token."""
    return all(GRID_POSITION_RE.fullmatch(name) for name in position_names)


def positions_from_names(
    position_names: Sequence[str], tile_width: int, tile_height: int
) -> list[Position]:
    """Grid positions decoded from ``Row<r>_Col<c>`` names.

    Raises:
        ValueError: If a name does not match the grid pattern.
    """
    positions = []
    for index, name in enumerate(position_names, start=1):
        m = GRID_POSITION_RE.fullmatch(name)
        if m is None:
            raise ValueError(f"Position name does not match grid pattern: {name!r}")
        row, col = int(m.group(1)), int(m.group(2))
        positions.append(
            Position(
                index=index,
                name=name,
                x=col * tile_width * (1 - OVERLAP_FACTOR),
                y=row * tile_height * (1 - OVERLAP_FACTOR),
                provenance=Provenance.GRID,
            )
        )
    return positions


def positions_from_stage_file(
    stage_file: Union[str, pathlib.Path], calibration: CalibrationModel
) -> list[Position]:
    """Pixel positions read from a VisiView ``.stg`` file.

    Each record is ``"name", x, y[, z, ...]`` in physical units.

    Raises:
        FormatError: If a record cannot be parsed.
        OSError: If the file cannot be read.
    """
    try:
        records = pd.read_csv(
            stage_file,
            skiprows=STAGE_FILE_HEADER_LINES,
            header=None,
            skipinitialspace=True,
            dtype=str,
            keep_default_na=False,
        )
    except pd.errors.EmptyDataError:
        logger.warning(f"Stage file {stage_file} contains no position records")
        return []
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise FormatError(f"Cannot parse stage file {stage_file}: {e}") from e

    if records.shape[1] < 3:
        raise FormatError(
            f"Stage file {stage_file} records need at least 3 fields, "
            f"found {records.shape[1]}"
        )

    positions = []
    for index, record in enumerate(records.itertuples(index=False), start=1):
        try:
            x_physical = float(record[1])
            y_physical = float(record[2])
        except ValueError as e:
            raise FormatError(
                f"Invalid coordinates in record {index} of {stage_file}: {list(record)}"
            ) from e
        positions.append(
            Position(
                index=index,
                name=str(record[0]).strip() or None,
                x=x_physical / calibration.x,
                y=y_physical / calibration.y,
                provenance=Provenance.STAGE_FILE,
            )
        )
    return positions


def resolve(
    position_names: Sequence[str],
    tile_size: TileSize,
    calibration: Optional[CalibrationModel] = None,
    stage_file: Optional[Union[str, pathlib.Path]] = None,
) -> PositionResolution:
    """Resolve initial positions for a dataset.

    Idempotent and free of side effects; call again whenever the calibration
    or stage file changes. Failures are reported through the returned
    resolution's message instead of being raised.
    """
    if position_names and positions_match_grid_pattern(position_names):
        positions = positions_from_names(
            position_names, tile_size.width, tile_size.height
        )
        return PositionResolution(
            positions=tuple(positions),
            message=f"{len(positions)} positions derived from grid names",
        )

    if stage_file is None:
        return PositionResolution(
            message="Position names do not encode a grid; a stage position file is required.",
            stage_file_required=True,
        )
    stage_file = pathlib.Path(stage_file)
    if calibration is None:
        return PositionResolution(
            message="Pixel calibration is unknown; cannot convert stage positions.",
            stage_file_required=True,
            stage_file=stage_file,
        )

    try:
        positions = positions_from_stage_file(stage_file, calibration)
    except (ConfigurationError, OSError) as e:
        logger.warning(f"Could not read stage positions: {e}")
        return PositionResolution(
            message=f"Could not read stage positions: {e}",
            stage_file_required=True,
            stage_file=stage_file,
        )

    if not positions:
        message = f"No positions found in {stage_file.name}"
    else:
        message = f"{len(positions)} positions read from {stage_file.name}"
    return PositionResolution(
        positions=tuple(positions),
        message=message,
        stage_file_required=True,
        stage_file=stage_file,
    )
