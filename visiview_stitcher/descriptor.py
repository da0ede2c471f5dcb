"""Parsing of VisiView / MetaMorph ``.nd`` dataset descriptors.

An ``.nd`` file is a flat, comma separated key/value table, e.g.::

    "NDInfoFile", Version 1.0
    "DoTimelapse", FALSE
    "DoStage", TRUE
    "NStagePositions", 4
    "Stage1", "Row0_Col0"
    "DoWave", TRUE
    "NWavelengths", 2
    "WaveName1", "DAPI"
    "WaveDoZ1", TRUE
    "DoZSeries", TRUE
    "EndFile"

Axis counts are only meaningful when the matching ``Do*`` flag is set; an axis
whose flag is false (or absent) degenerates to a length of 1.
"""
import io
import logging
import pathlib
import re
from collections.abc import Iterator, Mapping
from typing import Optional, Union

import pandas as pd

from .errors import FormatError

logger = logging.getLogger(__name__)

DO_WAVE = "DoWave"
DO_STAGE = "DoStage"
DO_TIMELAPSE = "DoTimelapse"
DO_Z_SERIES = "DoZSeries"
WAVE_DO_Z_PREFIX = "WaveDoZ"
WAVE_NAME_PREFIX = "WaveName"
STAGE_NAME_PREFIX = "Stage"
N_WAVELENGTHS = "NWavelengths"
N_STAGE_POSITIONS = "NStagePositions"
N_TIMEPOINTS = "NTimePoints"

ND_FILE_RE = re.compile(r"(.*_)\d\.nd")
STG_FILE_RE = re.compile(r"(.*_)\.stg")

PathLike = Union[str, pathlib.Path]


class DatasetDescriptor(Mapping[str, str]):
    """Key/value content of an ``.nd`` file with typed accessors."""

    def __init__(self, entries: Mapping[str, str], path: Optional[pathlib.Path] = None):
        self._entries = dict(entries)
        self.path = path

    def __getitem__(self, key: str) -> str:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"DatasetDescriptor(path={self.path}, entries={len(self._entries)})"

    def flag(self, key: str) -> bool:
        """Boolean value of ``key``; only a literal ``TRUE`` (any case) is true."""
        value = self._entries.get(key)
        if value is None:
            return False
        return value.strip().lower() == "true"

    def integer(self, key: str) -> int:
        value = self._entries.get(key)
        if value is None:
            raise FormatError(f"Descriptor is missing required key {key!r}")
        try:
            return int(value.strip())
        except ValueError as e:
            raise FormatError(
                f"Descriptor key {key!r} is not an integer: {value!r}"
            ) from e

    def axis_count(self, enabled_key: str, count_key: str) -> int:
        """Length of an acquisition axis.

        Args:
            enabled_key: The ``Do*`` flag enabling the axis.
            count_key: The key holding the axis length.

        Returns:
            The parsed count if the axis is enabled, otherwise 1.

        Raises:
            FormatError: If the axis is enabled but the count is missing or
                not an integer.
        """
        if not self.flag(enabled_key):
            return 1
        return self.integer(count_key)

    @property
    def channel_count(self) -> int:
        return self.axis_count(DO_WAVE, N_WAVELENGTHS)

    @property
    def timepoint_count(self) -> int:
        return self.axis_count(DO_TIMELAPSE, N_TIMEPOINTS)

    @property
    def position_count(self) -> int:
        return self.axis_count(DO_STAGE, N_STAGE_POSITIONS)

    @property
    def does_z_series(self) -> bool:
        return self.flag(DO_Z_SERIES)

    def wave_name(self, channel: int) -> str:
        """Name of the 1-based ``channel``."""
        try:
            return self._entries[f"{WAVE_NAME_PREFIX}{channel}"].strip()
        except KeyError as e:
            raise FormatError(f"Descriptor has no name for wavelength {channel}") from e

    def wave_does_z(self, channel: int) -> bool:
        return self.flag(f"{WAVE_DO_Z_PREFIX}{channel}")

    @property
    def channel_names(self) -> list[str]:
        if self.channel_count == 1:
            return [self._entries.get(f"{WAVE_NAME_PREFIX}1", "").strip() or "C0"]
        return [self.wave_name(w) for w in range(1, self.channel_count + 1)]

    @property
    def position_names(self) -> list[str]:
        """``Stage<i>`` names for every stage position, in acquisition order.

        Empty when ``DoStage`` is false: a single-position acquisition carries
        no ``Stage<i>`` keys.
        """
        if not self.flag(DO_STAGE):
            return []
        names = []
        for i in range(1, self.position_count + 1):
            try:
                names.append(self._entries[f"{STAGE_NAME_PREFIX}{i}"].strip())
            except KeyError as e:
                raise FormatError(f"Descriptor has no name for stage position {i}") from e
        return names


def parse_descriptor(path: PathLike) -> DatasetDescriptor:
    """Read an ``.nd`` file into a DatasetDescriptor.

    Every row whose second field is non-empty becomes one entry; single-field
    rows such as ``"EndFile"`` are skipped.

    Raises:
        FormatError: If the file cannot be tokenized as a key/value table.
        OSError: If the file cannot be read.
    """
    path = pathlib.Path(path)
    try:
        text = path.read_text(encoding="utf-8")
        # Rows are ragged; size the table for the widest one.
        width = max([line.count(",") + 1 for line in text.splitlines()] + [2])
        table = pd.read_csv(
            io.StringIO(text),
            header=None,
            names=list(range(width)),
            skipinitialspace=True,
            dtype=str,
            keep_default_na=False,
        ).fillna("")
    except pd.errors.EmptyDataError:
        table = pd.DataFrame(columns=[0, 1])
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise FormatError(f"Cannot tokenize descriptor {path}: {e}") from e

    table = table[table[1] != ""]
    keys = table[0].str.strip()
    duplicated = keys[keys.duplicated()]
    if not duplicated.empty:
        raise FormatError(
            f"Duplicate key {duplicated.iloc[0]!r} in descriptor {path}"
        )
    entries = dict(zip(keys, table[1]))

    if not entries:
        raise FormatError(f"Descriptor {path} contains no key/value pairs")
    logger.debug(f"Parsed {len(entries)} descriptor entries from {path}")
    return DatasetDescriptor(entries, path)


def find_stage_file(descriptor_path: PathLike) -> Optional[pathlib.Path]:
    """The ``.stg`` file written next to ``<prefix>_<n>.nd``, if it exists."""
    descriptor_path = pathlib.Path(descriptor_path)
    m = ND_FILE_RE.fullmatch(descriptor_path.name)
    if m is None:
        return None
    candidate = descriptor_path.parent / f"{m.group(1)}.stg"
    return candidate if candidate.exists() else None


def find_descriptor_file(stage_path: PathLike) -> Optional[pathlib.Path]:
    """The first ``.nd`` file belonging to ``<prefix>_.stg``, if it exists."""
    stage_path = pathlib.Path(stage_path)
    m = STG_FILE_RE.fullmatch(stage_path.name)
    if m is None:
        return None
    candidate = stage_path.parent / f"{m.group(1)}1.nd"
    return candidate if candidate.exists() else None
