"""Enumerate the image files that accompany an ``.nd`` descriptor.

VisiView writes one file per (position, timepoint, wavelength). The file name
is the descriptor's base name followed by a suffix for every axis that has
more than one entry::

    <prefix>[_w<w><WaveName>][_s<s>][_t<t>].{stk,tif}

Z-series are stored as ``.stk`` stacks, single planes as ``.tif``.
"""
import logging
import pathlib
from collections.abc import Sequence
from typing import Union

from .descriptor import DatasetDescriptor
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

STACK_EXTENSION = ".stk"
PLANE_EXTENSION = ".tif"

TilePlan = tuple[tuple[pathlib.Path, ...], ...]
"""Files per position, ordered by timepoint then channel (channel fastest)."""


def companion_file_name(
    prefix: str,
    descriptor: DatasetDescriptor,
    position: int,
    timepoint: int,
    channel: int,
) -> str:
    """File name for one 1-based (position, timepoint, channel) triple."""
    n_channels = descriptor.channel_count
    n_positions = descriptor.position_count
    n_timepoints = descriptor.timepoint_count

    name = prefix
    if n_channels > 1:
        name += f"_w{channel}{descriptor.wave_name(channel)}"
    if n_positions > 1:
        name += f"_s{position}"
    if n_timepoints > 1:
        name += f"_t{timepoint}"

    is_stack = descriptor.does_z_series and (
        n_channels == 1 or descriptor.wave_does_z(channel)
    )
    return name + (STACK_EXTENSION if is_stack else PLANE_EXTENSION)


def companion_files(
    descriptor_path: Union[str, pathlib.Path], descriptor: DatasetDescriptor
) -> TilePlan:
    """Build the position-major, time-major, channel-minor file plan.

    File existence is not checked; callers open the files themselves.

    Args:
        descriptor_path: Path to the ``.nd`` file. Its stem is the file prefix
            and its directory holds the companion files.
        descriptor: The parsed descriptor.

    Returns:
        One tuple of paths per stage position.

    Raises:
        FormatError: If a required descriptor entry is missing or malformed.
    """
    descriptor_path = pathlib.Path(descriptor_path)
    parent = descriptor_path.parent
    prefix = descriptor_path.stem

    plan = tuple(
        tuple(
            parent / companion_file_name(prefix, descriptor, s, t, w)
            for t in range(1, descriptor.timepoint_count + 1)
            for w in range(1, descriptor.channel_count + 1)
        )
        for s in range(1, descriptor.position_count + 1)
    )
    validate_tile_plan(plan, descriptor.channel_count, descriptor.timepoint_count)
    logger.debug(
        f"Enumerated {sum(len(p) for p in plan)} companion files "
        f"for {len(plan)} positions of {descriptor_path.name}"
    )
    return plan


def validate_tile_plan(
    plan: Sequence[Sequence[pathlib.Path]], channel_count: int, timepoint_count: int
) -> None:
    """Check every position lists exactly one file per (timepoint, channel)."""
    expected = channel_count * timepoint_count
    for index, files in enumerate(plan, start=1):
        if len(files) != expected:
            raise ConfigurationError(
                f"Position {index} has {len(files)} files, expected {expected} "
                f"({channel_count} channels x {timepoint_count} timepoints)"
            )
