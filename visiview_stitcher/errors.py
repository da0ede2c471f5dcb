"""Error types raised while resolving and stitching a VisiView dataset.

Resolution-stage code catches these and reports the dataset as unresolved;
stitching-stage code lets them propagate after marking the run as failed.
Filesystem failures are reported with the builtin ``OSError``.
"""


class StitcherError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(StitcherError):
    """The inputs to a run are inconsistent or malformed."""


class FormatError(ConfigurationError):
    """A descriptor or stage-position file could not be parsed."""


class GeometryError(ConfigurationError):
    """Tile positions, images and channels do not line up."""


class FormatIncompatibilityError(StitcherError):
    """Image data could not be decoded by the format reader."""


class IlluminationFitError(StitcherError):
    """The illumination field model could not be fitted."""
