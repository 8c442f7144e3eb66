"""Exception taxonomy for the fidelity engine.

Load and configuration errors abort the whole call.  Region errors are
isolated by the segmenter and turned into "region skipped" notes.
"""


class FidelityError(Exception):
    """Base class for all engine errors."""


class ImageLoadError(FidelityError):
    """An image is unreadable, corrupt or has zero size."""


class DimensionMismatchError(FidelityError):
    """Two images that must share dimensions do not."""


class InvalidRegionError(FidelityError):
    """A region box has zero area or lies outside the image."""


class ConfigurationError(FidelityError):
    """Weights or thresholds are malformed."""


class OperationCancelledError(FidelityError):
    """The caller cancelled the operation through its token."""


class TerminalStateError(FidelityError):
    """A score was recorded after the iteration loop already finished."""
