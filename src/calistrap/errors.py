"""
Error types raised by the calibration and bootstrap components.

The robust estimator never raises for an estimation failure; it returns a
result whose ``found`` flag is False. Everything above it raises one of these.
"""


class CalibrationError(Exception):
    """Base class for every failure reported by calistrap."""


class InsufficientDataError(CalibrationError):
    """Too few views, boards, homographies or correspondences."""


class DegenerateGeometryError(CalibrationError):
    """Input geometry does not determine a unique solution."""


class NoModelFoundError(CalibrationError):
    """No robust model or acceptable pair could be found."""


class RefinementFailedError(CalibrationError):
    """The refinement collaborator reported failure."""


class UnsupportedCameraError(CalibrationError):
    """A camera model variant reached an operation that cannot handle it."""
