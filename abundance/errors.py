"""
Exceptions raised by the sampling and modeling stages.
"""


class AbundanceError(Exception):
    """Base class for all errors raised by this package."""


class InvalidInput(AbundanceError, ValueError):
    """A record set is missing a required field or holds malformed values."""


class InsufficientData(AbundanceError, ValueError):
    """Not enough data to fit a stage (e.g. a single class, empty count subset)."""


class SchemaMismatch(AbundanceError, ValueError):
    """Prediction-time features disagree with the features used at fit time."""


class CalibrationViolation(AbundanceError, RuntimeError):
    """A fitted calibration curve decreases somewhere on its domain."""
