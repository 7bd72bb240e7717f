"""
Monotone calibration of encounter rate probabilities.
"""

import logging

import numpy as np
from sklearn.isotonic import IsotonicRegression

from .errors import CalibrationViolation, InvalidInput, InsufficientData

logger = logging.getLogger(__name__)

# Probabilities at which the fitted curve is checked for monotonicity
CHECK_GRID = np.linspace(0.0, 1.0, 201)


class Calibration:
    """
    Non-decreasing mapping from predicted to observed encounter rate.

    Random forest probabilities trained on a class-balanced resample are
    systematically too high for rare species; an isotonic fit of the observed
    detections against out-of-fold predictions realigns them with observed
    frequencies.
    """

    def __init__(self):
        self._model = IsotonicRegression(y_min=0.0, y_max=1.0, increasing=True, out_of_bounds="clip")
        self.is_fitted = False

    def fit(self, predicted: np.ndarray, observed: np.ndarray) -> "Calibration":
        """
        Fit the calibration curve.

        Args:
            predicted: Predicted encounter probabilities
            observed: Observed detections (0/1)

        Returns:
            self
        """
        if self.is_fitted:
            raise RuntimeError("Calibration is already fitted; fit a new Calibration instead")
        predicted = np.asarray(predicted, dtype=float)
        observed = np.asarray(observed, dtype=float)

        if predicted.shape != observed.shape or predicted.ndim != 1:
            raise InvalidInput("Predicted and observed values must be 1-D arrays of equal length")
        if len(predicted) < 2:
            raise InsufficientData("Need at least 2 records to fit a calibration curve")
        if np.isnan(predicted).any() or np.isnan(observed).any():
            raise InvalidInput("Calibration inputs contain missing values")

        self._model.fit(predicted, observed)
        self._check_monotonic()
        self.is_fitted = True

        logger.info(f"Calibration fitted on {len(predicted):,} records "
                    f"({len(self._model.X_thresholds_)} knots)")
        return self

    def _check_monotonic(self) -> None:
        knots = self._model.y_thresholds_
        curve = self._model.predict(CHECK_GRID)
        if np.any(np.diff(knots) < 0) or np.any(np.diff(curve) < 0):
            raise CalibrationViolation("Fitted calibration curve is not monotonically non-decreasing")

    def apply(self, probabilities: np.ndarray) -> np.ndarray:
        """
        Calibrate probabilities.

        Args:
            probabilities: Raw predicted encounter probabilities

        Returns:
            Calibrated probabilities, clamped to [0, 1]
        """
        if not self.is_fitted:
            raise RuntimeError("Calibration has not been fitted yet")
        probabilities = np.asarray(probabilities, dtype=float)
        return np.clip(self._model.predict(probabilities), 0.0, 1.0)

    def curve(self, grid: np.ndarray = CHECK_GRID) -> tuple[np.ndarray, np.ndarray]:
        """Calibration curve evaluated on a probability grid."""
        return grid, self.apply(grid)


def fit_calibration(predicted: np.ndarray, observed: np.ndarray) -> Calibration:
    """Fit a monotone calibration curve of observed detections on predicted probabilities."""
    return Calibration().fit(predicted, observed)
