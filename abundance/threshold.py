"""
Threshold selection on the MCC-F1 curve.

For every candidate cutoff the Matthews correlation coefficient (rescaled to
[0, 1]) and the F1 score are computed; the best cutoff is the one closest to
the ideal point where both equal 1.
"""

import numpy as np
import pandas as pd

from .errors import InvalidInput, InsufficientData


def _as_inputs(probabilities, observed) -> tuple[np.ndarray, np.ndarray]:
    p = np.asarray(probabilities, dtype=float)
    y = np.asarray(observed)

    if p.ndim != 1 or p.shape != y.shape:
        raise InvalidInput("Probabilities and observations must be 1-D arrays of equal length")
    if np.isnan(p).any():
        raise InvalidInput("Probabilities contain missing values")

    y = y.astype(bool)
    if y.all() or not y.any():
        raise InsufficientData("Threshold selection needs both detections and non-detections")
    return p, y


def mcc_f1_curve(probabilities: np.ndarray, observed: np.ndarray) -> pd.DataFrame:
    """
    MCC and F1 for every distinct probability used as a cutoff.

    A record is called a detection when its probability is strictly greater
    than the cutoff.

    Args:
        probabilities: Predicted encounter probabilities
        observed: Observed detections

    Returns:
        DataFrame with threshold, mcc, f1 and distance columns, sorted by threshold
    """
    p, y = _as_inputs(probabilities, observed)

    thresholds = np.unique(p)
    pos = np.sort(p[y])
    neg = np.sort(p[~y])

    tp = (len(pos) - np.searchsorted(pos, thresholds, side="right")).astype(float)
    fp = (len(neg) - np.searchsorted(neg, thresholds, side="right")).astype(float)
    fn = len(pos) - tp
    tn = len(neg) - fp

    denom = np.sqrt((tp + fp) * (tp + fn) * (tn + fp) * (tn + fn))
    with np.errstate(divide="ignore", invalid="ignore"):
        mcc = np.where(denom > 0, (tp * tn - fp * fn) / denom, 0.0)
        f1 = np.where(2 * tp + fp + fn > 0, 2 * tp / (2 * tp + fp + fn), 0.0)

    mcc_unit = (mcc + 1) / 2
    distance = np.sqrt((mcc_unit - 1) ** 2 + (f1 - 1) ** 2)

    return pd.DataFrame({
        "threshold": thresholds,
        "mcc": mcc,
        "f1": f1,
        "distance": distance,
    })


def select_threshold(probabilities: np.ndarray, observed: np.ndarray) -> float:
    """
    Pick the cutoff closest to perfect MCC and F1.

    Ties go to the lowest threshold, favouring sensitivity.

    Args:
        probabilities: Calibrated or raw predicted encounter probabilities
        observed: Observed detections

    Returns:
        Probability threshold
    """
    curve = mcc_f1_curve(probabilities, observed)
    distance = curve["distance"].to_numpy()
    best = np.flatnonzero(distance == distance.min())[0]
    return float(curve["threshold"].iloc[best])


def mcc_f1_metric(probabilities: np.ndarray, observed: np.ndarray) -> float:
    """Summary of the MCC-F1 curve: 1 minus the mean normalised distance to the ideal point."""
    curve = mcc_f1_curve(probabilities, observed)
    return float(1 - curve["distance"].mean() / np.sqrt(2))
