"""
Tests for probability calibration and MCC-F1 threshold selection.
"""

import numpy as np
import pytest

from abundance.calibration import Calibration, fit_calibration
from abundance.errors import CalibrationViolation, InsufficientData, InvalidInput
from abundance.threshold import mcc_f1_curve, mcc_f1_metric, select_threshold


@pytest.fixture
def scored():
    rng = np.random.default_rng(7)
    p = rng.uniform(0.01, 0.99, 400)
    y = rng.random(400) < p ** 2
    return p, y


def test_calibration_is_non_decreasing(scored):
    p, y = scored
    calibration = fit_calibration(p, y)

    for grid in (np.linspace(0, 1, 1001), np.sort(p), np.geomspace(1e-6, 1, 50)):
        assert np.all(np.diff(calibration.apply(grid)) >= 0)


def test_calibration_output_is_clamped(scored):
    p, y = scored
    calibration = fit_calibration(p, y)

    extremes = calibration.apply(np.array([-0.5, 0.0, 1.0, 1.5]))
    assert np.all((extremes >= 0) & (extremes <= 1))


def test_decreasing_curve_is_rejected(scored):
    p, _ = scored
    calibration = Calibration()
    calibration._model.set_params(increasing=False)

    with pytest.raises(CalibrationViolation):
        calibration.fit(p, p < 0.5)
    assert not calibration.is_fitted


def test_calibration_requires_fit():
    with pytest.raises(RuntimeError):
        Calibration().apply(np.array([0.5]))


def test_calibration_rejects_mismatched_inputs():
    with pytest.raises(InvalidInput):
        fit_calibration(np.array([0.1, 0.2, 0.3]), np.array([0, 1]))


def test_perfect_separation_picks_lowest_separating_cutoff():
    p = np.array([0.1, 0.2, 0.6, 0.7])
    y = np.array([0, 0, 1, 1])
    assert select_threshold(p, y) == 0.2


def test_threshold_is_one_of_the_probabilities(scored):
    p, y = scored
    assert select_threshold(p, y) in set(p)


def test_threshold_invariant_to_monotone_rescaling(scored):
    p, y = scored
    threshold = select_threshold(p, y)

    for transform in (np.sqrt, np.log, lambda v: 3 * v ** 3 + 1):
        assert select_threshold(transform(p), y) == pytest.approx(transform(threshold))


def test_curve_scores(scored):
    p, y = scored
    curve = mcc_f1_curve(p, y)

    assert list(curve.columns) == ["threshold", "mcc", "f1", "distance"]
    assert curve["threshold"].is_monotonic_increasing
    assert curve["mcc"].between(-1, 1).all()
    assert curve["f1"].between(0, 1).all()
    assert 0 < mcc_f1_metric(p, y) < 1


def test_threshold_needs_both_classes():
    with pytest.raises(InsufficientData):
        select_threshold(np.array([0.2, 0.4, 0.6]), np.array([0, 0, 0]))


def test_fitted_calibration_cannot_be_refitted(scored):
    p, y = scored
    calibration = fit_calibration(p, y)
    before = calibration.apply(p)

    with pytest.raises(RuntimeError):
        calibration.fit(1 - p, y)
    np.testing.assert_array_equal(calibration.apply(p), before)
