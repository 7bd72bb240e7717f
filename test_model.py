"""
Tests for the hurdle estimator and the fitted bundle.
"""

import dataclasses

import numpy as np
import pandas as pd
import pytest
from sklearn.linear_model import LinearRegression, LogisticRegression

from abundance.errors import InsufficientData, SchemaMismatch
from abundance.model import FittedBundle, HurdleConfig, HurdleEstimator, Stage, balanced_resample

from conftest import FAST_CONFIG, FEATURES, make_training_records


def test_fit_produces_ready_bundle(fitted):
    estimator, bundle = fitted

    assert estimator.stage == Stage.READY
    assert 0 <= bundle.threshold <= 1
    assert bundle.schema.columns == tuple(FEATURES)
    assert bundle.metadata["model_type"] == "rf"


def test_predictions_are_consistent(fitted, training_records):
    _, bundle = fitted
    predicted = bundle.predict(training_records)

    assert list(predicted.columns) == ["encounter_rate", "count", "abundance", "in_range"]
    assert predicted.index.equals(training_records.index)
    assert predicted["encounter_rate"].between(0, 1).all()
    assert (predicted["count"] >= 0).all()
    np.testing.assert_allclose(predicted["abundance"], predicted["encounter_rate"] * predicted["count"])
    np.testing.assert_array_equal(predicted["in_range"], predicted["encounter_rate"] > bundle.threshold)


def test_encounter_rate_follows_covariate(fitted):
    _, bundle = fitted
    low = bundle.predict_one({"x1": -1.8, "x2": 0.5, "noise": 0.0})
    high = bundle.predict_one({"x1": 1.8, "x2": 0.5, "noise": 0.0})
    assert high[0] > low[0]


def test_mask_by_range_zeroes_out_of_range_abundance(fitted, training_records):
    _, bundle = fitted
    # nothing can exceed a threshold of 1
    out_of_range = dataclasses.replace(bundle, threshold=1.0)

    masked = out_of_range.predict(training_records, mask_by_range=True)
    unmasked = out_of_range.predict(training_records, mask_by_range=False)

    assert not masked["in_range"].any()
    assert (masked["abundance"] == 0).all()
    np.testing.assert_allclose(unmasked["abundance"], unmasked["encounter_rate"] * unmasked["count"])


def test_predict_one_returns_tuple(fitted):
    _, bundle = fitted
    encounter_rate, count, abundance, in_range = bundle.predict_one({"x1": 0.5, "x2": 0.2, "noise": 1.0})

    assert 0 <= encounter_rate <= 1
    assert abundance == pytest.approx(encounter_rate * count)
    assert isinstance(in_range, bool)


def test_missing_feature_is_schema_mismatch(fitted, training_records):
    _, bundle = fitted
    with pytest.raises(SchemaMismatch):
        bundle.predict(training_records.drop(columns="x2"))
    with pytest.raises(SchemaMismatch):
        bundle.predict_one({"x1": 0.5, "noise": 1.0})


def test_non_numeric_feature_is_schema_mismatch(fitted, training_records):
    _, bundle = fitted
    with pytest.raises(SchemaMismatch):
        bundle.predict(training_records.assign(x1="high"))


def test_count_model_skips_presence_only_records(fitted, training_records):
    estimator, _ = fitted
    counts = training_records["observation_count"].to_numpy()
    rate = estimator.train_encounter_rate

    expected = ~np.isnan(counts) & ((counts > 0) | (rate > estimator.threshold))
    assert estimator.train_stats["n_count"] == int(expected.sum())


def test_no_detections_is_insufficient_data():
    records = make_training_records().assign(species_observed=False)
    with pytest.raises(InsufficientData):
        HurdleEstimator(FAST_CONFIG).fit_encounter(records, FEATURES)


def test_single_detection_is_insufficient_data():
    records = make_training_records().assign(species_observed=False)
    records.loc[0, "species_observed"] = True
    with pytest.raises(InsufficientData):
        HurdleEstimator(FAST_CONFIG).fit_encounter(records, FEATURES)


def test_no_counts_is_insufficient_data(training_records):
    estimator = HurdleEstimator(FAST_CONFIG)
    estimator.fit_encounter(training_records, FEATURES)
    estimator.fit_calibration()
    estimator.select_threshold()

    with pytest.raises(InsufficientData):
        estimator.fit_count(training_records.assign(observation_count=np.nan))
    assert estimator.stage == Stage.THRESHOLDED
    with pytest.raises(RuntimeError):
        estimator.bundle()


def test_stages_must_run_in_order(training_records):
    estimator = HurdleEstimator(FAST_CONFIG)
    with pytest.raises(RuntimeError):
        estimator.fit_calibration()
    with pytest.raises(RuntimeError):
        estimator.select_threshold()
    with pytest.raises(RuntimeError):
        estimator.fit_count(training_records)

    estimator.fit_encounter(training_records, FEATURES)
    with pytest.raises(RuntimeError):
        estimator.select_threshold()
    with pytest.raises(RuntimeError):
        estimator.fit_encounter(training_records, FEATURES)


def test_ready_estimator_cannot_refit(fitted, training_records):
    estimator, _ = fitted
    with pytest.raises(RuntimeError):
        estimator.fit_encounter(training_records, FEATURES)


def test_balanced_resample_matches_prevalence():
    y = np.array([1] * 20 + [0] * 80)
    idx = balanced_resample(y, np.random.default_rng(0))

    assert len(idx) == 40
    assert y[idx].sum() == 20


def test_custom_models_can_be_substituted(training_records):
    estimator = HurdleEstimator(
        HurdleConfig(cv_folds=3, seed=0),
        classifier=LogisticRegression(max_iter=1000),
        regressor=LinearRegression(),
    )
    bundle = estimator.fit(training_records, FEATURES)

    assert isinstance(bundle.encounter_model, LogisticRegression)
    assert bundle.predict(training_records)["encounter_rate"].between(0, 1).all()
    with pytest.raises(AttributeError):
        bundle.feature_importance()


def test_feature_importance(fitted):
    _, bundle = fitted
    encounter = bundle.feature_importance("encounter")
    count = bundle.feature_importance("count")

    assert encounter["feature"].iloc[0] == "x1"
    assert encounter["importance"].is_monotonic_decreasing
    assert set(count["feature"]) == set(FEATURES) | {"encounter_rate"}


def test_save_and_load(fitted, training_records, tmp_path):
    _, bundle = fitted
    path = tmp_path / "bundle.joblib"
    bundle.save(path)

    loaded = FittedBundle.load(path)
    assert loaded.threshold == bundle.threshold
    bundle.schema.check(loaded.schema)
    pd.testing.assert_frame_equal(loaded.predict(training_records), bundle.predict(training_records))


def test_gbm_model_type(training_records):
    bundle = HurdleEstimator(HurdleConfig(model_type="gbm", n_estimators=20, cv_folds=3, seed=0)).fit(
        training_records, FEATURES
    )
    assert bundle.predict(training_records)["count"].ge(0).all()


def test_unknown_model_type():
    with pytest.raises(ValueError):
        HurdleConfig(model_type="svm")


def test_bundle_cannot_be_modified(fitted):
    _, bundle = fitted
    with pytest.raises(TypeError):
        bundle.metadata["model_type"] = "gbm"
    with pytest.raises(RuntimeError):
        bundle.calibration.fit(np.array([0.2, 0.8]), np.array([0, 1]))
    with pytest.raises(dataclasses.FrozenInstanceError):
        bundle.threshold = 0.5
    assert bundle.metadata["model_type"] == "rf"
