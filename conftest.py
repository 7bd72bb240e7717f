"""
Synthetic eBird-like records shared by the test modules.
"""

import numpy as np
import pandas as pd
import pytest
from pyproj import Transformer

from abundance.model import HurdleConfig, HurdleEstimator

TO_LONLAT = Transformer.from_crs("EPSG:6933", "EPSG:4326", always_xy=True)

# Mondays of ISO weeks 2-5 of 2021
WEEK_START_DAYS = np.array([11, 18, 25, 32])

FAST_CONFIG = HurdleConfig(n_estimators=25, cv_folds=3, seed=0)
FEATURES = ["x1", "x2", "noise"]


def make_gridded_records(n=1000, n_cells=10, prevalence=0.5, seed=0, cell_km=3.0):
    """Records spread over n_cells adjacent grid cells and four ISO weeks."""
    rng = np.random.default_rng(seed)
    cell = rng.integers(0, n_cells, n)
    week = rng.integers(0, len(WEEK_START_DAYS), n)

    cell_m = cell_km * 1000
    x = (1000 + cell + rng.uniform(0.1, 0.9, n)) * cell_m
    y = (1500 + rng.uniform(0.1, 0.9, n)) * cell_m
    lon, lat = TO_LONLAT.transform(x, y)

    return pd.DataFrame({
        "checklist_id": [f"S{i:05d}" for i in range(n)],
        "longitude": lon,
        "latitude": lat,
        "year": 2021,
        "day_of_year": WEEK_START_DAYS[week] + rng.integers(0, 7, n),
        "species_observed": rng.random(n) < prevalence,
        "cell": cell,
        "week": week,
    })


def make_training_records(n=600, seed=0):
    """Records whose encounter rate rises with x1 and count rises with x2."""
    rng = np.random.default_rng(seed)
    x1 = rng.uniform(-2, 2, n)
    x2 = rng.uniform(0, 1, n)
    noise = rng.normal(size=n)

    p = 1 / (1 + np.exp(-(2.5 * x1 - 0.5)))
    detected = rng.random(n) < p
    count = np.where(detected, 1 + rng.poisson(2 + 8 * x2), 0).astype(float)

    # a few presence-only detections
    presence_only = detected & (rng.random(n) < 0.05)
    count[presence_only] = np.nan

    return pd.DataFrame({
        "checklist_id": [f"S{i:05d}" for i in range(n)],
        "x1": x1,
        "x2": x2,
        "noise": noise,
        "species_observed": detected,
        "observation_count": count,
    })


@pytest.fixture
def gridded_records():
    return make_gridded_records()


@pytest.fixture(scope="session")
def training_records():
    return make_training_records()


@pytest.fixture(scope="session")
def fitted(training_records):
    """A fitted estimator and its bundle."""
    estimator = HurdleEstimator(FAST_CONFIG)
    bundle = estimator.fit(training_records, FEATURES)
    return estimator, bundle
