"""
Tests for held-out evaluation metrics.
"""

import numpy as np
import pandas as pd
import pytest

from abundance.errors import InvalidInput
from abundance.metrics import evaluate


@pytest.fixture
def table():
    rate = np.array([0.95, 0.9, 0.8, 0.2, 0.1, 0.7, 0.3])
    count = np.array([6.0, 2.5, 4.0, 1.0, 0.5, 3.0, 1.0])
    return pd.DataFrame({
        "observed": [True, True, True, False, False, True, False],
        "observed_count": [8, 3, 5, 0, 0, np.nan, 0],
        "encounter_rate": rate,
        "count": count,
        "abundance": rate * count,
        "in_range": [True, True, True, False, False, True, False],
    })


def test_perfect_binary_call(table):
    metrics = evaluate(table)

    assert metrics["sensitivity"] == 1
    assert metrics["specificity"] == 1
    assert metrics["kappa"] == pytest.approx(1)
    assert metrics["mcc"] == pytest.approx(1)
    assert metrics["f1"] == pytest.approx(1)
    assert metrics["pr_auc"] == pytest.approx(1)


def test_encounter_rate_error(table):
    metrics = evaluate(table)
    observed = table["observed"].astype(float)
    assert metrics["mse"] == pytest.approx(np.mean((observed - table["encounter_rate"]) ** 2))
    # every in-range record is a detection, so the rank correlation is undefined
    assert np.isnan(metrics["spearman"])


def test_count_metrics_use_in_range_records_with_counts(table):
    metrics = evaluate(table)

    assert metrics["n"] == 7
    assert metrics["n_in_range"] == 4
    assert metrics["n_count"] == 3
    # observed 8, 3, 5 against predicted 6, 2.5, 4
    assert metrics["count_spearman"] == pytest.approx(1)
    assert metrics["count_log_pearson"] > 0.9
    assert metrics["abundance_spearman"] == pytest.approx(1)


def test_inverted_call(table):
    flipped = table.assign(in_range=~table["in_range"])
    metrics = evaluate(flipped)

    assert metrics["sensitivity"] == 0
    assert metrics["specificity"] == 0
    assert metrics["mcc"] == pytest.approx(-1)


def test_single_class_metrics_are_nan(table):
    metrics = evaluate(table.assign(observed=True))
    assert np.isnan(metrics["pr_auc"])
    assert np.isnan(metrics["specificity"])


def test_missing_columns_raise(table):
    with pytest.raises(InvalidInput):
        evaluate(table.drop(columns="abundance"))
