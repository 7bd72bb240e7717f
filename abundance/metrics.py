"""
Predictive performance metrics for held-out observations.
"""

import numpy as np
import pandas as pd
from scipy.stats import pearsonr, spearmanr
from sklearn.metrics import (
    auc,
    cohen_kappa_score,
    confusion_matrix,
    f1_score,
    matthews_corrcoef,
    mean_squared_error,
    precision_recall_curve,
)

from .errors import InvalidInput

REQUIRED_COLUMNS = ("observed", "observed_count", "encounter_rate", "count", "abundance", "in_range")


def _correlation(x, y, method: str = "spearman") -> float:
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if len(x) < 2 or np.ptp(x) == 0 or np.ptp(y) == 0:
        return float("nan")
    if method == "spearman":
        return float(spearmanr(x, y)[0])
    return float(pearsonr(x, y)[0])


def _ratio(numerator: int, denominator: int) -> float:
    return float(numerator / denominator) if denominator > 0 else float("nan")


def evaluate(predictions: pd.DataFrame) -> dict[str, float]:
    """
    Compare held-out observations with hurdle model predictions.

    Args:
        predictions: Prediction table with observed, observed_count,
            encounter_rate, count, abundance and in_range columns

    Returns:
        Dictionary of metrics; metrics that are undefined for the data
        (e.g. a single class) are NaN
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in predictions.columns]
    if missing:
        raise InvalidInput(f"Prediction table is missing columns: {missing}")
    if predictions["observed"].isna().any():
        raise InvalidInput("Prediction table has missing observed detections")

    observed = predictions["observed"].astype(bool).to_numpy()
    encounter_rate = predictions["encounter_rate"].to_numpy(dtype=float)
    in_range = predictions["in_range"].astype(bool).to_numpy()
    both_classes = 0 < observed.sum() < len(observed)

    # encounter rate
    mse = float(mean_squared_error(observed.astype(float), encounter_rate)) if len(observed) else float("nan")
    spearman = _correlation(encounter_rate[in_range], observed[in_range])

    if both_classes:
        precision, recall, _ = precision_recall_curve(observed, encounter_rate)
        pr_auc = float(auc(recall, precision))
    else:
        pr_auc = float("nan")

    # binary in-range call
    tn, fp, fn, tp = confusion_matrix(observed, in_range, labels=[False, True]).ravel()
    if len(np.unique(np.concatenate([observed, in_range]))) > 1:
        kappa = float(cohen_kappa_score(observed, in_range))
        mcc = float(matthews_corrcoef(observed, in_range))
    else:
        kappa = mcc = float("nan")
    f1 = float(f1_score(observed, in_range, zero_division=0)) if len(observed) else float("nan")

    # count and abundance, in range with a reported count
    observed_count = pd.to_numeric(predictions["observed_count"], errors="coerce").to_numpy(dtype=float)
    has_count = in_range & ~np.isnan(observed_count)
    obs_n = observed_count[has_count]
    count = predictions["count"].to_numpy(dtype=float)[has_count]
    abundance = predictions["abundance"].to_numpy(dtype=float)[has_count]

    return {
        "n": int(len(observed)),
        "n_in_range": int(in_range.sum()),
        "n_count": int(has_count.sum()),
        "mse": mse,
        "spearman": spearman,
        "pr_auc": pr_auc,
        "sensitivity": _ratio(tp, tp + fn),
        "specificity": _ratio(tn, tn + fp),
        "kappa": kappa,
        "mcc": mcc,
        "f1": f1,
        "count_spearman": _correlation(obs_n, count),
        "count_log_pearson": _correlation(np.log1p(obs_n), np.log1p(count), method="pearson"),
        "abundance_spearman": _correlation(obs_n, abundance),
        "abundance_log_pearson": _correlation(np.log1p(obs_n), np.log1p(abundance), method="pearson"),
    }
