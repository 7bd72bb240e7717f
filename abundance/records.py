"""
Observation record preparation: zero-filling, train/test split and feature selection.

eBird checklists and observations are stored as two tables. For a single
species the observations are joined onto the complete checklists, giving one
detection/non-detection record per checklist.
"""

import logging
from pathlib import Path
from typing import Iterable, Optional

import numpy as np
import pandas as pd
from pandas.api.types import is_numeric_dtype

from .errors import InvalidInput

logger = logging.getLogger(__name__)

DETECTION_FIELD = "species_observed"
COUNT_FIELD = "observation_count"
SPLIT_FIELD = "type"
ID_FIELD = "checklist_id"

# Columns that are never used as model features
NON_FEATURE_COLUMNS = {
    "checklist_id",
    "observer_id",
    "loc_id",
    "species_code",
    "species_observed",
    "observation_count",
    "only_presence_reported",
    "type",
}

OBSERVATION_COLUMNS = ("checklist_id", "species_code", "obs_count")


def read_checklists(path: str | Path) -> pd.DataFrame:
    """Read a parquet file of complete eBird checklists."""
    checklists = pd.read_parquet(path)
    logger.info(f"Loaded {len(checklists):,} checklists from {path}")
    return checklists


def read_observations(path: str | Path) -> pd.DataFrame:
    """Read a parquet file of eBird species observations."""
    observations = pd.read_parquet(path)
    logger.info(f"Loaded {len(observations):,} observations from {path}")
    return observations


def zero_fill(
    checklists: pd.DataFrame,
    observations: pd.DataFrame,
    species_code: str,
) -> pd.DataFrame:
    """
    Produce detection/non-detection records for one species.

    Every checklist where the species was not reported becomes an explicit
    non-detection with a count of zero. Detections reported as presence only
    ("X" instead of a number) keep a missing count.

    Args:
        checklists: One row per complete checklist, keyed by checklist_id
        observations: Species observations with checklist_id, species_code,
            obs_count and optionally only_presence_reported
        species_code: eBird species code (e.g. "chutap1")

    Returns:
        Copy of checklists with species_observed and observation_count columns
    """
    if ID_FIELD not in checklists.columns:
        raise InvalidInput(f"Checklists are missing the '{ID_FIELD}' column")
    missing = [c for c in OBSERVATION_COLUMNS if c not in observations.columns]
    if missing:
        raise InvalidInput(f"Observations are missing columns: {missing}")
    if checklists[ID_FIELD].duplicated().any():
        raise InvalidInput("Checklists contain duplicate checklist_id values")

    species_obs = observations.loc[observations["species_code"] == species_code].copy()
    if species_obs[ID_FIELD].duplicated().any():
        raise InvalidInput(f"Multiple observations of {species_code} on the same checklist")

    counts = pd.to_numeric(species_obs["obs_count"], errors="coerce")
    if "only_presence_reported" in species_obs.columns:
        presence_only = species_obs["only_presence_reported"].fillna(False).astype(bool)
        counts = counts.mask(presence_only)
    species_obs = pd.DataFrame({
        ID_FIELD: species_obs[ID_FIELD].to_numpy(),
        "_count": counts.to_numpy(),
    })

    merged = checklists.merge(species_obs, on=ID_FIELD, how="left", indicator=True)
    detected = (merged["_merge"] == "both").to_numpy()

    records = checklists.copy()
    records[DETECTION_FIELD] = detected
    records[COUNT_FIELD] = np.where(detected, merged["_count"].to_numpy(dtype=float), 0.0)

    n_detected = int(detected.sum())
    n_presence_only = int((detected & np.isnan(records[COUNT_FIELD].to_numpy())).sum())
    if n_detected == 0:
        logger.warning(f"No detections of {species_code} in {len(records):,} checklists")
    logger.info(
        f"Zero-filled {species_code}: {n_detected:,} detections "
        f"({n_presence_only:,} presence only) in {len(records):,} checklists"
    )

    return records


def split_train_test(
    records: pd.DataFrame,
    test_fraction: float = 0.2,
    seed: Optional[int] = None,
    split_field: str = SPLIT_FIELD,
) -> pd.DataFrame:
    """
    Randomly label records as "train" or "test".

    Args:
        records: Observation records
        test_fraction: Probability of a record being held out for testing
        seed: Random seed for reproducibility
        split_field: Name of the label column to add

    Returns:
        Copy of records with the split label column
    """
    if not 0 < test_fraction < 1:
        raise InvalidInput(f"test_fraction must be in (0, 1), got {test_fraction}")
    if split_field in records.columns:
        raise InvalidInput(f"Records already carry a '{split_field}' split label")

    rng = np.random.default_rng(seed)
    is_test = rng.random(len(records)) < test_fraction

    out = records.copy()
    out[split_field] = np.where(is_test, "test", "train")
    logger.info(f"Split {len(out):,} records: {int((~is_test).sum()):,} train, {int(is_test.sum()):,} test")
    return out


def select_feature_columns(
    records: pd.DataFrame,
    exclude: Iterable[str] = NON_FEATURE_COLUMNS,
) -> list[str]:
    """All numeric columns other than identifiers, responses and split labels."""
    exclude = set(exclude)
    return [c for c in records.columns if c not in exclude and is_numeric_dtype(records[c])]


def drop_incomplete(records: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    """Drop records with missing values in any of the given columns."""
    columns = list(columns)
    complete = records.dropna(subset=columns)
    n_dropped = len(records) - len(complete)
    if n_dropped:
        logger.warning(f"Dropped {n_dropped:,} records with missing feature values")
    return complete
