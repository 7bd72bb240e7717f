"""
Case-controlled spatiotemporal grid sampling.

eBird checklists are clustered near cities and roads, in recent years and on
weekends, and detections of most species are rare. Grid sampling reduces both
biases: records are binned into equal-area grid cells and weeks, and a single
detection and a single non-detection are drawn from every bin.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import numpy as np
import pandas as pd
from pandas.api.types import is_bool_dtype
from pyproj import Transformer

from .errors import InvalidInput

logger = logging.getLogger(__name__)

# EASE-Grid 2.0 global, cylindrical equal-area
EQUAL_AREA_CRS = "EPSG:6933"
DEFAULT_CELL_SIZE_KM = 3.0

POSITION_FIELDS = ("longitude", "latitude")
TEMPORAL_FIELDS = ("year", "day_of_year")

STRATUM_FIELDS = ["cell_x", "cell_y", "year", "week"]


class Sampler(Protocol):
    """Strategy for drawing a debiased subsample of detection/non-detection records."""

    def sample(
        self,
        records: pd.DataFrame,
        detection_field: str,
        split_field: Optional[str] = None,
    ) -> pd.DataFrame:
        ...


def valid_coordinates(records: pd.DataFrame) -> np.ndarray:
    """Boolean mask of records with finite, in-range longitude and latitude."""
    lon = pd.to_numeric(records["longitude"], errors="coerce").to_numpy(dtype=float)
    lat = pd.to_numeric(records["latitude"], errors="coerce").to_numpy(dtype=float)
    return (
        np.isfinite(lon) & np.isfinite(lat)
        & (np.abs(lon) <= 180) & (np.abs(lat) <= 90)
    )


def assign_cells(
    records: pd.DataFrame,
    cell_size_km: float = DEFAULT_CELL_SIZE_KM,
    crs: str = EQUAL_AREA_CRS,
) -> pd.DataFrame:
    """
    Assign each record to a square cell of an equal-area grid.

    Args:
        records: Records with longitude and latitude (WGS84)
        cell_size_km: Grid cell width in kilometres
        crs: Equal-area projected CRS the grid is defined in

    Returns:
        DataFrame with integer cell_x, cell_y columns, same index as records
    """
    transformer = Transformer.from_crs("EPSG:4326", crs, always_xy=True)
    x, y = transformer.transform(
        records["longitude"].to_numpy(dtype=float),
        records["latitude"].to_numpy(dtype=float),
    )
    cell_m = cell_size_km * 1000.0
    return pd.DataFrame({
        "cell_x": np.floor_divide(np.asarray(x), cell_m).astype(np.int64),
        "cell_y": np.floor_divide(np.asarray(y), cell_m).astype(np.int64),
    }, index=records.index)


def assign_weeks(records: pd.DataFrame) -> pd.DataFrame:
    """
    Assign each record to a (year, ISO week) temporal bin.

    Args:
        records: Records with integer year and day_of_year (1-366)

    Returns:
        DataFrame with year and week columns, same index as records
    """
    years = records["year"].astype(np.int64)
    days = records["day_of_year"].astype(np.int64)

    jan_first = pd.to_datetime(pd.DataFrame({"year": years, "month": 1, "day": 1}))
    dates = jan_first + pd.to_timedelta(days - 1, unit="D")

    return pd.DataFrame({
        "year": years.to_numpy(),
        "week": dates.dt.isocalendar().week.astype(np.int64).to_numpy(),
    }, index=records.index)


def _check_records(records: pd.DataFrame, detection_field: str, split_field: Optional[str]) -> None:
    required = list(POSITION_FIELDS) + list(TEMPORAL_FIELDS) + [detection_field]
    if split_field is not None:
        required.append(split_field)
    missing = [c for c in required if c not in records.columns]
    if missing:
        raise InvalidInput(f"Records are missing required columns: {missing}")

    for field in TEMPORAL_FIELDS:
        values = pd.to_numeric(records[field], errors="coerce")
        if values.isna().any():
            raise InvalidInput(f"{int(values.isna().sum())} records have a missing or non-numeric '{field}'")
    days = pd.to_numeric(records["day_of_year"])
    if ((days < 1) | (days > 366)).any():
        raise InvalidInput("day_of_year must be between 1 and 366")
    years = pd.to_numeric(records["year"]).astype(np.int64)
    leap = (years % 4 == 0) & ((years % 100 != 0) | (years % 400 == 0))
    if ((days == 366) & ~leap).any():
        raise InvalidInput("day_of_year 366 is only valid in leap years")

    flags = records[detection_field]
    binary = is_bool_dtype(flags) or flags.isin([0, 1]).all()
    if flags.isna().any() or not binary:
        raise InvalidInput(f"'{detection_field}' must be a binary detection flag without missing values")

    if split_field is not None and records[split_field].isna().any():
        raise InvalidInput(f"'{split_field}' has missing split labels")


@dataclass(frozen=True)
class GridSampler:
    """
    Equal-area grid sampler stratified by cell, week, split and detection.

    Attributes:
        cell_size_km: Grid cell width in kilometres
        crs: Equal-area CRS the grid is laid out in
        seed: Seed for the per-stratum random draw
    """

    cell_size_km: float = DEFAULT_CELL_SIZE_KM
    crs: str = EQUAL_AREA_CRS
    seed: Optional[int] = None

    def __post_init__(self):
        if not self.cell_size_km > 0:
            raise InvalidInput(f"cell_size_km must be positive, got {self.cell_size_km}")

    def strata(self, records: pd.DataFrame) -> pd.DataFrame:
        """Spatial cell and temporal bin of every record."""
        return assign_cells(records, self.cell_size_km, self.crs).join(assign_weeks(records))

    def sample(
        self,
        records: pd.DataFrame,
        detection_field: str,
        split_field: Optional[str] = None,
    ) -> pd.DataFrame:
        """
        Draw one detection and one non-detection per stratum.

        Args:
            records: Detection/non-detection records
            detection_field: Boolean detection flag column
            split_field: Optional train/test label column to stratify by

        Returns:
            Subset of records (input order and columns preserved)
        """
        _check_records(records, detection_field, split_field)

        valid = valid_coordinates(records)
        n_invalid = int((~valid).sum())
        if n_invalid:
            logger.warning(f"Dropped {n_invalid:,} records with missing or invalid coordinates")

        positions = np.flatnonzero(valid)
        candidates = records.iloc[positions]

        keys = self.strata(candidates).reset_index(drop=True)
        keys["_flag"] = candidates[detection_field].astype(bool).to_numpy()
        group_fields = STRATUM_FIELDS + ["_flag"]
        if split_field is not None:
            keys["_split"] = candidates[split_field].to_numpy()
            group_fields.append("_split")
        keys["_position"] = positions

        # A random permutation followed by first-per-group is a uniform draw within each group
        rng = np.random.default_rng(self.seed)
        shuffled = keys.iloc[rng.permutation(len(keys))]
        chosen = shuffled.drop_duplicates(subset=group_fields, keep="first")["_position"]

        sampled = records.iloc[np.sort(chosen.to_numpy())].copy()

        n_detections = int(sampled[detection_field].astype(bool).sum())
        logger.info(
            f"Grid sampling kept {len(sampled):,} of {len(records):,} records "
            f"({n_detections:,} detections) in {len(keys.drop_duplicates(subset=STRATUM_FIELDS)):,} cell-weeks"
        )
        return sampled


def debias(
    records: pd.DataFrame,
    detection_flag_field: str,
    split_field: Optional[str] = None,
    cell_size_km: float = DEFAULT_CELL_SIZE_KM,
    grid: str = "equal-area",
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Spatiotemporally subsample records with case-controlled grid sampling.

    Args:
        records: Detection/non-detection records with longitude, latitude,
            year and day_of_year
        detection_flag_field: Boolean detection flag column
        split_field: Optional train/test label column; strata never mix splits
        cell_size_km: Grid cell width in kilometres
        grid: Grid type; only "equal-area" is supported
        seed: Random seed; the same seed gives the same subsample

    Returns:
        Subset of records with at most one detection and one non-detection
        per (cell, week, split) stratum
    """
    if grid != "equal-area":
        raise InvalidInput(f"Unsupported grid type: {grid}. Only 'equal-area' is available")

    sampler = GridSampler(cell_size_km=cell_size_km, seed=seed)
    return sampler.sample(records, detection_flag_field, split_field=split_field)
