"""
Prediction tables, standardised effort and equal-area rasters.
"""

import logging
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import rasterio
from pyproj import Transformer
from rasterio.transform import Affine, from_origin
from sklearn.inspection import partial_dependence
from tqdm import tqdm

from .errors import InvalidInput, SchemaMismatch
from .model import FittedBundle
from .records import COUNT_FIELD, DETECTION_FIELD, ID_FIELD
from .sampling import DEFAULT_CELL_SIZE_KM, EQUAL_AREA_CRS

logger = logging.getLogger(__name__)

# A standard eBird checklist: a 1 hour, 2 km traveling count by one observer
STANDARD_EFFORT = {
    "is_stationary": 0,
    "effort_hours": 1.0,
    "effort_distance_km": 2.0,
    "effort_speed_kmph": 2.0,
    "number_observers": 1,
}


def standardize_effort(grid: pd.DataFrame, **values) -> pd.DataFrame:
    """
    Set effort covariates on prediction grid records to constant values.

    Args:
        grid: Prediction grid records (environmental covariates per cell)
        **values: Extra or overriding covariate values (e.g. hours_of_day=6.5)

    Returns:
        Copy of grid with the effort columns assigned
    """
    effort = {**STANDARD_EFFORT, **values}
    out = grid.copy()
    for column, value in effort.items():
        out[column] = value
    return out


def peak_covariate_value(
    bundle: FittedBundle,
    records: pd.DataFrame,
    column: str,
    grid_resolution: int = 50,
) -> float:
    """
    Covariate value that maximises the encounter rate.

    Uses the partial dependence of the encounter model on one covariate,
    averaged over the given records (typically the training data). Used to
    pick the time of day at which the species is most detectable.

    Args:
        bundle: Fitted hurdle model
        records: Records to average the partial dependence over
        column: Feature column to vary
        grid_resolution: Number of covariate values evaluated

    Returns:
        Covariate value with the highest partial dependence
    """
    if column not in bundle.schema.columns:
        raise SchemaMismatch(f"'{column}' is not a feature of the fitted model")

    X = bundle.schema.matrix(records)
    result = partial_dependence(
        bundle.encounter_model,
        X,
        [bundle.schema.columns.index(column)],
        grid_resolution=grid_resolution,
        kind="average",
    )
    grid_values = result["grid_values"][0]
    average = result["average"][0]
    peak = float(grid_values[np.argmax(average)])
    logger.info(f"Encounter rate peaks at {column} = {peak:.3f}")
    return peak


def prediction_table(
    bundle: FittedBundle,
    records: pd.DataFrame,
    id_field: str = ID_FIELD,
    detection_field: Optional[str] = DETECTION_FIELD,
    count_field: Optional[str] = COUNT_FIELD,
    mask_by_range: bool = False,
    batch_size: int = 15000,
) -> pd.DataFrame:
    """
    Predict records in batches and assemble the output table.

    Args:
        bundle: Fitted hurdle model
        records: Held-out observations or prediction grid records
        id_field: Identifier column
        detection_field: Observed detection column (None for grid records)
        count_field: Observed count column (None for grid records)
        mask_by_range: Zero abundance where the species is out of range
        batch_size: Records predicted per batch

    Returns:
        DataFrame with id, observed, observed_count, encounter_rate, count,
        abundance and in_range columns, plus longitude/latitude when present
    """
    if id_field not in records.columns:
        raise InvalidInput(f"Records are missing the '{id_field}' column")
    bundle.schema.validate(records)

    batches = []
    for start in tqdm(range(0, len(records), batch_size), desc="Predicting"):
        batch = records.iloc[start:start + batch_size]
        batches.append(bundle.predict(batch, mask_by_range=mask_by_range))
    predicted = pd.concat(batches) if batches else bundle.predict(records, mask_by_range=mask_by_range)

    table = pd.DataFrame({"id": records[id_field].to_numpy()})
    if detection_field is not None and detection_field in records.columns:
        table["observed"] = records[detection_field].astype(bool).to_numpy()
    else:
        table["observed"] = np.nan
    if count_field is not None and count_field in records.columns:
        table["observed_count"] = pd.to_numeric(records[count_field], errors="coerce").to_numpy(dtype=float)
    else:
        table["observed_count"] = np.nan

    for column in ("encounter_rate", "count", "abundance", "in_range"):
        table[column] = predicted[column].to_numpy()
    for column in ("longitude", "latitude"):
        if column in records.columns:
            table[column] = records[column].to_numpy()

    logger.info(f"Predicted {len(table):,} records, {int(table['in_range'].sum()):,} in range")
    return table


def rasterize(
    table: pd.DataFrame,
    value_column: str,
    resolution_km: float = DEFAULT_CELL_SIZE_KM,
    crs: str = EQUAL_AREA_CRS,
) -> tuple[np.ndarray, Affine]:
    """
    Grid point predictions onto an equal-area raster.

    Each cell holds the mean of the values falling inside it; empty cells
    are NaN.

    Args:
        table: Prediction table with longitude and latitude columns
        value_column: Column to rasterize (e.g. "abundance")
        resolution_km: Cell width in kilometres
        crs: Equal-area CRS of the raster

    Returns:
        Tuple of (array, transform); array rows run north to south
    """
    missing = [c for c in ("longitude", "latitude", value_column) if c not in table.columns]
    if missing:
        raise InvalidInput(f"Prediction table is missing columns: {missing}")
    if table.empty:
        raise InvalidInput("Cannot rasterize an empty prediction table")

    transformer = Transformer.from_crs("EPSG:4326", crs, always_xy=True)
    x, y = transformer.transform(
        table["longitude"].to_numpy(dtype=float),
        table["latitude"].to_numpy(dtype=float),
    )
    res = resolution_km * 1000.0
    ix = np.floor_divide(np.asarray(x), res).astype(np.int64)
    iy = np.floor_divide(np.asarray(y), res).astype(np.int64)

    n_cols = int(ix.max() - ix.min() + 1)
    n_rows = int(iy.max() - iy.min() + 1)
    rows = iy.max() - iy
    cols = ix - ix.min()

    values = table[value_column].to_numpy(dtype=float)
    valid = ~np.isnan(values)
    totals = np.zeros((n_rows, n_cols))
    counts = np.zeros((n_rows, n_cols))
    np.add.at(totals, (rows[valid], cols[valid]), values[valid])
    np.add.at(counts, (rows[valid], cols[valid]), 1)

    with np.errstate(invalid="ignore", divide="ignore"):
        array = np.where(counts > 0, totals / counts, np.nan).astype(np.float32)

    transform = from_origin(ix.min() * res, (iy.max() + 1) * res, res, res)
    logger.info(f"Rasterized {value_column}: {n_rows} x {n_cols} cells at {resolution_km} km")
    return array, transform


def save_raster(
    array: np.ndarray,
    transform: Affine,
    path: str | Path,
    crs: str = EQUAL_AREA_CRS,
) -> None:
    """Save a single-band raster as a GeoTIFF."""
    with rasterio.open(
        path, "w",
        driver="GTiff",
        height=array.shape[0],
        width=array.shape[1],
        count=1,
        dtype=np.float32,
        crs=crs,
        transform=transform,
        nodata=np.nan,
        compress="lzw",
    ) as dst:
        dst.write(array.astype(np.float32), 1)
    logger.info(f"Saved raster: {path}")
