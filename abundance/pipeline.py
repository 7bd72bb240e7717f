"""
End-to-end relative abundance workflow: split, grid sample, fit, evaluate.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd

from .errors import InsufficientData
from .metrics import evaluate
from .model import FittedBundle, HurdleConfig, HurdleEstimator
from .predict import prediction_table
from .records import (
    COUNT_FIELD,
    DETECTION_FIELD,
    ID_FIELD,
    NON_FEATURE_COLUMNS,
    SPLIT_FIELD,
    drop_incomplete,
    select_feature_columns,
    split_train_test,
)
from .sampling import DEFAULT_CELL_SIZE_KM, debias

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineConfig:
    """
    Settings for a full pipeline run.

    The seed drives the train/test split and the grid sampling draw; the
    model seed lives in `hurdle`.
    """

    id_field: str = ID_FIELD
    detection_field: str = DETECTION_FIELD
    count_field: str = COUNT_FIELD
    split_field: str = SPLIT_FIELD
    test_fraction: float = 0.2
    cell_size_km: float = DEFAULT_CELL_SIZE_KM
    seed: Optional[int] = 1
    mask_by_range: bool = False
    feature_columns: Optional[tuple[str, ...]] = None
    hurdle: HurdleConfig = field(default_factory=HurdleConfig)


@dataclass
class PipelineResult:
    """Container for pipeline outputs."""

    bundle: FittedBundle
    n_records: int
    n_train: int
    n_test: int
    predictions: pd.DataFrame
    metrics: dict

    def save(self, output_dir: Path) -> dict[str, Path]:
        """Save the bundle, test predictions, metrics and feature importance."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        paths = {}

        bundle_path = output_dir / "bundle.joblib"
        self.bundle.save(bundle_path)
        paths["bundle"] = bundle_path

        predictions_path = output_dir / "predictions.csv"
        self.predictions.to_csv(predictions_path, index=False)
        paths["predictions"] = predictions_path
        logger.info(f"Saved {len(self.predictions):,} test predictions: {predictions_path}")

        metrics_path = output_dir / "metrics.json"
        summary = {
            "n_records": self.n_records,
            "n_train": self.n_train,
            "n_test": self.n_test,
            "threshold": self.bundle.threshold,
            "schema": self.bundle.schema.to_dict(),
            "metrics": self.metrics,
        }
        with open(metrics_path, "w") as f:
            json.dump(summary, f, indent=2)
        paths["metrics"] = metrics_path
        logger.info(f"Saved metrics: {metrics_path}")

        try:
            importance = self.bundle.feature_importance("encounter")
        except AttributeError:
            logger.info("Encounter model has no feature importances; skipping")
        else:
            importance_path = output_dir / "feature_importance.csv"
            importance.to_csv(importance_path, index=False)
            paths["feature_importance"] = importance_path

        return paths


def run_pipeline(records: pd.DataFrame, config: Optional[PipelineConfig] = None) -> PipelineResult:
    """
    Fit and evaluate a relative abundance model from zero-filled records.

    Args:
        records: Zero-filled detection/non-detection records with covariates
        config: Pipeline settings (defaults to PipelineConfig())

    Returns:
        PipelineResult with the fitted bundle, test predictions and metrics
    """
    config = config or PipelineConfig()

    logger.info("=" * 60)
    logger.info(f"Relative abundance pipeline: {len(records):,} records")
    logger.info("=" * 60)

    # 1. Train/test split
    logger.info("[1/5] Splitting train and test records...")
    if config.split_field in records.columns:
        logger.info(f"  Using existing '{config.split_field}' labels")
        labelled = records
    else:
        labelled = split_train_test(
            records, test_fraction=config.test_fraction, seed=config.seed, split_field=config.split_field
        )

    # 2. Features
    logger.info("[2/5] Selecting features...")
    if config.feature_columns is not None:
        feature_columns = list(config.feature_columns)
    else:
        feature_columns = select_feature_columns(labelled, exclude=_non_features(config))
    logger.info(f"  {len(feature_columns)} features")
    # Incomplete records are dropped before the draw, never after it
    complete = drop_incomplete(labelled, feature_columns)

    # 3. Grid sampling
    logger.info("[3/5] Spatiotemporal grid sampling...")
    sampled = debias(
        complete,
        config.detection_field,
        split_field=config.split_field,
        cell_size_km=config.cell_size_km,
        seed=config.seed,
    )

    train = sampled.loc[sampled[config.split_field] == "train"]
    test = sampled.loc[sampled[config.split_field] == "test"]
    logger.info(f"  Grid sampled: {len(train):,} train, {len(test):,} test")
    if train.empty:
        raise InsufficientData("No training records remain after grid sampling")

    # 4. Fit hurdle model
    logger.info("[4/5] Fitting hurdle model...")
    estimator = HurdleEstimator(config.hurdle)
    bundle = estimator.fit(
        train, feature_columns, detection_field=config.detection_field, count_field=config.count_field
    )

    # 5. Evaluate
    logger.info("[5/5] Evaluating on test records...")
    predictions = prediction_table(
        bundle,
        test,
        id_field=config.id_field,
        detection_field=config.detection_field,
        count_field=config.count_field,
        mask_by_range=config.mask_by_range,
    )
    if test.empty:
        logger.warning("No test records remain after grid sampling; skipping evaluation")
        metrics = {}
    else:
        metrics = evaluate(predictions)
    for name, value in metrics.items():
        logger.info(f"  {name:24s} {value:.3f}" if isinstance(value, float) else f"  {name:24s} {value}")

    logger.info("=" * 60)
    logger.info("COMPLETE")
    logger.info("=" * 60)

    return PipelineResult(
        bundle=bundle,
        n_records=len(records),
        n_train=len(train),
        n_test=len(test),
        predictions=predictions,
        metrics=metrics,
    )


def _non_features(config: PipelineConfig) -> set[str]:
    return set(NON_FEATURE_COLUMNS) | {
        config.id_field, config.detection_field, config.count_field, config.split_field,
    }
