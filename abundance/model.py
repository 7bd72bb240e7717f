"""
Two-stage hurdle model of encounter rate, count and relative abundance.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal, Mapping, Optional, Protocol, Sequence

import joblib
import numpy as np
import pandas as pd
from sklearn.base import clone
from sklearn.ensemble import (
    GradientBoostingClassifier,
    GradientBoostingRegressor,
    RandomForestClassifier,
    RandomForestRegressor,
)
from sklearn.model_selection import StratifiedKFold

from .calibration import Calibration, fit_calibration
from .errors import InsufficientData, InvalidInput, SchemaMismatch
from .records import COUNT_FIELD, DETECTION_FIELD
from .schema import SCHEMA_VERSION, FeatureSchema
from .threshold import select_threshold

logger = logging.getLogger(__name__)

ModelType = Literal["rf", "gbm"]

ENCOUNTER_RATE_COLUMN = "encounter_rate"


class Classifier(Protocol):
    def fit(self, X: np.ndarray, y: np.ndarray) -> Any: ...
    def predict_proba(self, X: np.ndarray) -> np.ndarray: ...


class Regressor(Protocol):
    def fit(self, X: np.ndarray, y: np.ndarray) -> Any: ...
    def predict(self, X: np.ndarray) -> np.ndarray: ...


CLASSIFIERS = {
    "rf": lambda n_estimators, seed: RandomForestClassifier(
        n_estimators=n_estimators, min_samples_leaf=2, n_jobs=-1, random_state=seed
    ),
    "gbm": lambda n_estimators, seed: GradientBoostingClassifier(
        n_estimators=n_estimators, random_state=seed
    ),
}

REGRESSORS = {
    "rf": lambda n_estimators, seed: RandomForestRegressor(
        n_estimators=n_estimators, min_samples_leaf=2, n_jobs=-1, random_state=seed
    ),
    "gbm": lambda n_estimators, seed: GradientBoostingRegressor(
        n_estimators=n_estimators, random_state=seed
    ),
}


@dataclass(frozen=True)
class HurdleConfig:
    """
    Settings for fitting the hurdle model.

    Attributes:
        model_type: Model family for both stages ("rf" or "gbm")
        n_estimators: Number of trees per model
        cv_folds: Folds used for out-of-fold encounter rate predictions
        threshold_on: Select the threshold on "calibrated" or "raw" probabilities
        seed: Random seed for resampling, folds and model fitting
    """

    model_type: ModelType = "rf"
    n_estimators: int = 250
    cv_folds: int = 5
    threshold_on: Literal["calibrated", "raw"] = "calibrated"
    seed: Optional[int] = 42

    def __post_init__(self):
        if self.model_type not in CLASSIFIERS:
            raise ValueError(f"Unknown model type: {self.model_type}. Choose from {list(CLASSIFIERS.keys())}")
        if self.cv_folds < 2:
            raise ValueError(f"cv_folds must be at least 2, got {self.cv_folds}")
        if self.threshold_on not in ("calibrated", "raw"):
            raise ValueError(f"threshold_on must be 'calibrated' or 'raw', got {self.threshold_on}")


class Stage(IntEnum):
    UNTRAINED = 0
    ENCOUNTER_FITTED = 1
    CALIBRATED = 2
    THRESHOLDED = 3
    COUNT_FITTED = 4
    READY = 5


def _detections(records: pd.DataFrame, detection_field: str) -> np.ndarray:
    if detection_field not in records.columns:
        raise InvalidInput(f"Records are missing the '{detection_field}' column")
    flags = records[detection_field]
    if flags.isna().any():
        raise InvalidInput(f"'{detection_field}' has missing values")
    return flags.astype(bool).to_numpy().astype(int)


def balanced_resample(y: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """
    Indices of a class-balanced bootstrap resample.

    With a detection prevalence p over n records, round(p * n) records are
    drawn with replacement from each class, so the resample is balanced and
    no larger than the input.

    Args:
        y: Binary labels
        rng: Random generator

    Returns:
        Shuffled array of record indices
    """
    positive_idx = np.flatnonzero(y == 1)
    negative_idx = np.flatnonzero(y == 0)
    n_draw = max(1, int(round(y.mean() * len(y))))

    selected = np.concatenate([
        rng.choice(positive_idx, size=n_draw, replace=True),
        rng.choice(negative_idx, size=n_draw, replace=True),
    ])
    return rng.permutation(selected)


def positive_probability(model: Classifier, X: np.ndarray) -> np.ndarray:
    """Predicted probability of the detection class."""
    proba = model.predict_proba(X)
    classes = list(getattr(model, "classes_", [0, 1]))
    return proba[:, classes.index(1)]


@dataclass(frozen=True)
class FittedBundle:
    """
    Immutable result of a complete hurdle model fit.

    Safe to share between any number of prediction calls; nothing is
    modified after fitting.
    """

    schema: FeatureSchema
    encounter_model: Any
    calibration: Calibration
    threshold: float
    count_model: Any
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def predict(self, records: pd.DataFrame, mask_by_range: bool = False) -> pd.DataFrame:
        """
        Predict encounter rate, count and relative abundance.

        Args:
            records: Records with every schema feature column
            mask_by_range: Set abundance to zero where the species is
                predicted out of range

        Returns:
            DataFrame with encounter_rate, count, abundance and in_range
            columns, indexed like records
        """
        X = self.schema.matrix(records)
        if len(X) == 0:
            return pd.DataFrame(
                {"encounter_rate": [], "count": [], "abundance": [], "in_range": []},
                index=records.index,
            ).astype({"in_range": bool})

        p_raw = positive_probability(self.encounter_model, X)
        p_cal = self.calibration.apply(p_raw)
        in_range = p_cal > self.threshold

        count = self.count_model.predict(np.column_stack([X, p_raw]))
        count = np.clip(count, 0.0, None)

        abundance = p_cal * count
        if mask_by_range:
            abundance = np.where(in_range, abundance, 0.0)

        return pd.DataFrame({
            "encounter_rate": p_cal,
            "count": count,
            "abundance": abundance,
            "in_range": in_range,
        }, index=records.index)

    def predict_one(self, record: Mapping[str, float], mask_by_range: bool = False) -> tuple[float, float, float, bool]:
        """
        Predict a single record.

        Returns:
            Tuple of (encounter_rate, count, abundance, in_range)
        """
        row = self.predict(pd.DataFrame([dict(record)]), mask_by_range=mask_by_range).iloc[0]
        return float(row["encounter_rate"]), float(row["count"]), float(row["abundance"]), bool(row["in_range"])

    def feature_importance(self, stage: Literal["encounter", "count"] = "encounter") -> pd.DataFrame:
        """Feature importance of the encounter or count model, most important first."""
        if stage == "encounter":
            model, columns = self.encounter_model, self.schema.columns
        elif stage == "count":
            model, columns = self.count_model, self.schema.with_column(ENCOUNTER_RATE_COLUMN).columns
        else:
            raise ValueError(f"Unknown stage: {stage}. Choose 'encounter' or 'count'")

        importances = getattr(model, "feature_importances_", None)
        if importances is None:
            raise AttributeError(f"{type(model).__name__} does not report feature importances")

        return pd.DataFrame({
            "feature": list(columns),
            "importance": importances,
        }).sort_values("importance", ascending=False).reset_index(drop=True)

    def save(self, path: str | Path) -> None:
        """Save the fitted bundle to disk."""
        save_data = {
            "schema_version": self.schema.version,
            "schema": self.schema.columns,
            "encounter_model": self.encounter_model,
            "calibration": self.calibration,
            "threshold": self.threshold,
            "count_model": self.count_model,
            "metadata": dict(self.metadata),
        }
        joblib.dump(save_data, path)
        logger.info(f"Saved fitted bundle to {path}")

    @classmethod
    def load(cls, path: str | Path) -> "FittedBundle":
        """Load a fitted bundle from disk."""
        data = joblib.load(path)
        if data["schema_version"] != SCHEMA_VERSION:
            raise SchemaMismatch(
                f"Bundle schema version {data['schema_version']} is not supported (expected {SCHEMA_VERSION})"
            )
        return cls(
            schema=FeatureSchema(columns=tuple(data["schema"]), version=data["schema_version"]),
            encounter_model=data["encounter_model"],
            calibration=data["calibration"],
            threshold=float(data["threshold"]),
            count_model=data["count_model"],
            metadata=data["metadata"],
        )


class HurdleEstimator:
    """
    Fits the hurdle model one stage at a time.

    Stages run strictly in order: encounter model, calibration, threshold,
    count model. `bundle()` then returns the immutable FittedBundle. An
    estimator is single use; refitting needs a new instance.
    """

    def __init__(
        self,
        config: Optional[HurdleConfig] = None,
        classifier: Optional[Classifier] = None,
        regressor: Optional[Regressor] = None,
    ):
        """
        Initialize the estimator.

        Args:
            config: Fitting settings (defaults to HurdleConfig())
            classifier: Optional unfitted classifier overriding config.model_type
            regressor: Optional unfitted regressor overriding config.model_type
        """
        self.config = config or HurdleConfig()
        self._classifier = classifier
        self._regressor = regressor
        self._rng = np.random.default_rng(self.config.seed)

        self.stage = Stage.UNTRAINED
        self.schema: Optional[FeatureSchema] = None
        self.encounter_model = None
        self.calibration: Optional[Calibration] = None
        self.threshold: Optional[float] = None
        self.count_model = None

        self.train_detections: Optional[np.ndarray] = None
        self.train_encounter_rate: Optional[np.ndarray] = None
        self.train_stats: dict = {}

    def _require(self, stage: Stage, action: str) -> None:
        if self.stage != stage:
            raise RuntimeError(f"Cannot {action} at stage {self.stage.name}; expected {stage.name}")

    def _new_classifier(self) -> Classifier:
        if self._classifier is not None:
            return clone(self._classifier)
        return CLASSIFIERS[self.config.model_type](self.config.n_estimators, self.config.seed)

    def _new_regressor(self) -> Regressor:
        if self._regressor is not None:
            return clone(self._regressor)
        return REGRESSORS[self.config.model_type](self.config.n_estimators, self.config.seed)

    def _out_of_fold(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        n_minority = int(min(y.sum(), len(y) - y.sum()))
        folds = StratifiedKFold(
            n_splits=min(self.config.cv_folds, n_minority),
            shuffle=True,
            random_state=int(self._rng.integers(2**31 - 1)),
        )

        oof = np.zeros(len(y), dtype=float)
        for train_idx, test_idx in folds.split(X, y):
            resample = train_idx[balanced_resample(y[train_idx], self._rng)]
            model = self._new_classifier()
            model.fit(X[resample], y[resample])
            oof[test_idx] = positive_probability(model, X[test_idx])
        return oof

    def fit_encounter(
        self,
        records: pd.DataFrame,
        feature_columns: Sequence[str],
        detection_field: str = DETECTION_FIELD,
    ) -> np.ndarray:
        """
        Fit the encounter rate classifier on a class-balanced resample.

        Args:
            records: Training records
            feature_columns: Covariate columns used as features
            detection_field: Boolean detection flag column

        Returns:
            Out-of-fold predicted encounter probabilities for the training records
        """
        self._require(Stage.UNTRAINED, "fit the encounter model")

        schema = FeatureSchema.from_frame(records, feature_columns)
        X = schema.matrix(records)
        y = _detections(records, detection_field)

        if len(np.unique(y)) < 2:
            raise InsufficientData(
                f"Encounter model needs detections and non-detections; found only "
                f"{'detections' if len(y) and y[0] == 1 else 'non-detections'} in {len(y)} records"
            )
        n_minority = int(min(y.sum(), len(y) - y.sum()))
        if n_minority < 2:
            raise InsufficientData(f"Need at least 2 records of each class, found {n_minority} in the minority class")

        prevalence = float(y.mean())
        logger.info(f"Fitting encounter model on {len(y):,} records (prevalence {prevalence:.3f}, "
                    f"{len(schema.columns)} features)")

        oof = self._out_of_fold(X, y)

        model = self._new_classifier()
        resample = balanced_resample(y, self._rng)
        model.fit(X[resample], y[resample])

        self.schema = schema
        self.encounter_model = model
        self.train_detections = y
        self.train_encounter_rate = oof
        self.train_stats.update({
            "n_train": len(y),
            "n_detections": int(y.sum()),
            "prevalence": prevalence,
            "n_resample": len(resample),
        })
        self.stage = Stage.ENCOUNTER_FITTED
        return oof

    def fit_calibration(
        self,
        predicted: Optional[np.ndarray] = None,
        observed: Optional[np.ndarray] = None,
    ) -> Calibration:
        """
        Fit the calibration curve, by default on the out-of-fold training predictions.
        """
        self._require(Stage.ENCOUNTER_FITTED, "fit the calibration")

        predicted = self.train_encounter_rate if predicted is None else predicted
        observed = self.train_detections if observed is None else observed

        self.calibration = fit_calibration(predicted, observed)
        self.stage = Stage.CALIBRATED
        return self.calibration

    def select_threshold(
        self,
        probabilities: Optional[np.ndarray] = None,
        observed: Optional[np.ndarray] = None,
    ) -> float:
        """
        Select the in-range threshold on the MCC-F1 curve.

        By default the out-of-fold training predictions are used, calibrated
        or raw according to config.threshold_on.
        """
        self._require(Stage.CALIBRATED, "select the threshold")

        if probabilities is None:
            probabilities = self.train_encounter_rate
            if self.config.threshold_on == "calibrated":
                probabilities = self.calibration.apply(probabilities)
        observed = self.train_detections if observed is None else observed

        self.threshold = select_threshold(probabilities, observed)
        self.train_stats["threshold"] = self.threshold
        logger.info(f"Selected threshold {self.threshold:.4f} ({self.config.threshold_on} probabilities)")
        self.stage = Stage.THRESHOLDED
        return self.threshold

    def fit_count(
        self,
        records: pd.DataFrame,
        encounter_rate: Optional[np.ndarray] = None,
        count_field: str = COUNT_FIELD,
    ) -> Regressor:
        """
        Fit the count model on records where the species is likely present.

        Records are kept when they have a reported count and either the count
        is positive or the raw encounter probability exceeds the threshold.
        Presence-only detections (missing count) are left out. The encounter
        rates here are raw, while the threshold is on the scale set by
        config.threshold_on (calibrated by default).

        Args:
            records: Training records (same rows as passed to fit_encounter
                when encounter_rate is omitted)
            encounter_rate: Raw encounter probabilities for records; defaults
                to the out-of-fold training predictions
            count_field: Count column

        Returns:
            Fitted count regressor
        """
        self._require(Stage.THRESHOLDED, "fit the count model")

        if encounter_rate is None:
            encounter_rate = self.train_encounter_rate
        encounter_rate = np.asarray(encounter_rate, dtype=float)
        if len(encounter_rate) != len(records):
            raise InvalidInput(
                f"Got {len(encounter_rate)} encounter rates for {len(records)} records"
            )
        if count_field not in records.columns:
            raise InvalidInput(f"Records are missing the '{count_field}' column")

        counts = pd.to_numeric(records[count_field], errors="coerce").to_numpy(dtype=float)
        if (counts[~np.isnan(counts)] < 0).any():
            raise InvalidInput(f"'{count_field}' has negative counts")

        keep = ~np.isnan(counts) & ((counts > 0) | (encounter_rate > self.threshold))
        if not keep.any():
            raise InsufficientData("No records with a count and a detection or in-range encounter rate")

        subset = records.loc[keep].copy()
        subset[ENCOUNTER_RATE_COLUMN] = encounter_rate[keep]
        count_schema = self.schema.with_column(ENCOUNTER_RATE_COLUMN)

        logger.info(f"Fitting count model on {int(keep.sum()):,} of {len(records):,} records")
        model = self._new_regressor()
        model.fit(count_schema.matrix(subset), counts[keep])

        self.count_model = model
        self.train_stats["n_count"] = int(keep.sum())
        self.stage = Stage.COUNT_FITTED
        return model

    def bundle(self) -> FittedBundle:
        """Freeze the fitted stages into a FittedBundle."""
        self._require(Stage.COUNT_FITTED, "build the bundle")
        bundle = FittedBundle(
            schema=self.schema,
            encounter_model=self.encounter_model,
            calibration=self.calibration,
            threshold=self.threshold,
            count_model=self.count_model,
            metadata={
                "model_type": self.config.model_type,
                "schema": self.schema.to_dict(),
                **self.train_stats,
            },
        )
        self.stage = Stage.READY
        return bundle

    def fit(
        self,
        records: pd.DataFrame,
        feature_columns: Sequence[str],
        detection_field: str = DETECTION_FIELD,
        count_field: str = COUNT_FIELD,
    ) -> FittedBundle:
        """
        Run every stage on the training records.

        Args:
            records: Debiased training records
            feature_columns: Covariate columns used as features
            detection_field: Boolean detection flag column
            count_field: Count column

        Returns:
            FittedBundle ready for prediction
        """
        self.fit_encounter(records, feature_columns, detection_field=detection_field)
        self.fit_calibration()
        self.select_threshold()
        self.fit_count(records, count_field=count_field)
        return self.bundle()
