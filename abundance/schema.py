"""
Versioned feature schema shared between model fitting and prediction.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Iterable

import numpy as np
import pandas as pd
from pandas.api.types import is_numeric_dtype

from .errors import InvalidInput, SchemaMismatch

SCHEMA_VERSION = 1


@dataclass(frozen=True)
class FeatureSchema:
    """
    Ordered set of numeric feature columns.

    The schema is fixed when the encounter model is fitted and every later
    stage selects its design matrix through it, so a record set with missing
    or non-numeric feature columns is rejected instead of being silently
    misaligned.
    """

    columns: tuple[str, ...]
    version: int = SCHEMA_VERSION

    @classmethod
    def from_frame(cls, records: pd.DataFrame, columns: Iterable[str]) -> "FeatureSchema":
        """
        Build a schema from the training records.

        Args:
            records: Training records
            columns: Feature column names, in model order

        Returns:
            FeatureSchema for the given columns
        """
        columns = tuple(columns)
        if not columns:
            raise InvalidInput("At least one feature column is required")
        if len(set(columns)) != len(columns):
            raise InvalidInput(f"Duplicate feature columns: {list(columns)}")

        missing = [c for c in columns if c not in records.columns]
        if missing:
            raise InvalidInput(f"Feature columns not found in records: {missing}")

        non_numeric = [c for c in columns if not is_numeric_dtype(records[c])]
        if non_numeric:
            raise InvalidInput(f"Feature columns must be numeric: {non_numeric}")

        return cls(columns=columns)

    @property
    def fingerprint(self) -> str:
        payload = json.dumps({"version": self.version, "columns": list(self.columns)})
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]

    def with_column(self, name: str) -> "FeatureSchema":
        """Return a new schema with one extra column appended."""
        if name in self.columns:
            raise InvalidInput(f"Column '{name}' is already a feature")
        return FeatureSchema(columns=self.columns + (name,), version=self.version)

    def validate(self, records: pd.DataFrame) -> None:
        missing = [c for c in self.columns if c not in records.columns]
        if missing:
            raise SchemaMismatch(f"Records are missing feature columns {missing} (schema {self.fingerprint})")

        non_numeric = [c for c in self.columns if not is_numeric_dtype(records[c])]
        if non_numeric:
            raise SchemaMismatch(f"Feature columns {non_numeric} are not numeric (schema {self.fingerprint})")

    def check(self, other: "FeatureSchema") -> None:
        """Raise SchemaMismatch unless `other` describes the same features."""
        if other.fingerprint != self.fingerprint:
            raise SchemaMismatch(
                f"Schema {other.fingerprint} does not match fitted schema {self.fingerprint}"
            )

    def matrix(self, records: pd.DataFrame) -> np.ndarray:
        """
        Select the feature matrix from records.

        Args:
            records: Records holding at least the schema columns

        Returns:
            Float array of shape (n_records, n_features)
        """
        self.validate(records)
        return records.loc[:, list(self.columns)].to_numpy(dtype=float)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "fingerprint": self.fingerprint,
            "columns": list(self.columns),
        }
