"""
eBird Relative Abundance Modeling

This package turns semi-structured eBird checklists into detection/non-detection
records, corrects spatial and temporal sampling bias with case-controlled grid
sampling, and fits a two-stage hurdle model of encounter rate and count to
estimate relative abundance.
"""

from .errors import InvalidInput, InsufficientData, SchemaMismatch, CalibrationViolation
from .records import zero_fill, split_train_test, select_feature_columns, read_checklists, read_observations
from .sampling import debias, GridSampler, Sampler
from .schema import FeatureSchema
from .calibration import Calibration, fit_calibration
from .threshold import select_threshold, mcc_f1_curve
from .model import HurdleEstimator, HurdleConfig, FittedBundle
from .metrics import evaluate
from .predict import prediction_table, standardize_effort, rasterize, save_raster
from .pipeline import run_pipeline, PipelineConfig, PipelineResult

__all__ = [
    'InvalidInput',
    'InsufficientData',
    'SchemaMismatch',
    'CalibrationViolation',
    'zero_fill',
    'split_train_test',
    'select_feature_columns',
    'read_checklists',
    'read_observations',
    'debias',
    'GridSampler',
    'Sampler',
    'FeatureSchema',
    'Calibration',
    'fit_calibration',
    'select_threshold',
    'mcc_f1_curve',
    'HurdleEstimator',
    'HurdleConfig',
    'FittedBundle',
    'evaluate',
    'prediction_table',
    'standardize_effort',
    'rasterize',
    'save_raster',
    'run_pipeline',
    'PipelineConfig',
    'PipelineResult',
]
