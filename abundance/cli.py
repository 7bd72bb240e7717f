"""
Command-line interface for fitting a relative abundance model.
"""

import argparse
import logging
from pathlib import Path

from .model import HurdleConfig
from .pipeline import PipelineConfig, run_pipeline
from .predict import peak_covariate_value, prediction_table, rasterize, save_raster, standardize_effort
from .records import read_checklists, read_observations, zero_fill

logger = logging.getLogger(__name__)

# Records averaged over for the time-of-day partial dependence
PEAK_SAMPLE_SIZE = 10000


def fit_species(
    checklists_path: Path,
    observations_path: Path,
    species_code: str,
    output_dir: Path,
    prediction_grid_path: Path | None = None,
    config: PipelineConfig | None = None,
) -> dict:
    """
    Complete workflow: zero-fill, fit, evaluate and optionally map one species.

    Args:
        checklists_path: Parquet file of complete checklists with covariates
        observations_path: Parquet file of species observations
        species_code: eBird species code
        output_dir: Directory to save outputs
        prediction_grid_path: Optional parquet prediction grid (one row per cell)
        config: Pipeline settings

    Returns:
        Dictionary of output file paths
    """
    config = config or PipelineConfig()
    output_dir = Path(output_dir) / species_code

    records = zero_fill(read_checklists(checklists_path), read_observations(observations_path), species_code)
    result = run_pipeline(records, config)
    paths = result.save(output_dir)

    if prediction_grid_path is not None:
        logger.info("Predicting onto the prediction grid...")
        grid = read_checklists(prediction_grid_path)

        # Predict at the time of day the species is most detectable
        effort = {}
        if "hours_of_day" in result.bundle.schema.columns:
            complete = records.dropna(subset=list(result.bundle.schema.columns))
            complete = complete.sample(n=min(len(complete), PEAK_SAMPLE_SIZE), random_state=config.seed)
            effort["hours_of_day"] = peak_covariate_value(result.bundle, complete, "hours_of_day")
        grid = standardize_effort(grid, **effort)

        grid_id = "srd_id" if "srd_id" in grid.columns else config.id_field
        table = prediction_table(
            result.bundle, grid, id_field=grid_id,
            detection_field=None, count_field=None, mask_by_range=config.mask_by_range,
        )
        grid_path = output_dir / "grid_predictions.csv"
        table.to_csv(grid_path, index=False)
        paths["grid_predictions"] = grid_path

        array, transform = rasterize(table, "abundance", resolution_km=config.cell_size_km)
        raster_path = output_dir / "abundance.tif"
        save_raster(array, transform, raster_path)
        paths["abundance_raster"] = raster_path

    for name, path in paths.items():
        logger.info(f"  {name}: {path}")
    return paths


def main():
    parser = argparse.ArgumentParser(description="Fit an eBird relative abundance model for one species")
    parser.add_argument("checklists", type=Path, help="Parquet file of complete checklists")
    parser.add_argument("observations", type=Path, help="Parquet file of species observations")
    parser.add_argument("species", help="eBird species code (e.g. 'chutap1')")
    parser.add_argument("--prediction-grid", "-g", type=Path, default=None,
                        help="Parquet prediction grid to map relative abundance onto")
    parser.add_argument("--output-dir", "-o", type=Path, default=Path("./output"), help="Output directory")
    parser.add_argument("--model", "-m", default="rf", choices=["rf", "gbm"], help="Model family")
    parser.add_argument("--n-estimators", type=int, default=250, help="Trees per model")
    parser.add_argument("--cell-size-km", type=float, default=3.0, help="Grid sampling cell size")
    parser.add_argument("--test-fraction", type=float, default=0.2, help="Fraction of checklists held out")
    parser.add_argument("--mask-by-range", action="store_true",
                        help="Set abundance to zero where the species is predicted out of range")
    parser.add_argument("--seed", "-s", type=int, default=1, help="Random seed")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = PipelineConfig(
        test_fraction=args.test_fraction,
        cell_size_km=args.cell_size_km,
        seed=args.seed,
        mask_by_range=args.mask_by_range,
        hurdle=HurdleConfig(model_type=args.model, n_estimators=args.n_estimators, seed=args.seed),
    )

    fit_species(
        checklists_path=args.checklists,
        observations_path=args.observations,
        species_code=args.species,
        output_dir=args.output_dir,
        prediction_grid_path=args.prediction_grid,
        config=config,
    )


if __name__ == "__main__":
    main()
