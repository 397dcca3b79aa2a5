"""Command-line interface for FLAME / DAME matching."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd
import typer

from .effects import compute_ate, matched_table
from .errors import MatchingError
from .matching import MatchResult, run_dame, run_flame

app = typer.Typer(help="Almost-exact matching for causal inference on categorical data")


def _load_tabular(path: Path) -> pd.DataFrame:
    """Load CSV or Parquet data based on file extension."""

    if not path.exists():
        raise typer.BadParameter(f"Data file not found: {path}")

    suffix = path.suffix.lower()
    if suffix in {".parquet", ".pq"}:
        return pd.read_parquet(path)
    if suffix in {".csv", ".tsv"}:
        sep = "," if suffix == ".csv" else "\t"
        return pd.read_csv(path, sep=sep)

    raise typer.BadParameter("Only CSV, TSV, and Parquet inputs are supported.")


def _echo_summary(result: MatchResult) -> None:
    """Pretty-print the main outputs of a matching run."""

    units = result.units
    treated = units[result.treatment_col].astype(int) == 1
    typer.secho("\nMatching", fg=typer.colors.CYAN)
    typer.echo(f"Status: {result.status} ({result.message})")
    typer.echo(f"Iterations: {result.iterations}")
    typer.echo(f"Groups: {len(result.groups)}")
    typer.echo(
        f"Matched treated: {int(units.loc[treated, 'matched'].sum())}/{int(treated.sum())}, "
        f"control: {int(units.loc[~treated, 'matched'].sum())}/{int((~treated).sum())}"
    )

    if result.cov_sets:
        typer.secho("\nCovariates dropped per iteration", fg=typer.colors.CYAN)
        for iteration, dropped in enumerate(result.cov_sets, start=2):
            typer.echo(f"{iteration}: {', '.join(map(str, dropped))}")

    if result.groups and result.outcome_col in units.columns:
        typer.secho("\nAverage treatment effect", fg=typer.colors.CYAN)
        try:
            typer.echo(f"ATE ({result.outcome_col}): {compute_ate(result):.4f}")
        except MatchingError as exc:
            typer.echo(f"ATE unavailable: {exc}")


def _save_outputs(result: MatchResult, *, output_dir: Optional[Path], prefix: str) -> None:
    if output_dir is None:
        return
    output_dir.mkdir(parents=True, exist_ok=True)
    units_path = output_dir / f"{prefix}_units.csv"
    groups_path = output_dir / f"{prefix}_matched.csv"
    result.units.to_csv(units_path)
    matched_table(result).to_csv(groups_path)
    typer.echo(f"Saved annotated units to {units_path}")
    typer.echo(f"Saved matched-group table to {groups_path}")


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING if verbose == 0 else logging.INFO if verbose == 1 else logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s: %(message)s")


def _execute(
    algorithm: str,
    data_path: Path,
    *,
    holdout_path: Optional[Path],
    holdout_fraction: float,
    treatment_col: str,
    outcome_col: str,
    covariate: Optional[List[str]],
    options: dict,
    output_dir: Optional[Path],
    prefix: str,
) -> None:
    _configure_logging(options.get("verbose", 0))
    df = _load_tabular(data_path)
    holdout = _load_tabular(holdout_path) if holdout_path is not None else holdout_fraction
    runner = run_flame if algorithm == "flame" else run_dame
    try:
        result = runner(
            df,
            treatment_col=treatment_col,
            outcome_col=outcome_col,
            covariates=covariate or None,
            holdout=holdout,
            **options,
        )
    except MatchingError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    _echo_summary(result)
    _save_outputs(result, output_dir=output_dir, prefix=prefix)
    if result.status != "success":
        raise typer.Exit(code=2)


HOLDOUT_HELP = "Separate holdout table (CSV or Parquet) used to compute predictive error."
COVARIATE_HELP = "Covariate columns; repeat --covariate. Defaults to all other columns."


@app.command()
def flame(
    data_path: Path = typer.Argument(..., help="Input dataset (CSV or Parquet)."),
    holdout_path: Optional[Path] = typer.Option(None, "--holdout", help=HOLDOUT_HELP),
    holdout_fraction: float = typer.Option(0.1, help="Fraction of the data held out when no --holdout is given."),
    treatment_col: str = typer.Option("treated", help="Binary treatment indicator column."),
    outcome_col: str = typer.Option("outcome", help="Outcome column."),
    covariate: List[str] = typer.Option(None, help=COVARIATE_HELP),
    c: float = typer.Option(0.1, "--C", help="Weight of the balancing factor in match quality."),
    pe_method: str = typer.Option("ridge", help="Predictive-error model: ridge or xgb."),
    replace: bool = typer.Option(False, help="Allow units to be matched more than once."),
    missing_data: str = typer.Option("drop", help="Missing covariates: drop, keep or impute."),
    early_stop_iterations: Optional[int] = typer.Option(None, help="Maximum number of iterations."),
    early_stop_epsilon: float = typer.Option(0.25, help="Stop once PE exceeds (1 + epsilon) x baseline."),
    no_epsilon_stop: bool = typer.Option(False, "--no-epsilon-stop", help="Disable the predictive-error stopping rule."),
    random_state: Optional[int] = typer.Option(None, help="Seed for the holdout split and imputation."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Repeat for more logging."),
    output_dir: Optional[Path] = typer.Option(None, help="Directory where result tables are saved."),
    prefix: str = typer.Option("flame", help="Prefix for saved artefacts."),
) -> None:
    """Run FLAME on a tabular dataset."""

    _execute(
        "flame",
        data_path,
        holdout_path=holdout_path,
        holdout_fraction=holdout_fraction,
        treatment_col=treatment_col,
        outcome_col=outcome_col,
        covariate=covariate,
        options=dict(
            C=c,
            PE_method=pe_method,
            replace=replace,
            missing_data=missing_data,
            early_stop_iterations=early_stop_iterations,
            early_stop_epsilon=None if no_epsilon_stop else early_stop_epsilon,
            random_state=random_state,
            verbose=verbose,
        ),
        output_dir=output_dir,
        prefix=prefix,
    )


@app.command()
def dame(
    data_path: Path = typer.Argument(..., help="Input dataset (CSV or Parquet)."),
    holdout_path: Optional[Path] = typer.Option(None, "--holdout", help=HOLDOUT_HELP),
    holdout_fraction: float = typer.Option(0.1, help="Fraction of the data held out when no --holdout is given."),
    treatment_col: str = typer.Option("treated", help="Binary treatment indicator column."),
    outcome_col: str = typer.Option("outcome", help="Outcome column."),
    covariate: List[str] = typer.Option(None, help=COVARIATE_HELP),
    n_flame_iters: int = typer.Option(0, help="FLAME iterations to run before switching to DAME."),
    c: float = typer.Option(0.1, "--C", help="Weight of the balancing factor in match quality during FLAME iterations."),
    pe_method: str = typer.Option("ridge", help="Predictive-error model: ridge or xgb."),
    replace: bool = typer.Option(False, help="Allow units to be matched more than once."),
    missing_data: str = typer.Option("drop", help="Missing covariates: drop, keep or impute."),
    early_stop_iterations: Optional[int] = typer.Option(None, help="Maximum number of iterations."),
    early_stop_epsilon: float = typer.Option(0.25, help="Stop once PE exceeds (1 + epsilon) x baseline."),
    no_epsilon_stop: bool = typer.Option(False, "--no-epsilon-stop", help="Disable the predictive-error stopping rule."),
    random_state: Optional[int] = typer.Option(None, help="Seed for the holdout split and imputation."),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Repeat for more logging."),
    output_dir: Optional[Path] = typer.Option(None, help="Directory where result tables are saved."),
    prefix: str = typer.Option("dame", help="Prefix for saved artefacts."),
) -> None:
    """Run DAME (optionally after some FLAME iterations) on a tabular dataset."""

    _execute(
        "dame",
        data_path,
        holdout_path=holdout_path,
        holdout_fraction=holdout_fraction,
        treatment_col=treatment_col,
        outcome_col=outcome_col,
        covariate=covariate,
        options=dict(
            n_flame_iters=n_flame_iters,
            C=c,
            PE_method=pe_method,
            replace=replace,
            missing_data=missing_data,
            early_stop_iterations=early_stop_iterations,
            early_stop_epsilon=None if no_epsilon_stop else early_stop_epsilon,
            random_state=random_state,
            verbose=verbose,
        ),
        output_dir=output_dir,
        prefix=prefix,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
