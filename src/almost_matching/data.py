"""Input validation and categorical coding of the unit and holdout tables."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from pandas.api.types import is_bool_dtype, is_integer_dtype, is_numeric_dtype
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.impute import IterativeImputer
from sklearn.model_selection import train_test_split

from .bitset import MISSING_CODE
from .config import MatchConfig
from .errors import DataError, ExternalProcedureError

logger = logging.getLogger(__name__)

Imputer = Callable[[pd.DataFrame, int], pd.DataFrame]


@dataclass
class UnitTable:
    """Matching data after validation, coding and the missing-data policy."""

    index: pd.Index
    covariate_names: List[str]
    covariates: pd.DataFrame
    """Covariate values as used for matching (imputed when ``missing_data='impute'``)."""

    codes: np.ndarray
    """``(n, p)`` integer codes, ``-1`` where missing."""

    cardinalities: np.ndarray
    treated: np.ndarray
    outcome: Optional[pd.Series]
    eligible: np.ndarray
    """Units allowed to enter any match; ``False`` for rows dropped for missingness."""

    @property
    def n_units(self) -> int:
        return len(self.index)

    @property
    def p(self) -> int:
        return len(self.covariate_names)


@dataclass
class HoldoutTable:
    covariate_names: List[str]
    copies: List[pd.DataFrame]
    """One frame without imputation, or one frame per imputed copy."""

    treated: np.ndarray
    outcome: pd.Series
    outcome_type: str


def is_missing(frame: pd.DataFrame, missing_indicator: Any) -> pd.DataFrame:
    if missing_indicator is None or (
        isinstance(missing_indicator, float) and np.isnan(missing_indicator)
    ):
        return frame.isna()
    return frame.isna() | (frame == missing_indicator)


def _as_treatment(series: pd.Series, name: str) -> np.ndarray:
    if series.isna().any():
        raise DataError(f"Treatment column '{series.name}' in {name} contains missing values.")
    values = set(pd.unique(series))
    if not values <= {0, 1, True, False}:
        raise DataError(
            f"Treatment column '{series.name}' in {name} must be binary (0/1), got {sorted(map(str, values))}"
        )
    return series.astype(int).to_numpy() == 1


def detect_outcome_type(outcome: pd.Series) -> str:
    values = outcome.dropna()
    if is_bool_dtype(values) or not is_numeric_dtype(values):
        return "binary" if values.nunique() <= 2 else "multiclass"
    if is_integer_dtype(values) and values.nunique() <= 2:
        return "binary"
    return "continuous"


def encode_categories(
    frame: pd.DataFrame, missing: pd.DataFrame
) -> Tuple[np.ndarray, np.ndarray, List[np.ndarray]]:
    """Factorize each column to ``0..k-1`` (sorted categories), ``-1`` where missing."""

    codes = np.empty(frame.shape, dtype=np.int64)
    cardinalities = np.empty(frame.shape[1], dtype=np.int64)
    levels = []
    for j, column in enumerate(frame.columns):
        values = frame[column].mask(missing[column])
        column_codes, uniques = pd.factorize(values, sort=True)
        codes[:, j] = column_codes
        cardinalities[j] = len(uniques)
        levels.append(np.asarray(uniques))
    return codes, cardinalities, levels


def iterative_impute(frame: pd.DataFrame, seed: int) -> pd.DataFrame:
    """Default imputation: chained equations on category codes, snapped to observed levels."""

    missing = frame.isna()
    codes, cardinalities, levels = encode_categories(frame, missing)
    numeric = codes.astype(float)
    numeric[codes == MISSING_CODE] = np.nan
    if not np.isnan(numeric).any():
        return frame.copy()

    imputer = IterativeImputer(sample_posterior=True, random_state=seed, max_iter=10)
    filled = imputer.fit_transform(numeric)
    # columns that are entirely missing are dropped by the imputer
    if filled.shape[1] != numeric.shape[1]:
        raise DataError("Cannot impute a covariate that has no observed values.")

    result = frame.copy()
    for j, column in enumerate(frame.columns):
        rounded = np.clip(np.rint(filled[:, j]), 0, cardinalities[j] - 1).astype(int)
        result[column] = np.where(
            missing[column].to_numpy(), levels[j][rounded], frame[column].to_numpy()
        )
    return result


def run_imputation(imputer: Imputer, frame: pd.DataFrame, seed: int) -> pd.DataFrame:
    try:
        imputed = imputer(frame, seed)
    except DataError:
        raise
    except Exception as exc:
        raise ExternalProcedureError(f"Imputation procedure failed: {exc}") from exc
    if not isinstance(imputed, pd.DataFrame) or imputed.shape != frame.shape:
        raise ExternalProcedureError(
            f"Imputation procedure must return a DataFrame of shape {frame.shape}."
        )
    if imputed.isna().any().any():
        raise ExternalProcedureError("Imputation procedure left missing values behind.")
    imputed = imputed.copy()
    imputed.index = frame.index
    imputed.columns = frame.columns
    return imputed


def split_holdout(
    df: pd.DataFrame,
    holdout: Union[pd.DataFrame, float],
    *,
    treatment_col: str,
    random_state: Optional[int],
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Return ``(matching, holdout)`` frames."""

    if isinstance(holdout, pd.DataFrame):
        return df, holdout
    fraction = float(holdout)
    if not 0 < fraction < 1:
        raise DataError(f"A holdout fraction must lie in (0, 1), got {fraction}")
    try:
        matching, held = train_test_split(
            df, test_size=fraction, random_state=random_state, stratify=df[treatment_col]
        )
    except ValueError as exc:
        raise DataError(f"Cannot split off a holdout set: {exc}") from exc
    return matching.sort_index(), held.sort_index()


def _check_columns(frame: pd.DataFrame, columns: Sequence[str], name: str) -> None:
    absent = [c for c in columns if c not in frame.columns]
    if absent:
        raise DataError(f"{name} is missing column(s): {', '.join(map(str, absent))}")


def prepare_units(
    df: pd.DataFrame,
    *,
    treatment_col: str,
    outcome_col: Optional[str],
    covariates: Sequence[str],
    config: MatchConfig,
) -> UnitTable:
    _check_columns(df, [treatment_col, *covariates], "Matching data")
    if df.index.has_duplicates:
        raise DataError("Matching data must have a unique index.")
    if not covariates:
        raise DataError("At least one covariate is required.")

    treated = _as_treatment(df[treatment_col], "matching data")
    frame = df[list(covariates)].copy()
    missing = is_missing(frame, config.missing_indicator)
    frame = frame.mask(missing)
    eligible = np.ones(len(frame), dtype=bool)

    if missing.any().any():
        n_rows = int(missing.any(axis=1).sum())
        if config.missing_data == "drop":
            eligible = ~missing.any(axis=1).to_numpy()
            logger.info("Excluding %d unit(s) with missing covariates from matching", n_rows)
        elif config.missing_data == "impute":
            imputer = config.imputation or iterative_impute
            seed = config.random_state if config.random_state is not None else 0
            frame = run_imputation(imputer, frame, seed)
            missing = frame.isna()
            logger.info("Imputed missing covariates for %d unit(s)", n_rows)
        else:
            logger.info("Keeping %d unit(s) with missing covariates", n_rows)

    codes, cardinalities, _ = encode_categories(frame, missing)
    outcome = df[outcome_col] if outcome_col is not None and outcome_col in df.columns else None
    return UnitTable(
        index=df.index,
        covariate_names=list(covariates),
        covariates=frame,
        codes=codes,
        cardinalities=cardinalities,
        treated=treated,
        outcome=outcome,
        eligible=eligible,
    )


def prepare_holdout(
    holdout: pd.DataFrame,
    *,
    treatment_col: str,
    outcome_col: str,
    covariates: Sequence[str],
    config: MatchConfig,
) -> HoldoutTable:
    _check_columns(holdout, [treatment_col, outcome_col, *covariates], "Holdout data")
    outcome = holdout[outcome_col]
    if outcome.isna().any():
        raise DataError(f"Holdout outcome '{outcome_col}' contains missing values.")
    treated = _as_treatment(holdout[treatment_col], "holdout data")
    frame = holdout[list(covariates)].copy()
    missing = is_missing(frame, config.missing_indicator)
    frame = frame.mask(missing)

    copies = [frame]
    if config.missing_holdout == "impute" and missing.any().any():
        imputer = config.imputation or iterative_impute
        seed = config.random_state if config.random_state is not None else 0
        copies = [
            run_imputation(imputer, frame, seed + i) for i in range(config.missing_holdout_imputations)
        ]

    outcome_type = config.outcome_type or detect_outcome_type(outcome)
    return HoldoutTable(
        covariate_names=list(covariates),
        copies=copies,
        treated=treated,
        outcome=outcome.reset_index(drop=True),
        outcome_type=outcome_type,
    )
