"""Predictive error (PE) of covariate sets, computed on the holdout data.

A predictor is any callable ``predict(X, y) -> predictions`` that fits on the
categorical table ``X`` and outcome ``y`` and returns one prediction per row of
``X``. Two built-in variants are provided (ridge and gradient boosting); a
caller may pass their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.linear_model import Ridge, RidgeClassifier
from sklearn.metrics import mean_squared_error
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import LabelEncoder, OneHotEncoder
from xgboost import XGBClassifier, XGBRegressor

from .data import HoldoutTable
from .errors import ExternalProcedureError
from .lattice import CovariateSet

logger = logging.getLogger(__name__)

Predictor = Callable[[pd.DataFrame, pd.Series], np.ndarray]

HOLDOUT = "holdout"


def _one_hot() -> OneHotEncoder:
    return OneHotEncoder(handle_unknown="ignore")


def _as_categories(X: pd.DataFrame) -> pd.DataFrame:
    return X.astype(str)


class RidgePredictor:
    """Ridge regression (or ridge classification) on one-hot encoded covariates."""

    def __init__(self, outcome_type: str = "continuous", alpha: float = 0.1):
        self.outcome_type = outcome_type
        self.alpha = alpha

    def __call__(self, X: pd.DataFrame, y: pd.Series) -> np.ndarray:
        if self.outcome_type != "continuous" and y.nunique() < 2:
            return np.full(len(y), y.iloc[0], dtype=object)
        model = Ridge(alpha=self.alpha) if self.outcome_type == "continuous" else RidgeClassifier(alpha=self.alpha)
        pipeline = make_pipeline(_one_hot(), model)
        features = _as_categories(X)
        return pipeline.fit(features, y).predict(features)


class XGBPredictor:
    """Gradient-boosted trees on one-hot encoded covariates."""

    def __init__(self, outcome_type: str = "continuous", random_state: Optional[int] = None, **params):
        self.outcome_type = outcome_type
        self.params = {"n_estimators": 100, "max_depth": 6, "learning_rate": 0.1, "verbosity": 0}
        self.params.update(params)
        if random_state is not None:
            self.params["random_state"] = random_state

    def __call__(self, X: pd.DataFrame, y: pd.Series) -> np.ndarray:
        features = _as_categories(X)
        if self.outcome_type == "continuous":
            pipeline = make_pipeline(_one_hot(), XGBRegressor(**self.params))
            return pipeline.fit(features, y).predict(features)

        if y.nunique() < 2:
            return np.full(len(y), y.iloc[0], dtype=object)
        labels = LabelEncoder().fit(y)
        pipeline = make_pipeline(_one_hot(), XGBClassifier(**self.params))
        encoded = pipeline.fit(features, labels.transform(y)).predict(features)
        return labels.inverse_transform(np.asarray(encoded, dtype=int))


def make_predictor(method, outcome_type: str, *, alpha: float = 0.1, random_state=None) -> Predictor:
    if method == "ridge":
        return RidgePredictor(outcome_type, alpha=alpha)
    if method == "xgb":
        return XGBPredictor(outcome_type, random_state=random_state)
    return method


def prediction_error(y: pd.Series, predictions: np.ndarray, outcome_type: str) -> float:
    """Mean squared error for continuous outcomes, misclassification rate otherwise."""

    if len(y) == 0:
        return 0.0
    if outcome_type == "continuous":
        return float(mean_squared_error(y.to_numpy(dtype=float), predictions))
    return float(np.mean(np.asarray(y.to_numpy()) != np.asarray(predictions)))


@dataclass(frozen=True)
class PEResult:
    covariates: CovariateSet
    partition: str
    pe: float
    predictions: Optional[np.ndarray] = None


class ScoringOracle:
    """Memoised PE per covariate set.

    With ``weights`` no model is fitted: the PE of a set is the total weight of
    the covariates it leaves out.
    """

    def __init__(
        self,
        holdout: Optional[HoldoutTable],
        *,
        predictor: Optional[Predictor] = None,
        missing_holdout: str = "drop",
        weights: Optional[Sequence[float]] = None,
        n_jobs: int = 1,
    ):
        if weights is None and (holdout is None or predictor is None):
            raise ValueError("A holdout table and predictor are required unless weights are given")
        self.holdout = holdout
        self.predictor = predictor
        self.missing_holdout = missing_holdout
        self.weights = None if weights is None else np.asarray(weights, dtype=float)
        self.n_jobs = n_jobs
        self.n_calls = 0
        self._cache: Dict[Tuple[int, str], PEResult] = {}

    @property
    def uses_weights(self) -> bool:
        return self.weights is not None

    def cached(self, covset: CovariateSet) -> Optional[PEResult]:
        return self._cache.get((covset.mask, HOLDOUT))

    def score(self, covset: CovariateSet) -> float:
        return self.score_many([covset])[0]

    def score_many(self, covsets: Iterable[CovariateSet]) -> List[float]:
        """Score several sets; uncached ones are computed independently (optionally in parallel)."""

        covsets = list(covsets)
        pending = []
        for covset in covsets:
            if (covset.mask, HOLDOUT) not in self._cache and covset not in pending:
                pending.append(covset)

        if pending:
            if self.n_jobs == 1 or len(pending) == 1:
                results = [self._compute(c) for c in pending]
            else:
                results = Parallel(n_jobs=self.n_jobs, prefer="threads")(
                    delayed(self._compute)(c) for c in pending
                )
            for result in results:
                self._cache[(result.covariates.mask, HOLDOUT)] = result
        return [self._cache[(c.mask, HOLDOUT)].pe for c in covsets]

    def _compute(self, covset: CovariateSet) -> PEResult:
        if self.weights is not None:
            pe = float(self.weights[list(covset.dropped)].sum())
            return PEResult(covset, HOLDOUT, pe)

        self.n_calls += 1
        names = covset.names(self.holdout.covariate_names)
        errors = []
        first_predictions = None
        for copy in self.holdout.copies:
            pe, predictions = self._score_copy(copy, names)
            errors.append(pe)
            if first_predictions is None:
                first_predictions = predictions
        pe = float(np.mean(errors))
        logger.debug("PE of %s = %.6g", names, pe)
        return PEResult(covset, HOLDOUT, pe, first_predictions)

    def _score_copy(self, frame: pd.DataFrame, names: List[str]) -> Tuple[float, np.ndarray]:
        holdout = self.holdout
        X = frame[names].reset_index(drop=True)
        keep = ~X.isna().any(axis=1).to_numpy()
        predictions = np.full(len(X), np.nan, dtype=object)

        total = 0.0
        for arm in (True, False):
            rows = np.flatnonzero((holdout.treated == arm) & keep)
            y = holdout.outcome.iloc[rows]
            if len(rows) == 0:
                continue
            predicted = self._predict(X.iloc[rows], y)
            predictions[rows] = predicted
            total += prediction_error(y, predicted, holdout.outcome_type)
        return total, predictions

    def _predict(self, X: pd.DataFrame, y: pd.Series) -> np.ndarray:
        outcome_type = self.holdout.outcome_type
        if X.shape[1] == 0:
            fill = y.mean() if outcome_type == "continuous" else y.mode().iloc[0]
            return np.full(len(y), fill, dtype=float if outcome_type == "continuous" else object)

        try:
            predicted = self.predictor(X, y)
        except Exception as exc:
            raise ExternalProcedureError(f"Predictive-error procedure failed: {exc}") from exc
        return _validate_predictions(predicted, y, outcome_type)


def _validate_predictions(predicted, y: pd.Series, outcome_type: str) -> np.ndarray:
    n = len(y)
    try:
        values = np.asarray(predicted)
    except Exception as exc:
        raise ExternalProcedureError(f"Predictions could not be converted to an array: {exc}") from exc
    if values.ndim == 2 and values.shape[1] == 1:
        values = values.ravel()
    if values.ndim != 1 or len(values) != n:
        raise ExternalProcedureError(
            f"Predictive-error procedure returned shape {values.shape}, expected ({n},)"
        )
    if outcome_type == "continuous":
        if not np.issubdtype(values.dtype, np.number) or np.issubdtype(values.dtype, np.complexfloating):
            raise ExternalProcedureError(
                f"Continuous outcome requires numeric predictions, got dtype {values.dtype}"
            )
        if not np.all(np.isfinite(values)):
            raise ExternalProcedureError("Predictive-error procedure returned non-finite predictions.")
    else:
        labels = y.unique()
        unknown = ~pd.Series(values, dtype=object).isin(labels).to_numpy()
        if unknown.any():
            raise ExternalProcedureError(
                f"Predictions for a {outcome_type} outcome must be observed labels {sorted(map(str, labels))}, "
                f"got {values[unknown][0]!r}"
            )
    return values
