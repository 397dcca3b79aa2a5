import numpy as np
import pandas as pd
import pytest

from almost_matching.config import MatchConfig
from almost_matching.data import prepare_holdout
from almost_matching.errors import ExternalProcedureError
from almost_matching.lattice import CovariateSet
from almost_matching.scoring import RidgePredictor, ScoringOracle, XGBPredictor, prediction_error


class CountingPredictor:
    def __init__(self):
        self.calls = 0

    def __call__(self, X, y):
        self.calls += 1
        return np.full(len(y), float(y.mean()))


def holdout_table(synthetic, **options):
    _, holdout = synthetic
    return prepare_holdout(
        holdout,
        treatment_col="treated",
        outcome_col="outcome",
        covariates=["x0", "x1", "x2", "x3"],
        config=MatchConfig(**options),
    )


def test_scores_are_cached_per_covariate_set(synthetic):
    predictor = CountingPredictor()
    oracle = ScoringOracle(holdout_table(synthetic), predictor=predictor)
    covset = CovariateSet.from_indices([0, 1], 4)
    first = oracle.score(covset)
    second = oracle.score(covset)
    assert first == second
    # one fit per treatment arm, only on the first request
    assert predictor.calls == 2
    assert oracle.cached(covset).pe == first


def test_ridge_prefers_predictive_covariates(synthetic):
    oracle = ScoringOracle(holdout_table(synthetic), predictor=RidgePredictor(alpha=0.1))
    full = oracle.score(CovariateSet.full(4))
    without_strong = oracle.score(CovariateSet.from_indices([1, 2, 3], 4))
    without_weak = oracle.score(CovariateSet.from_indices([0, 1, 2], 4))
    assert full < without_strong
    assert without_weak < without_strong


def test_xgb_predictor_runs(synthetic):
    oracle = ScoringOracle(holdout_table(synthetic), predictor=XGBPredictor(n_estimators=20, random_state=0))
    assert oracle.score(CovariateSet.full(4)) >= 0


def test_parallel_scoring_matches_sequential(synthetic):
    table = holdout_table(synthetic)
    sets = [CovariateSet.full(4).without(j) for j in range(4)]
    sequential = ScoringOracle(table, predictor=RidgePredictor()).score_many(sets)
    parallel = ScoringOracle(table, predictor=RidgePredictor(), n_jobs=2).score_many(sets)
    assert parallel == pytest.approx(sequential)


def test_weights_bypass_regressions():
    oracle = ScoringOracle(None, weights=[3.0, 1.0, 2.0])
    assert oracle.score(CovariateSet.full(3)) == 0.0
    assert oracle.score(CovariateSet.from_indices([0], 3)) == pytest.approx(3.0)
    assert oracle.n_calls == 0


def test_wrong_length_predictions_raise(synthetic):
    oracle = ScoringOracle(holdout_table(synthetic), predictor=lambda X, y: np.zeros(len(y) + 1))
    with pytest.raises(ExternalProcedureError):
        oracle.score(CovariateSet.full(4))


def test_failing_procedure_is_wrapped(synthetic):
    def broken(X, y):
        raise RuntimeError("boom")

    oracle = ScoringOracle(holdout_table(synthetic), predictor=broken)
    with pytest.raises(ExternalProcedureError, match="boom"):
        oracle.score(CovariateSet.full(4))


def test_missing_holdout_rows_dropped_per_set(synthetic):
    _, holdout = synthetic
    holdout = holdout.astype({"x0": float})
    holdout.loc[:9, "x0"] = np.nan
    table = prepare_holdout(
        holdout,
        treatment_col="treated",
        outcome_col="outcome",
        covariates=["x0", "x1", "x2", "x3"],
        config=MatchConfig(),
    )
    seen = []

    def predictor(X, y):
        seen.append(len(y))
        return np.full(len(y), float(y.mean()))

    oracle = ScoringOracle(table, predictor=predictor)
    oracle.score(CovariateSet.from_indices([1, 2], 4))
    oracle.score(CovariateSet.full(4))
    assert sum(seen[:2]) == len(holdout)
    assert sum(seen[2:]) == len(holdout) - 10


def test_missing_holdout_imputation_averages_copies(synthetic):
    _, holdout = synthetic
    holdout = holdout.astype({"x0": float})
    holdout.loc[:9, "x0"] = np.nan
    config = MatchConfig(missing_holdout="impute", missing_holdout_imputations=3, random_state=0)
    table = prepare_holdout(
        holdout,
        treatment_col="treated",
        outcome_col="outcome",
        covariates=["x0", "x1", "x2", "x3"],
        config=config,
    )
    assert len(table.copies) == 3
    assert not any(copy.isna().any().any() for copy in table.copies)
    predictor = CountingPredictor()
    ScoringOracle(table, predictor=predictor, missing_holdout="impute").score(CovariateSet.full(4))
    assert predictor.calls == 6


def test_prediction_error_for_classes():
    y = pd.Series([0, 1, 1, 0])
    assert prediction_error(y, np.array([0, 1, 0, 0]), "binary") == pytest.approx(0.25)
    assert prediction_error(pd.Series([], dtype=float), np.array([]), "continuous") == 0.0


def binary_holdout_table(synthetic):
    _, holdout = synthetic
    holdout = holdout.assign(outcome=(holdout["outcome"] > holdout["outcome"].median()).astype(int))
    return prepare_holdout(
        holdout,
        treatment_col="treated",
        outcome_col="outcome",
        covariates=["x0", "x1", "x2", "x3"],
        config=MatchConfig(),
    )


def test_class_predictions_outside_observed_labels_raise(synthetic):
    table = binary_holdout_table(synthetic)
    assert table.outcome_type == "binary"
    oracle = ScoringOracle(table, predictor=lambda X, y: np.full(len(y), 0.73))
    with pytest.raises(ExternalProcedureError, match="observed labels"):
        oracle.score(CovariateSet.full(4))


def test_class_predictions_within_observed_labels_are_scored(synthetic):
    table = binary_holdout_table(synthetic)
    oracle = ScoringOracle(table, predictor=lambda X, y: np.full(len(y), float(y.mode().iloc[0])))
    assert 0.0 <= oracle.score(CovariateSet.full(4)) <= 2.0
    ridge = ScoringOracle(table, predictor=RidgePredictor("binary"))
    assert 0.0 <= ridge.score(CovariateSet.full(4)) <= 2.0
