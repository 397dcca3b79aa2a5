import numpy as np
import pandas as pd
import pytest

from almost_matching import ConfigurationError, DataError, MatchConfig, run_flame
from almost_matching.data import detect_outcome_type


def test_unknown_option_rejected():
    with pytest.raises(ConfigurationError):
        MatchConfig.from_options(C=0.1, colour="blue")


@pytest.mark.parametrize(
    "options",
    [
        {"PE_method": "lasso"},
        {"missing_data": "ignore"},
        {"missing_holdout": "keep"},
        {"C": -1.0},
        {"early_stop_iterations": 0},
        {"early_stop_epsilon": -0.5},
        {"missing_holdout_imputations": 0},
        {"n_flame_iters": -1},
        {"n_jobs": 0},
        {"weights": [1.0, 2.0]},
        {"weights": [1.0, -2.0, 3.0]},
        {"weights": [1.0, 1.0, 3.0]},
    ],
)
def test_invalid_options_fail_fast(options):
    with pytest.raises(ConfigurationError):
        MatchConfig(**options).validate(3)


def test_tied_weights_allowed_with_replacement():
    MatchConfig(weights=[1.0, 1.0, 3.0], replace=True).validate(3)


def test_callable_pe_method_is_valid():
    MatchConfig(PE_method=lambda X, y: y).validate(3)


def test_configuration_error_raised_before_matching(four_units):
    df, holdout = four_units
    with pytest.raises(ConfigurationError):
        run_flame(df, holdout=holdout, weights=[1.0, 1.0, 1.0])


def test_non_binary_treatment_is_a_data_error(four_units):
    df, holdout = four_units
    df = df.assign(treated=[0, 1, 2, 1])
    with pytest.raises(DataError):
        run_flame(df, holdout=holdout)


def test_missing_holdout_outcome_is_a_data_error(four_units):
    df, holdout = four_units
    holdout = holdout.copy()
    holdout.loc[0, "outcome"] = np.nan
    with pytest.raises(DataError):
        run_flame(df, holdout=holdout)


def test_holdout_without_covariate_is_a_data_error(four_units):
    df, holdout = four_units
    with pytest.raises(DataError):
        run_flame(df, holdout=holdout.drop(columns="X3"))


def test_single_arm_is_a_data_error(four_units):
    df, holdout = four_units
    with pytest.raises(DataError):
        run_flame(df.assign(treated=1), holdout=holdout)


def test_outcome_type_detection():
    assert detect_outcome_type(pd.Series([0.5, 1.2, 3.3])) == "continuous"
    assert detect_outcome_type(pd.Series([0, 1, 1, 0])) == "binary"
    assert detect_outcome_type(pd.Series([True, False])) == "binary"
    assert detect_outcome_type(pd.Series(["a", "b", "c"])) == "multiclass"
    assert detect_outcome_type(pd.Series([1, 2, 3, 4])) == "continuous"
