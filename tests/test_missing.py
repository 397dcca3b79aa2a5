import numpy as np
import pandas as pd
import pytest

from almost_matching import ExternalProcedureError, run_flame

WEIGHTS = [3.0, 1.0, 2.0]


def make_missing_data(fill=np.nan) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "x0": [0, 0, 1, 1, 5, 6],
            "x1": [fill, 1, 1, 1, 5, 6],
            "x2": [0, 0, 1, 1, 5, 6],
            "treated": [1, 0, 1, 0, 1, 0],
            "outcome": [2.0, 1.0, 3.0, 2.5, 1.0, 0.0],
        },
        index=["u0", "u1", "u2", "u3", "u4", "u5"],
    )


def test_keep_matches_only_on_sets_avoiding_missing_covariate():
    result = run_flame(make_missing_data(), weights=WEIGHTS, missing_data="keep")
    assert result.units.loc["u0", "matched"]
    for group in result.groups_for("u0", multiple=True):
        assert 1 not in group.covariates
    first_group = result.groups[0]
    assert result.group_units(first_group) == ["u2", "u3"]
    assert len(result.groups_for("u0")[0].covariates) == 2


def test_drop_excludes_units_with_missing_values():
    result = run_flame(make_missing_data(), weights=WEIGHTS, missing_data="drop")
    assert not result.units.loc["u0", "matched"]
    assert not result.units.loc["u1", "matched"]
    assert all(0 not in group.rows for group in result.groups)


def test_impute_with_external_procedure():
    def fill_with_one(frame, seed):
        return frame.fillna(1)

    result = run_flame(make_missing_data(), weights=WEIGHTS, missing_data="impute", imputation=fill_with_one)
    assert result.units.loc["u0", "x1"] == 1
    mmg = result.groups_for("u0")[0]
    assert mmg.iteration == 1
    assert sorted(result.group_units(mmg)) == ["u0", "u1"]


def test_default_imputation_fills_every_value():
    result = run_flame(make_missing_data(), weights=WEIGHTS, missing_data="impute", random_state=3)
    assert result.units["x1"].notna().all()
    assert result.units.loc["u0", "x1"] in {1, 5, 6}


def test_broken_imputation_is_reported():
    with pytest.raises(ExternalProcedureError):
        run_flame(make_missing_data(), weights=WEIGHTS, missing_data="impute", imputation=lambda f, s: f)

    def explode(frame, seed):
        raise RuntimeError("no imputer today")

    with pytest.raises(ExternalProcedureError, match="no imputer today"):
        run_flame(make_missing_data(), weights=WEIGHTS, missing_data="impute", imputation=explode)


def test_custom_missing_indicator():
    df = make_missing_data(fill=-99)
    result = run_flame(df, weights=WEIGHTS, missing_data="keep", missing_indicator=-99)
    for group in result.groups_for("u0", multiple=True):
        assert 1 not in group.covariates
    assert result.units.loc["u0", "matched"]
