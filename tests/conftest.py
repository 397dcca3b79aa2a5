import numpy as np
import pandas as pd
import pytest


def make_synthetic_data(n: int = 200, p: int = 4, levels: int = 3, seed: int = 42) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    covariates = rng.integers(0, levels, size=(n, p))
    treatment = rng.binomial(1, 0.4, size=n)
    coef = np.linspace(2.0, 0.1, p)
    outcome = covariates @ coef + 1.5 * treatment + rng.normal(0, 0.2, size=n)
    df = pd.DataFrame(covariates, columns=[f"x{j}" for j in range(p)])
    df["treated"] = treatment
    df["outcome"] = outcome
    return df


@pytest.fixture
def synthetic():
    """Matching data and an independent holdout table."""
    return make_synthetic_data(200, seed=1), make_synthetic_data(120, seed=2)


@pytest.fixture
def four_units():
    df = pd.DataFrame(
        {
            "X1": [1, 1, 1, 0],
            "X2": [1, 0, 1, 0],
            "X3": [1, 1, 1, 0],
            "treated": [1, 1, 0, 0],
            "outcome": [3.0, 2.0, 1.0, 0.5],
        },
        index=["T1", "T2", "C1", "C2"],
    )
    holdout = pd.DataFrame(
        {
            "X1": [1, 0, 1, 0, 1, 0, 1, 0],
            "X2": [1, 1, 0, 0, 1, 1, 0, 0],
            "X3": [1, 0, 1, 0, 0, 1, 0, 1],
            "treated": [1, 1, 1, 1, 0, 0, 0, 0],
            "outcome": [3.1, 1.9, 2.2, 0.8, 1.2, 0.9, 0.7, 0.4],
        }
    )
    return df, holdout


@pytest.fixture
def stubborn_units():
    """Three binary covariates plus one never-matchable unit per arm."""
    df = pd.DataFrame(
        {
            "x0": [0, 0, 1, 1, 0, 1, 8, 9],
            "x1": [0, 1, 0, 1, 1, 1, 8, 9],
            "x2": [1, 0, 0, 1, 0, 0, 8, 9],
            "treated": [1, 1, 1, 0, 0, 0, 1, 0],
            "outcome": [1.0, 2.0, 3.0, 1.5, 0.5, 2.5, 4.0, 0.0],
        },
        index=[f"u{i}" for i in range(8)],
    )
    return df
