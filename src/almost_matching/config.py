"""Run options for FLAME / DAME matching."""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Callable, Optional, Sequence, Union

import numpy as np

from .errors import ConfigurationError

PE_METHODS = ("ridge", "xgb")
MISSING_DATA_POLICIES = ("drop", "keep", "impute")
MISSING_HOLDOUT_POLICIES = ("drop", "impute")
OUTCOME_TYPES = ("continuous", "binary", "multiclass")


@dataclass
class MatchConfig:
    """Every option recognised by :func:`run_flame` and :func:`run_dame`.

    Unknown keyword options are rejected by :meth:`from_options`; value checks that
    depend on the number of covariates happen in :meth:`validate`.
    """

    replace: bool = False
    """Allow a unit to join groups in later iterations after it has matched."""

    C: float = 0.1
    """Weight of the balancing factor in FLAME's match quality ``C * BF - PE``."""

    PE_method: Union[str, Callable[..., Any]] = "ridge"
    """``"ridge"``, ``"xgb"`` or a callable ``(X, y) -> predictions``."""

    alpha: float = 0.1
    outcome_type: Optional[str] = None
    """``"continuous"``, ``"binary"`` or ``"multiclass"``; detected from the holdout when ``None``."""

    missing_indicator: Any = np.nan
    missing_data: str = "drop"
    """What to do with matching units missing a covariate: ``drop``, ``keep`` or ``impute``."""

    missing_holdout: str = "drop"
    """``drop`` holdout rows per covariate set, or ``impute`` several copies and average PE."""

    missing_holdout_imputations: int = 10
    imputation: Optional[Callable[..., Any]] = None

    early_stop_iterations: Optional[int] = None
    early_stop_epsilon: Optional[float] = 0.25
    """Stop before a set whose PE exceeds ``(1 + epsilon) * baseline``; ``None`` disables it."""

    weights: Optional[Sequence[float]] = None
    """Fixed per-covariate importances used in place of fitted predictive error."""

    n_flame_iters: int = 0
    estimate_CATEs: bool = False

    want_pe: bool = False
    want_bf: bool = False
    random_state: Optional[int] = None
    n_jobs: int = 1
    verbose: int = 0
    strict: bool = False
    """Re-raise predictor or imputation failures instead of returning a failed result."""

    @classmethod
    def from_options(cls, **options: Any) -> "MatchConfig":
        """Build a config from keyword options, rejecting unknown names."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(f"Unknown option(s): {', '.join(unknown)}")
        return cls(**options)

    @property
    def uses_weights(self) -> bool:
        return self.weights is not None

    def validate(self, n_covariates: int) -> None:
        """Fail fast on bad option values before any iteration runs.

        Parameters
        ----------
        n_covariates:
            Number of covariates in the run, used to check ``weights``.

        Raises
        ------
        ConfigurationError
            If any option is out of range or inconsistent with another.
        """

        if not isinstance(self.PE_method, str):
            if not callable(self.PE_method):
                raise ConfigurationError("PE_method must be 'ridge', 'xgb' or a callable.")
        elif self.PE_method not in PE_METHODS:
            raise ConfigurationError(
                f"PE_method must be one of {PE_METHODS} or a callable, got {self.PE_method!r}"
            )
        if self.missing_data not in MISSING_DATA_POLICIES:
            raise ConfigurationError(
                f"missing_data must be one of {MISSING_DATA_POLICIES}, got {self.missing_data!r}"
            )
        if self.missing_holdout not in MISSING_HOLDOUT_POLICIES:
            raise ConfigurationError(
                f"missing_holdout must be one of {MISSING_HOLDOUT_POLICIES}, "
                f"got {self.missing_holdout!r}"
            )
        if self.outcome_type is not None and self.outcome_type not in OUTCOME_TYPES:
            raise ConfigurationError(
                f"outcome_type must be one of {OUTCOME_TYPES}, got {self.outcome_type!r}"
            )
        if self.imputation is not None and not callable(self.imputation):
            raise ConfigurationError("imputation must be callable.")
        if not math.isfinite(self.C) or self.C < 0:
            raise ConfigurationError(f"C must be a non-negative number, got {self.C}")
        if self.alpha <= 0:
            raise ConfigurationError(f"alpha must be positive, got {self.alpha}")
        value = self.missing_holdout_imputations
        if not isinstance(value, (int, np.integer)) or value < 1:
            raise ConfigurationError(
                f"missing_holdout_imputations must be a positive integer, got {value!r}"
            )
        if self.n_jobs == 0:
            raise ConfigurationError("n_jobs must be a positive integer or negative (joblib style).")
        if self.early_stop_iterations is not None and self.early_stop_iterations < 1:
            raise ConfigurationError(
                f"early_stop_iterations must be >= 1, got {self.early_stop_iterations}"
            )
        if self.early_stop_epsilon is not None and self.early_stop_epsilon < 0:
            raise ConfigurationError(
                f"early_stop_epsilon must be non-negative, got {self.early_stop_epsilon}"
            )
        if self.n_flame_iters < 0:
            raise ConfigurationError(f"n_flame_iters must be >= 0, got {self.n_flame_iters}")
        if self.weights is not None:
            self._validate_weights(n_covariates)

    def _validate_weights(self, n_covariates: int) -> None:
        weights = np.asarray(self.weights, dtype=float)
        if weights.ndim != 1 or len(weights) != n_covariates:
            raise ConfigurationError(
                f"weights must have one entry per covariate ({n_covariates}), got shape {weights.shape}"
            )
        if not np.all(np.isfinite(weights)) or np.any(weights < 0):
            raise ConfigurationError("weights must be finite and non-negative.")
        # without replacement the order of drops must be unambiguous
        if not self.replace and len(np.unique(weights)) != len(weights):
            raise ConfigurationError(
                "weights contain ties and cannot define a strict drop ordering when replace=False."
            )
