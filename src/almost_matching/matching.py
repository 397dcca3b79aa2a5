"""High-level FLAME / DAME matching pipelines.

The engine modules each handle one concern:

* ``bitset`` and ``engine`` group units that agree exactly on a covariate set
* ``scoring`` measures how predictive a covariate set is on holdout data
* ``search`` decides which covariate set to match on next and when to stop
* ``registry`` keeps the committed groups and per-unit status

This module wires them together over in-memory ``pandas`` objects and returns a
plain :class:`MatchResult` record that the functions in ``effects`` analyse.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Hashable, List, Optional, Sequence, Union

import pandas as pd

from .config import MatchConfig
from .data import prepare_holdout, prepare_units, split_holdout
from .effects import compute_cates
from .engine import MatchedGroup
from .errors import DataError
from .lattice import CovariateSet
from .registry import GroupRegistry
from .scoring import ScoringOracle, make_predictor
from .search import SearchController, SearchOutcome, TerminationReason

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    """Everything a FLAME or DAME run produces."""

    status: str
    """``"success"`` or ``"failed"`` (a predictor or imputer broke mid-run)."""

    reason: TerminationReason
    units: pd.DataFrame
    """Input units annotated with ``matched``, ``weight`` and, without replacement, ``group_id``."""

    groups: List[MatchedGroup]
    """Committed groups in the order they were formed."""

    matched_sets: List[CovariateSet]
    """Covariate set matched on at each iteration (the first is the full set)."""

    cov_sets: List[List[str]]
    """Covariates dropped at each iteration after the first."""

    covariate_names: List[str]
    treatment_col: str
    outcome_col: Optional[str]
    config: MatchConfig
    registry: GroupRegistry = field(repr=False)
    """Per-unit group index the run committed into."""

    pe_values: List[float] = field(default_factory=list)
    bf_values: List[float] = field(default_factory=list)
    baseline_pe: Optional[float] = None
    error: Optional[str] = None

    @property
    def iterations(self) -> int:
        return len(self.matched_sets)

    @property
    def message(self) -> str:
        return self.reason.message if self.error is None else f"{self.reason.message} {self.error}"

    def group_units(self, group: MatchedGroup) -> List[Hashable]:
        """Index labels of the units in ``group``."""
        return list(self.units.index[list(group.rows)])

    def groups_for(self, unit: Hashable, multiple: bool = False) -> List[MatchedGroup]:
        """Groups containing ``unit`` by iteration; the first one is its main matched group."""

        return self.registry.groups_for(self.units.index.get_loc(unit), multiple)


def _annotate_units(
    df: pd.DataFrame,
    outcome: SearchOutcome,
    *,
    covariates: Sequence[str],
    treatment_col: str,
    outcome_col: Optional[str],
    imputed: pd.DataFrame,
    replace: bool,
) -> pd.DataFrame:
    columns = [treatment_col] + ([outcome_col] if outcome_col in df.columns else [])
    units = pd.concat([imputed[list(covariates)], df[columns]], axis=1)
    registry = outcome.registry
    units["matched"] = registry.matched
    units["weight"] = registry.weight
    if not replace:
        ids = pd.Series(registry.group_id, index=units.index, dtype="Int64")
        units["group_id"] = ids.mask(registry.group_id < 0)
    return units


def _run(
    algorithm: str,
    df: pd.DataFrame,
    *,
    treatment_col: str,
    outcome_col: Optional[str],
    covariates: Optional[Sequence[str]],
    holdout: Union[pd.DataFrame, float],
    options: dict,
) -> MatchResult:
    config = MatchConfig.from_options(**options)
    if covariates is None:
        covariates = [c for c in df.columns if c not in (treatment_col, outcome_col)]
    covariates = list(covariates)
    config.validate(len(covariates))

    if config.weights is None:
        if outcome_col is None:
            raise DataError("An outcome column is required to compute predictive error.")
        matching_df, holdout_df = split_holdout(
            df, holdout, treatment_col=treatment_col, random_state=config.random_state
        )
    else:
        matching_df, holdout_df = df, None

    units = prepare_units(
        matching_df,
        treatment_col=treatment_col,
        outcome_col=outcome_col,
        covariates=covariates,
        config=config,
    )
    eligible_treated = units.treated & units.eligible
    if not eligible_treated.any() or not (~units.treated & units.eligible).any():
        raise DataError("Both treated and control units are required for matching.")

    if holdout_df is not None:
        held = prepare_holdout(
            holdout_df,
            treatment_col=treatment_col,
            outcome_col=outcome_col,
            covariates=covariates,
            config=config,
        )
        predictor = make_predictor(
            config.PE_method, held.outcome_type, alpha=config.alpha, random_state=config.random_state
        )
        oracle = ScoringOracle(
            held, predictor=predictor, missing_holdout=config.missing_holdout, n_jobs=config.n_jobs
        )
    else:
        oracle = ScoringOracle(None, weights=config.weights)

    logger.info(
        "Running %s on %d unit(s) (%d treated) over %d covariate(s)",
        algorithm.upper(),
        units.n_units,
        int(units.treated.sum()),
        units.p,
    )
    outcome = SearchController(units, oracle, config, algorithm=algorithm).run()

    result = MatchResult(
        status="failed" if outcome.reason is TerminationReason.FAILED else "success",
        reason=outcome.reason,
        units=_annotate_units(
            matching_df,
            outcome,
            covariates=covariates,
            treatment_col=treatment_col,
            outcome_col=outcome_col,
            imputed=units.covariates,
            replace=config.replace,
        ),
        groups=list(outcome.registry.groups),
        matched_sets=outcome.matched_sets,
        cov_sets=[[covariates[j] for j in s.dropped] for s in outcome.matched_sets[1:]],
        covariate_names=covariates,
        treatment_col=treatment_col,
        outcome_col=outcome_col,
        config=config,
        registry=outcome.registry,
        pe_values=outcome.pe_values,
        bf_values=outcome.bf_values,
        baseline_pe=outcome.baseline_pe,
        error=outcome.error,
    )

    if config.estimate_CATEs and outcome_col in result.units.columns:
        result.units["CATE"] = compute_cates(result)
    return result


def run_flame(
    df: pd.DataFrame,
    *,
    treatment_col: str = "treated",
    outcome_col: Optional[str] = "outcome",
    covariates: Optional[Sequence[str]] = None,
    holdout: Union[pd.DataFrame, float] = 0.1,
    **options,
) -> MatchResult:
    """Match with FLAME: greedy backward elimination of covariates.

    Parameters
    ----------
    df:
        Units to match. Covariates must be categorical (any hashable codes).
    treatment_col:
        Binary treatment indicator (1 = treated).
    outcome_col:
        Outcome column; required in the holdout data, optional in ``df``.
    covariates:
        Covariate columns. Defaults to every column other than treatment and outcome.
    holdout:
        Holdout table used to compute predictive error, or the fraction of ``df``
        to set aside at random for that purpose.
    **options:
        Any field of :class:`MatchConfig`, e.g. ``C``, ``replace``,
        ``early_stop_iterations`` or ``PE_method``.
    """

    return _run(
        "flame",
        df,
        treatment_col=treatment_col,
        outcome_col=outcome_col,
        covariates=covariates,
        holdout=holdout,
        options=options,
    )


def run_dame(
    df: pd.DataFrame,
    *,
    treatment_col: str = "treated",
    outcome_col: Optional[str] = "outcome",
    covariates: Optional[Sequence[str]] = None,
    holdout: Union[pd.DataFrame, float] = 0.1,
    **options,
) -> MatchResult:
    """Match with DAME, or FLAME followed by DAME when ``n_flame_iters > 0``.

    Takes the same arguments as :func:`run_flame`.
    """

    return _run(
        "dame",
        df,
        treatment_col=treatment_col,
        outcome_col=outcome_col,
        covariates=covariates,
        holdout=holdout,
        options=options,
    )
