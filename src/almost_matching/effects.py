"""Treatment-effect summaries computed from a finished :class:`MatchResult`.

These are pure functions over the result record; they never modify it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Hashable, List, Optional

import numpy as np
import pandas as pd

from .engine import MatchedGroup
from .errors import MatchingError

if TYPE_CHECKING:
    from .matching import MatchResult


def mmg_of(result: "MatchResult", unit: Hashable) -> Optional[MatchedGroup]:
    """Main matched group of ``unit``, or ``None`` if it never matched."""

    groups = result.groups_for(unit)
    return groups[0] if groups else None


def _outcomes(result: "MatchResult") -> pd.Series:
    if result.outcome_col is None or result.outcome_col not in result.units.columns:
        raise MatchingError("Treatment effects require outcomes for the matched units.")
    return result.units[result.outcome_col]


def group_effect(result: "MatchResult", group: MatchedGroup) -> float:
    """Mean treated outcome minus mean control outcome within ``group``."""

    outcomes = _outcomes(result).iloc[list(group.rows)]
    treated = result.units[result.treatment_col].iloc[list(group.rows)].astype(int) == 1
    if not treated.any() or treated.all():
        raise MatchingError("A matched group needs both treated and control outcomes.")
    return float(outcomes[treated].mean() - outcomes[~treated].mean())


def compute_cate(result: "MatchResult", unit: Hashable) -> float:
    """Conditional average treatment effect of ``unit``, taken from its main matched group."""

    group = mmg_of(result, unit)
    if group is None:
        return float("nan")
    return group_effect(result, group)


def _first_group_ids(result: "MatchResult") -> Dict[int, int]:
    # groups are stored in iteration order, so the first hit per row is its MMG
    first: Dict[int, int] = {}
    for gid, group in enumerate(result.groups):
        for row in group.rows:
            first.setdefault(row, gid)
    return first


def compute_cates(result: "MatchResult") -> pd.Series:
    """CATE for every unit (NaN where unmatched)."""

    effects: Dict[int, float] = {}
    values = np.full(len(result.units), np.nan)
    for row, gid in _first_group_ids(result).items():
        if gid not in effects:
            effects[gid] = group_effect(result, result.groups[gid])
        values[row] = effects[gid]
    return pd.Series(values, index=result.units.index, name="CATE")


def _main_groups(result: "MatchResult") -> List[MatchedGroup]:
    gids = sorted(set(_first_group_ids(result).values()))
    return [result.groups[gid] for gid in gids]


def compute_ate(result: "MatchResult") -> float:
    """Average treatment effect: group effects weighted by group size."""

    groups = _main_groups(result)
    if not groups:
        raise MatchingError("ATE requires at least one matched group.")
    sizes = np.array([len(g) for g in groups], dtype=float)
    effects = np.array([group_effect(result, g) for g in groups])
    return float(np.sum(effects * sizes) / sizes.sum())


def compute_att(result: "MatchResult") -> float:
    """Average treatment effect on the treated: group effects weighted by treated count."""

    groups = _main_groups(result)
    if not groups:
        raise MatchingError("ATT requires at least one matched group.")
    n_treated = np.array([g.n_treated for g in groups], dtype=float)
    effects = np.array([group_effect(result, g) for g in groups])
    return float(np.sum(effects * n_treated) / n_treated.sum())


def matched_table(result: "MatchResult") -> pd.DataFrame:
    """Matched units with each covariate outside their main group's set shown as ``"*"``."""

    matched = result.units.loc[result.units["matched"].astype(bool)]
    table = matched[result.covariate_names].astype(object).copy()
    first = _first_group_ids(result)
    for label in table.index:
        group = result.groups[first[result.units.index.get_loc(label)]]
        for j in group.covariates.dropped:
            table.at[label, result.covariate_names[j]] = "*"
    return table
