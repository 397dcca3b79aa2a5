"""Exact matching of treated and control units on one covariate set."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Hashable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .bitset import BitsetEncoder
from .lattice import CovariateSet


@dataclass(frozen=True)
class MatchedGroup:
    """Units sharing identical values on ``covariates``, with both arms present."""

    rows: Tuple[int, ...]
    """Row positions in the unit table, ascending."""

    covariates: CovariateSet
    iteration: int
    key: Hashable
    n_treated: int
    n_control: int

    def __len__(self) -> int:
        return len(self.rows)

    def __contains__(self, row: int) -> bool:
        return row in self.rows


class MatchEngine:
    """Bucket units by their exact-match key in one hash-based pass."""

    def __init__(self, encoder: BitsetEncoder, treated: np.ndarray):
        self.encoder = encoder
        self.treated = np.asarray(treated, dtype=bool)

    def _keyed(self, covset: CovariateSet, rows: np.ndarray) -> pd.DataFrame:
        keys, valid = self.encoder.encode_many(rows, covset)
        frame = pd.DataFrame({"key": keys, "row": rows, "treated": self.treated[rows]})
        return frame.loc[valid]

    def match(
        self,
        covset: CovariateSet,
        treated_pool: np.ndarray,
        control_pool: np.ndarray,
        *,
        iteration: int = 0,
        fresh: Optional[np.ndarray] = None,
    ) -> List[MatchedGroup]:
        """Return every bucket holding at least one treated and one control unit.

        ``fresh`` is an optional boolean mask over all units; when given, a bucket
        only qualifies if it contains at least one unit flagged in it.
        """

        rows = np.concatenate([np.asarray(treated_pool), np.asarray(control_pool)]).astype(np.int64)
        keyed = self._keyed(covset, rows)
        if keyed.empty:
            return []

        stats = keyed.groupby("key", sort=True)["treated"].agg(["sum", "count"])
        stats = stats[(stats["sum"] > 0) & (stats["sum"] < stats["count"])]
        if fresh is not None and not stats.empty:
            keyed = keyed.assign(fresh=np.asarray(fresh, dtype=bool)[keyed["row"].to_numpy()])
            has_fresh = keyed.groupby("key")["fresh"].any()
            stats = stats[has_fresh.reindex(stats.index).to_numpy()]

        members = keyed[keyed["key"].isin(stats.index)].sort_values(["key", "row"])
        groups = []
        for key, bucket in members.groupby("key", sort=True):
            n_treated = int(bucket["treated"].sum())
            groups.append(
                MatchedGroup(
                    rows=tuple(int(r) for r in bucket["row"]),
                    covariates=covset,
                    iteration=iteration,
                    key=int(key),
                    n_treated=n_treated,
                    n_control=len(bucket) - n_treated,
                )
            )
        return groups

    def count_matchable(
        self,
        covset: CovariateSet,
        treated_pool: np.ndarray,
        control_pool: np.ndarray,
        *,
        candidates: Optional[np.ndarray] = None,
    ) -> Tuple[int, int]:
        """Number of treated and control units that would land in a valid bucket.

        Only units flagged in ``candidates`` (a mask over all units) are counted,
        while every pooled unit can serve as a partner.
        """

        treated_pool = np.asarray(treated_pool, dtype=np.int64)
        control_pool = np.asarray(control_pool, dtype=np.int64)
        # one call, so wide-radix dense labels stay comparable across arms
        keys, valid = self.encoder.encode_many(np.concatenate([treated_pool, control_pool]), covset)
        n_t = len(treated_pool)
        keys_t, valid_t = keys[:n_t], valid[:n_t]
        keys_c, valid_c = keys[n_t:], valid[n_t:]
        common = pd.Index(keys_t[valid_t]).intersection(pd.Index(keys_c[valid_c]))
        hit_t = valid_t & pd.Index(keys_t).isin(common)
        hit_c = valid_c & pd.Index(keys_c).isin(common)
        if candidates is not None:
            candidates = np.asarray(candidates, dtype=bool)
            hit_t &= candidates[treated_pool]
            hit_c &= candidates[control_pool]
        return int(hit_t.sum()), int(hit_c.sum())
