"""Iteration control for FLAME (greedy backward elimination) and DAME (lattice search).

Both algorithms first match on the full covariate set. FLAME then drops one
covariate per iteration, choosing the drop with the highest match quality
``C * BF - PE``. DAME walks the covariate-set lattice from larger to smaller sets,
only attempting a set once all of its supersets have been attempted, and within
a level picks the set with the lowest PE first. A hybrid run performs a number of
FLAME iterations and then continues with DAME below the set FLAME reached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from .bitset import BitsetEncoder
from .config import MatchConfig
from .data import UnitTable
from .engine import MatchEngine, MatchedGroup
from .errors import ExternalProcedureError
from .lattice import CovariateSet, CovariateSetLattice
from .registry import GroupRegistry
from .scoring import ScoringOracle

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    INIT = "init"
    ITERATING = "iterating"
    TERMINATED = "terminated"


class TerminationReason(str, Enum):
    NO_COVARIATES = "no_covariates"
    ALL_MATCHED = "all_matched"
    EARLY_STOP = "early_stop"
    MAX_ITERATIONS = "max_iterations"
    FAILED = "failed"

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_MESSAGES = {
    TerminationReason.NO_COVARIATES: "No covariate sets left to match on.",
    TerminationReason.ALL_MATCHED: "All units of one treatment arm are matched.",
    TerminationReason.EARLY_STOP: "Predictive error rose above the early-stop threshold.",
    TerminationReason.MAX_ITERATIONS: "Reached the early-stop iteration limit.",
    TerminationReason.FAILED: "A predictive-error or imputation procedure failed.",
}


@dataclass
class SearchOutcome:
    reason: TerminationReason
    registry: GroupRegistry
    matched_sets: List[CovariateSet]
    pe_values: List[float]
    bf_values: List[float]
    baseline_pe: Optional[float]
    error: Optional[str] = None
    lattice: Optional[CovariateSetLattice] = None

    @property
    def iterations(self) -> int:
        return len(self.matched_sets)


@dataclass
class _Candidate:
    covariates: CovariateSet
    pe: float
    bf: Optional[float] = None
    mq: Optional[float] = None


@dataclass
class SearchController:
    units: UnitTable
    oracle: ScoringOracle
    config: MatchConfig
    algorithm: str = "flame"

    state: RunState = field(default=RunState.INIT, init=False)

    def __post_init__(self):
        if self.algorithm not in ("flame", "dame"):
            raise ValueError(f"Unknown algorithm {self.algorithm!r}")
        encoder = BitsetEncoder(self.units.codes, self.units.cardinalities)
        self.engine = MatchEngine(encoder, self.units.treated)
        self.registry = GroupRegistry(self.units.n_units, replace=self.config.replace)
        self.matched_sets: List[CovariateSet] = []
        self.pe_values: List[float] = []
        self.bf_values: List[float] = []
        self.baseline_pe: Optional[float] = None
        self._log = logger.info if self.config.verbose >= 1 else logger.debug

    # unit pools

    @property
    def unmatched(self) -> np.ndarray:
        return self.units.eligible & ~self.registry.matched

    def pools(self) -> Tuple[np.ndarray, np.ndarray]:
        """Row positions of treated and control units allowed into the next match."""
        available = self.units.eligible if self.config.replace else self.unmatched
        treated = self.units.treated
        return np.flatnonzero(available & treated), np.flatnonzero(available & ~treated)

    def one_arm_exhausted(self) -> bool:
        unmatched = self.unmatched
        treated = self.units.treated
        return not (unmatched & treated).any() or not (unmatched & ~treated).any()

    def balancing_factor(self, covset: CovariateSet) -> float:
        treated_pool, control_pool = self.pools()
        unmatched = self.unmatched
        new_treated, new_control = self.engine.count_matchable(
            covset, treated_pool, control_pool, candidates=unmatched
        )
        remaining_treated = int((unmatched & self.units.treated).sum())
        remaining_control = int((unmatched & ~self.units.treated).sum())
        bf = 0.0
        if remaining_control:
            bf += new_control / remaining_control
        if remaining_treated:
            bf += new_treated / remaining_treated
        return bf

    # iteration steps

    def commit(
        self, covset: CovariateSet, pe: Optional[float], bf: Optional[float] = None
    ) -> List[MatchedGroup]:
        iteration = len(self.matched_sets) + 1
        if self.config.want_bf and bf is None:
            bf = self.balancing_factor(covset)
        treated_pool, control_pool = self.pools()
        fresh = self.unmatched if self.config.replace else None
        groups = self.engine.match(covset, treated_pool, control_pool, iteration=iteration, fresh=fresh)
        self.registry.commit_all(groups)

        self.matched_sets.append(covset)
        if self.config.want_pe and pe is not None:
            self.pe_values.append(pe)
        if self.config.want_bf:
            self.bf_values.append(bf)
        self._log(
            "Iteration %d: matched on %s, %d new group(s), %d unit(s) still unmatched",
            iteration,
            covset.names(self.units.covariate_names),
            len(groups),
            int(self.unmatched.sum()),
        )
        return groups

    def flame_step(self, active: CovariateSet) -> Optional[_Candidate]:
        drops = [j for j in active.indices if not active.without(j).is_empty()]
        if not drops:
            return None
        options = [active.without(j) for j in drops]
        pes = self.oracle.score_many(options)

        best = None
        for j, covset, pe in zip(drops, options, pes):
            if self.oracle.uses_weights:
                candidate = _Candidate(covset, pe, mq=-pe)
            else:
                bf = self.balancing_factor(covset)
                candidate = _Candidate(covset, pe, bf=bf, mq=self.config.C * bf - pe)
            logger.debug(
                "Candidate drop of %s: PE=%.6g BF=%s MQ=%.6g",
                self.units.covariate_names[j],
                candidate.pe,
                candidate.bf,
                candidate.mq,
            )
            # drops ascend, so strict > keeps the smallest dropped index on ties
            if best is None or candidate.mq > best.mq:
                best = candidate
        return best

    def dame_step(self, lattice: CovariateSetLattice) -> Optional[_Candidate]:
        level = lattice.top_level()
        if not level:
            return None
        pes = self.oracle.score_many(level)
        best = None
        for covset, pe in zip(level, pes):
            if best is None or pe < best.pe:
                best = _Candidate(covset, pe)
        return best

    def exceeds_epsilon(self, pe: float) -> bool:
        epsilon = self.config.early_stop_epsilon
        if epsilon is None or self.oracle.uses_weights or self.baseline_pe is None:
            return False
        return pe > (1 + epsilon) * self.baseline_pe

    # main loop

    def run(self) -> SearchOutcome:
        if self.state is not RunState.INIT:
            raise RuntimeError(f"SearchController already ran (state={self.state.value}); build a new one per run")
        p = self.units.p
        full = CovariateSet.full(p)
        lattice = CovariateSetLattice(full)
        reason = None
        error = None

        try:
            self.baseline_pe = self.oracle.score(full)
            self.state = RunState.ITERATING
            self.commit(full, self.baseline_pe)
            lattice.visit(full)

            active = full
            flame_iters = 0
            in_dame = self.algorithm == "dame" and self.config.n_flame_iters == 0
            max_iters = self.config.early_stop_iterations

            while True:
                if self.one_arm_exhausted():
                    reason = TerminationReason.ALL_MATCHED
                    break
                if max_iters is not None and len(self.matched_sets) >= max_iters:
                    reason = TerminationReason.MAX_ITERATIONS
                    break

                if in_dame:
                    candidate = self.dame_step(lattice)
                else:
                    candidate = self.flame_step(active)
                if candidate is None:
                    reason = TerminationReason.NO_COVARIATES
                    break
                if self.exceeds_epsilon(candidate.pe):
                    self._log(
                        "Stopping: PE %.6g of %s exceeds (1 + %s) x baseline %.6g",
                        candidate.pe,
                        candidate.covariates.names(self.units.covariate_names),
                        self.config.early_stop_epsilon,
                        self.baseline_pe,
                    )
                    reason = TerminationReason.EARLY_STOP
                    break

                self.commit(candidate.covariates, candidate.pe, candidate.bf)
                if in_dame:
                    lattice.visit(candidate.covariates)
                    continue

                lattice.visit(candidate.covariates)
                lattice.exclude_all_but(candidate.covariates)
                active = candidate.covariates
                flame_iters += 1
                if self.algorithm == "dame" and flame_iters >= self.config.n_flame_iters:
                    self._log("Switching to DAME below %s", active.names(self.units.covariate_names))
                    lattice = CovariateSetLattice(active)
                    lattice.visit(active)
                    in_dame = True
        except ExternalProcedureError as exc:
            if self.config.strict:
                raise
            logger.error("Run aborted after %d iteration(s): %s", len(self.matched_sets), exc)
            reason = TerminationReason.FAILED
            error = str(exc)

        self.state = RunState.TERMINATED
        self._log("Terminated after %d iteration(s): %s", len(self.matched_sets), reason.message)
        return SearchOutcome(
            reason=reason,
            registry=self.registry,
            matched_sets=list(self.matched_sets),
            pe_values=list(self.pe_values),
            bf_values=list(self.bf_values),
            baseline_pe=self.baseline_pe,
            error=error,
            lattice=lattice,
        )
