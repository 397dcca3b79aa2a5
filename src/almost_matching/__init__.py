"""Almost-exact matching (FLAME and DAME) for causal inference on categorical data."""

from .config import MatchConfig
from .effects import compute_ate, compute_att, compute_cate, compute_cates, matched_table, mmg_of
from .engine import MatchedGroup
from .errors import ConfigurationError, DataError, ExternalProcedureError, MatchingError
from .lattice import CovariateSet
from .matching import MatchResult, run_dame, run_flame
from .scoring import RidgePredictor, XGBPredictor
from .search import TerminationReason

__all__ = [
    "ConfigurationError",
    "CovariateSet",
    "DataError",
    "ExternalProcedureError",
    "MatchConfig",
    "MatchResult",
    "MatchedGroup",
    "MatchingError",
    "RidgePredictor",
    "TerminationReason",
    "XGBPredictor",
    "compute_ate",
    "compute_att",
    "compute_cate",
    "compute_cates",
    "matched_table",
    "mmg_of",
    "run_dame",
    "run_flame",
]
