"""Exact-match keys for units restricted to a covariate set.

Each covariate is coded ``0..k_j-1`` with ``-1`` for missing. A unit's key under a
covariate set is the mixed-radix number ``sum(code_j * radix_j)`` over the set's
covariates, where ``radix_j`` is fixed per covariate for the whole run, so keys
are canonical: two units share a key iff they agree on every covariate in the set.

A unit with a missing code inside the set gets no key at all, which makes it
unequal to every unit (itself included) on that set while leaving it matchable on
sets that avoid the missing covariate.
"""

from __future__ import annotations

from typing import Hashable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .lattice import CovariateSet

MISSING_CODE = -1
NO_KEY = -1
_MAX_RADIX = 2**62


class BitsetEncoder:
    """Exact-match keys over a fixed coded covariate matrix.

    Parameters
    ----------
    codes:
        ``(n, p)`` integer matrix, each column coded ``0..k_j-1`` with
        ``MISSING_CODE`` for missing values.
    cardinalities:
        Number of levels ``k_j`` of each column.
    """

    def __init__(self, codes: np.ndarray, cardinalities: Sequence[int]):
        codes = np.asarray(codes, dtype=np.int64)
        if codes.ndim != 2 or codes.shape[1] != len(cardinalities):
            raise ValueError("codes must be an (n, p) matrix with one cardinality per column")
        self.codes = codes
        self.cardinalities = np.maximum(np.asarray(cardinalities, dtype=np.int64), 1)
        self.p = codes.shape[1]

        radices = []
        radix = 1
        for k in self.cardinalities:
            radices.append(radix)
            radix *= int(k)
        # Python ints above, so overflow is detected rather than wrapped
        self.canonical = radix < _MAX_RADIX
        self.radices = np.asarray(radices, dtype=np.int64) if self.canonical else None

    @property
    def n_units(self) -> int:
        return self.codes.shape[0]

    def encode(self, row: int, covset: CovariateSet) -> Optional[Hashable]:
        """Key of one unit.

        Parameters
        ----------
        row:
            Row position of the unit in ``codes``.
        covset:
            Covariates the key is built from.

        Returns
        -------
        An integer key (a tuple when the radix overflows), or ``None`` if the unit
        is missing a covariate in ``covset``.
        """

        cols = list(covset.indices)
        values = self.codes[row, cols]
        if np.any(values == MISSING_CODE):
            return None
        if self.canonical:
            return int(np.dot(values, self.radices[cols]))
        return tuple(int(v) for v in values)

    def encode_many(self, rows: np.ndarray, covset: CovariateSet) -> Tuple[np.ndarray, np.ndarray]:
        """Keys for many units at once.

        Parameters
        ----------
        rows:
            Row positions of the units to encode.
        covset:
            Covariates the keys are built from.

        Returns
        -------
        ``(keys, valid)``. Invalid units carry ``NO_KEY``. When the full radix
        does not fit in 64 bits, keys are dense labels that are only comparable
        within this call, so encode every unit that must be compared together.
        """

        rows = np.asarray(rows, dtype=np.int64)
        cols = list(covset.indices)
        block = self.codes[np.ix_(rows, cols)] if cols else np.zeros((len(rows), 0), dtype=np.int64)
        valid = np.all(block != MISSING_CODE, axis=1)

        if self.canonical:
            keys = block @ self.radices[cols] if cols else np.zeros(len(rows), dtype=np.int64)
        else:
            keys = self._dense_labels(block)
        keys = np.where(valid, keys, NO_KEY).astype(np.int64)
        return keys, valid

    def _dense_labels(self, block: np.ndarray) -> np.ndarray:
        keys = np.zeros(block.shape[0], dtype=np.int64)
        radix = 1
        for j in range(block.shape[1]):
            column = np.where(block[:, j] == MISSING_CODE, 0, block[:, j])
            keys = keys * (int(column.max(initial=0)) + 1) + column
            radix = int(keys.max(initial=0)) + 1
            if radix > 2**31:
                keys, _ = pd.factorize(keys)
                keys = keys.astype(np.int64)
        return keys
