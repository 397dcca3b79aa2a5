"""Covariate sets and the inclusion lattice they form.

A covariate set is stored as a bitmask over the ``p`` covariate positions. The
lattice is an arena of masks with visited / excluded flags rather than a graph of
linked nodes, since every subset is an immutable value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple


@dataclass(frozen=True)
class CovariateSet:
    """Immutable subset of ``range(p)``."""

    mask: int
    p: int

    @classmethod
    def full(cls, p: int) -> "CovariateSet":
        """Set of all ``p`` covariates."""
        return cls((1 << p) - 1, p)

    @classmethod
    def empty(cls, p: int) -> "CovariateSet":
        """Set with no covariates."""
        return cls(0, p)

    @classmethod
    def from_indices(cls, indices, p: int) -> "CovariateSet":
        """Build a set from covariate positions.

        Parameters
        ----------
        indices:
            Iterable of positions in ``range(p)``.
        p:
            Total number of covariates.

        Raises
        ------
        IndexError
            If a position falls outside ``range(p)``.
        """
        mask = 0
        for j in indices:
            if not 0 <= j < p:
                raise IndexError(f"covariate index {j} out of range for p={p}")
            mask |= 1 << j
        return cls(mask, p)

    @property
    def indices(self) -> Tuple[int, ...]:
        """Covariates in the set, ascending."""
        return tuple(j for j in range(self.p) if self.mask >> j & 1)

    @property
    def dropped(self) -> Tuple[int, ...]:
        """Covariates *not* in the set, ascending."""
        return tuple(j for j in range(self.p) if not self.mask >> j & 1)

    def __len__(self) -> int:
        return bin(self.mask).count("1")

    def __contains__(self, j: int) -> bool:
        return bool(self.mask >> j & 1)

    def __iter__(self) -> Iterator[int]:
        return iter(self.indices)

    def is_empty(self) -> bool:
        return self.mask == 0

    def issubset(self, other: "CovariateSet") -> bool:
        """True if every covariate of this set is also in ``other``."""
        return self.mask & ~other.mask == 0

    def without(self, j: int) -> "CovariateSet":
        """Copy of the set with covariate ``j`` removed."""
        return CovariateSet(self.mask & ~(1 << j), self.p)

    def with_(self, j: int) -> "CovariateSet":
        """Copy of the set with covariate ``j`` added."""
        return CovariateSet(self.mask | (1 << j), self.p)

    def names(self, covariate_names) -> List[str]:
        """Column names of the covariates in the set."""
        return [covariate_names[j] for j in self.indices]

    def __repr__(self) -> str:
        return f"CovariateSet({list(self.indices)}, p={self.p})"


class CovariateSetLattice:
    """Frontier bookkeeping over the subsets of a root covariate set.

    ``visit`` marks a set as processed (scored and matched on, or rejected) and
    pushes any child whose parents have all been visited onto the frontier, so a
    set only becomes eligible after every superset below the root has been seen.
    The empty set is never placed on the frontier.
    """

    def __init__(self, root: CovariateSet):
        self.root = root
        self.p = root.p
        self._visited: Dict[int, int] = {}  # mask -> visit order
        self._excluded: Set[int] = set()
        self._frontier: Set[int] = set() if root.is_empty() else {root.mask}

    def children_of(self, covset: CovariateSet) -> List[CovariateSet]:
        """Sets obtained by removing exactly one covariate, ordered by removed index."""
        return [covset.without(j) for j in covset.indices]

    def parents_of(self, covset: CovariateSet) -> List[CovariateSet]:
        """Sets obtained by adding back one covariate that the root contains."""
        return [covset.with_(j) for j in self.root.indices if j not in covset]

    def is_visited(self, covset: CovariateSet) -> bool:
        return covset.mask in self._visited

    def is_excluded(self, covset: CovariateSet) -> bool:
        return covset.mask in self._excluded

    def visit_order(self, covset: CovariateSet) -> Optional[int]:
        return self._visited.get(covset.mask)

    @property
    def visited(self) -> List[CovariateSet]:
        ordered = sorted(self._visited.items(), key=lambda item: item[1])
        return [CovariateSet(mask, self.p) for mask, _ in ordered]

    def frontier(self) -> List[CovariateSet]:
        """Eligible sets, largest first, then by ascending dropped-index tuple."""
        sets = [CovariateSet(mask, self.p) for mask in self._frontier]
        return sorted(sets, key=lambda s: (-len(s), s.dropped))

    def top_level(self) -> List[CovariateSet]:
        """Frontier sets of the largest size still available."""
        sets = self.frontier()
        if not sets:
            return []
        size = len(sets[0])
        return [s for s in sets if len(s) == size]

    def visit(self, covset: CovariateSet) -> List[CovariateSet]:
        """Mark a set as processed and release children whose parents are all visited.

        Parameters
        ----------
        covset:
            A set below the root that has not been visited yet.

        Returns
        -------
        The children that joined the frontier, ordered by removed index.

        Raises
        ------
        ValueError
            If ``covset`` was already visited or is not a subset of the root.
        """

        if covset.mask in self._visited:
            raise ValueError(f"{covset!r} was already visited")
        if not covset.issubset(self.root):
            raise ValueError(f"{covset!r} is not below the lattice root {self.root!r}")
        self._visited[covset.mask] = len(self._visited)
        self._frontier.discard(covset.mask)

        released = []
        for child in self.children_of(covset):
            if child.is_empty() or child.mask in self._frontier:
                continue
            if child.mask in self._visited or child.mask in self._excluded:
                continue
            if all(parent.mask in self._visited for parent in self.parents_of(child)):
                self._frontier.add(child.mask)
                released.append(child)
        return released

    def exclude(self, covset: CovariateSet) -> None:
        """Remove a set from consideration for the rest of the run."""
        self._excluded.add(covset.mask)
        self._frontier.discard(covset.mask)

    def exclude_all_but(self, keep: CovariateSet) -> None:
        """Restrict the frontier to ``keep``; used by the greedy single-chain walk."""
        for mask in list(self._frontier):
            if mask != keep.mask:
                self.exclude(CovariateSet(mask, self.p))
