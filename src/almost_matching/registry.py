"""Accumulation of committed matched groups and per-unit match status."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List

import numpy as np

from .engine import MatchedGroup
from .errors import MatchingError

logger = logging.getLogger(__name__)


class GroupRegistry:
    """Committed groups in commit order, plus per-unit status, weight and group id.

    Without replacement each unit carries the id (position in :attr:`groups`) of
    the single group it belongs to. With replacement units may appear in several
    groups, so no id column is kept and ``weight`` counts memberships.
    """

    def __init__(self, n_units: int, *, replace: bool = False):
        self.replace = replace
        self.groups: List[MatchedGroup] = []
        self.matched = np.zeros(n_units, dtype=bool)
        self.weight = np.zeros(n_units, dtype=np.int64)
        self.group_id = np.full(n_units, -1, dtype=np.int64)
        self._by_unit: Dict[int, List[int]] = defaultdict(list)

    def __len__(self) -> int:
        return len(self.groups)

    def commit(self, group: MatchedGroup) -> int:
        rows = np.asarray(group.rows, dtype=np.int64)
        if not self.replace:
            already = rows[self.group_id[rows] >= 0]
            if len(already):
                raise MatchingError(
                    f"Unit(s) at rows {already.tolist()} were already matched; "
                    "without replacement a unit may join only one group."
                )
        gid = len(self.groups)
        self.groups.append(group)
        self.matched[rows] = True
        self.weight[rows] += 1
        if not self.replace:
            self.group_id[rows] = gid
        for row in group.rows:
            self._by_unit[row].append(gid)
        return gid

    def commit_all(self, groups: List[MatchedGroup]) -> int:
        for group in groups:
            self.commit(group)
        if groups:
            logger.debug(
                "Committed %d group(s) at iteration %d covering %d unit(s)",
                len(groups),
                groups[0].iteration,
                sum(len(g) for g in groups),
            )
        return len(groups)

    def groups_for(self, row: int, multiple: bool = False) -> List[MatchedGroup]:
        """Groups containing ``row`` ordered by iteration; the first is its main matched group."""

        ordered = sorted((self.groups[gid] for gid in self._by_unit.get(row, [])), key=lambda g: g.iteration)
        return ordered if multiple else ordered[:1]
