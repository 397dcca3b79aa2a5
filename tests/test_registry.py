import pytest

from almost_matching.engine import MatchedGroup
from almost_matching.errors import MatchingError
from almost_matching.lattice import CovariateSet
from almost_matching.registry import GroupRegistry


def group(rows, iteration, size=3):
    covset = CovariateSet.from_indices(range(size), 3)
    return MatchedGroup(rows=tuple(rows), covariates=covset, iteration=iteration, key=0, n_treated=1, n_control=1)


def test_commit_without_replacement_records_ids():
    registry = GroupRegistry(5)
    assert registry.commit(group([0, 1], 1)) == 0
    assert registry.commit(group([2, 3], 2, size=2)) == 1
    assert list(registry.group_id) == [0, 0, 1, 1, -1]
    assert list(registry.weight) == [1, 1, 1, 1, 0]
    assert list(registry.matched) == [True, True, True, True, False]


def test_second_commit_of_unit_without_replacement_fails():
    registry = GroupRegistry(3)
    registry.commit(group([0, 1], 1))
    with pytest.raises(MatchingError):
        registry.commit(group([1, 2], 2, size=2))


def test_replacement_accumulates_weight_and_orders_groups():
    registry = GroupRegistry(3, replace=True)
    registry.commit_all([group([0, 1], 1)])
    registry.commit_all([group([0, 2], 2, size=2), group([1, 2], 2, size=2)])
    assert list(registry.weight) == [2, 2, 2]
    assert list(registry.group_id) == [-1, -1, -1]

    mine = registry.groups_for(0, multiple=True)
    assert [g.iteration for g in mine] == [1, 2]
    assert registry.groups_for(0) == mine[:1]
    assert registry.groups_for(2)[0].iteration == 2
