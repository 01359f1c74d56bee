"""Tests for LTT, gamma, Yule and birth-death fits."""

from __future__ import annotations

import math

import numpy as np
import pytest

from phylocourse.data import is_ultrametric, parse_newick, tip_labels
from phylocourse.diversification import (
    birth_death_deviance,
    branching_times,
    empirical_p_value,
    fit_birth_death,
    fit_pure_birth_on_times,
    fit_yule,
    gamma_statistic,
    lineages_through_time,
    simulate_birth_death_trees,
    simulated_gamma_null,
)

TREE8 = "(((A:1,B:1):1,(C:1.5,D:1.5):0.5):2,((E:0.5,F:0.5):2.5,(G:2,H:2):1):1);"


def test_branching_times():
    bt = branching_times(parse_newick(TREE8))
    assert np.allclose(bt, [4.0, 3.0, 2.0, 2.0, 1.5, 1.0, 0.5])


def test_branching_times_requires_ultrametric():
    with pytest.raises(ValueError, match="ultrametric"):
        branching_times(parse_newick("((A:1,B:2):1,C:2);"))


def test_lineages_through_time():
    times, counts = lineages_through_time(parse_newick(TREE8))
    assert np.allclose(times, [0.0, 1.0, 2.0, 2.0, 2.5, 3.0, 3.5, 4.0])
    assert counts.tolist() == [2, 3, 4, 5, 6, 7, 8, 8]


def test_lineages_through_time_polytomy():
    times, counts = lineages_through_time(parse_newick("(A:2,B:2,(C:1,D:1,E:1):1);"))
    assert counts.tolist() == [3, 5, 5]
    assert times.tolist() == [0.0, 1.0, 2.0]


def test_gamma_three_taxa():
    result = gamma_statistic(parse_newick("((A:1,B:1):1,C:2);"))
    assert result.gamma == pytest.approx(-0.5 / (5.0 * math.sqrt(1.0 / 12.0)))
    assert result.p_two_sided == pytest.approx(2 * (1 - 0.5 * (1 + math.erf(abs(result.gamma) / math.sqrt(2)))))
    assert 0.0 < result.p_slowdown < 0.5


def test_gamma_sign_tracks_node_placement():
    recent = parse_newick("(((A:0.1,B:0.1):0.1,C:0.2):3.8,((D:0.1,E:0.1):0.1,F:0.2):3.8);")
    deep = parse_newick("(((A:3.8,B:3.8):0.1,C:3.9):0.1,((D:3.8,E:3.8):0.1,F:3.9):0.1);")
    assert gamma_statistic(recent).gamma > 0
    assert gamma_statistic(deep).gamma < 0


def test_gamma_requirements():
    with pytest.raises(ValueError):
        gamma_statistic(parse_newick("(A:1,B:1);"))
    with pytest.raises(ValueError, match="bifurcating"):
        gamma_statistic(parse_newick("(A:1,B:1,C:1);"))


def test_fit_yule():
    fit = fit_yule(parse_newick(TREE8))
    assert fit.birth == pytest.approx(6.0 / 18.0)
    assert fit.death == 0.0
    expected = -6.0 + math.lgamma(8) + 6 * math.log(1.0 / 3.0)
    assert fit.loglik == pytest.approx(expected)
    assert fit.params["se"] == pytest.approx((1.0 / 3.0) / math.sqrt(6))


def test_pure_birth_rate_is_deviance_minimum():
    tree = parse_newick(TREE8)
    times = branching_times(tree)
    pb = fit_pure_birth_on_times(tree)
    r = pb.params["r"]
    dev = birth_death_deviance(0.0, r, times)
    assert dev <= birth_death_deviance(0.0, 1.1 * r, times)
    assert dev <= birth_death_deviance(0.0, 0.9 * r, times)
    assert pb.loglik == pytest.approx(-dev / 2.0)


def test_birth_death_deviance_invalid_region():
    times = np.array([2.0, 1.0])
    assert birth_death_deviance(1.0, 0.5, times) == 1e100
    assert birth_death_deviance(0.2, 0.0, times) == 1e100


def test_fit_birth_death():
    tree = parse_newick(TREE8)
    bd = fit_birth_death(tree)
    pb = fit_pure_birth_on_times(tree)
    assert bd.loglik >= pb.loglik - 1e-6
    assert bd.birth > 0
    assert 0.0 <= bd.death < bd.birth
    assert bd.net_diversification == pytest.approx(bd.params["r"])
    assert bd.turnover == pytest.approx(bd.params["a"])
    assert "birth-death" in bd.summary()


def test_empirical_p_value():
    null = [-2.0, -1.0, 0.0, 1.0]
    assert empirical_p_value(-1.5, null, tail="lower") == pytest.approx(2 / 5)
    assert empirical_p_value(0.5, null, tail="upper") == pytest.approx(2 / 5)
    with pytest.raises(ValueError):
        empirical_p_value(0.0, [], tail="lower")
    with pytest.raises(ValueError):
        empirical_p_value(0.0, null, tail="both")


def test_simulate_birth_death_trees():
    try:
        import dendropy  # noqa: F401
    except ImportError:
        return

    trees = simulate_birth_death_trees(1.0, 0.2, n_tips=12, n_trees=3, seed=4)
    assert len(trees) == 3
    for tree in trees:
        assert len(tip_labels(tree)) == 12
        assert is_ultrametric(tree, tol=1e-4)
    again = simulate_birth_death_trees(1.0, 0.2, n_tips=12, n_trees=3, seed=4)
    assert [t.newick() for t in trees] == [t.newick() for t in again]


def test_simulated_gamma_null():
    try:
        import dendropy  # noqa: F401
    except ImportError:
        return

    null = simulated_gamma_null(1.0, 0.0, n_tips=10, n_trees=20, seed=1)
    assert null.shape == (20,)
    assert np.all(np.isfinite(null))


def test_simulated_trees_have_positive_terminal_branches():
    try:
        import dendropy  # noqa: F401
    except ImportError:
        return

    for death in (0.0, 0.3):
        for tree in simulate_birth_death_trees(1.0, death, n_tips=15, n_trees=10, seed=7):
            assert min(float(leaf.edge_length) for leaf in tree.traverse_leaves()) > 0.0
            assert branching_times(tree)[-1] > 0.0
            assert is_ultrametric(tree, tol=1e-4)


def test_pure_birth_gamma_null_is_centred():
    try:
        import dendropy  # noqa: F401
    except ImportError:
        return

    null = simulated_gamma_null(1.0, 0.0, n_tips=20, n_trees=300, seed=3)
    assert abs(float(np.mean(null))) < 0.2


def test_simulate_birth_death_trees_validates_rates():
    with pytest.raises(ValueError):
        simulate_birth_death_trees(1.0, 1.5, n_tips=5)
    with pytest.raises(ValueError):
        simulate_birth_death_trees(0.0, 0.0, n_tips=5)
