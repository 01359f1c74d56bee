"""Tests for continuous trait model fitting."""

from __future__ import annotations

import math

import numpy as np
import pytest

from phylocourse.continuous import (
    MODELS,
    ModelFit,
    compare_models,
    fit_continuous,
    fit_models,
    format_fit_table,
)
from phylocourse.covariance import vcv
from phylocourse.data import parse_newick

TREE8 = "(((A:1,B:1):1,(C:1.5,D:1.5):0.5):2,((E:0.5,F:0.5):2.5,(G:2,H:2):1):1);"


def _bm_trait(seed: int = 3) -> tuple:
    tree = parse_newick(TREE8)
    _, C = vcv(tree)
    rng = np.random.default_rng(seed)
    x = rng.multivariate_normal(np.full(C.shape[0], 1.0), 0.4 * C)
    return tree, x


def test_bm_matches_closed_form():
    tree, x = _bm_trait()
    fit = fit_continuous(tree, x, "BM")
    _, C = vcv(tree)
    n = len(x)
    Cinv = np.linalg.inv(C)
    ones = np.ones(n)
    z0 = float(ones @ Cinv @ x) / float(ones @ Cinv @ ones)
    r = x - z0
    sigsq = float(r @ Cinv @ r) / n
    _, logdet = np.linalg.slogdet(sigsq * C)
    expected = -0.5 * (n * math.log(2 * math.pi) + logdet + n)
    assert fit.k == 2
    assert fit.params["z0"] == pytest.approx(z0)
    assert fit.params["sigsq"] == pytest.approx(sigsq)
    assert fit.loglik == pytest.approx(expected)


def test_white_noise_is_iid_normal():
    tree, x = _bm_trait()
    fit = fit_continuous(tree, x, "white")
    s2 = float(np.var(x))
    expected = -0.5 * len(x) * (math.log(2 * math.pi * s2) + 1.0)
    assert fit.loglik == pytest.approx(expected)
    assert fit.params["z0"] == pytest.approx(float(np.mean(x)))


@pytest.mark.parametrize("model,param", [("OU", "alpha"), ("EB", "a"), ("lambda", "lambda")])
def test_nested_models_never_worse_than_bm(model, param):
    tree, x = _bm_trait()
    bm = fit_continuous(tree, x, "BM")
    fit = fit_continuous(tree, x, model)
    assert fit.k == 3
    assert param in fit.params
    assert fit.loglik >= bm.loglik - 1e-6


def test_shape_parameters_within_bounds():
    tree, x = _bm_trait(seed=11)
    ou = fit_continuous(tree, x, "OU")
    eb = fit_continuous(tree, x, "EB")
    lam = fit_continuous(tree, x, "lambda")
    assert 1e-8 <= ou.params["alpha"] <= 100.0 / 4.0
    assert math.log(1e-5) / 4.0 <= eb.params["a"] <= -1e-6
    assert 0.0 <= lam.params["lambda"] <= 1.0


def test_fit_continuous_rejects_bad_input():
    tree, x = _bm_trait()
    with pytest.raises(ValueError):
        fit_continuous(tree, x, "ACDC")
    with pytest.raises(ValueError):
        fit_continuous(tree, x[:5], "BM")


def test_aicc():
    fit = ModelFit(model="BM", loglik=-10.0, params={}, k=2, n=10)
    assert fit.aic == pytest.approx(24.0)
    assert fit.aicc == pytest.approx(24.0 + 12.0 / 7.0)
    assert math.isinf(ModelFit(model="OU", loglik=-1.0, params={}, k=3, n=4).aicc)


def test_compare_models_weights():
    tree, x = _bm_trait()
    rows = compare_models(fit_models(tree, x, MODELS))
    assert len(rows) == len(MODELS)
    assert sum(r.weight for r in rows) == pytest.approx(1.0)
    assert rows[0].delta == pytest.approx(0.0)
    assert all(a.aicc <= b.aicc for a, b in zip(rows, rows[1:]))
    table = format_fit_table(rows)
    for m in MODELS:
        assert m in table


def test_compare_models_empty():
    assert compare_models([]) == []


def test_compare_models_falls_back_to_aic_for_tiny_trees():
    fits = [
        ModelFit(model="BM", loglik=-5.0, params={}, k=2, n=4),
        ModelFit(model="OU", loglik=-3.0, params={}, k=3, n=4),
    ]
    rows = compare_models(fits)
    assert rows[0].model == "OU"
    assert math.isinf(rows[0].aicc)
    assert rows[1].delta == pytest.approx(2.0)
    assert sum(r.weight for r in rows) == pytest.approx(1.0)
    assert {r.criterion for r in rows} == {"AIC"}
    assert rows[0].aic == pytest.approx(12.0)
    header, first = format_fit_table(rows).splitlines()[:2]
    assert header.split()[3:5] == ["AIC", "dAIC"]
    assert "inf" not in first
    assert first.split()[3] == "12.000"


def test_compare_models_reports_aicc_criterion():
    tree, x = _bm_trait()
    rows = compare_models(fit_models(tree, x, ("BM", "white")))
    assert {r.criterion for r in rows} == {"AICc"}
    assert format_fit_table(rows).splitlines()[0].split()[3:5] == ["AICc", "dAICc"]
