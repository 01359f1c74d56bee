"""Continuous-trait model fits: BM, OU, EB, lambda and white noise."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Callable, Dict, Sequence

import numpy as np
import treeswift
from scipy.optimize import minimize_scalar

from .covariance import (
    concentrated_loglik,
    eb_covariance,
    ou_covariance,
    transform_lambda,
    vcv,
)

MODELS = ("BM", "OU", "EB", "lambda", "white")

# Extra shape parameter per model: (name, transform, bounds from tree height T).
_SHAPES: Dict[str, tuple[str, Callable[[np.ndarray, float], np.ndarray], Callable[[float], tuple[float, float]]]] = {
    "OU": ("alpha", ou_covariance, lambda T: (1e-8, 100.0 / T)),
    "EB": ("a", eb_covariance, lambda T: (math.log(1e-5) / T, -1e-6)),
    "lambda": ("lambda", transform_lambda, lambda T: (0.0, 1.0)),
}


@dataclass(frozen=True)
class ModelFit:
    model: str
    loglik: float
    params: Dict[str, float]
    k: int
    n: int
    converged: bool = True

    @property
    def aic(self) -> float:
        return 2.0 * self.k - 2.0 * self.loglik

    @property
    def aicc(self) -> float:
        denom = self.n - self.k - 1
        if denom <= 0:
            return math.inf
        return self.aic + (2.0 * self.k * (self.k + 1)) / denom


@dataclass(frozen=True)
class ModelComparison:
    model: str
    loglik: float
    k: int
    aic: float
    aicc: float
    delta: float
    weight: float
    criterion: str = "AICc"
    params: Dict[str, float] = field(default_factory=dict)


def _tree_height(C: np.ndarray) -> float:
    T = float(np.max(np.diag(C)))
    if T <= 0:
        raise ValueError("Tree has no branch lengths")
    return T


def fit_continuous(tree: treeswift.Tree, x: Sequence[float], model: str = "BM") -> ModelFit:
    """Maximum-likelihood fit of one trait-evolution model.

    ``x`` must be ordered by ``tip_labels(tree)`` (see ``data.trait_vector``).
    The root state ``z0`` and rate ``sigsq`` are concentrated out of the
    likelihood; the single shape parameter of OU, EB and lambda is found by
    bounded scalar optimisation.
    """
    if model not in MODELS:
        raise ValueError(f"Unknown model {model!r}; choose from {MODELS}")
    x = np.asarray(x, dtype=float)
    _, C = vcv(tree)
    n = len(x)
    if C.shape[0] != n:
        raise ValueError(f"Trait vector has {n} values but tree has {C.shape[0]} tips")
    if n < 3:
        raise ValueError("Need at least 3 taxa to fit a model")

    if model == "BM":
        ll, z0, sigsq = concentrated_loglik(x, C)
        return ModelFit(model, ll, {"sigsq": sigsq, "z0": z0}, k=2, n=n)
    if model == "white":
        ll, z0, sigsq = concentrated_loglik(x, np.eye(n))
        return ModelFit(model, ll, {"sigsq": sigsq, "z0": z0}, k=2, n=n)

    name, transform, bounds_fn = _SHAPES[model]
    lo, hi = bounds_fn(_tree_height(C))

    def objective(theta: float) -> float:
        try:
            return -concentrated_loglik(x, transform(C, theta))[0]
        except (np.linalg.LinAlgError, ValueError):
            return 1e100

    res = minimize_scalar(objective, bounds=(lo, hi), method="bounded", options={"xatol": 1e-8})
    theta = float(res.x)
    # Bounded search never evaluates the endpoints; the boundary often holds the optimum.
    for edge in (lo, hi):
        if objective(edge) < objective(theta):
            theta = edge
    ll, z0, sigsq = concentrated_loglik(x, transform(C, theta))
    return ModelFit(model, ll, {name: theta, "sigsq": sigsq, "z0": z0}, k=3, n=n, converged=bool(res.success))


def fit_models(tree: treeswift.Tree, x: Sequence[float], models: Sequence[str] = ("BM", "OU", "EB")) -> list[ModelFit]:
    return [fit_continuous(tree, x, m) for m in models]


def compare_models(fits: Sequence[ModelFit]) -> list[ModelComparison]:
    """Akaike weights by AICc, best model first.

    Falls back to AIC, recorded in ``criterion``, when any model has too few
    taxa for AICc.
    """
    if not fits:
        return []
    aiccs = np.array([f.aicc for f in fits], dtype=float)
    aics = np.array([f.aic for f in fits], dtype=float)
    criterion = "AICc"
    scores = aiccs
    if not np.all(np.isfinite(aiccs)):
        # Too few taxa for AICc on some model: rank by AIC instead.
        criterion = "AIC"
        scores = aics
    delta = scores - float(np.min(scores))
    rel = np.exp(-0.5 * delta)
    weights = rel / float(np.sum(rel))
    rows = [
        ModelComparison(
            model=f.model,
            loglik=f.loglik,
            k=f.k,
            aic=float(b),
            aicc=float(a),
            delta=float(d),
            weight=float(w),
            criterion=criterion,
            params=dict(f.params),
        )
        for f, b, a, d, w in zip(fits, aics, aiccs, delta, weights)
    ]
    return sorted(rows, key=lambda r: r.delta)


def format_fit_table(rows: Sequence[ModelComparison]) -> str:
    criterion = rows[0].criterion if rows else "AICc"
    lines = [
        f"{'model':<8} {'k':>2} {'logL':>10} {criterion:>10} {'d' + criterion:>8} {'weight':>7}  params",
    ]
    for r in rows:
        score = r.aic if r.criterion == "AIC" else r.aicc
        params = ", ".join(f"{k}={v:.4g}" for k, v in r.params.items())
        lines.append(
            f"{r.model:<8} {r.k:>2} {r.loglik:>10.3f} {score:>10.3f} {r.delta:>8.3f} {r.weight:>7.3f}  {params}"
        )
    return "\n".join(lines)
