"""BiSSE: binary-state speciation and extinction.

Branch probabilities follow Maddison, Midford & Otto (2007). Along each branch
the backward equations for the extinction probabilities ``E0, E1`` and the
clade likelihoods ``D0, D1`` are integrated with ``scipy.integrate.solve_ivp``;
at every bifurcation the daughter ``D`` values are multiplied together with
the state's speciation rate. Root treatment follows FitzJohn et al. (2009):
the root state is weighted by its conditional likelihood ("obs") or equally,
and the likelihood is optionally conditioned on the survival of both root
lineages.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import math
from typing import Dict, Mapping, Sequence

import numpy as np
import treeswift
from scipy.integrate import solve_ivp
from scipy.optimize import minimize
from scipy.stats import chi2

from .data import is_binary, tip_labels
from .diversification import fit_birth_death

PARAM_NAMES = ("lambda0", "lambda1", "mu0", "mu1", "q01", "q10")


@dataclass(frozen=True)
class BisseParams:
    lambda0: float
    lambda1: float
    mu0: float
    mu1: float
    q01: float
    q10: float

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, name) for name in PARAM_NAMES], dtype=float)

    @classmethod
    def from_mapping(cls, values: Mapping[str, float]) -> "BisseParams":
        return cls(**{name: float(values[name]) for name in PARAM_NAMES})

    def swapped(self) -> "BisseParams":
        """Same process with the two state labels exchanged."""
        return BisseParams(self.lambda1, self.lambda0, self.mu1, self.mu0, self.q10, self.q01)


@dataclass(frozen=True)
class BisseFit:
    params: BisseParams
    loglik: float
    k: int
    constraints: Dict[str, str | float] = field(default_factory=dict)
    converged: bool = True

    @property
    def aic(self) -> float:
        return 2.0 * self.k - 2.0 * self.loglik

    def summary(self) -> str:
        p = self.params
        return (
            f"logL = {self.loglik:.3f} (k = {self.k}, AIC = {self.aic:.3f})\n"
            f"  lambda0 = {p.lambda0:.4g}  lambda1 = {p.lambda1:.4g}\n"
            f"  mu0     = {p.mu0:.4g}  mu1     = {p.mu1:.4g}\n"
            f"  q01     = {p.q01:.4g}  q10     = {p.q10:.4g}"
        )


@dataclass(frozen=True)
class LRTResult:
    statistic: float
    df: int
    p_value: float

    def summary(self) -> str:
        return f"LR = {self.statistic:.4f}, df = {self.df}, P = {self.p_value:.4g}"


def _rhs(params: BisseParams):
    l0, l1, m0, m1, q01, q10 = params.as_array()

    def f(_t, y):
        e0, e1, d0, d1 = y
        return [
            m0 - (l0 + m0 + q01) * e0 + q01 * e1 + l0 * e0 * e0,
            m1 - (l1 + m1 + q10) * e1 + q10 * e0 + l1 * e1 * e1,
            -(l0 + m0 + q01) * d0 + q01 * d1 + 2.0 * l0 * e0 * d0,
            -(l1 + m1 + q10) * d1 + q10 * d0 + 2.0 * l1 * e1 * d1,
        ]

    return f


def _integrate_branch(f, y0: np.ndarray, length: float) -> np.ndarray:
    if length <= 0.0:
        return y0
    sol = solve_ivp(f, (0.0, length), y0, method="LSODA", rtol=1e-8, atol=1e-12)
    if not sol.success:
        raise ValueError(f"BiSSE branch integration failed: {sol.message}")
    return np.clip(sol.y[:, -1], 0.0, None)


def bisse_loglik(
    tree: treeswift.Tree,
    states: Sequence[int],
    params: BisseParams,
    sampling: tuple[float, float] = (1.0, 1.0),
    condition_survival: bool = True,
    root: str = "obs",
) -> float:
    """Log-likelihood of a binary character and the tree under BiSSE.

    ``states`` are 0/1 values ordered by ``tip_labels(tree)``. ``sampling``
    gives the fraction of extant species in each state present in the tree.
    """
    if not is_binary(tree):
        raise ValueError("BiSSE requires a fully bifurcating tree")
    if root not in ("obs", "equal"):
        raise ValueError("root must be 'obs' or 'equal'")
    if np.any(params.as_array() < 0):
        raise ValueError("BiSSE rates must be non-negative")
    labels = tip_labels(tree)
    if len(states) != len(labels):
        raise ValueError(f"Got {len(states)} states for {len(labels)} tips")
    state_of = {label: int(s) for label, s in zip(labels, states)}
    f0, f1 = float(sampling[0]), float(sampling[1])
    if not (0.0 < f0 <= 1.0 and 0.0 < f1 <= 1.0):
        raise ValueError("sampling fractions must lie in (0, 1]")

    rhs = _rhs(params)
    lam = np.array([params.lambda0, params.lambda1], dtype=float)
    top: dict[treeswift.Node, np.ndarray] = {}
    log_scale = 0.0
    root_y = None
    for node in tree.root.traverse_postorder():
        if node.is_leaf():
            s = state_of[str(node.label)]
            if s not in (0, 1):
                raise ValueError(f"Tip {node.label} has state {s}; expected 0 or 1")
            y = np.array([1.0 - f0, 1.0 - f1, f0 if s == 0 else 0.0, f1 if s == 1 else 0.0])
        else:
            left, right = (top.pop(child) for child in node.children)
            d = left[2:] * right[2:] * lam
            total = float(np.sum(d))
            if total <= 0.0 or not math.isfinite(total):
                return -math.inf
            log_scale += math.log(total)
            y = np.concatenate([left[:2], d / total])
        if node is tree.root:
            root_y = y
            break
        top[node] = _integrate_branch(rhs, y, float(node.edge_length or 0.0))

    e_root, d_root = root_y[:2], root_y[2:]
    if root == "obs":
        weights = d_root / float(np.sum(d_root))
    else:
        weights = np.array([0.5, 0.5])
    if condition_survival:
        surv = lam * (1.0 - e_root) ** 2
        with np.errstate(divide="ignore", invalid="ignore"):
            d_root = np.where(surv > 0, d_root / surv, 0.0)
    value = float(np.sum(weights * d_root))
    if value <= 0.0 or not math.isfinite(value):
        return -math.inf
    return math.log(value) + log_scale


def starting_point(tree: treeswift.Tree, q_div: float = 5.0) -> BisseParams:
    """Birth-death estimates for both states; q = (lambda - mu) / q_div."""
    bd = fit_birth_death(tree)
    lam = max(bd.birth, 1e-8)
    mu = max(bd.death, 1e-8)
    q = (lam - mu) / q_div if lam > mu else lam / q_div
    return BisseParams(lam, lam, mu, mu, q, q)


def _resolve(free: Mapping[str, float], constraints: Mapping[str, str | float]) -> Dict[str, float]:
    values = dict(free)
    pending = dict(constraints)
    while pending:
        progressed = False
        for name, target in list(pending.items()):
            if isinstance(target, str):
                if target in values:
                    values[name] = values[target]
                    del pending[name]
                    progressed = True
            else:
                values[name] = float(target)
                del pending[name]
                progressed = True
        if not progressed:
            raise ValueError(f"Circular BiSSE constraints: {pending}")
    return values


def _check_constraints(constraints: Mapping[str, str | float]) -> None:
    for name, target in constraints.items():
        if name not in PARAM_NAMES:
            raise ValueError(f"Unknown BiSSE parameter {name!r}")
        if isinstance(target, str):
            if target not in PARAM_NAMES:
                raise ValueError(f"Unknown BiSSE parameter {target!r}")
            if target == name:
                raise ValueError(f"Parameter {name!r} constrained to itself")
        elif float(target) < 0:
            raise ValueError(f"Fixed value for {name!r} must be >= 0")
    _resolve({name: 1.0 for name in PARAM_NAMES if name not in constraints}, constraints)


def fit_bisse(
    tree: treeswift.Tree,
    states: Sequence[int],
    constraints: Mapping[str, str | float] | None = None,
    start: BisseParams | None = None,
    sampling: tuple[float, float] = (1.0, 1.0),
    condition_survival: bool = True,
    root: str = "obs",
    maxiter: int = 2000,
) -> BisseFit:
    """Maximum-likelihood BiSSE fit.

    ``constraints`` maps a parameter either to the name of another parameter
    (tying them, e.g. ``{"lambda1": "lambda0"}``) or to a fixed value. Free
    parameters are optimised on the log scale with Nelder-Mead.
    """
    constraints = dict(constraints or {})
    _check_constraints(constraints)
    free_names = [name for name in PARAM_NAMES if name not in constraints]
    if not free_names:
        raise ValueError("All BiSSE parameters are constrained; nothing to fit")
    if start is None:
        start = starting_point(tree)
    start_values = start.as_dict()
    x0 = np.log(np.array([max(start_values[name], 1e-8) for name in free_names], dtype=float))

    def unpack(x: np.ndarray) -> BisseParams:
        free = {name: float(math.exp(v)) for name, v in zip(free_names, x)}
        return BisseParams.from_mapping(_resolve(free, constraints))

    def objective(x: np.ndarray) -> float:
        if np.any(np.abs(x) > 50):
            return 1e100
        try:
            ll = bisse_loglik(tree, states, unpack(x), sampling, condition_survival, root)
        except ValueError:
            return 1e100
        return -ll if math.isfinite(ll) else 1e100

    res = minimize(
        objective,
        x0=x0,
        method="Nelder-Mead",
        options={"maxiter": maxiter, "xatol": 1e-5, "fatol": 1e-7},
    )
    params = unpack(np.asarray(res.x, dtype=float))
    return BisseFit(
        params=params,
        loglik=-float(res.fun),
        k=len(free_names),
        constraints=constraints,
        converged=bool(res.success),
    )


def likelihood_ratio_test(full: BisseFit, reduced: BisseFit) -> LRTResult:
    df = full.k - reduced.k
    if df <= 0:
        raise ValueError("The full model must have more free parameters than the reduced model")
    stat = max(0.0, 2.0 * (full.loglik - reduced.loglik))
    return LRTResult(statistic=stat, df=df, p_value=float(chi2.sf(stat, df=df)))
