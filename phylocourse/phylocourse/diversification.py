"""Diversification: branching times, LTT, gamma, Yule and birth-death fits."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import random
from typing import Dict, List, Sequence

import numpy as np
import treeswift
from scipy.optimize import minimize
from scipy.stats import norm

from .data import internal_nodes, is_binary, is_ultrametric, node_depths, parse_newick, total_branch_length


@dataclass(frozen=True)
class GammaResult:
    gamma: float
    p_two_sided: float
    p_slowdown: float

    def summary(self) -> str:
        return (
            f"gamma = {self.gamma:.4f} (two-sided P = {self.p_two_sided:.4g}, "
            f"one-sided P for slowdown = {self.p_slowdown:.4g})"
        )


@dataclass(frozen=True)
class DiversificationFit:
    model: str
    birth: float
    death: float
    loglik: float
    k: int
    params: Dict[str, float] = field(default_factory=dict)

    @property
    def net_diversification(self) -> float:
        return self.birth - self.death

    @property
    def turnover(self) -> float:
        return self.death / self.birth if self.birth > 0 else math.nan

    @property
    def aic(self) -> float:
        return 2.0 * self.k - 2.0 * self.loglik

    def summary(self) -> str:
        return (
            f"{self.model}: birth = {self.birth:.4g}, death = {self.death:.4g}, "
            f"r = {self.net_diversification:.4g}, epsilon = {self.turnover:.4g}, logL = {self.loglik:.3f}"
        )


def _require_ultrametric(tree: treeswift.Tree) -> None:
    if not is_ultrametric(tree, tol=1e-4):
        raise ValueError("Tree must be ultrametric (all tips at the present)")


def branching_times(tree: treeswift.Tree) -> np.ndarray:
    """Ages of internal nodes before the present, oldest first."""
    _require_ultrametric(tree)
    depths = node_depths(tree)
    height = max(depths[leaf] for leaf in tree.traverse_leaves())
    ages = [height - depths[node] for node in internal_nodes(tree)]
    return np.array(sorted(ages, reverse=True), dtype=float)


def lineages_through_time(tree: treeswift.Tree) -> tuple[np.ndarray, np.ndarray]:
    """Step function of lineage counts measured forward from the root.

    ``counts[i]`` lineages exist from ``times[i]`` until ``times[i + 1]``; the
    final entry is the present with one lineage per tip.
    """
    depths = node_depths(tree)
    nodes = sorted(internal_nodes(tree), key=lambda n: depths[n])
    leaves = list(tree.traverse_leaves())
    height = max(depths[leaf] for leaf in leaves)
    times = [0.0]
    counts = [len(tree.root.children)]
    for node in nodes:
        if node is tree.root:
            continue
        times.append(depths[node])
        counts.append(counts[-1] + len(node.children) - 1)
    times.append(height)
    counts.append(len(leaves))
    return np.array(times, dtype=float), np.array(counts, dtype=int)


def gamma_statistic(tree: treeswift.Tree) -> GammaResult:
    """Pybus & Harvey (2000) gamma from internode intervals.

    Under a constant-rate pure-birth process gamma ~ N(0, 1); strongly
    negative values indicate lineage accumulation slowing toward the present.
    """
    _require_ultrametric(tree)
    if not is_binary(tree):
        raise ValueError("Gamma statistic requires a fully bifurcating tree")
    depths = node_depths(tree)
    n = sum(1 for _ in tree.traverse_leaves())
    if n < 3:
        raise ValueError("Gamma statistic needs at least 3 tips")
    height = max(depths[leaf] for leaf in tree.traverse_leaves())
    node_times = sorted(depths[node] for node in internal_nodes(tree))
    g = np.diff(np.array(node_times + [height], dtype=float))
    weighted = (np.arange(len(g)) + 2) * g
    T = float(np.sum(weighted))
    partial = float(np.sum(np.cumsum(weighted)[: n - 2]))
    gamma = ((partial / (n - 2)) - T / 2.0) / (T * math.sqrt(1.0 / (12.0 * (n - 2))))
    return GammaResult(
        gamma=float(gamma),
        p_two_sided=float(2.0 * norm.sf(abs(gamma))),
        p_slowdown=float(norm.cdf(gamma)),
    )


def fit_yule(tree: treeswift.Tree) -> DiversificationFit:
    """Pure-birth ML rate conditioned on the root: lambda = (Nnode - 1) / total length."""
    n_internal = len(internal_nodes(tree))
    n_events = n_internal - 1
    if n_events < 1:
        raise ValueError("Tree needs at least two internal nodes for a Yule fit")
    X = total_branch_length(tree)
    if X <= 0:
        raise ValueError("Tree has no branch lengths")
    lam = n_events / X
    loglik = -lam * X + math.lgamma(n_internal + 1) + n_events * math.log(lam)
    return DiversificationFit(
        model="yule",
        birth=lam,
        death=0.0,
        loglik=loglik,
        k=1,
        params={"lambda": lam, "se": lam / math.sqrt(n_events)},
    )


def birth_death_deviance(a: float, r: float, times: np.ndarray) -> float:
    """Nee et al. (1994) deviance for branching times (oldest first).

    ``a`` is death/birth and ``r`` is birth - death.
    """
    N = len(times) + 1
    if r <= 0 or a < 0 or a >= 1:
        return 1e100
    root_and_rest = np.asarray(times, dtype=float)
    log_terms = r * root_and_rest + np.log1p(-a * np.exp(-r * root_and_rest))
    ll = (
        math.lgamma(N)
        + (N - 2) * math.log(r)
        + r * float(np.sum(root_and_rest[1:]))
        + N * math.log1p(-a)
        - 2.0 * float(np.sum(log_terms))
    )
    return -2.0 * ll


def fit_birth_death(tree: treeswift.Tree) -> DiversificationFit:
    """Constant-rate birth-death fit on the branching times."""
    times = branching_times(tree)
    if len(times) < 2:
        raise ValueError("Tree needs at least 3 tips for a birth-death fit")
    r_yule = _pure_birth_r(times)

    def objective(v: np.ndarray) -> float:
        return birth_death_deviance(float(v[0]), float(v[1]), times)

    best = None
    for a0 in (0.0, 0.3, 0.7):
        res = minimize(
            objective,
            x0=np.array([a0, r_yule]),
            method="L-BFGS-B",
            bounds=[(0.0, 1.0 - 1e-8), (1e-10, None)],
        )
        if best is None or float(res.fun) < float(best.fun):
            best = res
    a, r = float(best.x[0]), float(best.x[1])
    dev = float(best.fun)
    birth = r / (1.0 - a)
    death = birth - r
    return DiversificationFit(
        model="birth-death",
        birth=birth,
        death=death,
        loglik=-dev / 2.0,
        k=2,
        params={"a": a, "r": r, "deviance": dev},
    )


def _pure_birth_r(times: np.ndarray) -> float:
    # Closed-form maximiser of the deviance at a = 0.
    N = len(times) + 1
    return (N - 2) / (float(np.sum(times)) + float(times[0]))


def fit_pure_birth_on_times(tree: treeswift.Tree) -> DiversificationFit:
    """Birth-death likelihood with extinction fixed at zero (nested in ``fit_birth_death``)."""
    times = branching_times(tree)
    if len(times) < 2:
        raise ValueError("Tree needs at least 3 tips")
    r = _pure_birth_r(times)
    dev = birth_death_deviance(0.0, r, times)
    return DiversificationFit(model="pure-birth", birth=r, death=0.0, loglik=-dev / 2.0, k=1, params={"r": r, "deviance": dev})


def simulate_birth_death_trees(
    birth: float,
    death: float,
    n_tips: int,
    n_trees: int = 1,
    seed: int | None = None,
) -> List[treeswift.Tree]:
    """Reconstructed birth-death trees with ``n_tips`` extant tips, via DendroPy.

    DendroPy halts the process at the speciation that produces the n-th
    lineage, which leaves the two newest tips with zero-length branches. Each
    tree is therefore extended to the present by the waiting time until the
    next event, exponential with rate ``n_tips * (birth + death)``.
    """
    if birth <= 0 or death < 0:
        raise ValueError("birth must be > 0 and death >= 0")
    if death >= birth:
        raise ValueError("death must be < birth for trees to reach n_tips reliably")
    if n_tips < 2:
        raise ValueError("n_tips must be >= 2")
    from dendropy.model import birthdeath

    rng = random.Random(seed)
    out: List[treeswift.Tree] = []
    for _ in range(n_trees):
        dp_tree = birthdeath.birth_death_tree(
            birth_rate=birth,
            death_rate=death,
            num_extant_tips=n_tips,
            is_retain_extinct_tips=False,
            rng=rng,
        )
        newick = dp_tree.as_string(schema="newick", suppress_rooting=True).strip()
        tree = parse_newick(newick)
        tree.suppress_unifurcations()
        wait = rng.expovariate(n_tips * (birth + death))
        for leaf in tree.traverse_leaves():
            leaf.edge_length = float(leaf.edge_length or 0.0) + wait
        out.append(tree)
    return out


def simulated_gamma_null(
    birth: float,
    death: float,
    n_tips: int,
    n_trees: int = 100,
    seed: int | None = None,
) -> np.ndarray:
    trees = simulate_birth_death_trees(birth, death, n_tips, n_trees=n_trees, seed=seed)
    return np.array([gamma_statistic(t).gamma for t in trees], dtype=float)


def empirical_p_value(observed: float, null: Sequence[float], tail: str = "lower") -> float:
    null = np.asarray(null, dtype=float)
    if len(null) == 0:
        raise ValueError("Empty null distribution")
    if tail == "lower":
        return float((np.sum(null <= observed) + 1) / (len(null) + 1))
    if tail == "upper":
        return float((np.sum(null >= observed) + 1) / (len(null) + 1))
    raise ValueError("tail must be 'lower' or 'upper'")
