"""Phylogenetic variance-covariance matrices and their model transforms."""

from __future__ import annotations

from typing import List, Tuple

import numpy as np
import treeswift
from scipy.stats import multivariate_normal

from .data import node_depths, tip_labels


def vcv(tree: treeswift.Tree) -> Tuple[List[str], np.ndarray]:
    """Shared root-to-MRCA path lengths for every pair of tips.

    Rows follow ``tip_labels(tree)``. Each internal node writes its depth into
    the blocks of tip pairs that coalesce there, so the matrix is filled in a
    single postorder pass.
    """
    labels = tip_labels(tree)
    index = {label: i for i, label in enumerate(labels)}
    depths = node_depths(tree)
    n = len(labels)
    C = np.zeros((n, n), dtype=float)
    below: dict[treeswift.Node, list[int]] = {}
    for node in tree.root.traverse_postorder():
        if node.is_leaf():
            i = index[str(node.label)]
            C[i, i] = depths[node]
            below[node] = [i]
            continue
        groups = [below.pop(child) for child in node.children]
        d = depths[node]
        for a in range(len(groups)):
            for b in range(a + 1, len(groups)):
                C[np.ix_(groups[a], groups[b])] = d
                C[np.ix_(groups[b], groups[a])] = d
        below[node] = [i for g in groups for i in g]
    return labels, C


def transform_lambda(C: np.ndarray, lam: float) -> np.ndarray:
    """Pagel's lambda: scale off-diagonal covariances, keep tip variances."""
    if lam < 0:
        raise ValueError("lambda must be >= 0")
    out = np.asarray(C, dtype=float) * float(lam)
    np.fill_diagonal(out, np.diag(C))
    return out


def ou_covariance(C: np.ndarray, alpha: float) -> np.ndarray:
    """Unit-rate OU covariance with the root state fixed.

    V_ij = exp(-alpha (T_i + T_j - 2 C_ij)) (1 - exp(-2 alpha C_ij)) / (2 alpha)
    """
    C = np.asarray(C, dtype=float)
    if alpha <= 0:
        return C.copy()
    T = np.diag(C)
    decay = np.exp(-alpha * (T[:, None] + T[None, :] - 2.0 * C))
    return decay * (-np.expm1(-2.0 * alpha * C)) / (2.0 * alpha)


def eb_covariance(C: np.ndarray, a: float) -> np.ndarray:
    """Unit-rate early-burst covariance, rate(t) = exp(a t)."""
    C = np.asarray(C, dtype=float)
    if a == 0:
        return C.copy()
    return np.expm1(a * C) / a


def gls_root(x: np.ndarray, S: np.ndarray) -> tuple[float, float]:
    """Closed-form GLS root state and ML rate for V = sigsq * S."""
    x = np.asarray(x, dtype=float)
    n = len(x)
    ones = np.ones(n)
    Sinv_x = np.linalg.solve(S, x)
    Sinv_1 = np.linalg.solve(S, ones)
    z0 = float(ones @ Sinv_x) / float(ones @ Sinv_1)
    resid = x - z0
    sigsq = float(resid @ np.linalg.solve(S, resid)) / n
    return z0, sigsq


def mvn_loglik(x: np.ndarray, z0: float, V: np.ndarray) -> float:
    x = np.asarray(x, dtype=float)
    return float(multivariate_normal.logpdf(x, mean=np.full(len(x), z0), cov=V, allow_singular=False))


def concentrated_loglik(x: np.ndarray, S: np.ndarray) -> tuple[float, float, float]:
    """Log-likelihood with root state and rate at their ML values.

    Returns ``(loglik, z0, sigsq)``.
    """
    z0, sigsq = gls_root(x, S)
    if sigsq <= 0:
        raise ValueError("Trait has zero variance; rate is not identifiable")
    return mvn_loglik(x, z0, sigsq * S), z0, sigsq
