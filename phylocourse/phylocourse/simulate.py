"""Trait simulation on a fixed tree, for building class datasets."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Mapping

import numpy as np
import pandas as pd
import treeswift
from scipy.linalg import expm

from .covariance import vcv


def simulate_brownian(
    tree: treeswift.Tree,
    sigsq: float = 1.0,
    root: float = 0.0,
    rng: np.random.Generator | None = None,
) -> Dict[str, float]:
    """Draw tip values from the Brownian-motion multivariate normal."""
    if sigsq < 0:
        raise ValueError("sigsq must be >= 0")
    if rng is None:
        rng = np.random.default_rng()
    labels, C = vcv(tree)
    values = rng.multivariate_normal(np.full(len(labels), root), sigsq * C)
    return {label: float(v) for label, v in zip(labels, values)}


def mk_rate_matrix(q01: float, q10: float) -> np.ndarray:
    if q01 < 0 or q10 < 0:
        raise ValueError("transition rates must be >= 0")
    return np.array([[-q01, q01], [q10, -q10]], dtype=float)


def simulate_mk(
    tree: treeswift.Tree,
    q01: float,
    q10: float,
    root_state: int = 0,
    rng: np.random.Generator | None = None,
) -> Dict[str, int]:
    """Binary Markov character evolved down the tree from ``root_state``."""
    if root_state not in (0, 1):
        raise ValueError("root_state must be 0 or 1")
    if rng is None:
        rng = np.random.default_rng()
    Q = mk_rate_matrix(q01, q10)
    state: dict[treeswift.Node, int] = {tree.root: int(root_state)}
    out: Dict[str, int] = {}
    for node in tree.root.traverse_preorder():
        if node is not tree.root:
            P = expm(Q * float(node.edge_length or 0.0))
            probs = np.clip(P[state[node.parent]], 0.0, None)
            state[node] = int(rng.choice(2, p=probs / probs.sum()))
        if node.is_leaf():
            out[str(node.label)] = state[node]
    return out


def write_dataset(
    tree: treeswift.Tree,
    columns: Mapping[str, Mapping[str, float]],
    tree_path: str | Path,
    table_path: str | Path,
    sep: str = ",",
) -> pd.DataFrame:
    """Write the tree as Newick and the simulated columns as a delimited table."""
    table = pd.DataFrame({name: pd.Series(dict(values)) for name, values in columns.items()})
    table.index.name = "taxon"
    table = table.sort_index()
    tree_path = Path(tree_path)
    table_path = Path(table_path)
    tree_path.parent.mkdir(parents=True, exist_ok=True)
    table_path.parent.mkdir(parents=True, exist_ok=True)
    tree_path.write_text(tree.newick().rstrip() + "\n", encoding="utf-8")
    table.to_csv(table_path, sep=sep)
    return table
