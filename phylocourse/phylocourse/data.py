"""Tree and trait-table I/O, name checking, and pruning."""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
import treeswift

Taxon = str


@dataclass(frozen=True)
class NameCheck:
    """Taxa present on only one side of a tree/table pair."""

    tree_not_data: Tuple[Taxon, ...] = field(default_factory=tuple)
    data_not_tree: Tuple[Taxon, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.tree_not_data and not self.data_not_tree

    def summary(self) -> str:
        if self.ok:
            return "OK: tree tips and table rows match."
        lines = []
        if self.tree_not_data:
            lines.append(f"In tree but not in data ({len(self.tree_not_data)}): " + ", ".join(self.tree_not_data))
        if self.data_not_tree:
            lines.append(f"In data but not in tree ({len(self.data_not_tree)}): " + ", ".join(self.data_not_tree))
        return "\n".join(lines)


def parse_newick(newick: str) -> treeswift.Tree:
    if hasattr(treeswift, "read_tree_newick"):
        return treeswift.read_tree_newick(newick)
    return treeswift.read_tree(io.StringIO(newick), "newick")


def read_trees(path: str) -> List[treeswift.Tree]:
    """Read every ``;``-terminated Newick tree in a file; a tree may span lines."""
    with open(path, "r", encoding="utf-8") as handle:
        text = handle.read()
    trees: List[treeswift.Tree] = []
    for chunk in text.split(";"):
        newick = "".join(line.strip() for line in chunk.splitlines())
        if not newick:
            continue
        trees.append(parse_newick(newick + ";"))
    return trees


def read_tree(path: str) -> treeswift.Tree:
    """Read the first Newick tree in a file."""
    trees = read_trees(path)
    if not trees:
        raise ValueError(f"No Newick tree found in {path}")
    return trees[0]


def read_trait_table(path: str, sep: str | None = None, index_col: int | str = 0) -> pd.DataFrame:
    """Read a delimited trait table indexed by taxon label.

    With ``sep=None`` the delimiter is guessed from the first line: tab, then
    comma, then runs of whitespace.
    """
    if sep is None:
        with open(path, "r", encoding="utf-8") as handle:
            first = handle.readline()
        if "\t" in first:
            sep = "\t"
        elif "," in first:
            sep = ","
        else:
            sep = r"\s+"
    table = pd.read_csv(path, sep=sep, index_col=index_col, engine="python")
    table.index = table.index.map(lambda x: str(x).strip())
    dupes = sorted(set(table.index[table.index.duplicated()]))
    if dupes:
        raise ValueError(f"Duplicate taxon labels in trait table: {dupes}")
    return table


def tip_labels(tree: treeswift.Tree) -> List[Taxon]:
    labels = []
    for node in tree.traverse_leaves():
        if node.label is None:
            raise ValueError("Tree has an unlabeled tip")
        labels.append(str(node.label))
    return sorted(labels)


def name_check(tree: treeswift.Tree, table: pd.DataFrame) -> NameCheck:
    tips = set(tip_labels(tree))
    rows = {str(x) for x in table.index}
    return NameCheck(
        tree_not_data=tuple(sorted(tips - rows)),
        data_not_tree=tuple(sorted(rows - tips)),
    )


def prune_to_shared(tree: treeswift.Tree, table: pd.DataFrame) -> tuple[treeswift.Tree, pd.DataFrame]:
    """Drop taxa that are missing from either the tree or the table."""
    shared = set(tip_labels(tree)) & {str(x) for x in table.index}
    if len(shared) < 3:
        raise ValueError(f"Only {len(shared)} taxa shared between tree and table; need at least 3")
    pruned = tree.extract_tree_with(shared, suppress_unifurcations=True)
    return pruned, table.loc[sorted(shared)]


def _column(tree: treeswift.Tree, table: pd.DataFrame, column: str) -> pd.Series:
    if column not in table.columns:
        raise ValueError(f"Column {column!r} not in trait table (have: {list(table.columns)})")
    check = name_check(tree, table)
    if check.tree_not_data:
        raise ValueError(f"Taxa missing from trait table: {list(check.tree_not_data)}")
    series = table.loc[tip_labels(tree), column]
    if series.isna().any():
        missing = sorted(str(x) for x in series.index[series.isna()])
        raise ValueError(f"Missing values in column {column!r} for: {missing}")
    return series


def trait_vector(tree: treeswift.Tree, table: pd.DataFrame, column: str) -> np.ndarray:
    """Numeric trait values ordered by ``tip_labels(tree)``."""
    series = _column(tree, table, column)
    values = pd.to_numeric(series, errors="coerce")
    if values.isna().any():
        bad = sorted(str(x) for x in values.index[values.isna()])
        raise ValueError(f"Non-numeric values in column {column!r} for: {bad}")
    return values.to_numpy(dtype=float)


def discrete_states(tree: treeswift.Tree, table: pd.DataFrame, column: str) -> np.ndarray:
    """Binary (0/1) character states ordered by ``tip_labels(tree)``."""
    series = _column(tree, table, column)
    values = pd.to_numeric(series, errors="coerce")
    if values.isna().any() or not np.all(values == np.round(values)):
        raise ValueError(f"Column {column!r} must hold 0/1 states")
    states = values.astype(int).to_numpy()
    if not set(np.unique(states)).issubset({0, 1}):
        raise ValueError(f"Column {column!r} must hold 0/1 states, got {sorted(set(states.tolist()))}")
    return states


def node_depths(tree: treeswift.Tree) -> dict[treeswift.Node, float]:
    """Distance from the root to every node; the root edge is ignored."""
    depths: dict[treeswift.Node, float] = {tree.root: 0.0}
    for node in tree.root.traverse_preorder():
        if node is tree.root:
            continue
        depths[node] = depths[node.parent] + float(node.edge_length or 0.0)
    return depths


def root_to_tip_distances(tree: treeswift.Tree) -> dict[Taxon, float]:
    depths = node_depths(tree)
    return {str(node.label): depths[node] for node in tree.traverse_leaves()}


def is_ultrametric(tree: treeswift.Tree, tol: float = 1e-6) -> bool:
    dists = np.array(list(root_to_tip_distances(tree).values()), dtype=float)
    if len(dists) == 0:
        return True
    return float(dists.max() - dists.min()) <= tol * max(1.0, float(dists.max()))


def is_binary(tree: treeswift.Tree) -> bool:
    for node in tree.root.traverse_preorder():
        if not node.is_leaf() and len(node.children) != 2:
            return False
    return True


def total_branch_length(tree: treeswift.Tree) -> float:
    return float(sum(float(n.edge_length or 0.0) for n in tree.root.traverse_preorder() if n is not tree.root))


def internal_nodes(tree: treeswift.Tree) -> list[treeswift.Node]:
    return [n for n in tree.root.traverse_preorder() if not n.is_leaf()]


def leaf_index(tree: treeswift.Tree, labels: Sequence[Taxon] | None = None) -> dict[Taxon, int]:
    if labels is None:
        labels = tip_labels(tree)
    return {label: i for i, label in enumerate(labels)}
