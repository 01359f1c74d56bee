"""Figures for the walkthroughs: LTT curves, model weights and simulated nulls."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import treeswift

from .continuous import ModelComparison
from .diversification import lineages_through_time


def _save(fig, out_path: str | Path) -> Path:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(out_path, dpi=160)
    return out_path


def plot_ltt(
    trees: treeswift.Tree | Sequence[treeswift.Tree],
    out_path: str | Path,
    *,
    log: bool = True,
    labels: Sequence[str] | None = None,
    title: str = "Lineages through time",
) -> Path:
    """Step plot of lineage counts; time runs from the root (left) to the present (right)."""
    if isinstance(trees, treeswift.Tree):
        trees = [trees]
    if not trees:
        raise ValueError("No trees to plot")
    fig, ax = plt.subplots(figsize=(6, 4.5))
    try:
        for i, tree in enumerate(trees):
            times, counts = lineages_through_time(tree)
            # Present-day time axis: negative ages, 0 at the tips.
            ages = times - times[-1]
            label = labels[i] if labels is not None and i < len(labels) else None
            alpha = 1.0 if len(trees) == 1 or i == 0 else 0.35
            ax.step(ages, counts, where="post", label=label, alpha=alpha, color="C0" if i == 0 else "0.5")
        if log:
            ax.set_yscale("log")
        ax.set_xlabel("Time before present")
        ax.set_ylabel("Number of lineages")
        ax.set_title(title)
        if labels:
            ax.legend(fontsize=8)
        ax.grid(alpha=0.3, linestyle=":")
        return _save(fig, out_path)
    finally:
        plt.close(fig)


def plot_model_weights(rows: Sequence[ModelComparison], out_path: str | Path, title: str = "Akaike weights") -> Path:
    if not rows:
        raise ValueError("No model rows to plot")
    x = np.arange(len(rows), dtype=float)
    fig, ax = plt.subplots(figsize=(5, 3.5))
    try:
        ax.bar(x, [r.weight for r in rows], color="C0")
        ax.set_xticks(x)
        ax.set_xticklabels([r.model for r in rows])
        ax.set_ylim(0.0, 1.0)
        ax.set_ylabel(f"{rows[0].criterion} weight")
        ax.set_title(title)
        ax.grid(axis="y", alpha=0.3, linestyle=":")
        return _save(fig, out_path)
    finally:
        plt.close(fig)


def plot_null_distribution(null: Sequence[float], observed: float, out_path: str | Path, xlabel: str = "gamma") -> Path:
    fig, ax = plt.subplots(figsize=(5, 3.5))
    try:
        ax.hist(np.asarray(null, dtype=float), bins=30, color="0.7")
        ax.axvline(observed, color="C3", linewidth=2, label="observed")
        ax.set_xlabel(xlabel)
        ax.set_ylabel("Simulated trees")
        ax.legend(fontsize=8)
        return _save(fig, out_path)
    finally:
        plt.close(fig)
