#!/usr/bin/env python3
"""Generate a class dataset: a birth-death tree plus simulated traits."""

from __future__ import annotations

import argparse
from pathlib import Path

import numpy as np

from phylocourse.diversification import simulate_birth_death_trees
from phylocourse.simulate import simulate_brownian, simulate_mk, write_dataset


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--n-tips", type=int, default=60)
    parser.add_argument("--birth", type=float, default=1.0)
    parser.add_argument("--death", type=float, default=0.3)
    parser.add_argument("--sigsq", type=float, default=0.5, help="BM rate for the continuous trait.")
    parser.add_argument("--q01", type=float, default=0.1)
    parser.add_argument("--q10", type=float, default=0.1)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--outdir", required=True, help="Directory for tree.nwk and traits.csv.")
    args = parser.parse_args(argv)

    (tree,) = simulate_birth_death_trees(args.birth, args.death, args.n_tips, n_trees=1, seed=args.seed)
    rng = np.random.default_rng(args.seed)
    columns = {
        "body_size": simulate_brownian(tree, sigsq=args.sigsq, root=0.0, rng=rng),
        "habitat": simulate_mk(tree, args.q01, args.q10, root_state=0, rng=rng),
    }
    out = Path(args.outdir)
    write_dataset(tree, columns, out / "tree.nwk", out / "traits.csv")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
