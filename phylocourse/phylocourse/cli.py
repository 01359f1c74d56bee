"""phylocourse command-line interface."""

from __future__ import annotations

import argparse
import datetime as dt
import sys
from typing import Sequence

from .data import name_check, read_trait_table, read_tree


def _parse_models_arg(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _parse_constraints(raw: Sequence[str] | None) -> dict[str, str | float]:
    out: dict[str, str | float] = {}
    for item in raw or []:
        if "=" not in item:
            raise ValueError(f"constraint {item!r} must look like name=other or name=value")
        name, target = (x.strip() for x in item.split("=", 1))
        try:
            out[name] = float(target)
        except ValueError:
            out[name] = target
    return out


def _parse_sampling(raw: str) -> tuple[float, float]:
    parts = [x.strip() for x in raw.split(",")]
    if len(parts) != 2:
        raise ValueError("--sampling needs two comma-separated fractions, e.g. 1,0.8")
    return float(parts[0]), float(parts[1])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phylocourse",
        description="Course tools for phylogenetic comparative methods.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("check", help="Compare tree tip labels with trait table rows.")
    p.add_argument("tree", help="Newick tree file.")
    p.add_argument("table", help="Delimited trait table (first column = taxon).")

    p = sub.add_parser("fit", help="Fit continuous trait models and compare them by AICc.")
    p.add_argument("tree")
    p.add_argument("table")
    p.add_argument("trait", help="Column of the trait table to analyse.")
    p.add_argument(
        "--models",
        default="BM,OU,EB",
        help="Comma-separated models from BM, OU, EB, lambda, white.",
    )

    p = sub.add_parser("signal", help="Blomberg's K and Pagel's lambda for one trait.")
    p.add_argument("tree")
    p.add_argument("table")
    p.add_argument("trait")
    p.add_argument("--nsim", type=int, default=1000, help="Permutations for the K test.")
    p.add_argument("--seed", type=int, default=0, help="Random seed for the permutations.")

    p = sub.add_parser("ltt", help="Lineage-through-time table or plot.")
    p.add_argument("tree")
    p.add_argument("-o", "--output", default=None, help="Write a PNG plot instead of printing the table.")
    p.add_argument("--linear", action="store_true", help="Linear rather than log lineage axis.")

    p = sub.add_parser("birthdeath", help="Gamma statistic, Yule and birth-death fits.")
    p.add_argument("tree")

    p = sub.add_parser("bisse", help="Fit a BiSSE model to a binary character.")
    p.add_argument("tree")
    p.add_argument("table")
    p.add_argument("character", help="Column holding 0/1 states.")
    p.add_argument(
        "--constrain",
        action="append",
        default=None,
        help="Constraint name=other or name=value (repeatable), e.g. lambda1=lambda0.",
    )
    p.add_argument("--sampling", default="1,1", help="Sampling fractions for states 0 and 1.")
    p.add_argument("--root", choices=["obs", "equal"], default="obs", help="Root state weighting.")
    p.add_argument("--maxiter", type=int, default=2000, help="Nelder-Mead iterations.")

    p = sub.add_parser("walkthrough", help="Run a narrated analysis and write it as markdown.")
    p.add_argument("kind", choices=["continuous", "signal", "diversification", "bisse"])
    p.add_argument("tree")
    p.add_argument("--table", default=None, help="Trait table (not needed for diversification).")
    p.add_argument("--trait", default=None, help="Trait or character column.")
    p.add_argument("-o", "--output", default=None, help="Markdown output path. Defaults to stdout.")
    p.add_argument("--figures", default=None, help="Directory for figures.")
    p.add_argument("--null-trees", type=int, default=0, help="Simulated trees for the gamma null.")
    p.add_argument("--nsim", type=int, default=1000, help="Permutations for the K test.")
    p.add_argument("--seed", type=int, default=0)
    p.add_argument("--quiet", action="store_true", help="Do not echo steps while running.")

    p = sub.add_parser("site", help="Build the course schedule page.")
    p.add_argument("config", help="Course config (YAML or JSON).")
    p.add_argument("-o", "--output", default="_site", help="Output directory.")
    p.add_argument("--today", default=None, help="Reference date (YYYY-MM-DD) for past/upcoming marking.")
    return parser


def _cmd_check(args) -> int:
    check = name_check(read_tree(args.tree), read_trait_table(args.table))
    print(check.summary())
    return 0 if check.ok else 1


def _cmd_fit(args) -> int:
    from .continuous import compare_models, fit_continuous, format_fit_table
    from .data import prune_to_shared, trait_vector

    tree, table = prune_to_shared(read_tree(args.tree), read_trait_table(args.table))
    x = trait_vector(tree, table, args.trait)
    fits = [fit_continuous(tree, x, m) for m in _parse_models_arg(args.models)]
    print(format_fit_table(compare_models(fits)))
    return 0


def _cmd_signal(args) -> int:
    import numpy as np

    from .data import prune_to_shared, trait_vector
    from .phylosignal import blombergs_k, pagels_lambda

    tree, table = prune_to_shared(read_tree(args.tree), read_trait_table(args.table))
    x = trait_vector(tree, table, args.trait)
    print(blombergs_k(tree, x, nsim=args.nsim, rng=np.random.default_rng(args.seed)).summary())
    print(pagels_lambda(tree, x).summary())
    return 0


def _cmd_ltt(args) -> int:
    from .diversification import lineages_through_time

    tree = read_tree(args.tree)
    if args.output:
        from .plotting import plot_ltt

        plot_ltt(tree, args.output, log=not args.linear)
        return 0
    times, counts = lineages_through_time(tree)
    print("time\tlineages")
    for t, n in zip(times, counts):
        print(f"{t:.6g}\t{n}")
    return 0


def _cmd_birthdeath(args) -> int:
    from .diversification import fit_birth_death, fit_yule, gamma_statistic

    tree = read_tree(args.tree)
    print(gamma_statistic(tree).summary())
    print(fit_yule(tree).summary())
    print(fit_birth_death(tree).summary())
    return 0


def _cmd_bisse(args) -> int:
    from .bisse import fit_bisse
    from .data import discrete_states, prune_to_shared

    tree, table = prune_to_shared(read_tree(args.tree), read_trait_table(args.table))
    states = discrete_states(tree, table, args.character)
    fit = fit_bisse(
        tree,
        states,
        constraints=_parse_constraints(args.constrain),
        sampling=_parse_sampling(args.sampling),
        root=args.root,
        maxiter=args.maxiter,
    )
    print(fit.summary())
    return 0


def _cmd_walkthrough(args) -> int:
    from .walkthroughs import (
        bisse_walkthrough,
        continuous_walkthrough,
        diversification_walkthrough,
        signal_walkthrough,
    )

    echo = not args.quiet and args.output is not None
    if args.kind == "diversification":
        doc = diversification_walkthrough(
            args.tree, out_dir=args.figures, n_null=args.null_trees, seed=args.seed, echo=echo
        )
    else:
        if not args.table or not args.trait:
            print(f"error: walkthrough {args.kind} needs --table and --trait", file=sys.stderr)
            return 2
        if args.kind == "continuous":
            doc = continuous_walkthrough(args.tree, args.table, args.trait, out_dir=args.figures, echo=echo)
        elif args.kind == "signal":
            doc = signal_walkthrough(args.tree, args.table, args.trait, nsim=args.nsim, seed=args.seed, echo=echo)
        else:
            doc = bisse_walkthrough(args.tree, args.table, args.trait, echo=echo)
    if args.output:
        doc.write(args.output)
    else:
        print(doc.render_markdown().rstrip())
    return 0


def _cmd_site(args) -> int:
    from .schedule import build_site

    today = dt.date.fromisoformat(args.today) if args.today else None
    index = build_site(args.config, args.output, today=today)
    print(str(index))
    return 0


_COMMANDS = {
    "check": _cmd_check,
    "fit": _cmd_fit,
    "signal": _cmd_signal,
    "ltt": _cmd_ltt,
    "birthdeath": _cmd_birthdeath,
    "bisse": _cmd_bisse,
    "walkthrough": _cmd_walkthrough,
    "site": _cmd_site,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "nsim", 1) < 1:
        print("error: --nsim must be >= 1", file=sys.stderr)
        return 2
    if getattr(args, "maxiter", 1) < 1:
        print("error: --maxiter must be >= 1", file=sys.stderr)
        return 2
    if getattr(args, "null_trees", 0) < 0:
        print("error: --null-trees must be >= 0", file=sys.stderr)
        return 2
    if args.command == "site" and args.today:
        try:
            dt.date.fromisoformat(args.today)
        except ValueError:
            print("error: --today must be YYYY-MM-DD", file=sys.stderr)
            return 2
    if args.command == "bisse":
        try:
            _parse_constraints(args.constrain)
            _parse_sampling(args.sampling)
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 2

    try:
        return _COMMANDS[args.command](args)
    except Exception as exc:  # pragma: no cover - error path
        print(f"error: {args.command} failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
