"""Narrative analysis documents.

Each walkthrough is a linear script: load the tree (and trait table), check
that the labels agree, call one analysis routine per step, and record the
result next to a short interpretation. The collected steps render to a
markdown document that can be linked from the course page.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import sys
from typing import List, Sequence, TextIO

import numpy as np
import pandas as pd
import treeswift
from scipy.stats import chi2

from .bisse import fit_bisse, likelihood_ratio_test
from .continuous import compare_models, fit_continuous, format_fit_table
from .data import (
    discrete_states,
    is_binary,
    is_ultrametric,
    name_check,
    prune_to_shared,
    read_trait_table,
    read_tree,
    tip_labels,
    trait_vector,
)
from .diversification import (
    empirical_p_value,
    fit_birth_death,
    fit_pure_birth_on_times,
    fit_yule,
    gamma_statistic,
    simulated_gamma_null,
)
from .phylosignal import blombergs_k, pagels_lambda


@dataclass
class Step:
    heading: str
    prose: str
    result: str = ""
    figure: str | None = None


@dataclass
class Walkthrough:
    title: str
    echo: bool = False
    stream: TextIO | None = None
    steps: List[Step] = field(default_factory=list)

    def step(self, heading: str, prose: str, result: str = "", figure: str | Path | None = None) -> Step:
        item = Step(heading=heading, prose=prose.strip(), result=result.rstrip(), figure=str(figure) if figure else None)
        self.steps.append(item)
        if self.echo:
            out = self.stream or sys.stdout
            print(f"## {item.heading}", file=out)
            print(item.prose, file=out)
            if item.result:
                print(item.result, file=out)
            if item.figure:
                print(f"[figure: {item.figure}]", file=out)
            print("", file=out)
        return item

    def render_markdown(self) -> str:
        lines = [f"# {self.title}", ""]
        for i, s in enumerate(self.steps, start=1):
            lines.append(f"## {i}. {s.heading}")
            lines.append("")
            lines.append(s.prose)
            lines.append("")
            if s.result:
                lines.append("```")
                lines.append(s.result)
                lines.append("```")
                lines.append("")
            if s.figure:
                lines.append(f"![{s.heading}]({s.figure})")
                lines.append("")
        return "\n".join(lines).rstrip() + "\n"

    def write(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render_markdown(), encoding="utf-8")
        return path


def _figure_path(out_dir: str | Path | None, name: str) -> Path | None:
    if out_dir is None:
        return None
    return Path(out_dir) / name


def _load_tree(doc: Walkthrough, tree_path: str) -> treeswift.Tree:
    tree = read_tree(tree_path)
    n = len(tip_labels(tree))
    doc.step(
        "Read the tree",
        "We start by reading the phylogeny from its Newick file and checking its basic shape. "
        "Most of the models below assume an ultrametric tree, where every tip sits at the present.",
        f"tips: {n}\nultrametric: {is_ultrametric(tree, tol=1e-4)}\nbifurcating: {is_binary(tree)}",
    )
    return tree


def _load_matched(doc: Walkthrough, tree_path: str, table_path: str) -> tuple[treeswift.Tree, pd.DataFrame]:
    tree = _load_tree(doc, tree_path)
    table = read_trait_table(table_path)
    doc.step(
        "Read the trait table",
        "Trait values live in a delimited text file with one row per species. "
        "The first column holds the species names and must use the same spelling as the tree tips.",
        f"rows: {len(table)}\ncolumns: {', '.join(str(c) for c in table.columns)}",
    )
    check = name_check(tree, table)
    prose = (
        "Before any analysis we compare tip labels with table rows. "
        "Species present on only one side cannot be analysed and are dropped from both."
    )
    if not check.ok:
        tree, table = prune_to_shared(tree, table)
    doc.step("Match tree and data", prose, check.summary() + f"\nanalysed taxa: {len(tip_labels(tree))}")
    return tree, table


def continuous_walkthrough(
    tree_path: str,
    table_path: str,
    trait: str,
    *,
    models: Sequence[str] = ("BM", "OU", "EB"),
    out_dir: str | Path | None = None,
    echo: bool = False,
) -> Walkthrough:
    doc = Walkthrough(title=f"Models of continuous trait evolution: {trait}", echo=echo)
    tree, table = _load_matched(doc, tree_path, table_path)
    x = trait_vector(tree, table, trait)
    doc.step(
        "Look at the trait",
        "A quick summary of the raw values. Size-like traits are often log-transformed before model fitting.",
        f"n = {len(x)}  mean = {np.mean(x):.4g}  sd = {np.std(x, ddof=1):.4g}  "
        f"min = {np.min(x):.4g}  max = {np.max(x):.4g}",
    )

    fits = [fit_continuous(tree, x, m) for m in models]
    for fit in fits:
        params = ", ".join(f"{k} = {v:.4g}" for k, v in fit.params.items())
        doc.step(
            f"Fit {fit.model}",
            _MODEL_PROSE.get(fit.model, ""),
            f"logL = {fit.loglik:.3f}  AICc = {fit.aicc:.3f}\n{params}",
        )

    rows = compare_models(fits)
    figure = None
    fig_path = _figure_path(out_dir, f"{trait}_model_weights.png")
    if fig_path is not None:
        from .plotting import plot_model_weights

        figure = plot_model_weights(rows, fig_path, title=f"Akaike weights: {trait}")
    best = rows[0]
    doc.step(
        "Compare models",
        "Models with more parameters always fit at least as well, so we compare them with AICc, "
        "which penalises extra parameters. Akaike weights give the relative support for each model in the set.",
        format_fit_table(rows),
        figure,
    )
    doc.step("Interpretation", _interpret_continuous(best))
    return doc


_MODEL_PROSE = {
    "BM": "Brownian motion: trait variance grows linearly with time at rate sigsq.",
    "OU": "Ornstein-Uhlenbeck: a random walk pulled back toward an optimum with strength alpha.",
    "EB": "Early burst: the rate of evolution decays exponentially through time (a < 0).",
    "lambda": "Pagel's lambda: Brownian motion with internal branches stretched or shrunk by lambda.",
    "white": "White noise: no phylogenetic structure; every species is an independent draw.",
}


def _interpret_continuous(best) -> str:
    if best.model == "OU":
        alpha = best.params.get("alpha", 0.0)
        return (
            f"OU is preferred (alpha = {alpha:.4g}). Trait values look constrained around an optimum, "
            "although weak alpha estimates on small trees are hard to tell apart from Brownian motion."
        )
    if best.model == "EB":
        return (
            f"Early burst is preferred (a = {best.params.get('a', 0.0):.4g}): most trait change happened early "
            "in the history of the clade, as expected under an adaptive radiation."
        )
    if best.model == "white":
        return "White noise is preferred: trait values show little phylogenetic structure."
    if best.model == "lambda":
        return f"Pagel's lambda is preferred (lambda = {best.params.get('lambda', 0.0):.4g})."
    return (
        "Brownian motion is preferred: the data are consistent with a constant-rate random walk, "
        "and the extra parameters of the other models are not justified."
    )


def signal_walkthrough(
    tree_path: str,
    table_path: str,
    trait: str,
    *,
    nsim: int = 1000,
    seed: int = 0,
    echo: bool = False,
) -> Walkthrough:
    doc = Walkthrough(title=f"Phylogenetic signal: {trait}", echo=echo)
    tree, table = _load_matched(doc, tree_path, table_path)
    x = trait_vector(tree, table, trait)
    k = blombergs_k(tree, x, nsim=nsim, rng=np.random.default_rng(seed))
    doc.step(
        "Blomberg's K",
        "K compares the observed similarity of relatives to the similarity expected under Brownian motion. "
        "K = 1 matches the Brownian expectation, K < 1 means less signal, K > 1 more. "
        "The P-value comes from shuffling trait values across the tips.",
        k.summary(),
    )
    lam = pagels_lambda(tree, x)
    doc.step(
        "Pagel's lambda",
        "Lambda rescales the internal branches of the tree. lambda = 0 removes all phylogenetic structure and "
        "lambda = 1 recovers Brownian motion. We test lambda against 0 with a likelihood-ratio test.",
        lam.summary(),
    )
    verdict = "significant" if k.p_value < 0.05 or lam.p_value < 0.05 else "no significant"
    doc.step(
        "Interpretation",
        f"There is {verdict} phylogenetic signal in {trait} at the 5% level. "
        "Signal alone says nothing about process: many models of evolution produce similar K and lambda values.",
    )
    return doc


def diversification_walkthrough(
    tree_path: str,
    *,
    out_dir: str | Path | None = None,
    n_null: int = 0,
    seed: int = 0,
    echo: bool = False,
) -> Walkthrough:
    doc = Walkthrough(title="Diversification rates", echo=echo)
    tree = _load_tree(doc, tree_path)

    figure = None
    fig_path = _figure_path(out_dir, "ltt.png")
    if fig_path is not None:
        from .plotting import plot_ltt

        figure = plot_ltt(tree, fig_path)
    doc.step(
        "Lineage-through-time plot",
        "The LTT plot counts lineages from the root to the present on a log scale. "
        "A constant-rate pure-birth process gives a straight line; a curve that flattens toward the present "
        "suggests slowing diversification, or incomplete sampling.",
        "",
        figure,
    )

    g = gamma_statistic(tree)
    doc.step(
        "Gamma statistic",
        "Gamma summarises where branching events fall in the tree. Under a constant-rate pure-birth model it "
        "follows a standard normal; negative values mean nodes are concentrated near the root.",
        g.summary(),
    )

    yule = fit_yule(tree)
    if n_null > 0:
        null = simulated_gamma_null(yule.birth, 0.0, len(tip_labels(tree)), n_trees=n_null, seed=seed)
        p = empirical_p_value(g.gamma, null, tail="lower")
        null_fig = None
        null_path = _figure_path(out_dir, "gamma_null.png")
        if null_path is not None:
            from .plotting import plot_null_distribution

            null_fig = plot_null_distribution(null, g.gamma, null_path)
        doc.step(
            "Gamma against simulated trees",
            "The normal approximation is rough for small trees, so we also compare gamma with its distribution on "
            "pure-birth trees of the same size simulated with DendroPy.",
            f"simulated trees: {len(null)}\nnull mean = {np.mean(null):.4f}\nempirical P (lower tail) = {p:.4g}",
            null_fig,
        )

    doc.step("Fit a Yule model", "Pure birth: a single speciation rate, no extinction.", yule.summary())
    bd = fit_birth_death(tree)
    doc.step(
        "Fit a birth-death model",
        "Birth-death adds an extinction rate. Estimates of extinction from trees of living species alone are "
        "notoriously imprecise, so treat epsilon with caution.",
        bd.summary(),
    )
    pb = fit_pure_birth_on_times(tree)
    lr = max(0.0, 2.0 * (bd.loglik - pb.loglik))
    doc.step(
        "Compare pure birth with birth-death",
        "Both models are evaluated on the same branching-time likelihood, so their log-likelihoods can be "
        "compared with a likelihood-ratio test on one degree of freedom.",
        f"logL(pure birth) = {pb.loglik:.3f}\nlogL(birth-death) = {bd.loglik:.3f}\n"
        f"LR = {lr:.4f}, P = {float(chi2.sf(lr, df=1)):.4g}",
    )
    return doc


def bisse_walkthrough(
    tree_path: str,
    table_path: str,
    character: str,
    *,
    maxiter: int = 2000,
    echo: bool = False,
) -> Walkthrough:
    doc = Walkthrough(title=f"State-dependent diversification (BiSSE): {character}", echo=echo)
    tree, table = _load_matched(doc, tree_path, table_path)
    states = discrete_states(tree, table, character)
    n1 = int(np.sum(states))
    doc.step(
        "Character states",
        "BiSSE needs a binary character coded 0/1 for every tip.",
        f"state 0: {len(states) - n1}\nstate 1: {n1}",
    )
    full = fit_bisse(tree, states, maxiter=maxiter)
    doc.step(
        "Fit the full BiSSE model",
        "Six parameters: speciation (lambda), extinction (mu) and transition (q) rates for each state.",
        full.summary(),
    )
    equal = fit_bisse(tree, states, constraints={"lambda1": "lambda0"}, start=full.params, maxiter=maxiter)
    doc.step(
        "Constrain speciation to be equal",
        "To ask whether the character affects speciation we refit with lambda0 = lambda1.",
        equal.summary(),
    )
    lrt = likelihood_ratio_test(full, equal)
    doc.step(
        "Likelihood-ratio test",
        "Twice the difference in log-likelihood is compared to a chi-square distribution with one degree of "
        "freedom per removed parameter.",
        lrt.summary(),
    )
    faster = "state 1" if full.params.lambda1 > full.params.lambda0 else "state 0"
    doc.step(
        "Interpretation",
        f"The full model estimates faster speciation in {faster}; the test "
        f"{'supports' if lrt.p_value < 0.05 else 'does not support'} a difference at the 5% level. "
        "BiSSE is known to find state-dependent diversification on trees where the real driver is some other, "
        "unmeasured trait, so a significant result is a hypothesis rather than a conclusion.",
    )
    return doc
