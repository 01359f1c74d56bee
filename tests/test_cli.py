"""CLI integration tests."""

from __future__ import annotations

import importlib.util
import io
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

from phylocourse import cli

TREE8 = "(((A:1,B:1):1,(C:1.5,D:1.5):0.5):2,((E:0.5,F:0.5):2.5,(G:2,H:2):1):1);"
TABLE8 = """\
taxon,size,habitat
A,0.10,0
B,0.25,0
C,-0.40,0
D,-0.20,1
E,1.60,1
F,1.45,1
G,1.10,1
H,0.90,0
"""


def _write_inputs(tmp_path, table: str = TABLE8):
    tree = tmp_path / "tree.nwk"
    tree.write_text(TREE8 + "\n", encoding="utf-8")
    traits = tmp_path / "traits.csv"
    traits.write_text(table, encoding="utf-8")
    return str(tree), str(traits)


def _run(argv):
    out, err = io.StringIO(), io.StringIO()
    with redirect_stdout(out), redirect_stderr(err):
        code = cli.main(argv)
    return code, out.getvalue(), err.getvalue()


def test_cli_check(tmp_path):
    tree, traits = _write_inputs(tmp_path)
    code, out, _ = _run(["check", tree, traits])
    assert code == 0
    assert out.startswith("OK")

    tree, traits = _write_inputs(tmp_path, TABLE8 + "Z,1.0,0\n")
    code, out, _ = _run(["check", tree, traits])
    assert code == 1
    assert "Z" in out


def test_cli_fit(tmp_path):
    tree, traits = _write_inputs(tmp_path)
    code, out, _ = _run(["fit", tree, traits, "size", "--models", "BM,lambda,white"])
    assert code == 0
    lines = out.strip().splitlines()
    assert lines[0].startswith("model")
    assert {line.split()[0] for line in lines[1:]} == {"BM", "lambda", "white"}


def test_cli_fit_unknown_trait(tmp_path):
    tree, traits = _write_inputs(tmp_path)
    code, _, err = _run(["fit", tree, traits, "mass"])
    assert code == 1
    assert err.startswith("error:")


def test_cli_signal(tmp_path):
    tree, traits = _write_inputs(tmp_path)
    code, out, _ = _run(["signal", tree, traits, "size", "--nsim", "50", "--seed", "1"])
    assert code == 0
    assert "Blomberg's K" in out
    assert "Pagel's lambda" in out


def test_cli_signal_rejects_bad_nsim(tmp_path):
    tree, traits = _write_inputs(tmp_path)
    code, _, err = _run(["signal", tree, traits, "size", "--nsim", "0"])
    assert code == 2
    assert "--nsim" in err


def test_cli_ltt_table_and_plot(tmp_path):
    tree, _ = _write_inputs(tmp_path)
    code, out, _ = _run(["ltt", tree])
    assert code == 0
    rows = out.strip().splitlines()
    assert rows[0] == "time\tlineages"
    assert rows[-1] == "4\t8"

    png = tmp_path / "ltt.png"
    code, _, _ = _run(["ltt", tree, "-o", str(png)])
    assert code == 0
    assert png.exists()


def test_cli_birthdeath(tmp_path):
    tree, _ = _write_inputs(tmp_path)
    code, out, _ = _run(["birthdeath", tree])
    assert code == 0
    assert "gamma =" in out
    assert "yule:" in out
    assert "birth-death:" in out


def test_cli_bisse_constrained(tmp_path):
    tree, traits = _write_inputs(tmp_path)
    code, out, _ = _run(
        [
            "bisse",
            tree,
            traits,
            "habitat",
            "--constrain",
            "lambda1=lambda0",
            "--constrain",
            "mu1=mu0",
            "--constrain",
            "q10=q01",
            "--maxiter",
            "80",
        ]
    )
    assert code == 0
    assert "logL" in out


def test_cli_bisse_bad_constraint(tmp_path):
    tree, traits = _write_inputs(tmp_path)
    code, _, err = _run(["bisse", tree, traits, "habitat", "--constrain", "lambda1"])
    assert code == 2
    assert "constraint" in err


def test_cli_walkthrough_writes_markdown(tmp_path):
    tree, traits = _write_inputs(tmp_path)
    md = tmp_path / "doc.md"
    code, out, _ = _run(
        ["walkthrough", "continuous", tree, "--table", traits, "--trait", "size", "-o", str(md), "--quiet"]
    )
    assert code == 0
    assert out == ""
    assert md.read_text(encoding="utf-8").startswith("# Models of continuous trait evolution: size")


def test_cli_walkthrough_needs_table(tmp_path):
    tree, _ = _write_inputs(tmp_path)
    code, _, err = _run(["walkthrough", "signal", tree])
    assert code == 2
    assert "--table" in err


def test_cli_walkthrough_stdout(tmp_path):
    tree, _ = _write_inputs(tmp_path)
    code, out, _ = _run(["walkthrough", "diversification", tree])
    assert code == 0
    assert out.startswith("# Diversification rates")


def test_cli_site(tmp_path):
    config = tmp_path / "course.yaml"
    config.write_text(
        "title: Course\nsessions:\n  - date: 2025-03-04\n    topic: Intro\n    lecture: l1.pdf\n",
        encoding="utf-8",
    )
    out_dir = tmp_path / "_site"
    code, out, _ = _run(["site", str(config), "-o", str(out_dir), "--today", "2025-03-01"])
    assert code == 0
    assert (out_dir / "index.html").exists()
    assert out.strip().endswith("index.html")

    code, _, err = _run(["site", str(config), "--today", "March"])
    assert code == 2
    assert "--today" in err


def _load_dataset_script():
    path = Path(__file__).resolve().parents[1] / "scripts" / "simulate_dataset.py"
    spec = importlib.util.spec_from_file_location("simulate_dataset", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_cli_runs_on_simulated_dataset(tmp_path):
    try:
        import dendropy  # noqa: F401
    except ImportError:
        return

    script = _load_dataset_script()
    out_dir = tmp_path / "ds"
    assert script.main(["--n-tips", "20", "--seed", "5", "--outdir", str(out_dir)]) == 0
    tree, traits = str(out_dir / "tree.nwk"), str(out_dir / "traits.csv")

    code, out, err = _run(["fit", tree, traits, "body_size"])
    assert code == 0, err
    assert {line.split()[0] for line in out.strip().splitlines()[1:]} == {"BM", "OU", "EB"}

    code, out, err = _run(
        ["bisse", tree, traits, "habitat", "--constrain", "lambda1=lambda0", "--constrain", "mu1=mu0", "--maxiter", "60"]
    )
    assert code == 0, err
    assert "logL" in out
