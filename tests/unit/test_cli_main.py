import json
import textwrap

import pytest

from adaptive_trials import cli
from adaptive_trials.analysis.performance import metric_names

CONFIG = """
trial:
  arms: [A, B, C]
  true_ys: [0.25, 0.20, 0.30]
outcome:
  type: binomial
looks:
  data_looks: [100, 200, 300]
posterior:
  n_draws: 1000
run:
  n_rep: 4
  base_seed: 12
performance:
  select_strategy: best
"""


def _write(tmp_path, text=CONFIG):
    p = tmp_path / "trial.yaml"
    p.write_text(textwrap.dedent(text), encoding="utf-8")
    return p


def _json_lines(out):
    return [json.loads(line) for line in out.splitlines() if line.strip()]


def test_cli_prints_metrics_and_diagnostics(tmp_path, capsys):
    cfg = _write(tmp_path)
    rc = cli.main(["--config", str(cfg), "--log_level", "WARNING"])
    assert rc == 0
    rows = _json_lines(capsys.readouterr().out)
    metrics, diag = rows[:-1], rows[-1]
    assert [r["metric"] for r in metrics] == metric_names(["A", "B", "C"])
    assert diag["n_rep"] == 4
    assert diag["base_seed"] == 12
    assert diag["arms"] == ["A", "B", "C"]
    n = next(r for r in metrics if r["metric"] == "n_summarised")
    assert n["est"] == 4


def test_cli_overrides_run_options(tmp_path, capsys):
    cfg = _write(tmp_path)
    rc = cli.main(["--config", str(cfg), "--n_rep", "3", "--base_seed", "5", "--log_level", "WARNING"])
    assert rc == 0
    diag = _json_lines(capsys.readouterr().out)[-1]
    assert diag["n_rep"] == 3
    assert diag["base_seed"] == 5


@pytest.mark.filterwarnings("ignore:n_boot")
def test_cli_bootstrap_uncertainty(tmp_path, capsys):
    cfg = _write(tmp_path)
    rc = cli.main(
        ["--config", str(cfg), "--uncertainty", "--n_boot", "100", "--boot_seed", "base", "--log_level", "WARNING"]
    )
    assert rc == 0
    rows = _json_lines(capsys.readouterr().out)[:-1]
    assert {"err_sd", "err_mad", "lo_ci", "hi_ci"} <= set(rows[0])
    p0 = next(r for r in rows if r["metric"] == "size_p0")
    assert p0["lo_ci"] is None


def test_cli_is_deterministic_for_fixed_seed(tmp_path, capsys):
    cfg = _write(tmp_path)
    cli.main(["--config", str(cfg), "--log_level", "WARNING"])
    first = _json_lines(capsys.readouterr().out)[:-1]
    cli.main(["--config", str(cfg), "--log_level", "WARNING"])
    second = _json_lines(capsys.readouterr().out)[:-1]
    assert first == second


def test_cli_missing_config_returns_2(tmp_path, capsys):
    rc = cli.main(["--config", str(tmp_path / "nope.yaml")])
    assert rc == 2
    assert "does not exist" in capsys.readouterr().err


def test_cli_invalid_config_returns_2(tmp_path, capsys):
    cfg = _write(tmp_path, CONFIG.replace("true_ys: [0.25, 0.20, 0.30]", "true_ys: [0.25, 0.20]"))
    rc = cli.main(["--config", str(cfg), "--log_level", "CRITICAL"])
    assert rc == 2
    assert "one value per arm" in capsys.readouterr().err


def test_cli_bad_boot_seed_returns_2(tmp_path, capsys):
    cfg = _write(tmp_path)
    rc = cli.main(["--config", str(cfg), "--boot_seed", "soon", "--log_level", "CRITICAL"])
    assert rc == 2
    assert "ERROR" in capsys.readouterr().err


def test_cli_simulation_failure_returns_1(tmp_path, capsys, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("worker died")

    monkeypatch.setattr(cli, "run_trials", boom)
    cfg = _write(tmp_path)
    rc = cli.main(["--config", str(cfg), "--log_level", "CRITICAL"])
    assert rc == 1
    assert "simulation failed: worker died" in capsys.readouterr().err


def test_cli_requires_config(capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main([])
    assert exc.value.code == 2
