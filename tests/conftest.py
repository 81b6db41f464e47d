"""
Pytest bootstrap for src/ layout.

Puts ./src first on sys.path so `import adaptive_trials` works without an
install, and provides small shared trial specifications.
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

repo_root = Path(__file__).resolve().parents[1]
src = repo_root / "src"
if src.is_dir():
    src_str = str(src)
    if src_str not in sys.path:
        # Put first so local src wins over any installed copy of the package.
        sys.path.insert(0, src_str)


@pytest.fixture
def binom_spec():
    from adaptive_trials.core.spec import setup_trial_binom

    return setup_trial_binom(
        arms=["A", "B", "C"],
        true_ys=[0.25, 0.20, 0.30],
        data_looks=[100, 200, 300],
        n_draws=1000,
    )


@pytest.fixture
def control_spec():
    from adaptive_trials.core.spec import setup_trial_binom

    return setup_trial_binom(
        arms=["A", "B", "C"],
        true_ys=[0.25, 0.20, 0.30],
        control="A",
        data_looks=[100, 200, 300, 400],
        equivalence_prob=0.9,
        equivalence_diff=0.05,
        equivalence_only_first=True,
        futility_prob=0.9,
        futility_diff=0.05,
        futility_only_first=True,
        n_draws=1000,
    )
