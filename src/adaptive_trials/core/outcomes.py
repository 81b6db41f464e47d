# src/adaptive_trials/core/outcomes.py
"""
Pluggable outcome / posterior-draw functions and their contract checks.

Contracts
---------
- outcome generator:  fun_y_gen(allocs, rng) -> 1D float array, one outcome per patient
- draw generator:     fun_draws(arms, allocs, ys, control, n_draws, rng)
                      -> 2D float array of shape (n_draws, len(arms)), columns in `arms` order
- raw estimate:       fun_raw_est(ys) -> finite scalar

Generators are module-level classes (not closures) so specifications stay picklable
for process-based workers.
"""
from __future__ import annotations

import math
from typing import Any, Optional, Protocol, Sequence

import numpy as np

from ..errors import GeneratorContractError

# Used when an arm has too few observations for a finite posterior spread.
DIFFUSE_SD_MULTIPLIER = 1000.0


class OutcomeGenerator(Protocol):
    def __call__(self, allocs: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        ...


class DrawGenerator(Protocol):
    def __call__(
        self,
        arms: Sequence[str],
        allocs: np.ndarray,
        ys: np.ndarray,
        control: Optional[str],
        n_draws: int,
        rng: np.random.Generator,
    ) -> np.ndarray:
        ...


def _arm_index(arms: Sequence[str], allocs: np.ndarray) -> np.ndarray:
    lookup = {a: i for i, a in enumerate(arms)}
    try:
        return np.fromiter((lookup[a] for a in allocs), dtype=np.int64, count=len(allocs))
    except KeyError as e:
        raise GeneratorContractError(f"allocation to unknown arm {str(e.args[0])!r}") from e


class BinomialOutcomes:
    """Bernoulli outcomes with per-arm event probabilities `true_ys`."""

    def __init__(self, arms: Sequence[str], true_ys: Sequence[float]) -> None:
        self.arms = tuple(str(a) for a in arms)
        self.probs = np.asarray(true_ys, dtype=float)
        if self.probs.shape != (len(self.arms),):
            raise ValueError("true_ys must have one value per arm")

    def __call__(self, allocs: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        idx = _arm_index(self.arms, np.asarray(allocs))
        return rng.binomial(1, self.probs[idx]).astype(float)

    def __repr__(self) -> str:
        return f"BinomialOutcomes(arms={self.arms!r}, true_ys={self.probs.tolist()!r})"


class NormalOutcomes:
    """Normally distributed outcomes with per-arm means `true_ys` and SDs `sds`."""

    def __init__(self, arms: Sequence[str], true_ys: Sequence[float], sds: Sequence[float]) -> None:
        self.arms = tuple(str(a) for a in arms)
        self.means = np.asarray(true_ys, dtype=float)
        self.sds = np.asarray(sds, dtype=float)
        if self.means.shape != (len(self.arms),) or self.sds.shape != (len(self.arms),):
            raise ValueError("true_ys and sds must have one value per arm")

    def __call__(self, allocs: np.ndarray, rng: np.random.Generator) -> np.ndarray:
        idx = _arm_index(self.arms, np.asarray(allocs))
        return rng.normal(self.means[idx], self.sds[idx])

    def __repr__(self) -> str:
        return (
            f"NormalOutcomes(arms={self.arms!r}, true_ys={self.means.tolist()!r}, "
            f"sds={self.sds.tolist()!r})"
        )


class BinomialDraws:
    """Beta(1 + events, 1 + non-events) posterior draws (uniform prior)."""

    def __call__(self, arms, allocs, ys, control, n_draws, rng):
        allocs = np.asarray(allocs)
        ys = np.asarray(ys, dtype=float)
        cols = []
        for arm in arms:
            mask = allocs == arm
            n = int(mask.sum())
            events = float(ys[mask].sum())
            cols.append(rng.beta(1.0 + events, 1.0 + n - events, size=int(n_draws)))
        return np.column_stack(cols)

    def __repr__(self) -> str:
        return "BinomialDraws()"


class NormalDraws:
    """
    Normal approximation of the posterior of each arm mean.

    Arms with fewer than two observations (or no spread) get an extremely diffuse
    sample centred on the overall mean so comparisons stay finite.
    """

    def __call__(self, arms, allocs, ys, control, n_draws, rng):
        allocs = np.asarray(allocs)
        ys = np.asarray(ys, dtype=float)
        if ys.size:
            centre = float(ys.mean())
            spread = float(ys.max() - ys.min())
        else:
            centre, spread = 0.0, 0.0
        diffuse_sd = DIFFUSE_SD_MULTIPLIER * (spread if spread > 0.0 else 1.0)

        cols = []
        for arm in arms:
            arm_ys = ys[allocs == arm]
            n = arm_ys.size
            sd = float(arm_ys.std(ddof=1)) if n > 1 else 0.0
            if n > 1 and sd > 0.0:
                cols.append(rng.normal(float(arm_ys.mean()), sd / math.sqrt(n - 1), size=int(n_draws)))
            else:
                cols.append(rng.normal(centre, diffuse_sd, size=int(n_draws)))
        return np.column_stack(cols)

    def __repr__(self) -> str:
        return "NormalDraws()"


# ---------------------------------------------------------------------
# Contract checks (raise at first violation, no coercion of bad values)
# ---------------------------------------------------------------------
def check_outcomes(ys: Any, n: int, *, context: str = "") -> np.ndarray:
    try:
        arr = np.asarray(ys, dtype=float)
    except (TypeError, ValueError) as e:
        raise GeneratorContractError(f"fun_y_gen returned non-numeric outcomes. {context}".strip()) from e
    if arr.ndim != 1 or arr.size != int(n):
        raise GeneratorContractError(
            f"fun_y_gen must return {n} outcomes, got shape {arr.shape}. {context}".strip()
        )
    if not np.all(np.isfinite(arr)):
        raise GeneratorContractError(f"fun_y_gen returned non-finite outcomes. {context}".strip())
    return arr


def check_draws(draws: Any, n_draws: int, n_arms: int, *, context: str = "") -> np.ndarray:
    try:
        arr = np.asarray(draws, dtype=float)
    except (TypeError, ValueError) as e:
        raise GeneratorContractError(f"fun_draws returned non-numeric draws. {context}".strip()) from e
    if arr.shape != (int(n_draws), int(n_arms)):
        raise GeneratorContractError(
            f"fun_draws must return shape ({n_draws}, {n_arms}), got {arr.shape}. {context}".strip()
        )
    if not np.all(np.isfinite(arr)):
        raise GeneratorContractError(f"fun_draws returned non-finite draws. {context}".strip())
    degenerate = np.ptp(arr, axis=0) == 0.0
    if np.any(degenerate):
        cols = np.flatnonzero(degenerate).tolist()
        raise GeneratorContractError(
            f"fun_draws returned zero-variance draws for column(s) {cols}. {context}".strip()
        )
    return arr


def check_raw_estimate(value: Any, *, context: str = "") -> float:
    arr = np.asarray(value)
    if arr.size != 1:
        raise GeneratorContractError(f"fun_raw_est must return a single value, got shape {arr.shape}. {context}".strip())
    try:
        out = float(arr.reshape(()))
    except (TypeError, ValueError) as e:
        raise GeneratorContractError(f"fun_raw_est returned a non-numeric value {value!r}. {context}".strip()) from e
    if not math.isfinite(out):
        raise GeneratorContractError(f"fun_raw_est returned a non-finite value {out!r}. {context}".strip())
    return out


__all__ = [
    "DIFFUSE_SD_MULTIPLIER",
    "OutcomeGenerator",
    "DrawGenerator",
    "BinomialOutcomes",
    "NormalOutcomes",
    "BinomialDraws",
    "NormalDraws",
    "check_outcomes",
    "check_draws",
    "check_raw_estimate",
]
