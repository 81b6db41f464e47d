# src/adaptive_trials/analysis/performance.py
"""
Performance metrics for batches of simulated trials.

extract_results() turns a BatchResult into one row per replicate (sample size,
outcome totals, final status and the selected arm with its estimation errors);
check_performance() summarises those rows, optionally with non-parametric
bootstrap uncertainty. Bootstrap resample b always uses the stream
SeedSequence([boot_seed, STREAM_BOOTSTRAP, b]).
"""
from __future__ import annotations

import logging
import time
import warnings
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import stats

from ..core.batch import WorkerPool
from ..core.models import ArmStatus, BatchResult, ReplicateResult, TrialStatus
from ..io.seeds import bootstrap_rng, resolve_entropy

LOG = logging.getLogger(__name__)

SELECT_STRATEGIES = (
    "none",
    "control if available",
    "control",
    "final control",
    "control or best",
    "best",
    "list",
    "list or best",
)
NO_BOOT_METRICS = ("size_p0", "size_p100", "sum_ys_p0", "sum_ys_p100", "ratio_ys_p0", "ratio_ys_p100")
_SUMMARY_SUFFIXES = ("mean", "sd", "median", "p25", "p75", "p0", "p100")
_REMAINING = (ArmStatus.ACTIVE, ArmStatus.IS_CONTROL)


# ---------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------
def _remaining_arms(result: ReplicateResult) -> List[str]:
    return [a.arm for a in result.arms if a.status in _REMAINING]


def _best_remaining(result: ReplicateResult) -> Optional[str]:
    remaining = [a for a in result.arms if a.status in _REMAINING]
    if not remaining:
        return None
    return max(remaining, key=lambda a: a.prob_best).arm


def select_arm(
    result: ReplicateResult,
    select_strategy: str = "control if available",
    select_last_arm: bool = False,
    select_preferences: Optional[Sequence[str]] = None,
) -> Optional[str]:
    """Arm selected in one replicate (None when no arm is selected)."""
    if result.superior_arm is not None:
        return result.superior_arm

    remaining = _remaining_arms(result)
    if select_last_arm:
        comparators = [a for a in remaining if a != result.final_control]
        if len(comparators) == 1:
            return comparators[0]
        if len(remaining) == 1:
            return remaining[0]

    start_ctrl = result.start_control
    ctrl_available = start_ctrl is not None and start_ctrl in remaining
    if select_strategy == "none":
        return None
    if select_strategy == "control if available":
        return start_ctrl if ctrl_available else None
    if select_strategy == "control":
        return start_ctrl
    if select_strategy == "final control":
        return result.final_control
    if select_strategy == "control or best":
        return start_ctrl if ctrl_available else _best_remaining(result)
    if select_strategy == "best":
        return _best_remaining(result)
    if select_strategy in ("list", "list or best"):
        for arm in select_preferences or ():
            if arm in remaining:
                return arm
        return _best_remaining(result) if select_strategy == "list or best" else None
    raise ValueError(f"select_strategy must be one of {SELECT_STRATEGIES}, got {select_strategy!r}")


def _check_selection_args(batch: BatchResult, select_strategy: str, select_preferences: Optional[Sequence[str]]) -> None:
    spec = batch.spec
    if select_strategy not in SELECT_STRATEGIES:
        raise ValueError(f"select_strategy must be one of {SELECT_STRATEGIES}, got {select_strategy!r}")
    if select_strategy in ("control", "final control") and spec.control is None:
        raise ValueError(f"select_strategy={select_strategy!r} requires a trial with a common control arm")
    if select_strategy in ("list", "list or best"):
        if not select_preferences:
            raise ValueError("select_preferences must list at least one arm for the 'list' strategies")
        unknown = [a for a in select_preferences if a not in spec.arms]
        if unknown:
            raise ValueError(f"select_preferences contains unknown arms: {unknown!r}")
    elif select_preferences:
        raise ValueError("select_preferences is only used with the 'list' strategies")


# ---------------------------------------------------------------------
# Per-replicate extraction
# ---------------------------------------------------------------------
def extract_results(
    batch: BatchResult,
    select_strategy: str = "control if available",
    select_last_arm: bool = False,
    select_preferences: Optional[Sequence[str]] = None,
    te_comp: Optional[str] = None,
    raw_ests: bool = False,
    final_ests: Optional[bool] = None,
) -> pd.DataFrame:
    """One row per replicate with the selected arm and its estimation errors."""
    if not isinstance(batch, BatchResult):
        raise ValueError("batch must be a BatchResult from run_trials()")
    spec = batch.spec
    _check_selection_args(batch, select_strategy, select_preferences)
    if te_comp is None:
        te_comp = spec.control
    elif te_comp not in spec.arms:
        raise ValueError(f"te_comp {te_comp!r} is not one of arms {list(spec.arms)!r}")
    if final_ests is None:
        final_ests = any(r > d for r, d in zip(spec.randomised_at_looks, spec.data_looks))
    if raw_ests:
        est_field = "raw_est_all" if final_ests else "raw_est"
    else:
        est_field = "post_est_all" if final_ests else "post_est"
    true_ys = dict(zip(spec.arms, spec.true_ys))

    rows = []
    for res in batch.results:
        selected = select_arm(res, select_strategy, select_last_arm, select_preferences)
        err = err_te = float("nan")
        if selected is not None:
            est_sel = getattr(res.arm(selected), est_field)
            err = est_sel - true_ys[selected]
            if te_comp is not None and selected != te_comp:
                est_comp = getattr(res.arm(te_comp), est_field)
                err_te = (est_sel - est_comp) - (true_ys[selected] - true_ys[te_comp])
        sum_ys = res.sum_ys
        rows.append(
            {
                "sim": res.sim,
                "final_n": res.final_n,
                "sum_ys": sum_ys,
                "ratio_ys": sum_ys / res.final_n if res.final_n else float("nan"),
                "final_status": res.final_status.value,
                "superior_arm": res.superior_arm,
                "selected_arm": selected,
                "err": err,
                "sq_err": err ** 2,
                "err_te": err_te,
                "sq_err_te": err_te ** 2,
            }
        )
    return pd.DataFrame(rows, columns=list(rows[0].keys()))


# ---------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------
def calculate_idp(selected: Sequence[Optional[str]], arms: Sequence[str], true_ys: Sequence[float], highest_is_best: bool) -> float:
    """
    Ideal design percentage (0-100) of the selections.

    NaN when no arm was selected or all true outcomes are equal.
    """
    counts = np.array([sum(1 for s in selected if s == a) for a in arms], dtype=float)
    ys = np.asarray(true_ys, dtype=float)
    if counts.sum() == 0 or ys.max() == ys.min():
        return float("nan")
    expected = float(np.sum(counts / counts.sum() * ys))
    idp = 100.0 * (expected - ys.min()) / (ys.max() - ys.min())
    return idp if highest_is_best else 100.0 - idp


def metric_names(arms: Sequence[str]) -> List[str]:
    names = ["n_summarised"]
    for base in ("size", "sum_ys", "ratio_ys"):
        names += [f"{base}_{s}" for s in _SUMMARY_SUFFIXES]
    names += ["prob_conclusive", "prob_superior", "prob_equivalence", "prob_futility", "prob_max"]
    names += [f"prob_select_arm_{a}" for a in arms] + ["prob_select_none"]
    names += ["rmse", "rmse_te", "mae", "mae_te", "idp"]
    return names


def _summarise_num(x: np.ndarray) -> List[float]:
    x = np.asarray(x, dtype=float)
    if x.size == 0:
        return [float("nan")] * len(_SUMMARY_SUFFIXES)
    sd = float(np.std(x, ddof=1)) if x.size > 1 else float("nan")
    p25, p75 = np.quantile(x, [0.25, 0.75])
    return [float(x.mean()), sd, float(np.median(x)), float(p25), float(p75), float(x.min()), float(x.max())]


def _nanmean(x: np.ndarray) -> float:
    x = x[~np.isnan(x)]
    return float(x.mean()) if x.size else float("nan")


def _nanmedian(x: np.ndarray) -> float:
    x = x[~np.isnan(x)]
    return float(np.median(x)) if x.size else float("nan")


def _metrics(
    df: pd.DataFrame,
    restrict: Optional[str],
    arms: Sequence[str],
    true_ys: Sequence[float],
    highest_is_best: bool,
) -> np.ndarray:
    if restrict is None:
        keep = np.ones(len(df), dtype=bool)
    elif restrict == "superior":
        keep = df["superior_arm"].notna().to_numpy()
    else:
        keep = df["selected_arm"].notna().to_numpy()
    sub = df[keep]
    n = int(keep.sum())

    status = sub["final_status"].to_numpy()
    selected = sub["selected_arm"].tolist()
    prob = (lambda mask: float(np.mean(mask))) if n else (lambda mask: float("nan"))

    out: List[float] = [float(n)]
    out += _summarise_num(sub["final_n"].to_numpy())
    out += _summarise_num(sub["sum_ys"].to_numpy())
    out += _summarise_num(sub["ratio_ys"].to_numpy())
    out += [
        prob(np.array([TrialStatus(s).conclusive for s in status], dtype=bool)),
        prob(status == TrialStatus.SUPERIORITY.value),
        prob(status == TrialStatus.EQUIVALENCE.value),
        prob(status == TrialStatus.FUTILITY.value),
        prob(status == TrialStatus.MAX.value),
    ]
    out += [sum(1 for s in selected if s == a) / n if n else float("nan") for a in arms]
    out.append(prob(np.array([pd.isna(s) for s in selected], dtype=bool)))

    sq_err = sub["sq_err"].to_numpy(dtype=float)
    sq_err_te = sub["sq_err_te"].to_numpy(dtype=float)
    out += [
        float(np.sqrt(_nanmean(sq_err))),
        float(np.sqrt(_nanmean(sq_err_te))),
        _nanmedian(np.abs(sub["err"].to_numpy(dtype=float))),
        _nanmedian(np.abs(sub["err_te"].to_numpy(dtype=float))),
        calculate_idp(selected, arms, true_ys, highest_is_best),
    ]
    return np.asarray(out, dtype=float)


def _bootstrap_chunk(
    df: pd.DataFrame,
    restrict: Optional[str],
    arms: Sequence[str],
    true_ys: Sequence[float],
    highest_is_best: bool,
    boot_seed: int,
    indices: Sequence[int],
) -> np.ndarray:
    """Top-level worker: metric vectors for bootstrap resamples `indices` (one column each)."""
    n = len(df)
    cols = []
    for b in indices:
        rng = bootstrap_rng(boot_seed, b)
        sample = df.iloc[rng.integers(0, n, size=n)].reset_index(drop=True)
        cols.append(_metrics(sample, restrict, arms, true_ys, highest_is_best))
    return np.column_stack(cols)


def _row_uncertainty(row: np.ndarray, ci_width: float) -> Dict[str, float]:
    x = row[~np.isnan(row)]
    if x.size == 0:
        return {"err_sd": float("nan"), "err_mad": float("nan"), "lo_ci": float("nan"), "hi_ci": float("nan")}
    lo, hi = np.quantile(x, [(1.0 - ci_width) / 2.0, 1.0 - (1.0 - ci_width) / 2.0])
    return {
        "err_sd": float(np.std(x, ddof=1)) if x.size > 1 else float("nan"),
        "err_mad": float(stats.median_abs_deviation(x, scale="normal")),
        "lo_ci": float(lo),
        "hi_ci": float(hi),
    }


def check_performance(
    batch: BatchResult,
    select_strategy: str = "control if available",
    select_last_arm: bool = False,
    select_preferences: Optional[Sequence[str]] = None,
    te_comp: Optional[str] = None,
    raw_ests: bool = False,
    final_ests: Optional[bool] = None,
    restrict: Optional[str] = None,
    uncertainty: bool = False,
    n_boot: int = 5000,
    ci_width: float = 0.95,
    boot_seed: Union[None, int, str] = None,
    pool: Optional[WorkerPool] = None,
    cores: Optional[int] = None,
) -> pd.DataFrame:
    """
    Performance metrics of a batch of simulations.

    Returns a DataFrame with columns `metric` and `est`, plus `err_sd`, `err_mad`,
    `lo_ci` and `hi_ci` when `uncertainty=True`. Bootstrap uncertainty is not
    estimated for minimum/maximum (p0/p100) metrics.
    """
    if restrict not in (None, "superior", "selected"):
        raise ValueError(f"restrict must be None, 'superior' or 'selected', got {restrict!r}")
    if not isinstance(uncertainty, bool):
        raise ValueError(f"uncertainty must be True or False, got {uncertainty!r}")
    if uncertainty:
        if isinstance(n_boot, bool) or not isinstance(n_boot, int) or n_boot < 100:
            raise ValueError(f"n_boot must be an int >= 100, got {n_boot!r}")
        if n_boot < 1000:
            warnings.warn("n_boot < 1000 is not recommended; bootstrap results may be unstable.", stacklevel=2)
        if isinstance(ci_width, bool) or not isinstance(ci_width, (int, float)) or not (0.0 <= ci_width < 1.0):
            raise ValueError(f"ci_width must be a single number >= 0 and < 1, got {ci_width!r}")
        if isinstance(boot_seed, str):
            if boot_seed != "base":
                raise ValueError(f"boot_seed must be None, 'base' or an int, got {boot_seed!r}")
            boot_seed = batch.base_seed
        boot_seed = resolve_entropy(boot_seed)

    df = extract_results(
        batch,
        select_strategy=select_strategy,
        select_last_arm=select_last_arm,
        select_preferences=select_preferences,
        te_comp=te_comp,
        raw_ests=raw_ests,
        final_ests=final_ests,
    )
    spec = batch.spec
    names = metric_names(spec.arms)
    est = _metrics(df, restrict, spec.arms, spec.true_ys, spec.highest_is_best)
    out = pd.DataFrame({"metric": names, "est": est})
    if not uncertainty:
        return out

    LOG.info("bootstrapping performance metrics (n_boot=%d, boot_seed=%d)", n_boot, boot_seed)
    t0 = time.perf_counter()
    args = (df, restrict, spec.arms, spec.true_ys, spec.highest_is_best, boot_seed)
    if pool is None and cores is not None and cores > 1:
        with WorkerPool(cores) as scoped:
            boot = _run_bootstrap(scoped, n_boot, args)
    else:
        boot = _run_bootstrap(pool, n_boot, args)
    LOG.info("bootstrap finished in %.2fs", time.perf_counter() - t0)

    unc = pd.DataFrame([_row_uncertainty(boot[k], ci_width) for k in range(len(names))])
    out = pd.concat([out, unc], axis=1)
    out.loc[out["metric"].isin(NO_BOOT_METRICS), ["err_sd", "err_mad", "lo_ci", "hi_ci"]] = np.nan
    return out


def _run_bootstrap(pool: Optional[WorkerPool], n_boot: int, args: tuple) -> np.ndarray:
    if pool is None or pool.cores == 1:
        return _bootstrap_chunk(*args, range(n_boot))
    size = pool.chunk_size(n_boot)
    chunks = [range(s, min(s + size, n_boot)) for s in range(0, n_boot, size)]
    return np.hstack(pool.map_chunks(_bootstrap_chunk, chunks, *args))


__all__ = [
    "SELECT_STRATEGIES",
    "select_arm",
    "extract_results",
    "calculate_idp",
    "metric_names",
    "check_performance",
]
