# src/adaptive_trials/config.py
"""
YAML configuration -> TrialSpecification + run/performance options.

Schema (all sections optional except `trial`, `outcome` and `looks`):

    trial:       arms, true_ys, control, highest_is_best, description, add_info
    outcome:     type (binomial|normal), sds
    looks:       data_looks | (max_n, look_after_every), randomised_at_looks
    thresholds:  superiority, inferiority, equivalence_prob, equivalence_diff,
                 equivalence_only_first, futility_prob, futility_diff, futility_only_first
    allocation:  control_prob_fixed, start_probs, fixed_probs, min_probs, max_probs,
                 rescale_probs, soften_power
    posterior:   n_draws, robust, cri_width
    run:         n_rep, base_seed, cores, sparse
    performance: select_strategy, select_last_arm, select_preferences, te_comp, raw_ests,
                 final_ests, restrict, uncertainty, n_boot, ci_width, boot_seed

Per-arm lists may use `null` for "not applicable". Errors name the dotted key.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import yaml

from .core.spec import TrialSpecification, setup_trial_binom, setup_trial_norm
from .errors import ConfigurationError

_SECTIONS: Dict[str, tuple] = {
    "trial": ("arms", "true_ys", "control", "highest_is_best", "description", "add_info"),
    "outcome": ("type", "sds"),
    "looks": ("data_looks", "max_n", "look_after_every", "randomised_at_looks"),
    "thresholds": (
        "superiority",
        "inferiority",
        "equivalence_prob",
        "equivalence_diff",
        "equivalence_only_first",
        "futility_prob",
        "futility_diff",
        "futility_only_first",
    ),
    "allocation": (
        "control_prob_fixed",
        "start_probs",
        "fixed_probs",
        "min_probs",
        "max_probs",
        "rescale_probs",
        "soften_power",
    ),
    "posterior": ("n_draws", "robust", "cri_width"),
    "run": ("n_rep", "base_seed", "cores", "sparse"),
    "performance": (
        "select_strategy",
        "select_last_arm",
        "select_preferences",
        "te_comp",
        "raw_ests",
        "final_ests",
        "restrict",
        "uncertainty",
        "n_boot",
        "ci_width",
        "boot_seed",
    ),
}


@dataclass(frozen=True)
class RunOptions:
    n_rep: int = 1000
    base_seed: Optional[int] = None
    cores: Optional[int] = None
    sparse: bool = True


@dataclass(frozen=True)
class PerformanceOptions:
    select_strategy: str = "control if available"
    select_last_arm: bool = False
    select_preferences: Optional[List[str]] = None
    te_comp: Optional[str] = None
    raw_ests: bool = False
    final_ests: Optional[bool] = None
    restrict: Optional[str] = None
    uncertainty: bool = False
    n_boot: int = 5000
    ci_width: float = 0.95
    boot_seed: Union[None, int, str] = None

    def as_kwargs(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class TrialConfig:
    spec: TrialSpecification
    run: RunOptions = field(default_factory=RunOptions)
    performance: PerformanceOptions = field(default_factory=PerformanceOptions)


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise OSError(f"Could not read YAML config at path={path!r}: {e}") from e

    try:
        obj = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            loc = f"line={getattr(mark, 'line', '?')}, column={getattr(mark, 'column', '?')}"
            raise ConfigurationError(f"YAML parse error in {path!r} ({loc}): {e}") from e
        raise ConfigurationError(f"YAML parse error in {path!r}: {e}") from e

    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigurationError(f"YAML config must parse to a mapping, got {type(obj).__name__}")
    return dict(obj)


# ---------------------------------------------------------------------
# Typed coercion helpers
# ---------------------------------------------------------------------
def _f(x: Any, name: str) -> float:
    if isinstance(x, bool):
        raise ConfigurationError(f"{name} must be a number, got {x!r}")
    try:
        v = float(x)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be a number, got {x!r}") from e
    if not math.isfinite(v):
        raise ConfigurationError(f"{name} must be finite, got {v!r}")
    return v


def _i(x: Any, name: str) -> int:
    v = _f(x, name)
    if not v.is_integer():
        raise ConfigurationError(f"{name} must be a whole number, got {x!r}")
    return int(v)


def _b(x: Any, name: str) -> bool:
    if isinstance(x, bool):
        return x
    if isinstance(x, str):
        s = x.strip().lower()
        if s in ("true", "yes", "y", "1"):
            return True
        if s in ("false", "no", "n", "0"):
            return False
    raise ConfigurationError(f"{name} must be a bool, got {x!r}")


def _opt(x: Any, conv, name: str) -> Any:
    return None if x is None else conv(x, name)


def _num_or_list(x: Any, name: str) -> Any:
    if x is None:
        return None
    if isinstance(x, list):
        return [_f(v, f"{name}[{k}]") for k, v in enumerate(x)]
    return _f(x, name)


def _per_arm(x: Any, name: str) -> Optional[List[float]]:
    if x is None:
        return None
    if not isinstance(x, list):
        raise ConfigurationError(f"{name} must be a list with one entry per arm, got {x!r}")
    return [float("nan") if v is None else _f(v, f"{name}[{k}]") for k, v in enumerate(x)]


def _int_list(x: Any, name: str) -> Optional[List[int]]:
    if x is None:
        return None
    if not isinstance(x, list):
        raise ConfigurationError(f"{name} must be a list of whole numbers, got {x!r}")
    return [_i(v, f"{name}[{k}]") for k, v in enumerate(x)]


def _section(d: Dict[str, Any], name: str, *, required: bool = False) -> Dict[str, Any]:
    sec = d.get(name)
    if sec is None:
        if required:
            raise ConfigurationError(f"missing required section '{name}'")
        return {}
    if not isinstance(sec, dict):
        raise ConfigurationError(f"Expected mapping for '{name}', got {type(sec).__name__}")
    unknown = sorted(set(sec) - set(_SECTIONS[name]))
    if unknown:
        raise ConfigurationError(f"unknown key(s) in '{name}': " + ", ".join(f"{name}.{k}" for k in unknown))
    return sec


# ---------------------------------------------------------------------
# Mapping -> objects
# ---------------------------------------------------------------------
def spec_from_dict(d: Dict[str, Any]) -> TrialSpecification:
    unknown = sorted(set(d) - set(_SECTIONS))
    if unknown:
        raise ConfigurationError(f"unknown top-level section(s): {', '.join(unknown)}")
    trial = _section(d, "trial", required=True)
    outcome = _section(d, "outcome", required=True)
    looks = _section(d, "looks", required=True)
    thr = _section(d, "thresholds")
    alloc = _section(d, "allocation")
    post = _section(d, "posterior")

    arms = trial.get("arms")
    if not isinstance(arms, list) or not arms:
        raise ConfigurationError(f"trial.arms must be a non-empty list, got {arms!r}")
    true_ys = trial.get("true_ys")
    if not isinstance(true_ys, list):
        raise ConfigurationError(f"trial.true_ys must be a list, got {true_ys!r}")

    kwargs: Dict[str, Any] = {
        "control": None if trial.get("control") is None else str(trial["control"]),
        "highest_is_best": _b(trial.get("highest_is_best", False), "trial.highest_is_best"),
        "description": trial.get("description"),
        "add_info": trial.get("add_info"),
        "data_looks": _int_list(looks.get("data_looks"), "looks.data_looks"),
        "max_n": _opt(looks.get("max_n"), _i, "looks.max_n"),
        "look_after_every": _opt(looks.get("look_after_every"), _i, "looks.look_after_every"),
        "randomised_at_looks": _int_list(looks.get("randomised_at_looks"), "looks.randomised_at_looks"),
        "superiority": _num_or_list(thr.get("superiority", 0.99), "thresholds.superiority"),
        "inferiority": _num_or_list(thr.get("inferiority", 0.01), "thresholds.inferiority"),
        "equivalence_prob": _num_or_list(thr.get("equivalence_prob"), "thresholds.equivalence_prob"),
        "equivalence_diff": _opt(thr.get("equivalence_diff"), _f, "thresholds.equivalence_diff"),
        "equivalence_only_first": _opt(thr.get("equivalence_only_first"), _b, "thresholds.equivalence_only_first"),
        "futility_prob": _num_or_list(thr.get("futility_prob"), "thresholds.futility_prob"),
        "futility_diff": _opt(thr.get("futility_diff"), _f, "thresholds.futility_diff"),
        "futility_only_first": _opt(thr.get("futility_only_first"), _b, "thresholds.futility_only_first"),
        "start_probs": _per_arm(alloc.get("start_probs"), "allocation.start_probs"),
        "fixed_probs": _per_arm(alloc.get("fixed_probs"), "allocation.fixed_probs"),
        "min_probs": _per_arm(alloc.get("min_probs"), "allocation.min_probs"),
        "max_probs": _per_arm(alloc.get("max_probs"), "allocation.max_probs"),
        "rescale_probs": alloc.get("rescale_probs"),
        "soften_power": _num_or_list(alloc.get("soften_power", 1.0), "allocation.soften_power"),
        "n_draws": _i(post.get("n_draws", 5000), "posterior.n_draws"),
        "robust": _b(post.get("robust", True), "posterior.robust"),
        "cri_width": _f(post.get("cri_width", 0.95), "posterior.cri_width"),
    }
    cpf = alloc.get("control_prob_fixed")
    kwargs["control_prob_fixed"] = cpf if (cpf is None or isinstance(cpf, str)) else _num_or_list(cpf, "allocation.control_prob_fixed")

    kind = str(outcome.get("type", "")).strip().lower()
    if kind == "binomial":
        if outcome.get("sds") is not None:
            raise ConfigurationError("outcome.sds is only used with outcome.type 'normal'")
        return setup_trial_binom(arms, [_f(y, f"trial.true_ys[{k}]") for k, y in enumerate(true_ys)], **kwargs)
    if kind == "normal":
        return setup_trial_norm(
            arms,
            [_f(y, f"trial.true_ys[{k}]") for k, y in enumerate(true_ys)],
            _num_or_list(outcome.get("sds"), "outcome.sds"),
            **kwargs,
        )
    raise ConfigurationError(f"outcome.type must be 'binomial' or 'normal', got {outcome.get('type')!r}")


def run_options_from_dict(d: Dict[str, Any]) -> RunOptions:
    run = _section(d, "run")
    return RunOptions(
        n_rep=_i(run.get("n_rep", 1000), "run.n_rep"),
        base_seed=_opt(run.get("base_seed"), _i, "run.base_seed"),
        cores=_opt(run.get("cores"), _i, "run.cores"),
        sparse=_b(run.get("sparse", True), "run.sparse"),
    )


def performance_options_from_dict(d: Dict[str, Any]) -> PerformanceOptions:
    perf = _section(d, "performance")
    prefs = perf.get("select_preferences")
    if prefs is not None and not isinstance(prefs, list):
        raise ConfigurationError(f"performance.select_preferences must be a list, got {prefs!r}")
    boot_seed = perf.get("boot_seed")
    if boot_seed is not None and boot_seed != "base":
        boot_seed = _i(boot_seed, "performance.boot_seed")
    return PerformanceOptions(
        select_strategy=str(perf.get("select_strategy", "control if available")),
        select_last_arm=_b(perf.get("select_last_arm", False), "performance.select_last_arm"),
        select_preferences=None if prefs is None else [str(a) for a in prefs],
        te_comp=None if perf.get("te_comp") is None else str(perf["te_comp"]),
        raw_ests=_b(perf.get("raw_ests", False), "performance.raw_ests"),
        final_ests=_opt(perf.get("final_ests"), _b, "performance.final_ests"),
        restrict=perf.get("restrict"),
        uncertainty=_b(perf.get("uncertainty", False), "performance.uncertainty"),
        n_boot=_i(perf.get("n_boot", 5000), "performance.n_boot"),
        ci_width=_f(perf.get("ci_width", 0.95), "performance.ci_width"),
        boot_seed=boot_seed,
    )


def config_from_dict(d: Dict[str, Any]) -> TrialConfig:
    return TrialConfig(
        spec=spec_from_dict(d),
        run=run_options_from_dict(d),
        performance=performance_options_from_dict(d),
    )


__all__ = [
    "RunOptions",
    "PerformanceOptions",
    "TrialConfig",
    "load_yaml",
    "spec_from_dict",
    "run_options_from_dict",
    "performance_options_from_dict",
    "config_from_dict",
]
