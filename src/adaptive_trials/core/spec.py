# src/adaptive_trials/core/spec.py
"""
Module: core.spec
Purpose: Immutable, validated trial specification consumed by every other component.

Construction normalises all scalar-or-per-look inputs into per-look tuples and
validates every invariant eagerly; a specification that exists is a valid one.
Violations raise ConfigurationError (never during simulation).

Entry points
------------
- setup_trial(...)         generic constructor with pluggable outcome/draw functions
- setup_trial_binom(...)   binary outcomes (Bernoulli outcomes, beta posteriors)
- setup_trial_norm(...)    continuous outcomes (normal outcomes, normal posteriors)

`spec.with_changes(**changes)` rebuilds from the arguments the specification was
created with, so scalar thresholds and a defaulted `randomised_at_looks` follow a
changed look schedule. Outer calibration loops should use it to derive modified
specifications.
"""
from __future__ import annotations

import math
import warnings
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

import numpy as np

from ..errors import ConfigurationError, GeneratorContractError
from ..io.seeds import STREAM_PROBE, stream_rng
from .outcomes import (
    BinomialDraws,
    BinomialOutcomes,
    NormalDraws,
    NormalOutcomes,
    check_draws,
    check_outcomes,
    check_raw_estimate,
)

Number = Union[int, float]
PerLook = Union[Number, Sequence[Number]]

PROB_SUM_TOL = 1e-9


class ControlPolicy(str, Enum):
    """How the control arm allocation probability is determined."""
    NONE = "none"
    FIXED = "fixed"
    SQRT_BASED = "sqrt-based"
    SQRT_BASED_FIXED = "sqrt-based-fixed"
    SQRT_BASED_START = "sqrt-based-start"
    MATCH = "match"

    @property
    def pins_control(self) -> bool:
        """True when the control probability is set by the policy at every look."""
        return self in (ControlPolicy.FIXED, ControlPolicy.SQRT_BASED, ControlPolicy.SQRT_BASED_FIXED)


class RescalePolicy(str, Enum):
    """Which constraints are scaled up proportionally when arms are dropped."""
    NONE = "none"
    FIXED = "fixed"
    LIMITS = "limits"
    BOTH = "both"

    @property
    def rescales_fixed(self) -> bool:
        return self in (RescalePolicy.FIXED, RescalePolicy.BOTH)

    @property
    def rescales_limits(self) -> bool:
        return self in (RescalePolicy.LIMITS, RescalePolicy.BOTH)


@dataclass(frozen=True)
class AllocationConstraints:
    """Per-arm fixed / minimum / maximum allocation probabilities (nan = not applicable)."""

    fixed_probs: Tuple[float, ...]
    min_probs: Tuple[float, ...]
    max_probs: Tuple[float, ...]

    def fixed(self) -> np.ndarray:
        return np.asarray(self.fixed_probs, dtype=float)

    def mins(self) -> np.ndarray:
        return np.asarray(self.min_probs, dtype=float)

    def maxs(self) -> np.ndarray:
        return np.asarray(self.max_probs, dtype=float)


# ---------------------------------------------------------------------
# Normalisation helpers
# ---------------------------------------------------------------------
def _finite(x: Any) -> bool:
    return isinstance(x, (int, float, np.integer, np.floating)) and not isinstance(x, bool) and math.isfinite(float(x))


def _as_float_tuple(values: Any, name: str, *, allow_nan: bool = False) -> Tuple[float, ...]:
    if isinstance(values, (str, bytes)) or not isinstance(values, (Sequence, np.ndarray)):
        values = [values]
    out = []
    for i, v in enumerate(values):
        if v is None and allow_nan:
            out.append(float("nan"))
            continue
        if isinstance(v, bool) or not isinstance(v, (int, float, np.integer, np.floating)):
            raise ConfigurationError(f"{name}[{i}] must be a number, got {v!r}")
        fv = float(v)
        if math.isnan(fv) and allow_nan:
            out.append(fv)
            continue
        if not math.isfinite(fv):
            raise ConfigurationError(f"{name}[{i}] must be finite, got {v!r}")
        out.append(fv)
    return tuple(out)


def _as_int_tuple(values: Any, name: str) -> Tuple[int, ...]:
    if values is None:
        raise ConfigurationError(f"{name} must be provided")
    floats = _as_float_tuple(values, name)
    out = []
    for i, v in enumerate(floats):
        if not float(v).is_integer():
            raise ConfigurationError(f"{name}[{i}] must be a whole number, got {v!r}")
        out.append(int(v))
    return tuple(out)


def _per_look(value: Any, n_looks: int, name: str) -> Optional[Tuple[float, ...]]:
    """Expand a scalar to one value per look; accept an explicit per-look sequence."""
    if value is None:
        return None
    vals = _as_float_tuple(value, name)
    if len(vals) == 1:
        return vals * n_looks
    if len(vals) != n_looks:
        raise ConfigurationError(
            f"{name} must be a single value or one value per look ({n_looks}), got {len(vals)} values"
        )
    return vals


def _per_arm(values: Any, n_arms: int, name: str) -> Tuple[float, ...]:
    if values is None:
        return (float("nan"),) * n_arms
    vals = _as_float_tuple(values, name, allow_nan=True)
    if len(vals) != n_arms:
        raise ConfigurationError(f"{name} must have one value per arm ({n_arms}), got {len(vals)}")
    return vals


def _normalize_policy(value: Any) -> Tuple[ControlPolicy, Optional[Tuple[float, ...]]]:
    """Map user input to (policy, pinned values); numbers mean a fixed control probability."""
    if value is None:
        return ControlPolicy.NONE, None
    if isinstance(value, ControlPolicy):
        return value, None
    if isinstance(value, str):
        key = value.strip().lower().replace(" ", "-").replace("_", "-")
        try:
            return ControlPolicy(key), None
        except ValueError as e:
            valid = ", ".join(p.value for p in ControlPolicy)
            raise ConfigurationError(f"control_prob_fixed must be one of {{{valid}}} or numeric, got {value!r}") from e
    return ControlPolicy.FIXED, _as_float_tuple(value, "control_prob_fixed")


def _normalize_rescale(value: Any) -> RescalePolicy:
    if value is None:
        return RescalePolicy.NONE
    if isinstance(value, RescalePolicy):
        return value
    if not isinstance(value, str):
        raise ConfigurationError(f"rescale_probs must be a single string or None, got {value!r}")
    try:
        return RescalePolicy(value.strip().lower())
    except ValueError as e:
        raise ConfigurationError(f"rescale_probs must be one of none/fixed/limits/both, got {value!r}") from e


# ---------------------------------------------------------------------
# Canonical specification
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TrialSpecification:
    arms: Tuple[str, ...]
    true_ys: Tuple[float, ...]
    fun_y_gen: Callable[..., Any]
    fun_draws: Callable[..., Any]
    data_looks: Tuple[int, ...]
    randomised_at_looks: Optional[Tuple[int, ...]] = None

    control: Optional[str] = None
    control_prob_fixed: Any = ControlPolicy.NONE
    control_prob_values: Optional[Tuple[float, ...]] = None
    start_probs: Optional[Tuple[float, ...]] = None
    fixed_probs: Optional[Tuple[float, ...]] = None
    min_probs: Optional[Tuple[float, ...]] = None
    max_probs: Optional[Tuple[float, ...]] = None
    rescale_probs: Any = RescalePolicy.NONE

    superiority: PerLook = 0.99
    inferiority: PerLook = 0.01
    equivalence_prob: Optional[PerLook] = None
    equivalence_diff: Optional[float] = None
    equivalence_only_first: Optional[bool] = None
    futility_prob: Optional[PerLook] = None
    futility_diff: Optional[float] = None
    futility_only_first: Optional[bool] = None

    highest_is_best: bool = False
    soften_power: PerLook = 1.0
    fun_raw_est: Callable[..., Any] = np.mean
    cri_width: float = 0.95
    n_draws: int = 5000
    robust: bool = True
    description: Optional[str] = None
    add_info: Optional[str] = None

    # derived at construction
    initial_probs: Tuple[float, ...] = field(default=(), init=False, repr=False, compare=False)
    _inputs: Dict[str, Any] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        _set = object.__setattr__
        _set(self, "_inputs", {f.name: getattr(self, f.name) for f in fields(self) if f.init})

        if self.arms is None or isinstance(self.arms, (str, bytes)) or len(self.arms) < 2:
            raise ConfigurationError(f"arms must be a sequence of at least two arms, got {self.arms!r}")
        arms = tuple(str(a) for a in self.arms)
        _set(self, "arms", arms)
        if self.control is not None:
            _set(self, "control", str(self.control))

        _set(self, "true_ys", _as_float_tuple(self.true_ys, "true_ys") if self.true_ys is not None else ())
        data_looks = _as_int_tuple(self.data_looks, "data_looks")
        _set(self, "data_looks", data_looks)
        rand = data_looks if self.randomised_at_looks is None else _as_int_tuple(self.randomised_at_looks, "randomised_at_looks")
        _set(self, "randomised_at_looks", rand)
        n_looks = len(data_looks)

        policy, pinned = _normalize_policy(self.control_prob_fixed)
        _set(self, "control_prob_fixed", policy)
        if pinned is not None:
            _set(self, "control_prob_values", pinned)
        elif self.control_prob_values is not None:
            _set(self, "control_prob_values", _as_float_tuple(self.control_prob_values, "control_prob_values"))
        _set(self, "rescale_probs", _normalize_rescale(self.rescale_probs))

        n_arms = len(arms)
        _set(self, "fixed_probs", _per_arm(self.fixed_probs, n_arms, "fixed_probs"))
        _set(self, "min_probs", _per_arm(self.min_probs, n_arms, "min_probs"))
        _set(self, "max_probs", _per_arm(self.max_probs, n_arms, "max_probs"))
        if self.start_probs is not None:
            _set(self, "start_probs", _as_float_tuple(self.start_probs, "start_probs", allow_nan=True))

        _set(self, "superiority", _per_look(self.superiority, n_looks, "superiority"))
        _set(self, "inferiority", _per_look(self.inferiority, n_looks, "inferiority"))
        _set(self, "equivalence_prob", _per_look(self.equivalence_prob, n_looks, "equivalence_prob"))
        _set(self, "futility_prob", _per_look(self.futility_prob, n_looks, "futility_prob"))
        _set(self, "soften_power", _per_look(self.soften_power, n_looks, "soften_power"))

        validate_spec(self)

        from .randomization import start_probs_for  # local import: randomization depends on this module

        initial = start_probs_for(self) if self.start_probs is None else self.start_probs
        _set(self, "initial_probs", tuple(float(p) for p in initial))
        _probe_functions(self)

    # --- convenience views -------------------------------------------------
    @property
    def n_arms(self) -> int:
        return len(self.arms)

    @property
    def n_looks(self) -> int:
        return len(self.data_looks)

    @property
    def max_n(self) -> int:
        return int(self.randomised_at_looks[-1])

    @property
    def constraints(self) -> AllocationConstraints:
        return AllocationConstraints(self.fixed_probs, self.min_probs, self.max_probs)

    @property
    def best_arms(self) -> Tuple[str, ...]:
        ys = np.asarray(self.true_ys, dtype=float)
        target = ys.max() if self.highest_is_best else ys.min()
        return tuple(a for a, y in zip(self.arms, ys) if y == target)

    def with_changes(self, **changes: Any) -> "TrialSpecification":
        """New validated specification from the original arguments updated with `changes`."""
        unknown = sorted(set(changes) - set(self._inputs))
        if unknown:
            raise ConfigurationError(f"unknown specification field(s): {unknown}")
        return TrialSpecification(**{**self._inputs, **changes})

    def arm_index(self, arm: str) -> int:
        return self.arms.index(arm)

    def control_pinned_prob(self, n_active: int) -> Optional[float]:
        """Pinned control probability for `n_active` active arms under the `fixed` policy."""
        if self.control_prob_fixed is not ControlPolicy.FIXED or not self.control_prob_values:
            return None
        vals = self.control_prob_values
        if len(vals) == 1:
            return float(vals[0])
        return float(vals[self.n_arms - int(n_active)])


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------
def _check_thresholds(values: Tuple[float, ...], name: str, *, increasing: bool) -> None:
    for i, v in enumerate(values):
        if not (0.0 <= v <= 1.0):
            raise ConfigurationError(f"{name}[{i}] must be in [0,1], got {v!r}")
    for i in range(1, len(values)):
        prev, cur = values[i - 1], values[i]
        if (increasing and cur < prev) or (not increasing and cur > prev):
            direction = "non-decreasing" if increasing else "non-increasing"
            raise ConfigurationError(
                f"{name} must be {direction} across looks (later looks may not be stricter); "
                f"{name}[{i - 1}]={prev} vs {name}[{i}]={cur}"
            )


def _check_diff(value: Any, name: str) -> None:
    if not _finite(value) or float(value) <= 0.0:
        raise ConfigurationError(f"{name} must be a single finite number > 0, got {value!r}")


def validate_spec(spec: TrialSpecification) -> None:
    arms = spec.arms
    n_arms = len(arms)

    # --- arms / outcomes ---
    if len(set(arms)) != n_arms:
        raise ConfigurationError(f"arms must be unique, got {list(arms)!r}")
    if len(spec.true_ys) != n_arms:
        raise ConfigurationError(f"true_ys must have one value per arm ({n_arms}), got {len(spec.true_ys)}")
    if spec.control is not None and spec.control not in arms:
        raise ConfigurationError(f"control {spec.control!r} is not one of arms {list(arms)!r}")
    if not isinstance(spec.highest_is_best, bool):
        raise ConfigurationError(f"highest_is_best must be a bool, got {spec.highest_is_best!r}")

    # --- looks ---
    looks, rand = spec.data_looks, spec.randomised_at_looks
    if len(looks) == 0:
        raise ConfigurationError("data_looks must contain at least one look")
    if looks[0] <= 0:
        raise ConfigurationError(f"data_looks must be positive, got {looks[0]}")
    for i in range(1, len(looks)):
        if looks[i] <= looks[i - 1]:
            raise ConfigurationError(f"data_looks must be strictly increasing; data_looks[{i - 1}]={looks[i - 1]} >= data_looks[{i}]={looks[i]}")
    if len(rand) != len(looks):
        raise ConfigurationError(f"randomised_at_looks must have the same length as data_looks ({len(looks)}), got {len(rand)}")
    for i, (r, d) in enumerate(zip(rand, looks)):
        if r < d:
            raise ConfigurationError(f"randomised_at_looks[{i}]={r} is smaller than data_looks[{i}]={d}")
        if i > 0 and r < rand[i - 1]:
            raise ConfigurationError(f"randomised_at_looks must be non-decreasing; [{i - 1}]={rand[i - 1]} > [{i}]={r}")

    # --- stopping thresholds ---
    for name in ("superiority", "inferiority", "soften_power"):
        if getattr(spec, name) is None:
            raise ConfigurationError(f"{name} must be specified")
    _check_thresholds(spec.superiority, "superiority", increasing=False)
    _check_thresholds(spec.inferiority, "inferiority", increasing=True)
    for i, (sup, inf) in enumerate(zip(spec.superiority, spec.inferiority)):
        if not inf < sup:
            raise ConfigurationError(f"inferiority[{i}]={inf} must be lower than superiority[{i}]={sup}")
    if spec.control is None and max(spec.inferiority) >= 1.0 / n_arms:
        raise ConfigurationError(
            f"without a common control, inferiority thresholds must be < 1/len(arms) = {1.0 / n_arms:.4g}"
        )

    if spec.equivalence_prob is not None:
        _check_thresholds(spec.equivalence_prob, "equivalence_prob", increasing=False)
        _check_diff(spec.equivalence_diff, "equivalence_diff")
        if spec.control is not None and not isinstance(spec.equivalence_only_first, bool):
            raise ConfigurationError("equivalence_only_first must be True/False when a control and equivalence_prob are specified")
    elif spec.equivalence_diff is not None:
        raise ConfigurationError("equivalence_diff is specified but equivalence_prob is not")
    if spec.equivalence_only_first is not None and (spec.control is None or spec.equivalence_prob is None):
        raise ConfigurationError("equivalence_only_first requires both a control and equivalence_prob")

    if spec.futility_prob is not None:
        if spec.control is None:
            raise ConfigurationError("futility_prob requires a common control arm")
        _check_thresholds(spec.futility_prob, "futility_prob", increasing=False)
        _check_diff(spec.futility_diff, "futility_diff")
        if not isinstance(spec.futility_only_first, bool):
            raise ConfigurationError("futility_only_first must be True/False when futility_prob is specified")
    elif spec.futility_diff is not None or spec.futility_only_first is not None:
        raise ConfigurationError("futility_diff/futility_only_first require futility_prob")

    for i, p in enumerate(spec.soften_power):
        if not (0.0 <= p <= 1.0):
            raise ConfigurationError(f"soften_power[{i}] must be in [0,1], got {p!r}")

    # --- posterior summaries ---
    if not _finite(spec.cri_width) or not (0.0 <= float(spec.cri_width) < 1.0):
        raise ConfigurationError(f"cri_width must be a single number in [0,1), got {spec.cri_width!r}")
    if isinstance(spec.n_draws, bool) or not isinstance(spec.n_draws, (int, np.integer)) or spec.n_draws < 100:
        raise ConfigurationError(f"n_draws must be an int >= 100, got {spec.n_draws!r}")
    if spec.n_draws < 1000:
        warnings.warn(f"n_draws={spec.n_draws} < 1000 is not recommended; stopping decisions may be unstable.", stacklevel=3)
    if not isinstance(spec.robust, bool):
        raise ConfigurationError(f"robust must be a bool, got {spec.robust!r}")
    for name in ("description", "add_info"):
        v = getattr(spec, name)
        if v is not None and not isinstance(v, str):
            raise ConfigurationError(f"{name} must be a single string or None, got {v!r}")

    # --- pluggable functions ---
    for name in ("fun_y_gen", "fun_draws", "fun_raw_est"):
        if not callable(getattr(spec, name)):
            raise ConfigurationError(f"{name} must be callable, got {getattr(spec, name)!r}")

    _validate_allocation(spec)


def _validate_allocation(spec: TrialSpecification) -> None:
    arms, control, policy = spec.arms, spec.control, spec.control_prob_fixed
    n_arms = len(arms)
    fixed = np.asarray(spec.fixed_probs, dtype=float)
    lo = np.asarray(spec.min_probs, dtype=float)
    hi = np.asarray(spec.max_probs, dtype=float)
    has_fixed, has_lo, has_hi = ~np.isnan(fixed), ~np.isnan(lo), ~np.isnan(hi)

    # --- per-arm values ---
    if np.any((fixed[has_fixed] <= 0.0) | (fixed[has_fixed] >= 1.0)):
        raise ConfigurationError(f"fixed_probs must be in (0,1), got {spec.fixed_probs!r}")
    if np.any((lo[has_lo] < 0.0) | (lo[has_lo] >= 1.0)):
        raise ConfigurationError(f"min_probs must be in [0,1), got {spec.min_probs!r}")
    if np.any((hi[has_hi] <= 0.0) | (hi[has_hi] > 1.0)):
        raise ConfigurationError(f"max_probs must be in (0,1], got {spec.max_probs!r}")
    if np.any(has_fixed & (has_lo | has_hi)):
        raise ConfigurationError("arms with fixed_probs cannot also have min_probs/max_probs")
    both = has_lo & has_hi
    if np.any(lo[both] > hi[both]):
        raise ConfigurationError("min_probs must not exceed max_probs for any arm")

    # --- control policy ---
    ctrl_idx = arms.index(control) if control is not None else None
    if policy is not ControlPolicy.NONE:
        if control is None:
            raise ConfigurationError(f"control_prob_fixed={policy.value!r} requires a common control arm")
        if has_fixed[ctrl_idx]:
            raise ConfigurationError(f"control_prob_fixed={policy.value!r} cannot be combined with fixed_probs for the control arm")
    if (policy.pins_control or policy is ControlPolicy.SQRT_BASED_START) and (has_lo[ctrl_idx] or has_hi[ctrl_idx]):
        raise ConfigurationError(f"control_prob_fixed={policy.value!r} cannot be combined with min/max_probs for the control arm")
    if policy in (ControlPolicy.SQRT_BASED_FIXED, ControlPolicy.SQRT_BASED_START, ControlPolicy.MATCH) and np.any(has_fixed):
        raise ConfigurationError(f"control_prob_fixed={policy.value!r} cannot be combined with fixed_probs")
    if policy is ControlPolicy.SQRT_BASED_FIXED and (np.any(has_lo) or np.any(has_hi)):
        raise ConfigurationError("control_prob_fixed='sqrt-based-fixed' cannot be combined with min_probs/max_probs")
    if policy in (ControlPolicy.SQRT_BASED, ControlPolicy.SQRT_BASED_FIXED, ControlPolicy.SQRT_BASED_START, ControlPolicy.MATCH):
        if spec.start_probs is not None:
            raise ConfigurationError(f"start_probs cannot be specified with control_prob_fixed={policy.value!r}")
    if policy is ControlPolicy.FIXED:
        vals = spec.control_prob_values
        if not vals or len(vals) not in (1, n_arms - 1):
            raise ConfigurationError(
                f"a fixed control probability needs 1 or len(arms) - 1 = {n_arms - 1} values, got {vals!r}"
            )
        if any(not (0.0 < v < 1.0) for v in vals):
            raise ConfigurationError(f"fixed control probabilities must be in (0,1), got {vals!r}")
    elif spec.control_prob_values is not None:
        raise ConfigurationError("control_prob_values is only used with control_prob_fixed='fixed'")

    # --- feasibility at the start of the trial ---
    pinned = 0.0
    policy_arm = np.zeros(n_arms, dtype=bool)
    if policy.pins_control or policy is ControlPolicy.SQRT_BASED_START:
        from .randomization import sqrt_control_prob

        policy_arm[ctrl_idx] = True
        pinned = spec.control_pinned_prob(n_arms) if policy is ControlPolicy.FIXED else sqrt_control_prob(n_arms - 1)
    free = ~has_fixed & ~policy_arm
    if policy is ControlPolicy.SQRT_BASED_FIXED:
        free[:] = False
    mass = 1.0 - pinned - float(fixed[has_fixed].sum())
    if mass < -PROB_SUM_TOL or float(lo[free & has_lo].sum()) > mass + PROB_SUM_TOL:
        raise ConfigurationError(
            "infeasible allocation constraints: fixed probabilities, control probability and minimum "
            "probabilities sum to more than 1"
        )
    if np.any(free) and np.all(has_hi[free]) and float(hi[free].sum()) < mass - PROB_SUM_TOL:
        raise ConfigurationError(
            "infeasible allocation constraints: max_probs of unfixed arms cannot absorb the remaining probability"
        )
    if not np.any(free) and policy is not ControlPolicy.SQRT_BASED_FIXED and abs(mass) > PROB_SUM_TOL:
        raise ConfigurationError("when every arm has a fixed probability, the fixed probabilities must sum to 1")

    # --- rescaling ---
    rescale = spec.rescale_probs
    if rescale is not RescalePolicy.NONE:
        if n_arms < 3:
            raise ConfigurationError("rescale_probs requires at least three arms")
        rescalable = ~policy_arm if policy.pins_control else np.ones(n_arms, dtype=bool)
        if rescale.rescales_fixed and not np.any(has_fixed & rescalable):
            raise ConfigurationError(f"rescale_probs={rescale.value!r} requires fixed_probs for at least one arm")
        if rescale.rescales_limits and not np.any((has_lo | has_hi) & rescalable):
            raise ConfigurationError(f"rescale_probs={rescale.value!r} requires min_probs/max_probs for at least one arm")

    # --- user-supplied start probabilities ---
    if spec.start_probs is not None:
        sp = np.asarray(spec.start_probs, dtype=float)
        if sp.shape != (n_arms,) or np.any(np.isnan(sp)):
            raise ConfigurationError(f"start_probs must have one non-missing value per arm, got {spec.start_probs!r}")
        if np.any(sp <= 0.0) or abs(float(sp.sum()) - 1.0) > 1e-6:
            raise ConfigurationError(f"start_probs must be positive and sum to 1, got {spec.start_probs!r}")
        if np.any(has_fixed & ~np.isclose(sp, fixed)):
            raise ConfigurationError("start_probs must equal fixed_probs for arms with fixed probabilities")
        if np.any(has_lo & (sp < lo - PROB_SUM_TOL)) or np.any(has_hi & (sp > hi + PROB_SUM_TOL)):
            raise ConfigurationError("start_probs must lie within min_probs/max_probs")
        if policy is ControlPolicy.FIXED and not math.isclose(sp[ctrl_idx], pinned):
            raise ConfigurationError("start_probs for the control arm must equal the fixed control probability")


def _probe_functions(spec: TrialSpecification) -> None:
    """Call the pluggable functions once on synthetic allocations to check their shapes."""
    rng = stream_rng(0, STREAM_PROBE, 0)
    allocs = np.asarray(spec.arms)[np.arange(10 * spec.n_arms) % spec.n_arms]
    try:
        ys = check_outcomes(spec.fun_y_gen(allocs, rng), allocs.size, context="(construction probe)")
        draws = spec.fun_draws(spec.arms, allocs, ys, spec.control, spec.n_draws, rng)
        check_draws(draws, spec.n_draws, spec.n_arms, context="(construction probe)")
        check_raw_estimate(spec.fun_raw_est(ys), context="(construction probe)")
    except GeneratorContractError as e:
        raise ConfigurationError(str(e)) from e
    except Exception as e:
        raise ConfigurationError(f"pluggable function failed during construction probe: {type(e).__name__}: {e}") from e


# ---------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------
def _resolve_looks(
    data_looks: Optional[Sequence[int]],
    max_n: Optional[int],
    look_after_every: Optional[int],
) -> Tuple[int, ...]:
    if data_looks is not None:
        if max_n is not None or look_after_every is not None:
            raise ConfigurationError("specify either data_looks or max_n + look_after_every, not both")
        return _as_int_tuple(data_looks, "data_looks")
    if max_n is None or look_after_every is None:
        raise ConfigurationError("either data_looks or both max_n and look_after_every must be specified")
    max_n_i = _as_int_tuple(max_n, "max_n")
    every_i = _as_int_tuple(look_after_every, "look_after_every")
    if len(max_n_i) != 1 or len(every_i) != 1 or max_n_i[0] <= 0 or every_i[0] <= 0:
        raise ConfigurationError("max_n and look_after_every must be single positive whole numbers")
    looks = list(range(every_i[0], max_n_i[0] + 1, every_i[0]))
    if not looks or looks[-1] != max_n_i[0]:
        looks.append(max_n_i[0])
    return tuple(looks)


def setup_trial(
    arms: Sequence[Any],
    true_ys: Sequence[float],
    fun_y_gen: Callable[..., Any],
    fun_draws: Callable[..., Any],
    *,
    data_looks: Optional[Sequence[int]] = None,
    max_n: Optional[int] = None,
    look_after_every: Optional[int] = None,
    **kwargs: Any,
) -> TrialSpecification:
    """Build a validated TrialSpecification; remaining keyword arguments map to its fields."""
    looks = _resolve_looks(data_looks, max_n, look_after_every)
    return TrialSpecification(
        arms=tuple(arms),
        true_ys=tuple(true_ys),
        fun_y_gen=fun_y_gen,
        fun_draws=fun_draws,
        data_looks=looks,
        **kwargs,
    )


def _check_true_ys(ys: Tuple[float, ...], arms: Tuple[str, ...]) -> None:
    if len(ys) != len(arms):
        raise ConfigurationError(f"true_ys must have one value per arm ({len(arms)}), got {len(ys)}")


def setup_trial_binom(
    arms: Sequence[Any],
    true_ys: Sequence[float],
    **kwargs: Any,
) -> TrialSpecification:
    """Trial with a binary outcome; `true_ys` are event probabilities."""
    ys = _as_float_tuple(true_ys, "true_ys")
    if any(not (0.0 <= y <= 1.0) for y in ys):
        raise ConfigurationError(f"true_ys must be probabilities in [0,1] for binomial outcomes, got {list(ys)!r}")
    for name in ("equivalence_diff", "futility_diff"):
        v = kwargs.get(name)
        if v is not None and _finite(v) and not (0.0 < float(v) < 1.0):
            raise ConfigurationError(f"{name} must be in (0,1) for binomial outcomes, got {v!r}")
    str_arms = tuple(str(a) for a in arms)
    _check_true_ys(ys, str_arms)
    return setup_trial(
        str_arms,
        ys,
        BinomialOutcomes(str_arms, ys),
        BinomialDraws(),
        **kwargs,
    )


def setup_trial_norm(
    arms: Sequence[Any],
    true_ys: Sequence[float],
    sds: Union[float, Sequence[float]],
    **kwargs: Any,
) -> TrialSpecification:
    """Trial with a normally distributed outcome; `sds` are per-arm (or common) SDs."""
    str_arms = tuple(str(a) for a in arms)
    if sds is None:
        raise ConfigurationError("sds must be specified for normally distributed outcomes")
    sd_vals = _as_float_tuple(sds, "sds")
    if len(sd_vals) == 1:
        sd_vals = sd_vals * len(str_arms)
    if len(sd_vals) != len(str_arms) or any(s <= 0.0 for s in sd_vals):
        raise ConfigurationError(f"sds must be positive, one per arm or a single common value, got {sds!r}")
    ys = _as_float_tuple(true_ys, "true_ys")
    _check_true_ys(ys, str_arms)
    return setup_trial(
        str_arms,
        ys,
        NormalOutcomes(str_arms, ys, sd_vals),
        NormalDraws(),
        **kwargs,
    )


__all__ = [
    "ControlPolicy",
    "RescalePolicy",
    "AllocationConstraints",
    "TrialSpecification",
    "validate_spec",
    "setup_trial",
    "setup_trial_binom",
    "setup_trial_norm",
]
