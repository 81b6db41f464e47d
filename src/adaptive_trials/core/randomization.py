# src/adaptive_trials/core/randomization.py
"""
Allocation probability algebra: softened response-adaptive weights, control-arm
policies, fixed probabilities and min/max limits (optionally rescaled after drops).

All vectors returned here are indexed like the `active_arms` they were computed for.
"""
from __future__ import annotations

import logging
import math
from typing import Optional, Sequence, Tuple

import numpy as np

from ..errors import ReplicateInvariantError
from .spec import AllocationConstraints, ControlPolicy, RescalePolicy, TrialSpecification

LOG = logging.getLogger(__name__)

SUM_TOL = 1e-9


def sqrt_control_prob(k: int) -> float:
    """Square-root rule: control probability sqrt(k) / (sqrt(k) + k) for k non-control arms."""
    if k < 1:
        raise ValueError(f"need at least one non-control arm, got k={k}")
    root = math.sqrt(k)
    return root / (root + k)


def rescale_constraints(
    constraints: AllocationConstraints,
    policy: RescalePolicy,
    initial_count: int,
    current_count: int,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Scale fixed probabilities and/or limits by initial_count / current_count.

    Returns (fixed, mins, maxs) over all arms; max values are capped at 1 and
    min values at the (possibly capped) max.
    """
    fixed, lo, hi = constraints.fixed(), constraints.mins(), constraints.maxs()
    if policy is RescalePolicy.NONE or current_count <= 0 or current_count >= initial_count:
        return fixed, lo, hi
    factor = initial_count / current_count
    if policy.rescales_fixed:
        fixed = fixed * factor
    if policy.rescales_limits:
        lo = lo * factor
        hi = np.minimum(hi * factor, 1.0)
        lo = np.where(np.isnan(hi), np.minimum(lo, 1.0), np.minimum(lo, hi))
    return fixed, lo, hi


def apply_limits(weights: np.ndarray, lo: np.ndarray, hi: np.ndarray, mass: float) -> np.ndarray:
    """
    Distribute `mass` proportionally to `weights` while respecting per-arm bounds.

    `lo`/`hi` may contain nan (no bound). Violators are clamped and locked and the
    remaining mass is redistributed over unlocked arms until nothing moves; any
    residual left by the lock order is then spread over arms with room to move.
    """
    w = np.asarray(weights, dtype=float)
    n = w.size
    lo_eff = np.where(np.isnan(lo), 0.0, lo)
    hi_eff = np.where(np.isnan(hi), 1.0, hi)
    base = w / w.sum() if w.sum() > 0 else np.full(n, 1.0 / n)
    p = mass * base
    locked = np.zeros(n, dtype=bool)

    for _ in range(n + 1):
        below = ~locked & (p < lo_eff - SUM_TOL)
        above = ~locked & (p > hi_eff + SUM_TOL)
        if not (below.any() or above.any()):
            break
        p[below] = lo_eff[below]
        p[above] = hi_eff[above]
        locked |= below | above
        free = ~locked
        if not free.any():
            break
        remaining = mass - p[locked].sum()
        fb = base[free]
        p[free] = remaining * fb / fb.sum() if fb.sum() > 0 else remaining / free.sum()
    else:
        raise ReplicateInvariantError(f"allocation limits did not converge within {n + 1} passes")

    residual = mass - p.sum()
    if residual > SUM_TOL:
        room = np.maximum(hi_eff - p, 0.0)
        if room.sum() + SUM_TOL < residual:
            raise ReplicateInvariantError("maximum allocation limits cannot absorb the remaining probability")
        p = p + residual * room / room.sum()
    elif residual < -SUM_TOL:
        room = np.maximum(p - lo_eff, 0.0)
        if room.sum() + SUM_TOL < -residual:
            raise ReplicateInvariantError("minimum allocation limits exceed the available probability")
        p = p + residual * room / room.sum()
    return p


def _effective_policy(spec: TrialSpecification, at_start: bool) -> ControlPolicy:
    policy = spec.control_prob_fixed
    if policy is ControlPolicy.SQRT_BASED_START:
        return ControlPolicy.SQRT_BASED if at_start else ControlPolicy.NONE
    return policy


def _unpinned_count(n: int, control_active: bool, policy: ControlPolicy) -> int:
    return n - 1 if (policy.pins_control and control_active) else n


def reallocate_probs(
    spec: TrialSpecification,
    active_arms: Sequence[str],
    probs_best: Sequence[float],
    *,
    control: Optional[str] = None,
    soften_power: float = 1.0,
    at_start: bool = False,
) -> np.ndarray:
    """Allocation probabilities for `active_arms` given their probabilities of being best."""
    active = list(active_arms)
    n = len(active)
    pb = np.asarray(probs_best, dtype=float)
    if pb.shape != (n,):
        raise ReplicateInvariantError(f"probs_best has shape {pb.shape}, expected ({n},)")
    if n == 0:
        raise ReplicateInvariantError("cannot allocate over zero active arms")

    policy = _effective_policy(spec, at_start)
    ctrl_pos = active.index(control) if (control is not None and control in active) else None
    if ctrl_pos is None:
        policy = ControlPolicy.NONE

    idx = np.array([spec.arm_index(a) for a in active], dtype=int)
    initial = _unpinned_count(spec.n_arms, spec.control is not None, policy)
    current = _unpinned_count(n, ctrl_pos is not None, policy)
    fixed_all, lo_all, hi_all = rescale_constraints(spec.constraints, spec.rescale_probs, initial, current)
    fixed, lo, hi = fixed_all[idx].copy(), lo_all[idx].copy(), hi_all[idx].copy()

    probs = np.zeros(n, dtype=float)
    pinned = np.zeros(n, dtype=bool)
    if policy.pins_control:
        if policy is ControlPolicy.FIXED:
            pc = spec.control_pinned_prob(n)
        else:
            pc = sqrt_control_prob(n - 1) if n > 1 else 1.0
        probs[ctrl_pos] = pc
        pinned[ctrl_pos] = True
        fixed[ctrl_pos] = lo[ctrl_pos] = hi[ctrl_pos] = np.nan
        if policy is ControlPolicy.SQRT_BASED_FIXED:
            others = ~pinned
            probs[others] = (1.0 - pc) / others.sum() if others.any() else 0.0
            return _checked(probs / probs.sum(), lo, hi, ~pinned)

    is_fixed = ~np.isnan(fixed) & ~pinned
    free = ~pinned & ~is_fixed
    pinned_mass = float(probs[pinned].sum())
    lo_free = np.where(free & ~np.isnan(lo), lo, 0.0)

    # relax fixed values and minimums that no longer fit after drops/rescaling
    required = float(fixed[is_fixed].sum() + lo_free.sum())
    available = 1.0 - pinned_mass
    if required > available + SUM_TOL:
        ratio = available / required
        LOG.debug("relaxing fixed/min allocation constraints by factor %.4f (required %.4f > available %.4f)", ratio, required, available)
        fixed = np.where(is_fixed, fixed * ratio, fixed)
        lo = np.where(free & ~np.isnan(lo), lo * ratio, lo)
    probs[is_fixed] = fixed[is_fixed]

    if not free.any():
        # only fixed (and pinned) arms remain; they share all probability mass
        total = probs.sum()
        if total <= 0:
            raise ReplicateInvariantError("no probability mass to distribute over fixed arms")
        probs = probs / total
        return _checked(probs, lo, hi, free)

    mass = 1.0 - float(probs[pinned | is_fixed].sum())
    hi_free = hi[free]
    if np.all(~np.isnan(hi_free)) and hi_free.sum() < mass - SUM_TOL:
        ratio = mass / hi_free.sum()
        LOG.debug("relaxing max allocation limits by factor %.4f", ratio)
        hi = np.where(free, np.minimum(hi * ratio, 1.0), hi)

    weights = np.power(pb, float(soften_power))
    if policy is ControlPolicy.MATCH and free[ctrl_pos]:
        others = free.copy()
        others[ctrl_pos] = False
        if others.any():
            weights[ctrl_pos] = weights[others].max()
    w_free = weights[free]
    if not np.all(np.isfinite(w_free)) or w_free.sum() <= 0:
        w_free = np.ones(free.sum())
    probs[free] = apply_limits(w_free, lo[free], hi[free], mass)
    return _checked(probs, lo, hi, free)


def _checked(probs: np.ndarray, lo: np.ndarray, hi: np.ndarray, bounded: np.ndarray) -> np.ndarray:
    total = float(probs.sum())
    if not np.all(np.isfinite(probs)) or abs(total - 1.0) > SUM_TOL:
        raise ReplicateInvariantError(f"allocation probabilities sum to {total!r}, not 1")
    if np.any(probs < -SUM_TOL):
        raise ReplicateInvariantError(f"negative allocation probability in {probs.tolist()!r}")
    lo_b = np.where(bounded & ~np.isnan(lo), lo, -np.inf)
    hi_b = np.where(bounded & ~np.isnan(hi), hi, np.inf)
    if np.any(probs < lo_b - SUM_TOL) or np.any(probs > hi_b + SUM_TOL):
        raise ReplicateInvariantError(f"allocation probabilities {probs.tolist()!r} violate min/max limits")
    return np.clip(probs, 0.0, 1.0)


def start_probs_for(spec: TrialSpecification) -> np.ndarray:
    """Start probabilities derived from the constraints (every arm equally likely to be best)."""
    n = spec.n_arms
    return reallocate_probs(
        spec,
        spec.arms,
        np.full(n, 1.0 / n),
        control=spec.control,
        soften_power=1.0,
        at_start=True,
    )


__all__ = [
    "sqrt_control_prob",
    "rescale_constraints",
    "apply_limits",
    "reallocate_probs",
    "start_probs_for",
]
