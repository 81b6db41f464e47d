# src/adaptive_trials/core/stopping.py
"""
Stopping rules evaluated at every adaptive analysis.

Order: superiority -> inferiority -> equivalence -> futility -> max.
All drops that qualify under one rule at one look are applied together, and
drops never leave fewer than two active arms: an inferiority drop set that would
do so is withheld, while equivalence/futility drops that would leave only the
control end the trial with that status.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .models import ArmStatus, TrialStatus
from .spec import TrialSpecification

LOG = logging.getLogger(__name__)


def prob_best(draws: np.ndarray, highest_is_best: bool) -> np.ndarray:
    """Share of draws in which each column is best (ties go to the first column)."""
    draws = np.asarray(draws, dtype=float)
    winners = draws.argmax(axis=1) if highest_is_best else draws.argmin(axis=1)
    return np.bincount(winners, minlength=draws.shape[1]) / draws.shape[0]


def prob_better(arm_draws: np.ndarray, ref_draws: np.ndarray, highest_is_best: bool) -> float:
    """Posterior probability that `arm` is better than `ref`."""
    diff = np.asarray(arm_draws, dtype=float) - np.asarray(ref_draws, dtype=float)
    return float(np.mean(diff > 0.0) if highest_is_best else np.mean(diff < 0.0))


@dataclass
class LookDecision:
    """Outcome of applying all stopping rules at one look."""

    look: int
    trial_status: TrialStatus = TrialStatus.ACTIVE
    remaining_arms: Tuple[str, ...] = ()
    control: Optional[str] = None
    control_changed: bool = False
    superior_arm: Optional[str] = None
    status_changes: Dict[str, ArmStatus] = field(default_factory=dict)
    status_probs: Dict[str, float] = field(default_factory=dict)
    probs_best: Dict[str, float] = field(default_factory=dict)
    trial_prob: Optional[float] = None

    def _set(self, arm: str, status: ArmStatus, prob: float) -> None:
        self.status_changes[arm] = status
        self.status_probs[arm] = float(prob)

    @property
    def terminated(self) -> bool:
        return self.trial_status.terminal


def evaluate_look(
    spec: TrialSpecification,
    draws: np.ndarray,
    active_arms: Sequence[str],
    look_index: int,
    *,
    control: Optional[str] = None,
    control_changed: bool = False,
) -> LookDecision:
    """
    Apply the stopping rules to posterior `draws` (columns follow `active_arms`).

    `look_index` is 0-based; the returned decision reports the 1-based look number.
    """
    arms = list(active_arms)
    col = {a: i for i, a in enumerate(arms)}
    hib = spec.highest_is_best
    is_final = look_index == spec.n_looks - 1

    pb = prob_best(draws, hib)
    decision = LookDecision(look=look_index + 1, control=control, control_changed=control_changed)
    decision.probs_best = {a: float(p) for a, p in zip(arms, pb)}

    if control is None:
        _evaluate_no_control(spec, draws, arms, col, pb, look_index, decision)
    else:
        _evaluate_with_control(spec, draws, arms, col, look_index, decision)

    if not decision.terminated and is_final:
        decision.trial_status = TrialStatus.MAX

    remaining = [a for a in arms if a not in decision.status_changes or decision.status_changes[a] is ArmStatus.SUPERIOR]
    if decision.trial_status is TrialStatus.SUPERIORITY:
        remaining = [decision.superior_arm]
    decision.remaining_arms = tuple(remaining)
    if decision.status_changes or decision.terminated:
        LOG.debug(
            "look %d: status=%s changes=%s control=%s",
            decision.look,
            decision.trial_status.value,
            {a: s.value for a, s in decision.status_changes.items()},
            decision.control,
        )
    return decision


def _evaluate_no_control(
    spec: TrialSpecification,
    draws: np.ndarray,
    arms: List[str],
    col: Dict[str, int],
    pb: np.ndarray,
    i: int,
    decision: LookDecision,
) -> None:
    # superiority: exactly one arm above the threshold
    above = np.flatnonzero(pb > spec.superiority[i])
    if above.size == 1:
        winner = arms[int(above[0])]
        decision._set(winner, ArmStatus.SUPERIOR, pb[above[0]])
        decision.superior_arm = winner
        decision.trial_status = TrialStatus.SUPERIORITY
        return

    # inferiority: simultaneous drops, floor of two remaining arms
    inferior = [a for a in arms if pb[col[a]] < spec.inferiority[i]]
    if inferior and len(arms) - len(inferior) >= 2:
        for a in inferior:
            decision._set(a, ArmStatus.DROPPED_INFERIORITY, pb[col[a]])
    remaining = [a for a in arms if a not in decision.status_changes]

    # equivalence of all remaining arms
    if spec.equivalence_prob is not None:
        sub = draws[:, [col[a] for a in remaining]]
        p_eq = float(np.mean(sub.max(axis=1) - sub.min(axis=1) < spec.equivalence_diff))
        if p_eq > spec.equivalence_prob[i]:
            decision.trial_status = TrialStatus.EQUIVALENCE
            decision.trial_prob = p_eq


def _evaluate_with_control(
    spec: TrialSpecification,
    draws: np.ndarray,
    arms: List[str],
    col: Dict[str, int],
    i: int,
    decision: LookDecision,
) -> None:
    hib = spec.highest_is_best
    active = list(arms)
    ctrl = decision.control

    # superiority; a superior arm replaces the control while comparators remain
    while True:
        others = [a for a in active if a != ctrl]
        p_vs = {a: prob_better(draws[:, col[a]], draws[:, col[ctrl]], hib) for a in others}
        cands = [a for a in others if p_vs[a] > spec.superiority[i]]
        if not cands:
            break
        if len(others) == 1:
            winner = cands[0]
            decision._set(winner, ArmStatus.SUPERIOR, p_vs[winner])
            decision._set(ctrl, ArmStatus.DROPPED_INFERIORITY, 1.0 - p_vs[winner])
            decision.superior_arm = winner
            decision.trial_status = TrialStatus.SUPERIORITY
            return
        sub_pb = prob_best(draws[:, [col[a] for a in active]], hib)
        best = {a: sub_pb[k] for k, a in enumerate(active)}
        new_ctrl = max(cands, key=lambda a: (best[a], -active.index(a)))
        decision._set(ctrl, ArmStatus.DROPPED_INFERIORITY, 1.0 - p_vs[new_ctrl])
        LOG.debug("look %d: %s superior to control %s, becomes new control", decision.look, new_ctrl, ctrl)
        active.remove(ctrl)
        ctrl = new_ctrl
        decision.control = ctrl
        decision.control_changed = True

    # inferiority versus the (possibly new) control
    others = [a for a in active if a != ctrl]
    p_vs = {a: prob_better(draws[:, col[a]], draws[:, col[ctrl]], hib) for a in others}
    inferior = [a for a in others if p_vs[a] < spec.inferiority[i]]
    if inferior and len(active) - len(inferior) >= 2:
        for a in inferior:
            decision._set(a, ArmStatus.DROPPED_INFERIORITY, p_vs[a])
        active = [a for a in active if a not in inferior]

    # equivalence / futility drop comparators; all comparators gone ends the trial
    rules = (
        (spec.equivalence_prob, spec.equivalence_only_first, ArmStatus.DROPPED_EQUIVALENCE, TrialStatus.EQUIVALENCE),
        (spec.futility_prob, spec.futility_only_first, ArmStatus.DROPPED_FUTILITY, TrialStatus.FUTILITY),
    )
    for thresholds, only_first, arm_status, trial_status in rules:
        if thresholds is None or (only_first and decision.control_changed):
            continue
        others = [a for a in active if a != ctrl]
        probs = {a: _rule_prob(spec, draws[:, col[a]], draws[:, col[ctrl]], arm_status) for a in others}
        hits = [a for a in others if probs[a] > thresholds[i]]
        if not hits:
            continue
        for a in hits:
            decision._set(a, arm_status, probs[a])
        active = [a for a in active if a not in hits]
        if len(active) < 2:
            decision.trial_status = trial_status
            decision.trial_prob = float(max(probs[a] for a in hits))
            return


def _rule_prob(spec: TrialSpecification, arm: np.ndarray, ctrl: np.ndarray, status: ArmStatus) -> float:
    diff = arm - ctrl
    if status is ArmStatus.DROPPED_EQUIVALENCE:
        return float(np.mean(np.abs(diff) < spec.equivalence_diff))
    # futility: the arm is not better than control by at least futility_diff
    if spec.highest_is_best:
        return float(np.mean(diff < spec.futility_diff))
    return float(np.mean(-diff < spec.futility_diff))


__all__ = [
    "prob_best",
    "prob_better",
    "LookDecision",
    "evaluate_look",
]
