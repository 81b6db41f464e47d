# src/adaptive_trials/core/engine.py
"""
Module: core.engine
Purpose: Simulate one adaptive trial replicate from a TrialSpecification.

Per look i (0-based):
  1. randomise the patients due by randomised_at_looks[i] with the current
     allocation probabilities and generate their outcomes;
  2. draw from the posterior using the first data_looks[i] patients of the
     active arms;
  3. apply the stopping rules (drops / termination);
  4. if still active, recompute allocation probabilities for the remaining arms.

A final analysis over every randomised patient fills the `*_all` estimates.
Phases are one-directional: not_started -> at_look -> terminated.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

import numpy as np
from scipy import stats

from ..errors import ReplicateInvariantError
from ..io.seeds import replicate_rng, resolve_entropy
from .models import ArmResult, ArmStatus, EnginePhase, LookRecord, ReplicateResult, TrialStatus
from .outcomes import check_draws, check_outcomes, check_raw_estimate
from .randomization import reallocate_probs
from .spec import TrialSpecification
from .stopping import LookDecision, evaluate_look, prob_best

LOG = logging.getLogger(__name__)


def summarise_draws(col: np.ndarray, robust: bool, cri_width: float) -> Dict[str, float]:
    """Point estimate, error and credible interval for one column of posterior draws."""
    if robust:
        est = float(np.median(col))
        err = float(stats.median_abs_deviation(col, scale="normal"))
    else:
        est = float(np.mean(col))
        err = float(np.std(col, ddof=1))
    lo, hi = np.quantile(col, [(1.0 - cri_width) / 2.0, (1.0 + cri_width) / 2.0])
    return {"est": est, "err": err, "lo": float(lo), "hi": float(hi)}


class ReplicateEngine:
    """Runs a single replicate; an instance can be run exactly once."""

    def __init__(
        self,
        spec: TrialSpecification,
        rng: np.random.Generator,
        *,
        sparse: bool = True,
        sim: int = 0,
        seed: Optional[int] = None,
    ) -> None:
        self.spec = spec
        self.rng = rng
        self.sparse = sparse
        self.sim = int(sim)
        self.seed = seed
        self.phase = EnginePhase.NOT_STARTED

        n = spec.n_arms
        self._arm_names = np.asarray(spec.arms)
        self._allocs = np.zeros(spec.max_n, dtype=np.int64)
        self._ys = np.zeros(spec.max_n, dtype=float)
        self._n_rand = 0

        self.active: List[str] = list(spec.arms)
        self.control: Optional[str] = spec.control
        self.probs = np.asarray(spec.initial_probs, dtype=float)
        self.trial_status = TrialStatus.ACTIVE
        self.superior_arm: Optional[str] = None
        self.look_index = -1

        self._status: Dict[str, ArmStatus] = {a: ArmStatus.ACTIVE for a in spec.arms}
        self._status_look: Dict[str, Optional[int]] = {a: None for a in spec.arms}
        self._status_prob: Dict[str, Optional[float]] = {a: None for a in spec.arms}
        self._final_alloc: Dict[str, float] = dict(zip(spec.arms, self.probs.tolist()))
        self._last: Dict[str, Dict[str, float]] = {}
        self._trajectory: List[LookRecord] = []
        self._counts_followed = np.zeros(n, dtype=np.int64)

    # ------------------------------------------------------------------
    def run(self) -> ReplicateResult:
        if self.phase is not EnginePhase.NOT_STARTED:
            raise ReplicateInvariantError(f"replicate engine already in phase {self.phase.value!r}")
        self.phase = EnginePhase.AT_LOOK
        for i in range(self.spec.n_looks):
            self.look_index = i
            decision = self._look(i)
            if decision.terminated:
                self.trial_status = decision.trial_status
                break
        if not self.trial_status.terminal:
            raise ReplicateInvariantError("replicate finished all looks without a terminal status")
        self.phase = EnginePhase.TERMINATED
        return self._result()

    # ------------------------------------------------------------------
    def _randomise(self, up_to: int) -> None:
        n_new = up_to - self._n_rand
        if n_new <= 0:
            return
        active_idx = np.array([self.spec.arm_index(a) for a in self.active], dtype=np.int64)
        chosen = active_idx[self.rng.choice(active_idx.size, size=n_new, p=self.probs)]
        ys = check_outcomes(
            self.spec.fun_y_gen(self._arm_names[chosen], self.rng),
            n_new,
            context=f"(replicate {self.sim}, look {self.look_index + 1})",
        )
        self._allocs[self._n_rand:up_to] = chosen
        self._ys[self._n_rand:up_to] = ys
        self._n_rand = up_to

    def _draws(self, arms: List[str], n_patients: int, control: Optional[str]) -> np.ndarray:
        idx = np.array([self.spec.arm_index(a) for a in arms], dtype=np.int64)
        allocs = self._allocs[:n_patients]
        keep = np.isin(allocs, idx)
        draws = self.spec.fun_draws(
            tuple(arms),
            self._arm_names[allocs[keep]],
            self._ys[:n_patients][keep],
            control,
            self.spec.n_draws,
            self.rng,
        )
        return check_draws(
            draws,
            self.spec.n_draws,
            len(arms),
            context=f"(replicate {self.sim}, look {self.look_index + 1})",
        )

    def _arm_summary(self, arm: str, col: np.ndarray, n_patients: int) -> Dict[str, float]:
        mask = self._allocs[:n_patients] == self.spec.arm_index(arm)
        arm_ys = self._ys[:n_patients][mask]
        out = summarise_draws(col, self.spec.robust, self.spec.cri_width)
        out["n"] = int(mask.sum())
        out["sum_ys"] = float(arm_ys.sum())
        out["raw_est"] = check_raw_estimate(self.spec.fun_raw_est(arm_ys)) if arm_ys.size else float("nan")
        return out

    def _look(self, i: int) -> LookDecision:
        spec = self.spec
        self._randomise(spec.randomised_at_looks[i])
        n_followed = spec.data_looks[i]
        draws = self._draws(self.active, n_followed, self.control)

        decision = evaluate_look(
            spec,
            draws,
            self.active,
            i,
            control=self.control,
            control_changed=self.control != spec.control,
        )
        for k, arm in enumerate(self.active):
            self._last[arm] = self._arm_summary(arm, draws[:, k], n_followed)
            self._last[arm]["prob_best"] = decision.probs_best[arm]
        for arm, status in decision.status_changes.items():
            self._status[arm] = status
            self._status_look[arm] = decision.look
            self._status_prob[arm] = decision.status_probs[arm]
        if decision.superior_arm is not None:
            self.superior_arm = decision.superior_arm
        self.control = decision.control

        alloc: Dict[str, float] = {}
        if not decision.terminated:
            remaining = list(decision.remaining_arms)
            if len(remaining) < 2:
                raise ReplicateInvariantError(f"fewer than two active arms remain at look {decision.look}")
            cols = [self.active.index(a) for a in remaining]
            pb = prob_best(draws[:, cols], spec.highest_is_best)
            self.probs = reallocate_probs(
                spec,
                remaining,
                pb,
                control=self.control,
                soften_power=spec.soften_power[i],
            )
            self.active = remaining
            alloc = dict(zip(remaining, self.probs.tolist()))
            self._final_alloc.update(alloc)

        if not self.sparse:
            self._trajectory.append(
                LookRecord(
                    look=decision.look,
                    n_followed=n_followed,
                    n_randomised=self._n_rand,
                    active_arms=list(decision.remaining_arms),
                    control=self.control,
                    probs_best=decision.probs_best,
                    alloc_probs=alloc,
                    status_changes=decision.status_changes,
                    trial_status=decision.trial_status,
                )
            )
        return decision

    # ------------------------------------------------------------------
    def _result(self) -> ReplicateResult:
        spec = self.spec
        final_n = self._n_rand
        final_draws = self._draws(list(spec.arms), final_n, self.control)

        arms = []
        for k, arm in enumerate(spec.arms):
            status = self._status[arm]
            if status is ArmStatus.ACTIVE and arm == self.control:
                status = ArmStatus.IS_CONTROL
            last = self._last[arm]
            full = self._arm_summary(arm, final_draws[:, k], final_n)
            arms.append(
                ArmResult(
                    arm=arm,
                    true_y=spec.true_ys[k],
                    status=status,
                    status_look=self._status_look[arm],
                    status_prob=self._status_prob[arm],
                    final_alloc=self._final_alloc.get(arm),
                    n=last["n"],
                    n_all=full["n"],
                    sum_ys=last["sum_ys"],
                    sum_ys_all=full["sum_ys"],
                    raw_est=last["raw_est"],
                    raw_est_all=full["raw_est"],
                    post_est=last["est"],
                    post_err=last["err"],
                    lo_cri=last["lo"],
                    hi_cri=last["hi"],
                    post_est_all=full["est"],
                    post_err_all=full["err"],
                    lo_cri_all=full["lo"],
                    hi_cri_all=full["hi"],
                    prob_best=last["prob_best"],
                )
            )

        return ReplicateResult(
            sim=self.sim,
            seed=self.seed,
            final_status=self.trial_status,
            final_n=final_n,
            followed_n=spec.data_looks[self.look_index],
            max_n=spec.max_n,
            final_look=self.look_index + 1,
            start_control=spec.control,
            final_control=self.control,
            superior_arm=self.superior_arm,
            arms=arms,
            trajectory=None if self.sparse else self._trajectory,
        )


def run_trial(
    spec: TrialSpecification,
    rng: Optional[np.random.Generator] = None,
    *,
    seed: Optional[int] = None,
    sparse: bool = True,
    sim: int = 0,
) -> ReplicateResult:
    """Simulate one trial; without an explicit `rng` the replicate stream of `seed` is used."""
    if rng is None:
        seed = resolve_entropy(seed)
        rng = replicate_rng(seed, sim)
    return ReplicateEngine(spec, rng, sparse=sparse, sim=sim, seed=seed).run()


__all__ = [
    "summarise_draws",
    "ReplicateEngine",
    "run_trial",
]
