# src/adaptive_trials/core/models.py
"""
Module: core.models
Purpose: Typed, immutable result records produced by the replicate engine and
         consumed by the batch runner and the performance aggregator.

Design notes
------------
- Pydantic BaseModel (v2), frozen; extra fields ignored on decode.
- Estimates may be NaN (e.g. arms that never received a patient); counts may not.
- BatchResult carries the originating TrialSpecification by reference; it is
  excluded from serialisation.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .spec import TrialSpecification


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ArmStatus(str, Enum):
    ACTIVE = "active"
    DROPPED_INFERIORITY = "dropped_inferiority"
    DROPPED_EQUIVALENCE = "dropped_equivalence"
    DROPPED_FUTILITY = "dropped_futility"
    SUPERIOR = "superior"
    IS_CONTROL = "is_control"


class TrialStatus(str, Enum):
    """Trial-level status; everything but ACTIVE is terminal."""
    ACTIVE = "active"
    SUPERIORITY = "superiority"
    EQUIVALENCE = "equivalence"
    FUTILITY = "futility"
    MAX = "max"

    @property
    def terminal(self) -> bool:
        return self is not TrialStatus.ACTIVE

    @property
    def conclusive(self) -> bool:
        return self in (TrialStatus.SUPERIORITY, TrialStatus.EQUIVALENCE, TrialStatus.FUTILITY)


class EnginePhase(str, Enum):
    NOT_STARTED = "not_started"
    AT_LOOK = "at_look"
    TERMINATED = "terminated"


class RecordBase(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
class ArmResult(RecordBase):
    """
    Final per-arm summary of one replicate.

    Posterior summaries without suffix come from the last look at which the arm
    was active (followed-up patients only); `*_all` fields come from the final
    analysis including every randomised patient.
    """

    arm: str
    true_y: float
    status: ArmStatus
    status_look: Optional[int] = None
    status_prob: Optional[float] = None
    final_alloc: Optional[float] = None
    n: int = Field(default=0, ge=0)
    n_all: int = Field(default=0, ge=0)
    sum_ys: float = 0.0
    sum_ys_all: float = 0.0
    raw_est: float = float("nan")
    raw_est_all: float = float("nan")
    post_est: float = float("nan")
    post_err: float = float("nan")
    lo_cri: float = float("nan")
    hi_cri: float = float("nan")
    post_est_all: float = float("nan")
    post_err_all: float = float("nan")
    lo_cri_all: float = float("nan")
    hi_cri_all: float = float("nan")
    prob_best: float = float("nan")


class LookRecord(RecordBase):
    """State of one replicate right after the stopping rules were applied at a look."""

    look: int = Field(ge=1)
    n_followed: int = Field(ge=0)
    n_randomised: int = Field(ge=0)
    active_arms: List[str]
    control: Optional[str] = None
    probs_best: Dict[str, float]
    alloc_probs: Dict[str, float] = Field(default_factory=dict)
    status_changes: Dict[str, ArmStatus] = Field(default_factory=dict)
    trial_status: TrialStatus = TrialStatus.ACTIVE


class ReplicateResult(RecordBase):
    sim: int = Field(ge=0)
    seed: Optional[int] = None
    final_status: TrialStatus
    final_n: int = Field(ge=0, description="Patients randomised when the trial stopped.")
    followed_n: int = Field(ge=0, description="Patients with outcome data at the final look.")
    max_n: int = Field(ge=0)
    final_look: int = Field(ge=1)
    start_control: Optional[str] = None
    final_control: Optional[str] = None
    superior_arm: Optional[str] = None
    arms: List[ArmResult]
    trajectory: Optional[List[LookRecord]] = None

    @field_validator("final_status", mode="before")
    @classmethod
    def _must_be_terminal(cls, v: Any) -> Any:
        if TrialStatus(v) is TrialStatus.ACTIVE:
            raise ValueError("a finished replicate cannot have final_status 'active'")
        return v

    def arm(self, name: str) -> ArmResult:
        for a in self.arms:
            if a.arm == name:
                return a
        raise KeyError(name)

    @property
    def sum_ys(self) -> float:
        return float(sum(a.sum_ys_all for a in self.arms))


class BatchResult(RecordBase):
    spec: Any = Field(exclude=True, repr=False)
    results: List[ReplicateResult]
    n_rep: int = Field(ge=1)
    base_seed: int
    elapsed_seconds: float = Field(ge=0.0)
    sparse: bool = True

    @field_validator("spec")
    @classmethod
    def _check_spec(cls, v: Any) -> TrialSpecification:
        if not isinstance(v, TrialSpecification):
            raise ValueError("spec must be a TrialSpecification")
        return v

    @field_validator("results")
    @classmethod
    def _ordered(cls, v: List[ReplicateResult]) -> List[ReplicateResult]:
        if [r.sim for r in v] != list(range(len(v))):
            raise ValueError("results must be ordered by replicate index")
        return v

    def arm_frame(self) -> pd.DataFrame:
        """Long-format per-arm table (one row per replicate and arm)."""
        rows = []
        for r in self.results:
            for a in r.arms:
                row = a.model_dump()
                row["status"] = a.status.value
                row["sim"] = r.sim
                rows.append(row)
        df = pd.DataFrame(rows)
        cols = ["sim"] + [c for c in df.columns if c != "sim"]
        return df[cols]


__all__ = [
    "ArmStatus",
    "TrialStatus",
    "EnginePhase",
    "ArmResult",
    "LookRecord",
    "ReplicateResult",
    "BatchResult",
]
