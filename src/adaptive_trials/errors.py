# src/adaptive_trials/errors.py
"""
Exception taxonomy for the adaptive trial engine.

- ConfigurationError: raised while building a TrialSpecification, never during simulation.
- GeneratorContractError: a pluggable outcome/draw/estimate function broke its contract.
- ReplicateInvariantError: internal invariant violated (a bug); never caught or retried.
"""
from __future__ import annotations

__all__ = [
    "ConfigurationError",
    "GeneratorContractError",
    "ReplicateInvariantError",
]


class ConfigurationError(ValueError):
    """User-fixable trial specification error."""


class GeneratorContractError(RuntimeError):
    """A pluggable function returned the wrong shape, non-finite or degenerate values."""


class ReplicateInvariantError(RuntimeError):
    """Allocation probabilities or constrained redistribution failed an internal check."""
