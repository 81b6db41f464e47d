# src/adaptive_trials/io/seeds.py
from __future__ import annotations

from typing import Optional

import numpy as np

# Stream families; keeps replicate and bootstrap streams disjoint for the same seed.
STREAM_REPLICATE = 0
STREAM_BOOTSTRAP = 1
STREAM_PROBE = 2


def resolve_entropy(seed: Optional[int]) -> int:
    """Return `seed` unchanged, or fresh OS entropy when no seed was given."""
    if seed is None:
        return int(np.random.SeedSequence().entropy)
    if isinstance(seed, bool) or not isinstance(seed, (int, np.integer)) or int(seed) < 0:
        raise ValueError(f"seed must be a non-negative int or None, got {seed!r}")
    return int(seed)


def stream_rng(entropy: int, stream: int, index: int) -> np.random.Generator:
    """
    Stable RNG keyed by (entropy, stream, index).

    The generator for a given index does not depend on how many other indices exist
    or in which process / order they are consumed.
    """
    if not all(isinstance(x, (int, np.integer)) for x in (entropy, stream, index)):
        raise TypeError("entropy/stream/index must all be ints.")
    ss = np.random.SeedSequence([int(entropy), int(stream), int(index)])
    return np.random.default_rng(ss)


def replicate_rng(entropy: int, index: int) -> np.random.Generator:
    return stream_rng(entropy, STREAM_REPLICATE, index)


def bootstrap_rng(entropy: int, index: int) -> np.random.Generator:
    return stream_rng(entropy, STREAM_BOOTSTRAP, index)


__all__ = [
    "STREAM_REPLICATE",
    "STREAM_BOOTSTRAP",
    "STREAM_PROBE",
    "resolve_entropy",
    "stream_rng",
    "replicate_rng",
    "bootstrap_rng",
]
