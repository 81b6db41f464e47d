"""Top-level package for adaptive-trials."""

from importlib import metadata as _metadata

from . import analysis, core, io
from .analysis.performance import check_performance, extract_results
from .core.batch import WorkerPool, run_trials
from .core.engine import run_trial
from .core.spec import setup_trial, setup_trial_binom, setup_trial_norm

try:
    __version__ = _metadata.version("adaptive-trials")
except _metadata.PackageNotFoundError:  # pragma: no cover - during local usage
    __version__ = "0.0.0"

__all__ = [
    "__version__",
    "analysis",
    "core",
    "io",
    "setup_trial",
    "setup_trial_binom",
    "setup_trial_norm",
    "run_trial",
    "run_trials",
    "WorkerPool",
    "extract_results",
    "check_performance",
]
