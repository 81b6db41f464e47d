# src/adaptive_trials/cli.py
"""
CLI entrypoint: YAML config -> batch of simulated trials -> performance metrics.

Prints one JSON object per metric row to stdout, followed by a diagnostics line.
Exit codes: 0 success, 1 simulation failure, 2 configuration error.
"""
from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import math
import sys
import time
from pathlib import Path
from typing import Any, Optional, Sequence

from . import __version__
from .analysis.performance import check_performance
from .config import config_from_dict, load_yaml
from .core.batch import WorkerPool, run_trials

LOG = logging.getLogger(__name__)


def _json_value(v: Any) -> Any:
    if isinstance(v, float) and not math.isfinite(v):
        return None
    return v


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="adaptive-trials", description="Simulate adaptive multi-arm trials.")
    ap.add_argument("--config", type=str, required=True, help="Path to YAML trial config.")
    ap.add_argument("--n_rep", type=int, default=None, help="Override run.n_rep.")
    ap.add_argument("--base_seed", type=int, default=None, help="Override run.base_seed.")
    ap.add_argument("--cores", type=int, default=None, help="Worker processes (default: sequential).")
    ap.add_argument("--uncertainty", action="store_true", help="Bootstrap uncertainty for the metrics.")
    ap.add_argument("--n_boot", type=int, default=None, help="Override performance.n_boot.")
    ap.add_argument("--boot_seed", type=str, default=None, help="Bootstrap seed (int or 'base').")
    ap.add_argument("--log_level", type=str, default="INFO", help="Logging level.")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    config_path = Path(args.config).expanduser()
    if not config_path.exists():
        print(f"ERROR: config path does not exist: {str(config_path)!r}", file=sys.stderr)
        return 2

    try:
        cfg = config_from_dict(load_yaml(str(config_path)))
        run = cfg.run
        perf = cfg.performance
        if args.n_rep is not None:
            run = dataclasses.replace(run, n_rep=args.n_rep)
        if args.base_seed is not None:
            run = dataclasses.replace(run, base_seed=args.base_seed)
        if args.cores is not None:
            run = dataclasses.replace(run, cores=args.cores)
        if args.uncertainty:
            perf = dataclasses.replace(perf, uncertainty=True)
        if args.n_boot is not None:
            perf = dataclasses.replace(perf, n_boot=args.n_boot)
        if args.boot_seed is not None:
            seed = args.boot_seed if args.boot_seed == "base" else int(args.boot_seed)
            perf = dataclasses.replace(perf, boot_seed=seed)
    except Exception as e:
        LOG.exception("Config loading/validation failed.")
        print(f"ERROR: config loading/validation failed: {e}", file=sys.stderr)
        return 2

    t0 = time.time()
    try:
        LOG.info(
            "Running trials: arms=%s n_rep=%s looks=%s cores=%s",
            list(cfg.spec.arms),
            run.n_rep,
            cfg.spec.n_looks,
            run.cores,
        )
        with WorkerPool(run.cores or 1) as pool:
            batch = run_trials(cfg.spec, run.n_rep, base_seed=run.base_seed, sparse=run.sparse, pool=pool)
            table = check_performance(batch, pool=pool, **perf.as_kwargs())
    except Exception as e:
        LOG.exception("Simulation failed.")
        print(f"ERROR: simulation failed: {e}", file=sys.stderr)
        return 1

    for row in table.to_dict(orient="records"):
        print(json.dumps({k: _json_value(v) for k, v in row.items()}, sort_keys=True))

    diag = {
        "elapsed_s": round(time.time() - t0, 3),
        "simulation_s": round(batch.elapsed_seconds, 3),
        "base_seed": batch.base_seed,
        "n_rep": batch.n_rep,
        "arms": list(cfg.spec.arms),
        "version": __version__,
    }
    print(json.dumps(diag, sort_keys=True))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
