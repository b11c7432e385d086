#!/usr/bin/env python3

"""
Run one simulation per direct configuration of a (possibly sweeping) YAML config.

Every direct configuration gets its own trajectory, agents, ledger and output
directory, so runs are independent and can execute in parallel worker processes.
Per-run artefacts (events.csv, config.yml, verbose_steps.txt, optional plots) land
in the run's directory; a summary.csv for the whole sweep lands in the base
output directory.
"""
from __future__ import annotations

import argparse
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from tqdm import tqdm

from .errors import SimulationError
from .scheduler import RunState, Simulation
from .settings import MetaConfig, SimulationConfig
from .utils import ensure_parent, plot_run, summarise

SUMMARY_COLUMNS = [
    "output_directory",
    "state",
    "ticks",
    "num_events",
    "arb_trades",
    "arb_cumulative_profit",
    "lex_price_last",
    "pool_price_last",
    "weight_x_last",
    "error",
]


def simulate(config: SimulationConfig, visualize: bool = False, verbose: bool = True) -> Dict[str, Any]:
    """
    Run a single direct configuration to completion.

    Returns the per-step history (numpy arrays keyed by series name) plus the
    final run state. Errors abort the run and propagate; the partial event log
    has been flushed by then.
    """
    sim = Simulation(config, verbose=verbose)
    sim.run()
    result = sim.results()
    if visualize and sim.state is RunState.COMPLETED:
        plot_run(result, sim.output_directory, prefix=f"{config.simulation.value}_{config.process_name}")
    return result


def _simulate_once(config: SimulationConfig, visualize: bool, verbose: bool) -> Dict[str, Any]:
    """Worker entry point: run one config and reduce it to a summary row."""
    try:
        result = simulate(config, visualize=visualize, verbose=verbose)
    except Exception as exc:
        # any failure is confined to its own run
        return {
            "output_directory": config.output_directory,
            "state": RunState.FAILED.value,
            "error": f"{type(exc).__name__}: {exc}",
        }
    return {
        "output_directory": config.output_directory,
        "state": result["state"],
        "ticks": result["ticks"],
        "num_events": result["num_events"],
        "arb_trades": result["arb_trades"],
        "arb_cumulative_profit": result["arb_cumulative_profit"],
        "lex_price_last": summarise(result["lex_price"])["last"],
        "pool_price_last": summarise(result["pool_price"])["last"],
        "weight_x_last": summarise(result["weight_x"])["last"],
        "error": result["error"],
    }


def write_summary(rows: List[Dict[str, Any]], csv_path: Path) -> None:
    ensure_parent(csv_path)
    pd.DataFrame(rows, columns=SUMMARY_COLUMNS).to_csv(csv_path, index=False)


def run_sweep(
    meta: MetaConfig,
    workers: int = 1,
    fail_fast: bool = False,
    visualize: bool = False,
    verbose: bool = True,
) -> List[Dict[str, Any]]:
    """
    Run every configuration produced by `meta.generate()`.

    Failed runs are reported as rows with state 'failed'; with `fail_fast` the
    first failure stops the sweep and raises.
    """
    configs = meta.generate()
    rows: List[Dict[str, Any]] = []
    progress = tqdm(total=len(configs), desc="Running simulations", unit="run")

    def _collect(row: Dict[str, Any]) -> None:
        rows.append(row)
        progress.update(1)
        if row["state"] == RunState.FAILED.value:
            print(f"[warn] {row['output_directory']} failed: {row['error']}")
            if fail_fast:
                raise SimulationError(f"Sweep aborted: {row['output_directory']} failed ({row['error']})")

    try:
        if workers <= 1:
            for cfg in configs:
                _collect(_simulate_once(cfg, visualize, verbose))
        else:
            with ProcessPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(_simulate_once, cfg, visualize, verbose): cfg
                    for cfg in configs
                }
                try:
                    for future in as_completed(futures):
                        _collect(future.result())
                except SimulationError:
                    for future in futures:
                        future.cancel()
                    raise
    finally:
        progress.close()

    # order rows like the sweep grid, not like completion order
    order = {cfg.output_directory: i for i, cfg in enumerate(configs)}
    rows.sort(key=lambda r: order[r["output_directory"]])

    summary_path = Path(meta.output_directory) / "summary.csv"
    write_summary(rows, summary_path)
    print(f"[RESULT] Summary saved to {summary_path}")
    return rows


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the portfolio simulation (or a parameter sweep) from a YAML configuration."
    )
    parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to the YAML configuration file.",
    )
    parser.add_argument("--workers", type=int, default=1, help="Parallel worker processes.")
    parser.add_argument("--fail-fast", action="store_true", help="Abort the sweep on the first failed run.")
    parser.add_argument("--visualize", action="store_true", help="Save price/weight/profit plots per run.")
    parser.add_argument("--quiet", action="store_true", help="Do not write per-run verbose logs.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    meta = MetaConfig.from_yaml(args.config)

    print(f"[config] {args.config}")
    print(f"[scenario] {meta.simulation.value} | {len(meta)} run(s) | varying: {meta.varying_fields or 'none'}")

    rows = run_sweep(
        meta,
        workers=args.workers,
        fail_fast=args.fail_fast,
        visualize=args.visualize,
        verbose=not args.quiet,
    )
    n_ok = sum(1 for r in rows if r["state"] == RunState.COMPLETED.value)
    print(f"[RESULT] {n_ok}/{len(rows)} run(s) completed")


if __name__ == "__main__":
    main()
