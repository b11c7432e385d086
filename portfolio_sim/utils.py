"""
Utility functions, constants, and plotting helpers for the simulation.
"""
from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import numpy as np
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import yaml  # noqa: E402

# =============================================================================
# Plot styling (global)
# =============================================================================
TITLE_FONT_SIZE = 16
LABEL_FONT_SIZE = 14
LEGEND_FONT_SIZE = 12

plt.rcParams.update({
    "axes.titlesize": TITLE_FONT_SIZE,
    "axes.labelsize": LABEL_FONT_SIZE,
    "legend.fontsize": LEGEND_FONT_SIZE,
})
plt.rcParams["axes.grid"] = True


# =============================================================================
# Global utilities & tolerances
# =============================================================================

EPS_PRICE = 1e-12      # floor for prices fed into log/sqrt
EPS_AMOUNT = 1e-12     # trades below this size are skipped


def clamp(x: float, lo: float, hi: float) -> float:
    """Clamp x into [lo, hi]."""
    return max(lo, min(hi, x))


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def realized_volatility(prices: Sequence[float], dt: float) -> float:
    """
    Standard deviation of log-returns of `prices` per unit time, for observations
    `dt` apart (the trajectory time unit, i.e. per year for t in years).
    Fewer than two returns gives 0.0.
    """
    arr = np.asarray(prices, dtype=float)
    if arr.size < 3:
        return 0.0
    log_ret = np.diff(np.log(np.maximum(arr, EPS_PRICE)))
    per_step = float(np.std(log_ret, ddof=1))
    if not math.isfinite(per_step):
        return 0.0
    return per_step / math.sqrt(dt)


def format_value(value: Any) -> str:
    """Stable textual form of a parameter value, used in directory names."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    if isinstance(value, (float, np.floating)):
        return repr(float(value))
    return str(value)


# =============================================================================
# YAML helpers
# =============================================================================

def load_yaml_mapping(path: Path) -> Dict[str, Any]:
    """Read a YAML file whose root must be a mapping."""
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Missing configuration file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return data


def dump_yaml(path: Path, data: Dict[str, Any]) -> None:
    ensure_parent(path)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)


# =============================================================================
# Visualization
# =============================================================================

def plot_run(result: Dict[str, Any], out_dir: Path, prefix: str = "run") -> None:
    """
    Save the standard panels for one run:
      1) oracle (lex) vs pool spot price,
      2) pool weight w_x,
      3) cumulative arbitrage profit (token Y).
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    steps = np.asarray(result["step"])

    def _save_fig(fig, name):
        fig.tight_layout()
        fig.savefig(out_dir / f"{prefix}_{name}.png", dpi=150)
        plt.close(fig)

    fig1, ax = plt.subplots(figsize=(12, 4))
    ax.plot(steps, result["lex_price"], "--", lw=1.6, label="Oracle price (lex)")
    ax.plot(steps, result["pool_price"], lw=1.8, label="Pool spot price (g3m)")
    ax.set_xlabel("Step", fontsize=LABEL_FONT_SIZE)
    ax.set_ylabel("Price (Y per X)", fontsize=LABEL_FONT_SIZE)
    ax.set_title("Oracle vs Pool Price", fontsize=TITLE_FONT_SIZE)
    ax.grid(True, alpha=0.3)
    ax.legend(fontsize=LEGEND_FONT_SIZE)
    _save_fig(fig1, "1_price")

    fig2, ax = plt.subplots(figsize=(12, 3.2))
    ax.plot(steps, result["weight_x"], lw=1.8, label="w_x")
    ax.set_ylim(0.0, 1.0)
    ax.set_xlabel("Step", fontsize=LABEL_FONT_SIZE)
    ax.set_ylabel("Weight", fontsize=LABEL_FONT_SIZE)
    ax.grid(True, alpha=0.3)
    ax.legend(fontsize=LEGEND_FONT_SIZE, loc="upper left")
    _save_fig(fig2, "2_weight")

    fig3, ax = plt.subplots(figsize=(12, 3.2))
    ax.axhline(0.0, color="k", lw=1.0, alpha=0.3)
    ax.plot(steps, np.cumsum(result["arb_profit"]), lw=1.8,
            label="Arbitrageur cumulative profit (Y)")
    ax.set_xlabel("Step", fontsize=LABEL_FONT_SIZE)
    ax.set_ylabel("Profit", fontsize=LABEL_FONT_SIZE)
    ax.grid(True, alpha=0.3)
    ax.legend(fontsize=LEGEND_FONT_SIZE, loc="upper left")
    _save_fig(fig3, "3_arb_profit")


def summarise(values: Sequence[float]) -> Dict[str, Optional[float]]:
    """Return first/last/min/max of a series (None for empty series)."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return {"first": None, "last": None, "min": None, "max": None}
    return {
        "first": float(arr[0]),
        "last": float(arr[-1]),
        "min": float(arr.min()),
        "max": float(arr.max()),
    }
