"""
Stochastic price processes and their Euler–Maruyama sampler.

Two process families drive the external (oracle) price:

  • GBM  : dX = μ X dt + σ X dW          (multiplicative drift, default)
           dX = μ dt   + σ X dW          (additive-drift variant)
  • OU   : dX = θ (m - X) dt + s dW      (mean reverting, for stable assets)

Both are discretised on an equal grid t_0 < t_1 < ... < t_N = t_n with
dt = (t_n - t_0) / N and dW ~ N(0, dt).
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np

from .errors import ConfigurationError, SamplingError


@dataclass(frozen=True)
class GBMParameters:
    drift: float
    volatility: float
    additive_drift: bool = False

    def drift_term(self, x: np.ndarray) -> np.ndarray:
        if self.additive_drift:
            return np.full_like(x, self.drift)
        return self.drift * x

    def diffusion_term(self, x: np.ndarray) -> np.ndarray:
        return self.volatility * x

    def validate(self) -> None:
        if not (math.isfinite(self.drift) and math.isfinite(self.volatility)):
            raise SamplingError("GBM drift and volatility must be finite.")
        if self.volatility < 0:
            raise SamplingError(f"GBM volatility must be non-negative, got {self.volatility}")


@dataclass(frozen=True)
class OUParameters:
    mean: float
    std_dev: float
    theta: float

    def drift_term(self, x: np.ndarray) -> np.ndarray:
        return self.theta * (self.mean - x)

    def diffusion_term(self, x: np.ndarray) -> np.ndarray:
        return np.full_like(x, self.std_dev)

    def validate(self) -> None:
        if not all(math.isfinite(v) for v in (self.mean, self.std_dev, self.theta)):
            raise SamplingError("OU mean, std_dev and theta must be finite.")
        if self.std_dev < 0:
            raise SamplingError(f"OU std_dev must be non-negative, got {self.std_dev}")
        if self.theta < 0:
            raise SamplingError(f"OU theta cannot be negative, got {self.theta}")


ProcessParameters = Union[GBMParameters, OUParameters]


@dataclass(frozen=True)
class Trajectory:
    """
    `width` sampled paths of length `num_steps + 1`, read-only.

    paths[i, 0] is the initial value at t_0 for every path i.
    """
    paths: np.ndarray
    times: np.ndarray

    @property
    def width(self) -> int:
        return int(self.paths.shape[0])

    @property
    def num_steps(self) -> int:
        return int(self.paths.shape[1]) - 1

    def path(self, i: int = 0) -> np.ndarray:
        return self.paths[i]

    def value(self, step: int, path: int = 0) -> float:
        return float(self.paths[path, step])

    def __len__(self) -> int:
        return int(self.paths.shape[1])

    @classmethod
    def from_config(cls, config) -> "Trajectory":
        """Sample the trajectory described by a direct `SimulationConfig`."""
        traj = config.trajectory
        process = config.process
        return sample(
            process,
            initial_value=traj.initial_price,
            t_0=traj.t_0,
            t_n=traj.t_n,
            num_steps=traj.num_steps,
            seed=traj.seed,
        )


def sample(
    process: ProcessParameters,
    initial_value: float,
    t_0: float,
    t_n: float,
    num_steps: int,
    width: int = 1,
    seed: Optional[int] = None,
) -> Trajectory:
    """
    Euler–Maruyama discretisation of `process` on [t_0, t_n] with `num_steps` increments.

    With a seed the increments come from `np.random.default_rng(seed)`, so identical
    inputs give bit-identical paths; without one a fresh entropy source is used.
    """
    # grid checks come first: no random draw happens for an invalid grid
    if int(num_steps) != num_steps or num_steps <= 0:
        raise ConfigurationError(f"num_steps must be a positive integer, got {num_steps}")
    if not (math.isfinite(t_0) and math.isfinite(t_n)) or t_n <= t_0:
        raise ConfigurationError(f"t_n must be greater than t_0, got t_0={t_0}, t_n={t_n}")
    if width < 1:
        raise SamplingError(f"width must be at least 1, got {width}")
    if not math.isfinite(initial_value):
        raise SamplingError(f"initial_value must be finite, got {initial_value}")
    process.validate()

    num_steps = int(num_steps)
    dt = (t_n - t_0) / num_steps
    rng = np.random.default_rng(seed)
    dW = rng.normal(0.0, math.sqrt(dt), size=(width, num_steps))

    paths = np.empty((width, num_steps + 1), dtype=float)
    paths[:, 0] = initial_value
    for k in range(num_steps):
        x = paths[:, k]
        paths[:, k + 1] = x + process.drift_term(x) * dt + process.diffusion_term(x) * dW[:, k]

    times = np.linspace(t_0, t_n, num_steps + 1)
    paths.setflags(write=False)
    times.setflags(write=False)
    return Trajectory(paths=paths, times=times)
