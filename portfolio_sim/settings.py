"""
Simulation configuration: meta (sweepable) parsing and expansion into direct configs.

A meta configuration is a YAML mapping. Every numeric field may be

  • a scalar                         drift: 0.1
  • a list of values                 drift: [-1.0, 1.0]
  • an inclusive range               drift: {start: -1.0, stop: 1.0, num: 3}
                                     drift: {start: 0.0, stop: 1.0, step: 0.5}

`MetaConfig.generate()` returns one direct `SimulationConfig` per point of the
Cartesian product of all field value sets, first-declared field outermost.
"""
from __future__ import annotations

import enum
import itertools
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError
from .processes import GBMParameters, OUParameters, ProcessParameters
from .utils import format_value, load_yaml_mapping


class SimulationType(str, enum.Enum):
    DYNAMIC_WEIGHTS = "dynamic_weights"
    STABLE_PORTFOLIO = "stable_portfolio"


# =============================================================================
# Direct (single-valued) configuration
# =============================================================================

@dataclass(frozen=True)
class TrajectoryParameters:
    initial_price: float
    t_0: float
    t_n: float
    num_steps: int
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.initial_price <= 0:
            raise ConfigurationError(f"trajectory.initial_price must be positive, got {self.initial_price}")
        if self.num_steps < 1:
            raise ConfigurationError(f"trajectory.num_steps must be at least 1, got {self.num_steps}")
        if self.t_n <= self.t_0:
            raise ConfigurationError(
                f"trajectory.t_n must be greater than t_0, got t_0={self.t_0}, t_n={self.t_n}"
            )


@dataclass(frozen=True)
class PoolParameters:
    fee_basis_points: int = 30
    weight_x: float = 0.5

    def __post_init__(self) -> None:
        if not 0 <= self.fee_basis_points < 10_000:
            raise ConfigurationError(
                f"pool.fee_basis_points must be in [0, 10000), got {self.fee_basis_points}"
            )
        if not 0.0 < self.weight_x < 1.0:
            raise ConfigurationError(f"pool.weight_x must be in (0, 1), got {self.weight_x}")

    @property
    def fee(self) -> float:
        return self.fee_basis_points / 10_000.0


@dataclass(frozen=True)
class LPParameters:
    x_liquidity: float = 1.0

    def __post_init__(self) -> None:
        if self.x_liquidity <= 0:
            raise ConfigurationError(f"lp.x_liquidity must be positive, got {self.x_liquidity}")


@dataclass(frozen=True)
class BlockParameters:
    timestep_size: int = 15      # seconds per block

    def __post_init__(self) -> None:
        if self.timestep_size < 1:
            raise ConfigurationError(f"block.timestep_size must be at least 1, got {self.timestep_size}")


@dataclass(frozen=True)
class WeightChangerParameters:
    target_volatility: float = 0.15
    update_frequency: int = 150  # ticks between rebalances
    min_weight: float = 0.01
    max_weight: float = 0.99

    def __post_init__(self) -> None:
        if self.target_volatility < 0:
            raise ConfigurationError(
                f"weight_changer.target_volatility must be non-negative, got {self.target_volatility}"
            )
        if self.update_frequency < 1:
            raise ConfigurationError(
                f"weight_changer.update_frequency must be at least 1, got {self.update_frequency}"
            )
        for name in ("min_weight", "max_weight"):
            value = getattr(self, name)
            if not 0.0 < value < 1.0:
                raise ConfigurationError(f"weight_changer.{name} must be in (0, 1), got {value}")
        if self.min_weight > self.max_weight:
            raise ConfigurationError(
                f"weight_changer.min_weight ({self.min_weight}) exceeds max_weight ({self.max_weight})"
            )


@dataclass(frozen=True)
class ArbitrageurParameters:
    threshold_bps: Optional[float] = None   # None -> pool fee

    def __post_init__(self) -> None:
        if self.threshold_bps is not None and self.threshold_bps < 0:
            raise ConfigurationError(f"arbitrageur.threshold_bps must be non-negative, got {self.threshold_bps}")


@dataclass(frozen=True)
class SimulationConfig:
    simulation: SimulationType
    output_directory: str
    trajectory: TrajectoryParameters
    gbm: Optional[GBMParameters] = None
    ou: Optional[OUParameters] = None
    pool: PoolParameters = field(default_factory=PoolParameters)
    lp: LPParameters = field(default_factory=LPParameters)
    block: BlockParameters = field(default_factory=BlockParameters)
    weight_changer: WeightChangerParameters = field(default_factory=WeightChangerParameters)
    arbitrageur: ArbitrageurParameters = field(default_factory=ArbitrageurParameters)

    def __post_init__(self) -> None:
        if (self.gbm is None) == (self.ou is None):
            raise ConfigurationError(
                "A simulation config needs exactly one of a 'gbm' or an 'ou' process."
            )

    @property
    def process(self) -> ProcessParameters:
        return self.gbm if self.gbm is not None else self.ou

    @property
    def process_name(self) -> str:
        return "gbm" if self.gbm is not None else "ou"

    @property
    def arbitrage_threshold(self) -> float:
        """Minimum relative price gap (fraction) the arbitrageur acts on."""
        bps = self.arbitrageur.threshold_bps
        if bps is None:
            return self.pool.fee
        return float(bps) / 10_000.0

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["simulation"] = self.simulation.value
        if out["gbm"] is None:
            del out["gbm"]
        if out["ou"] is None:
            del out["ou"]
        return out


# =============================================================================
# Schema (declaration order drives sweep order)
# =============================================================================

# section -> [(key, type, required, default)]
# keys are unique across sections: sweep directory names use the bare key
_SCHEMA: Dict[str, List[Tuple[str, type, bool, Any]]] = {
    "trajectory": [
        ("initial_price", float, True, None),
        ("t_0", float, True, None),
        ("t_n", float, True, None),
        ("num_steps", int, True, None),
        ("seed", int, False, None),
    ],
    "gbm": [
        ("drift", float, True, None),
        ("volatility", float, True, None),
        ("additive_drift", bool, False, False),
    ],
    "ou": [
        ("mean", float, True, None),
        ("std_dev", float, True, None),
        ("theta", float, True, None),
    ],
    "pool": [
        ("fee_basis_points", int, False, 30),
        ("weight_x", float, False, 0.5),
    ],
    "lp": [
        ("x_liquidity", float, False, 1.0),
    ],
    "block": [
        ("timestep_size", int, False, 15),
    ],
    "weight_changer": [
        ("target_volatility", float, False, 0.15),
        ("update_frequency", int, False, 150),
        ("min_weight", float, False, 0.01),
        ("max_weight", float, False, 0.99),
    ],
    "arbitrageur": [
        ("threshold_bps", float, False, None),
    ],
}

_SECTION_TYPES = {
    "trajectory": TrajectoryParameters,
    "gbm": GBMParameters,
    "ou": OUParameters,
    "pool": PoolParameters,
    "lp": LPParameters,
    "block": BlockParameters,
    "weight_changer": WeightChangerParameters,
    "arbitrageur": ArbitrageurParameters,
}

_TOP_LEVEL_KEYS = ["simulation", "output_directory"] + list(_SCHEMA)


def _coerce(value: Any, kind: type, name: str) -> Any:
    if value is None:
        return None
    if kind is bool:
        if not isinstance(value, bool):
            raise ConfigurationError(f"'{name}' must be a boolean, got {value!r}")
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise ConfigurationError(f"'{name}' must be numeric, got {value!r}")
    if kind is int:
        if float(value) != int(value):
            raise ConfigurationError(f"'{name}' must be an integer, got {value!r}")
        return int(value)
    return float(value)


def parse_values(raw: Any, kind: type, name: str) -> List[Any]:
    """
    Resolve one (possibly parameterized) field into its ordered list of values.
    """
    if isinstance(raw, dict):
        unknown = sorted(set(raw) - {"start", "stop", "num", "step"})
        if unknown:
            raise ConfigurationError(f"Unexpected keys in range for '{name}': {unknown}")
        if "start" not in raw or "stop" not in raw:
            raise ConfigurationError(f"Range for '{name}' needs 'start' and 'stop'.")
        if ("num" in raw) == ("step" in raw):
            raise ConfigurationError(f"Range for '{name}' needs exactly one of 'num' or 'step'.")
        start = _coerce(raw["start"], float, name)
        stop = _coerce(raw["stop"], float, name)
        if "num" in raw:
            num = _coerce(raw["num"], int, name)
            if num < 1:
                raise ConfigurationError(f"Range for '{name}' must have num >= 1.")
            grid = np.linspace(start, stop, num)
        else:
            step = _coerce(raw["step"], float, name)
            if step <= 0 or stop < start:
                raise ConfigurationError(f"Range for '{name}' needs step > 0 and stop >= start.")
            count = int(np.floor((stop - start) / step + 1e-9)) + 1
            grid = start + step * np.arange(count)
        if kind is int:
            # linspace of integers can land a few ulps off
            grid = [round(v) if abs(v - round(v)) < 1e-9 else v for v in grid]
        values = [_coerce(float(v), kind, name) for v in grid]
    elif isinstance(raw, (list, tuple)):
        if len(raw) == 0:
            raise ConfigurationError(f"'{name}' must provide at least one value.")
        values = [_coerce(v, kind, name) for v in raw]
    else:
        values = [_coerce(raw, kind, name)]

    if len(set(values)) != len(values):
        raise ConfigurationError(f"'{name}' lists duplicate values: {values}")
    return values


def cartesian_product(fields: Sequence[Tuple[str, Sequence[Any]]]) -> List[Dict[str, Any]]:
    """
    Every combination of the given (name, values) pairs, first field outermost.

    >>> cartesian_product([("a", [1, 2]), ("b", ["x", "y"])])[1]
    {'a': 1, 'b': 'y'}
    """
    names = [name for name, _ in fields]
    return [dict(zip(names, combo)) for combo in itertools.product(*(vals for _, vals in fields))]


# =============================================================================
# Meta configuration
# =============================================================================

@dataclass
class MetaConfig:
    """
    Parsed, validated meta configuration.

    `fields` holds every numeric field as (qualified name "section.key", values),
    in declaration order.
    """
    simulation: SimulationType
    output_directory: str
    sections: List[str]
    fields: List[Tuple[str, List[Any]]]

    @classmethod
    def from_yaml(cls, config_path: Path) -> "MetaConfig":
        try:
            data = load_yaml_mapping(Path(config_path))
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetaConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be a mapping.")

        extra = sorted(set(data) - set(_TOP_LEVEL_KEYS))
        if extra:
            raise ConfigurationError(f"Unexpected top-level keys: {extra}")

        has_gbm = data.get("gbm") is not None
        has_ou = data.get("ou") is not None
        if not has_gbm and not has_ou:
            raise ConfigurationError("You must supply either a gbm or an ou configuration.")
        if has_gbm and has_ou:
            raise ConfigurationError("You can only supply either a gbm or an ou configuration, not both.")

        raw_sim = data.get("simulation", SimulationType.DYNAMIC_WEIGHTS.value)
        try:
            simulation = SimulationType(raw_sim)
        except ValueError as exc:
            valid = [s.value for s in SimulationType]
            raise ConfigurationError(f"Unknown simulation type {raw_sim!r}; expected one of {valid}") from exc

        output_directory = data.get("output_directory")
        if not isinstance(output_directory, str) or not output_directory:
            raise ConfigurationError("'output_directory' must be a non-empty string.")

        if not isinstance(data.get("trajectory"), dict):
            raise ConfigurationError("'trajectory' section missing.")

        sections: List[str] = []
        fields: List[Tuple[str, List[Any]]] = []
        for section, schema in _SCHEMA.items():
            block = data.get(section)
            if block is None:
                continue
            if not isinstance(block, dict):
                raise ConfigurationError(f"Section '{section}' must be a mapping.")
            known = {key for key, *_ in schema}
            extra_keys = sorted(set(block) - known)
            if extra_keys:
                raise ConfigurationError(f"Unexpected keys in '{section}' section: {extra_keys}")
            missing = [key for key, _, required, _ in schema if required and key not in block]
            if missing:
                raise ConfigurationError(f"Missing keys in '{section}' section: {missing}")

            sections.append(section)
            for key, kind, _, default in schema:
                name = f"{section}.{key}"
                if key not in block or block[key] is None:
                    fields.append((name, [default]))
                else:
                    fields.append((name, parse_values(block[key], kind, name)))

        return cls(
            simulation=simulation,
            output_directory=output_directory,
            sections=sections,
            fields=fields,
        )

    @property
    def varying_fields(self) -> List[str]:
        return [name for name, values in self.fields if len(values) > 1]

    def __len__(self) -> int:
        n = 1
        for _, values in self.fields:
            n *= len(values)
        return n

    def generate(self) -> List[SimulationConfig]:
        """Expand into the full grid of direct configurations."""
        varying = self.varying_fields
        base = Path(self.output_directory)
        configs: List[SimulationConfig] = []
        for combo in cartesian_product(self.fields):
            parts = [f"{name.split('.', 1)[1]}={format_value(combo[name])}" for name in varying]
            # normalised, so "./out" and "out/" name the same run
            out_dir = str(base / "_".join(parts)) if parts else str(base)
            configs.append(self._build(combo, out_dir))
        return configs

    def _build(self, combo: Dict[str, Any], output_directory: str) -> SimulationConfig:
        kwargs: Dict[str, Any] = {}
        for section in self.sections:
            values = {
                key: combo[f"{section}.{key}"]
                for key, *_ in _SCHEMA[section]
                if f"{section}.{key}" in combo
            }
            kwargs[section] = _SECTION_TYPES[section](**values)
        return SimulationConfig(
            simulation=self.simulation,
            output_directory=output_directory,
            **kwargs,
        )


def load_configs(config_path: Path) -> List[SimulationConfig]:
    """Read a meta configuration file and expand it."""
    return MetaConfig.from_yaml(config_path).generate()
