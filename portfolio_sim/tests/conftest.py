import copy

import pytest

from portfolio_sim.settings import MetaConfig

BASE_CONFIG = {
    "simulation": "dynamic_weights",
    "output_directory": "out",
    "trajectory": {
        "initial_price": 1.0,
        "t_0": 0.0,
        "t_n": 1.0,
        "num_steps": 20,
        "seed": 7,
    },
    "gbm": {"drift": 0.1, "volatility": 0.35},
    "pool": {"fee_basis_points": 30, "weight_x": 0.5},
    "lp": {"x_liquidity": 10.0},
    "block": {"timestep_size": 15},
    "weight_changer": {"target_volatility": 0.15, "update_frequency": 5},
}


@pytest.fixture
def meta_dict(tmp_path):
    """Fresh copy of the base meta configuration, writing under tmp_path."""
    data = copy.deepcopy(BASE_CONFIG)
    data["output_directory"] = str(tmp_path / "out")
    return data


@pytest.fixture
def make_config(meta_dict):
    """
    Build a single direct config from the base one. Keyword arguments update
    sections (dict), replace top-level values, or drop a section (None).
    """
    def _make(**overrides):
        data = copy.deepcopy(meta_dict)
        for key, value in overrides.items():
            if value is None:
                data.pop(key, None)
            elif isinstance(value, dict):
                data.setdefault(key, {}).update(value)
            else:
                data[key] = value
        configs = MetaConfig.from_dict(data).generate()
        assert len(configs) == 1
        return configs[0]

    return _make
