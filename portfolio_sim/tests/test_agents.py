import numpy as np
import pytest

from portfolio_sim import agents
from portfolio_sim.agents import LEX, Agent, AgentKind
from portfolio_sim.errors import AgentError, ScheduleError
from portfolio_sim.ledger import Ledger
from portfolio_sim.scheduler import Simulation, build_agents
from portfolio_sim.processes import Trajectory
from portfolio_sim.utils import realized_volatility


def _run(config):
    sim = Simulation(config, verbose=False)
    sim.run()
    return sim


def test_roster_depends_on_simulation_type(make_config):
    dynamic = make_config()
    kinds = [a.kind for a in build_agents(dynamic, Trajectory.from_config(dynamic))]
    assert kinds == [
        AgentKind.BLOCK_ADMIN,
        AgentKind.TOKEN_ADMIN,
        AgentKind.PRICE_CHANGER,
        AgentKind.WEIGHT_CHANGER,
        AgentKind.LIQUIDITY_PROVIDER,
        AgentKind.ARBITRAGEUR,
    ]

    stable = make_config(simulation="stable_portfolio")
    roster = build_agents(stable, Trajectory.from_config(stable))
    assert AgentKind.WEIGHT_CHANGER not in [a.kind for a in roster]
    lp = next(a for a in roster if a.kind is AgentKind.LIQUIDITY_PROVIDER)
    assert lp.params["deploy_pool"] is True


def test_price_changer_stops_at_end_of_trajectory():
    ledger = Ledger()
    admin = Agent("token_admin", AgentKind.TOKEN_ADMIN, params={"fund": ["price_changer"]})
    changer = Agent("price_changer", AgentKind.PRICE_CHANGER, trajectory=np.array([1.0, 1.5]))
    agents.initialize(admin, ledger)
    agents.initialize(changer, ledger)

    agents.advance_one_step(changer, ledger, 1)
    assert ledger.view(ledger.resolve(LEX), "price") == 1.5
    with pytest.raises(ScheduleError, match="exhausted"):
        agents.advance_one_step(changer, ledger, 2)
    assert ledger.view(ledger.resolve(LEX), "price") == 1.5


def test_price_changer_floors_negative_prices():
    ledger = Ledger()
    agents.initialize(Agent("token_admin", AgentKind.TOKEN_ADMIN, params={"fund": ["price_changer"]}), ledger)
    changer = Agent("price_changer", AgentKind.PRICE_CHANGER, trajectory=np.array([1.0, -0.2]))
    agents.initialize(changer, ledger)
    agents.advance_one_step(changer, ledger, 1)
    assert ledger.view(ledger.resolve(LEX), "price") > 0.0


def test_ledger_failures_surface_as_agent_errors():
    ledger = Ledger()
    # pool is never deployed, so the liquidity provider cannot approve it
    agents.initialize(Agent("token_admin", AgentKind.TOKEN_ADMIN, params={"fund": ["lp"]}), ledger)
    lp = Agent("lp", AgentKind.LIQUIDITY_PROVIDER,
               params={"x_liquidity": 1.0, "initial_price": 1.0, "deploy_pool": False})
    with pytest.raises(AgentError) as info:
        agents.initialize(lp, ledger)
    assert info.value.label == "lp"


def test_weight_changer_cadence(make_config):
    sim = _run(make_config(weight_changer={"update_frequency": 5}))
    wc = sim.agent(AgentKind.WEIGHT_CHANGER)
    assert wc.rebalance_ticks == [5, 10, 15, 20]
    weights = sim.results()["weight_x"]
    # weight only moves on rebalance ticks
    changed = [t for t in range(1, len(weights)) if weights[t] != weights[t - 1]]
    assert set(changed) <= {5, 10, 15, 20}


def test_flat_price_pushes_weight_to_max(make_config):
    sim = _run(make_config(gbm={"drift": 0.0, "volatility": 0.0},
                           weight_changer={"update_frequency": 5, "max_weight": 0.9}))
    weights = sim.results()["weight_x"]
    assert weights[4] == 0.5
    assert weights[5] == pytest.approx(0.9)


def test_weight_rule_tracks_target_volatility(make_config):
    cfg = make_config(weight_changer={"update_frequency": 20, "target_volatility": 0.2})
    sim = _run(cfg)
    prices = Trajectory.from_config(cfg).path(0)
    realised = realized_volatility(prices, 1.0 / 20)
    expected = min(max(0.2 / realised, 0.01), 0.99)
    assert sim.results()["weight_x"][-1] == pytest.approx(expected)


def test_arbitrage_keeps_pool_within_fee_band(make_config):
    cfg = make_config(weight_changer={"update_frequency": 1000})
    sim = _run(cfg)
    result = sim.results()
    fee = cfg.pool.fee
    gap = np.abs(result["pool_price"] - result["lex_price"]) / result["lex_price"]
    assert np.all(gap <= fee / (1.0 - fee) + 1e-9)
    assert result["arb_trades"] > 0
    assert np.all(result["arb_profit"] >= -1e-9)


def test_constant_price_means_no_trades(make_config):
    sim = _run(make_config(gbm={"drift": 0.0, "volatility": 0.0},
                           weight_changer={"update_frequency": 1000}))
    result = sim.results()
    assert result["arb_trades"] == 0
    assert np.allclose(result["pool_price"], 1.0)
