import numpy as np
import pandas as pd
import pytest

from portfolio_sim import agents
from portfolio_sim.agents import AgentKind
from portfolio_sim.contracts import Token
from portfolio_sim.errors import AgentError, ScheduleError
from portfolio_sim.ledger import Ledger
from portfolio_sim.processes import OUParameters, sample
from portfolio_sim.scheduler import STEP_ORDER, VERBOSE_LOG, RunState, Simulation


def test_completed_run(make_config):
    cfg = make_config()
    sim = Simulation(cfg)
    assert sim.run() is RunState.COMPLETED

    result = sim.results()
    assert result["state"] == "completed"
    assert result["ticks"] == 20
    assert list(result["step"]) == list(range(21))
    assert list(result["block"]) == list(range(21))
    assert result["lex_price"][0] == pytest.approx(1.0)
    assert result["pool_price"][0] == pytest.approx(1.0)

    out = sim.output_directory
    assert (out / "events.csv").exists()
    assert (out / "config.yml").exists()
    log = (out / VERBOSE_LOG).read_text()
    assert log.startswith("# Simulation parameters")
    assert "[done] state=completed ticks=20" in log


def test_event_log_covers_lex_and_pool(make_config):
    sim = Simulation(make_config(), verbose=False)
    sim.run()
    events = pd.read_csv(sim.output_directory / "events.csv")

    assert set(events["label"]) == {"lex", "g3m"}
    assert sorted(events.loc[events["event"] == "PriceChange", "step"]) == list(range(1, 21))
    # initialization events are captured at step 0
    init = events[events["step"] == 0]
    assert "Initialized" in set(init["event"])
    assert list(events["log_index"]) == sorted(events["log_index"])
    assert len(events) == sim.results()["num_events"]


def test_step_order(make_config, monkeypatch):
    calls = []
    original = agents.advance_one_step

    def spy(agent, ledger, tick):
        calls.append((tick, agent.kind))
        return original(agent, ledger, tick)

    monkeypatch.setattr(agents, "advance_one_step", spy)
    sim = Simulation(make_config(trajectory={"num_steps": 3}), verbose=False)
    sim.run()

    expected = [(t, kind) for t in (1, 2, 3) for kind in STEP_ORDER]
    assert calls == expected


def test_stepping_past_trajectory_fails(make_config):
    sim = Simulation(make_config(trajectory={"num_steps": 4}), verbose=False)
    sim.initialize()
    for _ in range(4):
        sim.step()
    with pytest.raises(ScheduleError):
        sim.step()
    assert sim.state is RunState.FAILED
    assert isinstance(sim.error, ScheduleError)


def test_step_requires_initialize(make_config):
    sim = Simulation(make_config(), verbose=False)
    with pytest.raises(ScheduleError):
        sim.step()
    sim.initialize()
    with pytest.raises(ScheduleError):
        sim.initialize()


def test_initialization_failure(make_config):
    ledger = Ledger()
    # the token label is taken, so the token admin cannot deploy
    ledger.deploy(Token, "Squatter", "SQ", label=agents.TOKEN_X, sender=ledger.account("someone"))
    sim = Simulation(make_config(), ledger=ledger)
    with pytest.raises(AgentError) as info:
        sim.run()
    assert info.value.label == "token_admin"
    assert sim.state is RunState.FAILED
    assert sim.tick == 0
    assert "[failed]" in (sim.output_directory / VERBOSE_LOG).read_text()


def test_interrupt_during_initialization_cancels(make_config, monkeypatch):
    original = agents.initialize

    def interrupted(agent, ledger):
        if agent.kind is AgentKind.ARBITRAGEUR:
            raise KeyboardInterrupt
        return original(agent, ledger)

    monkeypatch.setattr(agents, "initialize", interrupted)
    sim = Simulation(make_config())
    with pytest.raises(KeyboardInterrupt):
        sim.run()
    assert sim.state is RunState.CANCELLED
    assert sim._log is None
    assert "[done] state=cancelled ticks=0" in (sim.output_directory / VERBOSE_LOG).read_text()


def test_mid_tick_failure_keeps_completed_ticks(make_config, monkeypatch):
    original = agents.advance_one_step

    def flaky(agent, ledger, tick):
        if tick == 3 and agent.kind is AgentKind.ARBITRAGEUR:
            raise RuntimeError("arbitrageur crashed")
        return original(agent, ledger, tick)

    monkeypatch.setattr(agents, "advance_one_step", flaky)
    sim = Simulation(make_config(), verbose=False)
    with pytest.raises(RuntimeError, match="crashed"):
        sim.run()

    assert sim.state is RunState.FAILED
    assert sim.tick == 2
    events = pd.read_csv(sim.output_directory / "events.csv")
    assert events["step"].max() == 2
    assert len(sim.results()["step"]) == 3


def test_cancel_stops_at_tick_boundary(make_config):
    sim = Simulation(make_config(), verbose=False)
    sim.initialize()
    sim.step()
    sim.step()
    sim.cancel()
    assert sim.run() is RunState.CANCELLED
    assert sim.tick == 2
    assert (sim.output_directory / "events.csv").exists()


def test_stable_portfolio_keeps_weight(make_config):
    cfg = make_config(
        simulation="stable_portfolio",
        gbm=None,
        ou={"mean": 1.0, "std_dev": 0.35, "theta": 0.1},
        pool={"weight_x": 0.6},
    )
    sim = Simulation(cfg, verbose=False)
    assert sim.run() is RunState.COMPLETED
    result = sim.results()
    assert np.all(result["weight_x"] == 0.6)
    assert result["rebalance_ticks"] == []


def test_runs_are_reproducible(tmp_path, make_config):
    a = Simulation(make_config(output_directory=str(tmp_path / "a")), verbose=False)
    b = Simulation(make_config(output_directory=str(tmp_path / "b")), verbose=False)
    a.run()
    b.run()
    ra, rb = a.results(), b.results()
    for key in ("lex_price", "pool_price", "weight_x", "reserve_x", "reserve_y"):
        assert np.array_equal(ra[key], rb[key])
    events_a = pd.read_csv(tmp_path / "a" / "events.csv")
    events_b = pd.read_csv(tmp_path / "b" / "events.csv")
    pd.testing.assert_frame_equal(events_a, events_b)


def test_trajectory_length_must_match(make_config):
    cfg = make_config()
    short = sample(OUParameters(1.0, 0.1, 0.1), 1.0, 0.0, 1.0, 10, seed=1)
    with pytest.raises(ScheduleError, match="steps"):
        Simulation(cfg, trajectory=short)
