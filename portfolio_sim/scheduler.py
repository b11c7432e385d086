"""
Discrete-step scheduler: one `Simulation` per direct configuration.

Lifecycle:  CREATED -> INITIALIZING -> STEPPING -> COMPLETED
            (any state) -> FAILED     on an error, error kept in `self.error`
            STEPPING -> CANCELLED      on cancel() / KeyboardInterrupt

Each tick runs, in this order:
  1. block admin advances the block (clock before any price-dependent logic)
  2. price changer posts trajectory value `tick`
  3. arbitrageur reacts to the new price
  4. weight changer (acts every `update_frequency` ticks, no-op otherwise)
  5. recorder drains the events emitted during the tick
"""
from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

import numpy as np

from . import agents as agent_mod
from .agents import LEX, POOL, Agent, AgentKind
from .errors import ScheduleError, SimulationError
from .ledger import Ledger
from .processes import Trajectory
from .recorder import EventRecorder
from .settings import SimulationConfig, SimulationType

VERBOSE_LOG = "verbose_steps.txt"

# declared initialization order (admins first)
INIT_ORDER = [
    AgentKind.BLOCK_ADMIN,
    AgentKind.TOKEN_ADMIN,
    AgentKind.PRICE_CHANGER,
    AgentKind.WEIGHT_CHANGER,
    AgentKind.LIQUIDITY_PROVIDER,
    AgentKind.ARBITRAGEUR,
]

# per-tick order
STEP_ORDER = [
    AgentKind.BLOCK_ADMIN,
    AgentKind.PRICE_CHANGER,
    AgentKind.ARBITRAGEUR,
    AgentKind.WEIGHT_CHANGER,
]


class RunState(enum.Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    STEPPING = "stepping"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def build_agents(config: SimulationConfig, trajectory: Trajectory) -> List[Agent]:
    """Instantiate the agent set for `config.simulation`, in INIT_ORDER."""
    stable = config.simulation is SimulationType.STABLE_PORTFOLIO
    pool_params = {"weight_x": config.pool.weight_x, "fee": config.pool.fee}

    roster = [
        Agent("block_admin", AgentKind.BLOCK_ADMIN,
              params={"timestep_size": config.block.timestep_size}),
        Agent("token_admin", AgentKind.TOKEN_ADMIN,
              params={"fund": ["price_changer", "liquidity_provider", "arbitrageur"]}),
        Agent("price_changer", AgentKind.PRICE_CHANGER,
              trajectory=trajectory.path(0)),
    ]
    if not stable:
        roster.append(Agent("weight_changer", AgentKind.WEIGHT_CHANGER, params={
            **pool_params,
            "target_volatility": config.weight_changer.target_volatility,
            "update_frequency": config.weight_changer.update_frequency,
            "min_weight": config.weight_changer.min_weight,
            "max_weight": config.weight_changer.max_weight,
            "dt": (config.trajectory.t_n - config.trajectory.t_0) / config.trajectory.num_steps,
        }))
    roster.append(Agent("liquidity_provider", AgentKind.LIQUIDITY_PROVIDER, params={
        **pool_params,
        "deploy_pool": stable,
        "x_liquidity": config.lp.x_liquidity,
        "initial_price": config.trajectory.initial_price,
    }))
    roster.append(Agent("arbitrageur", AgentKind.ARBITRAGEUR,
                        params={"threshold": config.arbitrage_threshold}))

    roster.sort(key=lambda a: INIT_ORDER.index(a.kind))
    return roster


class Simulation:
    def __init__(
        self,
        config: SimulationConfig,
        ledger: Optional[Ledger] = None,
        trajectory: Optional[Trajectory] = None,
        verbose: bool = True,
    ):
        self.config = config
        self.ledger = ledger if ledger is not None else Ledger()
        self.trajectory = trajectory if trajectory is not None else Trajectory.from_config(config)
        if self.trajectory.num_steps != config.trajectory.num_steps:
            raise ScheduleError(
                f"trajectory has {self.trajectory.num_steps} steps, config expects {config.trajectory.num_steps}"
            )
        self.agents: List[Agent] = build_agents(config, self.trajectory)
        self.output_directory = Path(config.output_directory)
        self.recorder = EventRecorder(self.output_directory, provenance=config.to_dict())
        self.state = RunState.CREATED
        self.error: Optional[BaseException] = None
        self.tick = 0
        self._cancel_requested = False
        self._verbose = verbose
        self._log: Optional[TextIO] = None
        self.history: Dict[str, List[float]] = {
            "step": [], "block": [], "lex_price": [], "pool_price": [],
            "weight_x": [], "reserve_x": [], "reserve_y": [], "arb_profit": [],
        }

    # ----- lookup -----
    def agent(self, kind: AgentKind) -> Optional[Agent]:
        for a in self.agents:
            if a.kind is kind:
                return a
        return None

    @property
    def num_steps(self) -> int:
        return self.config.trajectory.num_steps

    # ----- logging -----
    def _open_log(self) -> None:
        if not self._verbose or self._log is not None:
            return
        self.output_directory.mkdir(parents=True, exist_ok=True)
        self._log = open(self.output_directory / VERBOSE_LOG, "w")
        self._log.write("# Simulation parameters\n")
        for section, values in self.config.to_dict().items():
            self._log.write(f"{section} = {values}\n")
        self._log.write("\n")

    def _write(self, line: str) -> None:
        if self._log is not None:
            self._log.write(line + "\n")

    def _close_log(self) -> None:
        if self._log is not None:
            self._log.close()
            self._log = None

    # ----- lifecycle -----
    def initialize(self) -> None:
        if self.state is not RunState.CREATED:
            raise ScheduleError(f"initialize() called in state {self.state.value}")
        self.state = RunState.INITIALIZING
        self._open_log()
        try:
            for a in self.agents:
                msg = agent_mod.initialize(a, self.ledger)
                if msg:
                    self._write(f"[init] {a.label}: {msg}")
            for label in (LEX, POOL):
                self.recorder.add(label, self.ledger.subscribe_events(self.ledger.resolve(label)))
            self.recorder.drain(0)
            self._record(0)
        except Exception as exc:
            self._fail(exc)
            raise
        self.state = RunState.STEPPING

    def step(self) -> None:
        """Advance one tick, in STEP_ORDER, then drain the recorder."""
        if self.state is not RunState.STEPPING:
            raise ScheduleError(f"step() called in state {self.state.value}")
        tick = self.tick + 1
        try:
            for kind in STEP_ORDER:
                a = self.agent(kind)
                if a is None:
                    continue
                msg = agent_mod.advance_one_step(a, self.ledger, tick)
                if msg:
                    self._write(f"[t={tick:03d}] {a.label}: {msg}")
            self.recorder.drain(tick)
            self._record(tick)
        except Exception as exc:
            self._fail(exc)
            raise
        self.tick = tick

    def cancel(self) -> None:
        """Stop at the next tick boundary."""
        self._cancel_requested = True

    def run(self) -> RunState:
        """initialize, `num_steps` ticks, flush. Returns the final state."""
        try:
            if self.state is RunState.CREATED:
                self.initialize()
            while self.tick < self.num_steps:
                if self._cancel_requested:
                    self._finish(RunState.CANCELLED)
                    return self.state
                self.step()
        except KeyboardInterrupt:
            self._finish(RunState.CANCELLED)
            raise
        self._finish(RunState.COMPLETED)
        return self.state

    # ----- internals -----
    def _record(self, tick: int) -> None:
        ledger = self.ledger
        pool = ledger.view(ledger.resolve(POOL), "state")
        arb = self.agent(AgentKind.ARBITRAGEUR)
        h = self.history
        h["step"].append(tick)
        h["block"].append(ledger.current_block().number)
        h["lex_price"].append(ledger.view(ledger.resolve(LEX), "price"))
        h["pool_price"].append(ledger.view(ledger.resolve(POOL), "spot_price"))
        h["weight_x"].append(pool["weight_x"])
        h["reserve_x"].append(pool["reserve_x"])
        h["reserve_y"].append(pool["reserve_y"])
        h["arb_profit"].append(arb.last_profit if (arb is not None and tick > 0) else 0.0)

    def _finish(self, state: RunState) -> None:
        try:
            self.recorder.flush()
        except SimulationError as exc:
            self._fail(exc)
            raise
        self._write(f"[done] state={state.value} ticks={self.tick} events={len(self.recorder)}")
        self._close_log()
        self.state = state

    def _fail(self, exc: BaseException) -> None:
        self.error = exc
        self.state = RunState.FAILED
        self._write(f"[failed] tick={self.tick + 1}: {exc}")
        try:
            # keep whatever completed before the failure
            self.recorder.flush()
        except SimulationError as flush_exc:
            self._write(f"[failed] flush: {flush_exc}")
        finally:
            self._close_log()

    def results(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {k: np.asarray(v) for k, v in self.history.items()}
        arb = self.agent(AgentKind.ARBITRAGEUR)
        wc = self.agent(AgentKind.WEIGHT_CHANGER)
        out.update({
            "state": self.state.value,
            "error": None if self.error is None else str(self.error),
            "ticks": self.tick,
            "output_directory": str(self.output_directory),
            "num_events": len(self.recorder),
            "arb_trades": 0 if arb is None else arb.trades,
            "arb_cumulative_profit": 0.0 if arb is None else arb.cumulative_profit,
            "rebalance_ticks": [] if wc is None else list(wc.rebalance_ticks),
        })
        return out
