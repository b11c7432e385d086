"""
Agent definitions and behavior functions.

The agent set is closed: every participant is an `Agent` record tagged with an
`AgentKind`, and `initialize` / `advance_one_step` branch on the kind in one place.
Agents own their parameters and cursors; everything else lives on the ledger, which
the scheduler passes in on every call.
"""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from .contracts import G3M, MAX_ALLOWANCE, LiquidExchange, Token
from .errors import AgentError, ScheduleError
from .ledger import Ledger, LedgerError
from .utils import EPS_AMOUNT, EPS_PRICE, clamp, realized_volatility

TOKEN_X = "arbx"
TOKEN_Y = "arby"
LEX = "lex"
POOL = "g3m"

# balance minted to every funded account, per token
FUNDING = 1e9


class AgentKind(enum.Enum):
    BLOCK_ADMIN = "block_admin"
    TOKEN_ADMIN = "token_admin"
    PRICE_CHANGER = "price_changer"
    LIQUIDITY_PROVIDER = "liquidity_provider"
    WEIGHT_CHANGER = "weight_changer"
    ARBITRAGEUR = "arbitrageur"


@dataclass
class Agent:
    label: str
    kind: AgentKind
    params: Dict[str, Any] = field(default_factory=dict)
    account: str = ""
    # --- price changer ---
    trajectory: Optional[np.ndarray] = None
    cursor: int = 1               # index 0 is posted at deployment
    # --- weight changer ---
    observed: List[float] = field(default_factory=list)
    rebalance_ticks: List[int] = field(default_factory=list)
    # --- arbitrageur ---
    last_profit: float = 0.0
    cumulative_profit: float = 0.0
    trades: int = 0


# =============================================================================
# Dispatch
# =============================================================================

def initialize(agent: Agent, ledger: Ledger) -> Optional[str]:
    """Run the one-off setup for `agent`. Returns a log line (or None)."""
    agent.account = ledger.account(agent.label)
    kind = agent.kind
    try:
        if kind is AgentKind.BLOCK_ADMIN:
            return None
        elif kind is AgentKind.TOKEN_ADMIN:
            return _init_token_admin(agent, ledger)
        elif kind is AgentKind.PRICE_CHANGER:
            return _init_price_changer(agent, ledger)
        elif kind is AgentKind.WEIGHT_CHANGER:
            return _init_weight_changer(agent, ledger)
        elif kind is AgentKind.LIQUIDITY_PROVIDER:
            return _init_liquidity_provider(agent, ledger)
        elif kind is AgentKind.ARBITRAGEUR:
            return _init_arbitrageur(agent, ledger)
    except LedgerError as exc:
        raise AgentError(agent.label, f"initialize failed: {exc}") from exc
    raise ScheduleError(f"unknown agent kind {kind!r}")


def advance_one_step(agent: Agent, ledger: Ledger, tick: int) -> Optional[str]:
    """
    Run `agent`'s action for scheduler tick `tick` (1-based). Returns a log line
    when the agent acted, None for a no-op.
    """
    kind = agent.kind
    try:
        if kind is AgentKind.BLOCK_ADMIN:
            block = ledger.advance_block(agent.params["timestep_size"])
            return f"block={block.number} ts={block.timestamp}"
        elif kind is AgentKind.PRICE_CHANGER:
            return _step_price_changer(agent, ledger)
        elif kind is AgentKind.WEIGHT_CHANGER:
            return _step_weight_changer(agent, ledger, tick)
        elif kind is AgentKind.ARBITRAGEUR:
            return _step_arbitrageur(agent, ledger)
        elif kind in (AgentKind.TOKEN_ADMIN, AgentKind.LIQUIDITY_PROVIDER):
            return None
    except LedgerError as exc:
        raise AgentError(agent.label, f"step {tick} failed: {exc}") from exc
    raise ScheduleError(f"unknown agent kind {kind!r}")


# =============================================================================
# Initialization
# =============================================================================

def _approve_all(agent: Agent, ledger: Ledger, spender_label: str) -> None:
    spender = ledger.resolve(spender_label).address
    for token in (TOKEN_X, TOKEN_Y):
        ledger.call(ledger.resolve(token), "approve", spender, MAX_ALLOWANCE, sender=agent.account)


def _deploy_pool(agent: Agent, ledger: Ledger) -> str:
    handle = ledger.deploy(
        G3M,
        ledger.resolve(TOKEN_X).address,
        ledger.resolve(TOKEN_Y).address,
        agent.params["weight_x"],
        agent.params["fee"],
        label=POOL,
        sender=agent.account,
    )
    return handle.address


def _init_token_admin(agent: Agent, ledger: Ledger) -> str:
    """Deploy both tokens and fund every account listed in params['fund']."""
    x = ledger.deploy(Token, "Arbiter Token X", TOKEN_X, label=TOKEN_X, sender=agent.account)
    y = ledger.deploy(Token, "Arbiter Token Y", TOKEN_Y, label=TOKEN_Y, sender=agent.account)
    funded = list(agent.params.get("fund", []))
    for label in funded:
        to = ledger.account(label)
        ledger.call(x, "mint", to, FUNDING, sender=agent.account)
        ledger.call(y, "mint", to, FUNDING, sender=agent.account)
    return f"deployed {TOKEN_X}/{TOKEN_Y}, funded {funded}"


def _init_price_changer(agent: Agent, ledger: Ledger) -> str:
    if agent.trajectory is None or len(agent.trajectory) < 2:
        raise ScheduleError("price changer needs a trajectory with at least one step")
    p0 = float(agent.trajectory[0])
    lex = ledger.deploy(
        LiquidExchange,
        ledger.resolve(TOKEN_X).address,
        ledger.resolve(TOKEN_Y).address,
        p0,
        label=LEX,
        sender=agent.account,
    )
    # the lex trades against its own inventory
    for token in (TOKEN_X, TOKEN_Y):
        ledger.call(ledger.resolve(token), "transfer", lex.address, FUNDING, sender=agent.account)
    agent.cursor = 1
    return f"deployed {LEX} at price {p0:.6f}"


def _init_weight_changer(agent: Agent, ledger: Ledger) -> str:
    _deploy_pool(agent, ledger)
    agent.observed = [ledger.view(ledger.resolve(LEX), "price")]
    return f"deployed {POOL} w_x={agent.params['weight_x']:.4f} fee={agent.params['fee']:.4f}"


def _init_liquidity_provider(agent: Agent, ledger: Ledger) -> str:
    if agent.params.get("deploy_pool", False):
        _deploy_pool(agent, ledger)
    _approve_all(agent, ledger, POOL)
    amount_y = ledger.call(
        ledger.resolve(POOL),
        "init_pool",
        agent.params["x_liquidity"],
        agent.params["initial_price"],
        sender=agent.account,
    )
    return f"seeded {POOL} x={agent.params['x_liquidity']:.6f} y={amount_y:.6f}"


def _init_arbitrageur(agent: Agent, ledger: Ledger) -> str:
    _approve_all(agent, ledger, LEX)
    _approve_all(agent, ledger, POOL)
    return f"approved {LEX} and {POOL}"


# =============================================================================
# Per-step behavior
# =============================================================================

def _step_price_changer(agent: Agent, ledger: Ledger) -> str:
    path = agent.trajectory
    if agent.cursor >= len(path):
        raise ScheduleError(
            f"{agent.label}: trajectory exhausted (index {agent.cursor}, length {len(path)})"
        )
    price = max(float(path[agent.cursor]), EPS_PRICE)
    ledger.call(ledger.resolve(LEX), "set_price", price, sender=agent.account)
    agent.cursor += 1
    return f"price -> {price:.6f}"


def _step_weight_changer(agent: Agent, ledger: Ledger, tick: int) -> Optional[str]:
    """
    Observe the oracle every tick; every `update_frequency` ticks set
    w_x = clamp(target_vol / realised_vol, min_weight, max_weight).
    """
    agent.observed.append(ledger.view(ledger.resolve(LEX), "price"))
    k = agent.params["update_frequency"]
    if tick % k != 0:
        return None

    realised = realized_volatility(agent.observed, agent.params["dt"])
    if realised > 0.0:
        target = agent.params["target_volatility"] / realised
    else:
        target = math.inf
    new_weight = clamp(target, agent.params["min_weight"], agent.params["max_weight"])
    ledger.call(ledger.resolve(POOL), "set_weight_x", new_weight, sender=agent.account)
    agent.observed = agent.observed[-1:]
    agent.rebalance_ticks.append(tick)
    return f"rebalance realised_vol={realised:.4f} -> w_x={new_weight:.4f}"


def _target_x_reserve(k: float, price: float, wx: float, wy: float) -> float:
    # on the invariant x^wx y^wy = k with spot p = wx y / (wy x):  x = k / (p wy / wx)^wy
    return k / (price * wy / wx) ** wy


def _step_arbitrageur(agent: Agent, ledger: Ledger) -> Optional[str]:
    """
    Close the gap between pool spot and oracle price when it exceeds the threshold,
    trading the pool onto the fee-adjusted oracle price and unwinding on the lex.
    """
    agent.last_profit = 0.0
    lex, pool = ledger.resolve(LEX), ledger.resolve(POOL)
    p = ledger.view(lex, "price")
    s = ledger.view(pool, "spot_price")
    if abs(s - p) / p <= agent.params["threshold"]:
        return None

    state = ledger.view(pool, "state")
    rx, ry, wx = state["reserve_x"], state["reserve_y"], state["weight_x"]
    wy = 1.0 - wx
    gamma = 1.0 - state["fee"]
    k = (rx ** wx) * (ry ** wy)
    x_addr = ledger.resolve(TOKEN_X).address
    y_addr = ledger.resolve(TOKEN_Y).address

    if s < p:
        # pool cheap: buy X with Y on the pool, sell X on the lex
        rx_t = _target_x_reserve(k, p * gamma, wx, wy)
        ry_t = p * gamma * wy * rx_t / wx
        dy_in = (ry_t - ry) / gamma
        if rx_t >= rx or dy_in <= EPS_AMOUNT:
            return None
        x_out = ledger.call(pool, "swap_y_for_x", dy_in, sender=agent.account)
        y_back = ledger.call(lex, "swap", x_addr, x_out, sender=agent.account)
        profit = y_back - dy_in
        direction = "buy X on pool"
    else:
        # pool rich: buy X on the lex, sell X to the pool
        rx_t = _target_x_reserve(k, p / gamma, wx, wy)
        dx_in = (rx_t - rx) / gamma
        if dx_in <= EPS_AMOUNT:
            return None
        y_cost = dx_in * p
        ledger.call(lex, "swap", y_addr, y_cost, sender=agent.account)
        y_out = ledger.call(pool, "swap_x_for_y", dx_in, sender=agent.account)
        profit = y_out - y_cost
        direction = "sell X to pool"

    agent.last_profit = profit
    agent.cumulative_profit += profit
    agent.trades += 1
    return f"arb {direction} oracle={p:.6f} pool={s:.6f} profit={profit:.6g}"
