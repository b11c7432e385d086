"""
Ledger-resident contracts: ERC20-style tokens, the LiquidExchange price oracle and
a geometric-mean market maker (G3M) with a mutable weight.
"""
from __future__ import annotations

import math
from typing import Dict, Tuple

from .ledger import Contract, Revert

MAX_ALLOWANCE = float("inf")


# =============================================================================
# Token
# =============================================================================

class Token(Contract):
    EVENTS = {
        "Transfer": "Transfer(address,address,uint256)",
        "Approval": "Approval(address,address,uint256)",
    }

    def __init__(self, name: str, symbol: str):
        self.name = name
        self.symbol = symbol
        self.balances: Dict[str, float] = {}
        self.allowances: Dict[Tuple[str, str], float] = {}
        self.total_supply = 0.0

    def balance_of(self, owner: str) -> float:
        return self.balances.get(owner, 0.0)

    def allowance(self, owner: str, spender: str) -> float:
        return self.allowances.get((owner, spender), 0.0)

    def mint(self, to: str, amount: float) -> None:
        self.require(self.sender == self.deployer, "only the token admin can mint")
        self.require(amount >= 0, "negative mint")
        self.balances[to] = self.balance_of(to) + amount
        self.total_supply += amount
        self.emit("Transfer", sender="0x0", to=to, amount=amount)

    def approve(self, spender: str, amount: float) -> bool:
        self.require(amount >= 0, "negative approval")
        self.allowances[(self.sender, spender)] = amount
        self.emit("Approval", owner=self.sender, spender=spender, amount=amount)
        return True

    def transfer(self, to: str, amount: float) -> bool:
        self._move(self.sender, to, amount)
        return True

    def transfer_from(self, owner: str, to: str, amount: float) -> bool:
        allowed = self.allowance(owner, self.sender)
        self.require(allowed >= amount, f"allowance {allowed} < {amount}")
        if allowed != MAX_ALLOWANCE:
            self.allowances[(owner, self.sender)] = allowed - amount
        self._move(owner, to, amount)
        return True

    def _move(self, src: str, dst: str, amount: float) -> None:
        self.require(amount >= 0, "negative transfer")
        bal = self.balance_of(src)
        self.require(bal >= amount, f"{self.symbol}: balance {bal} < {amount}")
        self.balances[src] = bal - amount
        self.balances[dst] = self.balance_of(dst) + amount
        self.emit("Transfer", sender=src, to=dst, amount=amount)


# =============================================================================
# LiquidExchange (price oracle with infinite depth at the posted price)
# =============================================================================

class LiquidExchange(Contract):
    """
    Trades X <-> Y at exactly `price` (Y per X). Only the deployer (the price
    changer) can post a new price.
    """
    EVENTS = {
        "PriceChange": "PriceChange(uint256)",
        "Swap": "Swap(address,address,uint256,uint256,address)",
    }

    def __init__(self, token_x: str, token_y: str, price: float):
        self.require(price > 0, "initial price must be positive")
        self.token_x = token_x
        self.token_y = token_y
        self._price = float(price)

    def price(self) -> float:
        return self._price

    def set_price(self, price: float) -> None:
        self.require(self.sender == self.deployer, "only the price admin can set the price")
        self.require(math.isfinite(price) and price > 0, f"invalid price {price}")
        self._price = float(price)
        self.emit("PriceChange", price=self._price)

    def swap(self, token_in: str, amount_in: float) -> float:
        self.require(amount_in > 0, "zero swap")
        if token_in == self.token_x:
            token_out, amount_out = self.token_y, amount_in * self._price
        elif token_in == self.token_y:
            token_out, amount_out = self.token_x, amount_in / self._price
        else:
            raise Revert(f"unknown token {token_in}")
        self.call(token_in, "transfer_from", self.sender, self.address, amount_in)
        self.call(token_out, "transfer", self.sender, amount_out)
        self.emit("Swap", token_in=token_in, amount_in=amount_in,
                  amount_out=amount_out, token_out=token_out, to=self.sender)
        return amount_out


# =============================================================================
# G3M pool
# =============================================================================

class G3M(Contract):
    """
    Two-asset geometric mean market maker.

    Invariant (fee-less):  k = x^{w_x} · y^{w_y},  w_y = 1 - w_x
    Spot price (Y per X):  p = (w_x · y) / (w_y · x)

    Fees are charged on input: only γ·Δin (γ = 1 - fee) moves along the invariant,
    the full Δin is added to reserves. Only the deployer (controller) may change w_x.
    """
    EVENTS = {
        "Initialized": "Initialized(uint256,uint256,uint256)",
        "Swap": "Swap(address,bool,uint256,uint256)",
        "WeightUpdate": "WeightUpdate(uint256,uint256)",
    }

    def __init__(self, token_x: str, token_y: str, weight_x: float, fee: float):
        self.require(0.0 < weight_x < 1.0, f"weight_x must be in (0, 1), got {weight_x}")
        self.require(0.0 <= fee < 1.0, f"fee must be in [0, 1), got {fee}")
        self.token_x = token_x
        self.token_y = token_y
        self.weight_x = float(weight_x)
        self.fee = float(fee)
        self.reserve_x = 0.0
        self.reserve_y = 0.0
        self.initialized = False

    @property
    def weight_y(self) -> float:
        return 1.0 - self.weight_x

    @property
    def gamma(self) -> float:
        return 1.0 - self.fee

    # ----- views -----
    def reserves(self) -> Tuple[float, float]:
        return self.reserve_x, self.reserve_y

    def weights(self) -> Tuple[float, float]:
        return self.weight_x, self.weight_y

    def state(self) -> Dict[str, float]:
        return {
            "reserve_x": self.reserve_x,
            "reserve_y": self.reserve_y,
            "weight_x": self.weight_x,
            "fee": self.fee,
        }

    def spot_price(self) -> float:
        self.require(self.initialized, "pool not initialized")
        return (self.weight_x * self.reserve_y) / (self.weight_y * self.reserve_x)

    def invariant(self) -> float:
        return (self.reserve_x ** self.weight_x) * (self.reserve_y ** self.weight_y)

    def quote_x_for_y(self, amount_in: float) -> float:
        eff = amount_in * self.gamma
        return self.reserve_y * (1.0 - (self.reserve_x / (self.reserve_x + eff)) ** (self.weight_x / self.weight_y))

    def quote_y_for_x(self, amount_in: float) -> float:
        eff = amount_in * self.gamma
        return self.reserve_x * (1.0 - (self.reserve_y / (self.reserve_y + eff)) ** (self.weight_y / self.weight_x))

    # ----- mutations -----
    def init_pool(self, amount_x: float, price: float) -> float:
        """Seed the pool with `amount_x` X and the Y that puts the spot at `price`."""
        self.require(not self.initialized, "pool already initialized")
        self.require(amount_x > 0 and price > 0, "amount and price must be positive")
        amount_y = price * amount_x * self.weight_y / self.weight_x
        self.call(self.token_x, "transfer_from", self.sender, self.address, amount_x)
        self.call(self.token_y, "transfer_from", self.sender, self.address, amount_y)
        self.reserve_x, self.reserve_y = float(amount_x), float(amount_y)
        self.initialized = True
        self.emit("Initialized", reserve_x=self.reserve_x, reserve_y=self.reserve_y, weight_x=self.weight_x)
        return amount_y

    def swap_x_for_y(self, amount_in: float) -> float:
        self.require(self.initialized, "pool not initialized")
        self.require(amount_in > 0, "zero swap")
        amount_out = self.quote_x_for_y(amount_in)
        self.require(0 < amount_out < self.reserve_y, "insufficient output")
        self.call(self.token_x, "transfer_from", self.sender, self.address, amount_in)
        self.call(self.token_y, "transfer", self.sender, amount_out)
        self.reserve_x += amount_in
        self.reserve_y -= amount_out
        self.emit("Swap", trader=self.sender, x_in=True, amount_in=amount_in, amount_out=amount_out)
        return amount_out

    def swap_y_for_x(self, amount_in: float) -> float:
        self.require(self.initialized, "pool not initialized")
        self.require(amount_in > 0, "zero swap")
        amount_out = self.quote_y_for_x(amount_in)
        self.require(0 < amount_out < self.reserve_x, "insufficient output")
        self.call(self.token_y, "transfer_from", self.sender, self.address, amount_in)
        self.call(self.token_x, "transfer", self.sender, amount_out)
        self.reserve_y += amount_in
        self.reserve_x -= amount_out
        self.emit("Swap", trader=self.sender, x_in=False, amount_in=amount_in, amount_out=amount_out)
        return amount_out

    def set_weight_x(self, weight_x: float) -> None:
        self.require(self.sender == self.deployer, "only the controller can set weights")
        self.require(0.0 < weight_x < 1.0, f"weight_x must be in (0, 1), got {weight_x}")
        old = self.weight_x
        self.weight_x = float(weight_x)
        self.emit("WeightUpdate", old_weight_x=old, weight_x=self.weight_x)
