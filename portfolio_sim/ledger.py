"""
Deterministic in-process ledger that hosts the simulation's contracts.

The ledger is the single owner of authoritative state. Agents only ever touch it
through `deploy`, `call`, `current_block`, `advance_block` and `subscribe_events`;
they never hold references into contract objects.

Calls execute synchronously. A top-level call that raises is reverted: every
contract's state and every event emitted during the call are rolled back, and the
caller receives a `LedgerError`.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Type

from web3 import Web3


class LedgerError(Exception):
    """A ledger call reverted or referenced something that does not exist."""


class Revert(Exception):
    """Raised by contract code to abort the current call."""


def derive_address(namespace: str, label: str) -> str:
    """Checksummed 20-byte address from keccak(namespace:label)."""
    digest = Web3.keccak(text=f"{namespace}:{label}")
    return Web3.to_checksum_address(Web3.to_hex(digest[-20:]))


def event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


@dataclass(frozen=True)
class Handle:
    label: str
    address: str


@dataclass(frozen=True)
class Block:
    number: int
    timestamp: int


@dataclass(frozen=True)
class Event:
    name: str
    topic: str
    address: str
    label: str
    block: Block
    log_index: int
    payload: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Contract base
# =============================================================================

class Contract:
    """
    Base class for ledger-resident contracts.

    Subclasses declare `EVENTS = {name: solidity-style signature}` and expose public
    methods (no leading underscore) that the ledger dispatches `call`s to. Inside a
    method, `self.sender` is the calling account and `self.block` the current block.
    """
    EVENTS: Dict[str, str] = {}

    _ledger: Optional["Ledger"] = None
    address: str = ""
    label: str = ""
    deployer: str = ""
    sender: str = ""

    @property
    def block(self) -> Block:
        return self._ledger.current_block()

    def require(self, condition: bool, message: str) -> None:
        if not condition:
            raise Revert(message)

    def emit(self, name: str, **payload: Any) -> None:
        if name not in self.EVENTS:
            raise Revert(f"{type(self).__name__} does not declare event {name!r}")
        self._ledger._emit(self, name, payload)

    def call(self, target: str, method: str, *args: Any) -> Any:
        """Call another contract; `sender` on the callee is this contract."""
        return self._ledger._dispatch(target, method, args, {}, sender=self.address)

    def _snapshot(self) -> Dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in vars(self).items() if k != "_ledger"}

    def _restore(self, state: Dict[str, Any]) -> None:
        ledger = self._ledger
        self.__dict__.clear()
        self.__dict__.update(state)
        self._ledger = ledger


# =============================================================================
# Ledger
# =============================================================================

class Ledger:
    def __init__(self, genesis_timestamp: int = 0):
        self._block = Block(number=0, timestamp=int(genesis_timestamp))
        self._contracts: Dict[str, Contract] = {}
        self._handles: Dict[str, Handle] = {}
        self._accounts: Dict[str, str] = {}
        self._events: List[Event] = []
        self._depth = 0

    # ----- accounts & lookup -----
    def account(self, label: str) -> str:
        """Address of the externally owned account named `label` (created on first use)."""
        if label not in self._accounts:
            self._accounts[label] = derive_address("account", label)
        return self._accounts[label]

    def resolve(self, label: str) -> Handle:
        try:
            return self._handles[label]
        except KeyError:
            raise LedgerError(f"No contract deployed under label {label!r}") from None

    def is_deployed(self, label: str) -> bool:
        return label in self._handles

    # ----- blocks -----
    def current_block(self) -> Block:
        return self._block

    def advance_block(self, timestep: int) -> Block:
        if timestep <= 0:
            raise LedgerError(f"timestep must be positive, got {timestep}")
        self._block = Block(number=self._block.number + 1, timestamp=self._block.timestamp + int(timestep))
        return self._block

    # ----- deploy / call -----
    def deploy(self, contract_cls: Type[Contract], *args: Any, label: str, sender: str) -> Handle:
        if label in self._handles:
            raise LedgerError(f"Label {label!r} is already deployed")
        address = derive_address("contract", label)
        snapshot = self._snapshot_all()
        n_events = len(self._events)
        contract = contract_cls.__new__(contract_cls)
        contract._ledger = self
        contract.address = address
        contract.label = label
        contract.deployer = sender
        contract.sender = sender
        self._contracts[address] = contract
        try:
            contract.__init__(*args)
        except Exception as exc:
            del self._contracts[address]
            self._rollback(snapshot, n_events)
            raise LedgerError(f"deploy {contract_cls.__name__} as {label!r} reverted: {exc}") from exc
        handle = Handle(label=label, address=address)
        self._handles[label] = handle
        return handle

    def call(self, handle: Handle, method: str, *args: Any, sender: Optional[str] = None, **kwargs: Any) -> Any:
        """Execute `method` on the contract behind `handle`, reverting on failure."""
        snapshot = self._snapshot_all()
        n_events = len(self._events)
        try:
            return self._dispatch(handle.address, method, args, kwargs, sender=sender or "")
        except LedgerError:
            self._rollback(snapshot, n_events)
            raise
        except Exception as exc:
            self._rollback(snapshot, n_events)
            raise LedgerError(f"{handle.label}.{method} reverted: {exc}") from exc

    def view(self, handle: Handle, method: str, *args: Any) -> Any:
        """Read-only call. Views are not snapshotted, so they must not mutate state."""
        try:
            return self._dispatch(handle.address, method, args, {}, sender="")
        except LedgerError:
            raise
        except Exception as exc:
            raise LedgerError(f"{handle.label}.{method} reverted: {exc}") from exc

    def _dispatch(self, address: str, method: str, args: Tuple, kwargs: Dict, sender: str) -> Any:
        contract = self._contracts.get(address)
        if contract is None:
            raise LedgerError(f"No contract at {address}")
        if method.startswith("_") or not callable(getattr(contract, method, None)):
            raise LedgerError(f"{type(contract).__name__} has no public method {method!r}")
        prev_sender = contract.sender
        contract.sender = sender
        self._depth += 1
        try:
            return getattr(contract, method)(*args, **kwargs)
        finally:
            self._depth -= 1
            contract.sender = prev_sender

    def _snapshot_all(self) -> Dict[str, Dict[str, Any]]:
        return {addr: c._snapshot() for addr, c in self._contracts.items()}

    def _rollback(self, snapshot: Dict[str, Dict[str, Any]], n_events: int) -> None:
        for addr, state in snapshot.items():
            self._contracts[addr]._restore(state)
        del self._events[n_events:]

    # ----- events -----
    def _emit(self, contract: Contract, name: str, payload: Dict[str, Any]) -> None:
        self._events.append(Event(
            name=name,
            topic=event_topic(contract.EVENTS[name]),
            address=contract.address,
            label=contract.label,
            block=self._block,
            log_index=len(self._events),
            payload=dict(payload),
        ))

    def subscribe_events(self, handle: Handle, from_start: bool = True) -> "EventStream":
        """
        Stream of events emitted by `handle`. With `from_start` the stream replays the
        contract's history from deployment, otherwise it starts at the current head.
        """
        if handle.label not in self._handles:
            raise LedgerError(f"Cannot subscribe to unknown contract {handle.label!r}")
        start = 0 if from_start else len(self._events)
        return EventStream(self, handle, start)


class EventStream:
    """Cursor over the ledger log filtered to one contract."""

    def __init__(self, ledger: Ledger, handle: Handle, start: int):
        self._ledger = ledger
        self.handle = handle
        self._cursor = start

    def drain(self) -> List[Event]:
        log = self._ledger._events
        # rolled-back events shrink the log; never read past its end
        self._cursor = min(self._cursor, len(log))
        new = [e for e in log[self._cursor:] if e.address == self.handle.address]
        self._cursor = len(log)
        return new
