"""
Error taxonomy for the simulation engine.

Every error raised inside a run aborts that run only; the sweep driver in
`run.py` decides whether a failed run stops the whole sweep.
"""
from __future__ import annotations


class SimulationError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(SimulationError, ValueError):
    """Malformed or contradictory meta/direct configuration."""


class SamplingError(SimulationError, ValueError):
    """Invalid stochastic-process parameters."""


class ScheduleError(SimulationError):
    """An agent was invoked out of contract (e.g. trajectory exhausted)."""


class AgentError(SimulationError):
    """A ledger call issued by an agent failed."""

    def __init__(self, label: str, message: str):
        super().__init__(f"{label}: {message}")
        self.label = label


class RecorderError(SimulationError):
    """The event log could not be flushed."""
