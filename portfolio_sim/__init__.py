"""
Agent-based simulation of a dynamic-weight G3M pool driven by a stochastic oracle price.
"""
from . import agents
from . import contracts
from . import errors
from . import ledger
from . import processes
from . import recorder
from . import scheduler
from . import settings

__all__ = ['agents', 'contracts', 'errors', 'ledger', 'processes', 'recorder', 'scheduler', 'settings']
