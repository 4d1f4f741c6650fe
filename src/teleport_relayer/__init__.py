"""
Teleport Relayer package.

Multi-chain relay service that mints wrapped tokens on a destination chain
for ETH locked on any of several source chains.
"""

from .config import RelayerConfig
from .event_processor import EventProcessor, compute_reward
from .models import LockEvent, RelayJob
from .relayer import TeleportRelayer
from .scheduler import PollScheduler
from .source_adapter import ChainSourceAdapter
from .tx_sequencer import TransactionSequencer

__all__ = [
    "RelayerConfig",
    "TeleportRelayer",
    "EventProcessor",
    "ChainSourceAdapter",
    "PollScheduler",
    "TransactionSequencer",
    "LockEvent",
    "RelayJob",
    "compute_reward",
]
__version__ = "0.1.0"
