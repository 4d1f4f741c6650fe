"""
Shared data models for the Teleport Relayer.

This module contains data classes and types used across the relayer components.
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from web3 import Web3


@dataclass(frozen=True, slots=True)
class LockEvent:
    """Represents an EthLocked event observed on a source chain.

    Attributes:
        source_chain_id: Chain the event was read from
        user: Beneficiary address that locked funds
        amount: Locked amount in the smallest unit
        origin_chain_id: Chain id as emitted by the lock contract
        tx_hash: Transaction hash (0x-prefixed, lowercase)
        log_index: Position of the log within its block
        block_number: Block the event was emitted in
    """
    source_chain_id: int
    user: str
    amount: int
    origin_chain_id: int
    tx_hash: str
    log_index: int
    block_number: int

    @property
    def event_id(self) -> str:
        """Deduplication key derived only from on-chain coordinates."""
        return Web3.to_hex(
            Web3.keccak(text=f"{self.source_chain_id}-{self.tx_hash}-{self.log_index}")
        )

    @classmethod
    def from_event_data(cls, source_chain_id: int, event: Mapping[str, Any]) -> "LockEvent":
        """
        Decode a web3 EventData entry for EthLocked.

        Args:
            source_chain_id: Chain the log was fetched from
            event: Decoded log as returned by ``get_logs``

        Returns:
            LockEvent with a normalized transaction hash
        """
        args: Mapping[str, Any] = event["args"]
        match event["transactionHash"]:
            case bytes() as raw_hash:
                tx_hash = Web3.to_hex(raw_hash)
            case str() as hex_hash:
                tx_hash = hex_hash if hex_hash.startswith("0x") else "0x" + hex_hash
            case other:
                raise ValueError(f"Unexpected transaction hash type: {type(other)}")

        return cls(
            source_chain_id=source_chain_id,
            user=Web3.to_checksum_address(args["user"]),
            amount=int(args["amount"]),
            origin_chain_id=int(args["originChainId"]),
            tx_hash=tx_hash.lower(),
            log_index=int(event["logIndex"]),
            block_number=int(event["blockNumber"]),
        )

    def to_dict(self) -> dict[str, Any]:
        """Plain dict form used for persistence."""
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "LockEvent":
        """Rebuild an event persisted with ``to_dict``."""
        return cls(**raw)


@dataclass(frozen=True, slots=True)
class PollResult:
    """Outcome of one poll of a source chain.

    A failed result carries the error text and leaves the cursor untouched.
    """
    chain_id: int
    chain_name: str
    ok: bool
    events: tuple[LockEvent, ...] = ()
    from_block: int | None = None
    to_block: int | None = None
    error: str | None = None


class JobKind(Enum):
    """Destination-chain call carried by a relay job."""
    MINT = "mint"
    REWARD = "reward"


class SubmissionErrorKind(Enum):
    """How the sequencer reacts to a failed submission."""
    NONCE_CONFLICT = "nonce_conflict"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    RETRYABLE = "retryable"


SuccessCallback = Callable[[Any], Awaitable[None]]
AbandonCallback = Callable[[str], Awaitable[None]]


@dataclass(slots=True)
class RelayJob:
    """A single destination-chain call waiting in the transaction queue.

    Attributes:
        job_id: Human-readable identifier used in logs
        kind: Mint or reward
        event_id: EventId of the lock event this job relays
        chain_name: Source chain name, for log prefixes
        function: Contract call exposing ``build_transaction(params)``
        on_success: Awaited with the receipt once the call is confirmed
        on_abandon: Awaited with a reason when the job is given up
        attempts: Submission attempts made so far
        last_tx_hash: Broadcast still awaiting its receipt, if any
        last_nonce: Nonce of the most recent broadcast
        replace_nonce: Reuse last_nonce on the next send, set when a broadcast was dropped
        broadcast_hashes: Every transaction hash sent for this job
    """
    job_id: str
    kind: JobKind
    event_id: str
    chain_name: str
    function: Any
    on_success: SuccessCallback | None = None
    on_abandon: AbandonCallback | None = None
    attempts: int = 0
    last_tx_hash: str | None = None
    last_nonce: int | None = None
    replace_nonce: bool = False
    broadcast_hashes: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class DeadLetter:
    """A relay job that was abandoned and needs operator attention."""
    event_id: str
    kind: str
    reason: str
    recorded_at: float
