"""
Polling adapter for EthLocked events on one source chain.
"""

import logging
import time
from typing import Any

from web3 import AsyncWeb3
from web3.contract import AsyncContract

from .config import SourceChainConfig
from .models import LockEvent, PollResult
from .utils.rpc_pool import RpcEndpointPool
from .utils.state_store import RelayStateStore


class ChainSourceAdapter:
    """
    Scans one source chain's lock contract for EthLocked events.

    The adapter owns the chain's cursor: the last block whose logs have been
    fetched. ``poll_once`` never raises and never moves the cursor on failure,
    so a failed range is simply retried on the next round.
    """

    EVENT_NAME = "EthLocked"

    def __init__(
        self,
        config: SourceChainConfig,
        abi: list[dict[str, Any]],
        rpc_pool: RpcEndpointPool,
        store: RelayStateStore | None = None,
        max_block_range: int = 2000,
    ):
        """
        Initialize the adapter.

        Args:
            config: Source chain configuration
            abi: Lock contract ABI containing the EthLocked event
            rpc_pool: Ranked RPC endpoints for this chain
            store: Durable cursor storage (optional)
            max_block_range: Largest block span fetched in one query
        """
        if not any(item.get("type") == "event" and item.get("name") == self.EVENT_NAME for item in abi):
            raise ValueError(f"Event {self.EVENT_NAME} not found in contract ABI")

        self.config = config
        self.abi = abi
        self.rpc_pool = rpc_pool
        self.store = store
        self.max_block_range = max_block_range

        self.cursor: int | None = None
        self._checkpointed: int | None = None
        # Events whose hand-off failed; re-delivered before the cursor is persisted
        self._deferred: list[LockEvent] = []
        self._contracts: dict[int, AsyncContract] = {}

        # Connectivity tracking for the status view
        self.connected = False
        self.last_error: str | None = None
        self.last_poll_at: float | None = None

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def chain_id(self) -> int:
        return self.config.chain_id

    def _contract(self, w3: AsyncWeb3) -> AsyncContract:
        key = id(w3)
        if key not in self._contracts:
            self._contracts[key] = w3.eth.contract(
                address=self.config.lock_contract_address,
                abi=self.abi,
            )
        return self._contracts[key]

    def _failed(self, error: str) -> PollResult:
        self.connected = False
        self.last_error = error
        self.logger.error(f"{self.name}: Error polling for events: {error}")
        return PollResult(chain_id=self.chain_id, chain_name=self.name, ok=False, error=error)

    async def _head(self):
        async def fetch(w3: AsyncWeb3) -> int:
            return await w3.eth.block_number
        return await self.rpc_pool.call(fetch, "block number")

    async def initialize(self) -> bool:
        """
        Set the starting cursor: the persisted one when present, otherwise
        the current chain head. History before the first start is not scanned.

        Returns:
            True if the cursor is set
        """
        if self.cursor is not None:
            return True

        if self.store is not None and (saved := self.store.load_cursor(self.chain_id)) is not None:
            self.cursor = self._checkpointed = saved
            self.logger.info(f"{self.name}: Resuming from persisted block {saved}")
            return True

        head = await self._head()
        if not head.ok:
            self._failed(f"cannot read chain head: {head.error}")
            return False

        self.cursor = head.value
        self.connected = True
        self.logger.info(f"{self.name}: Starting to poll from block {self.cursor}")
        return True

    async def poll_once(self) -> PollResult:
        """
        Fetch EthLocked events in (cursor, head], bounded by max_block_range.

        Returns:
            PollResult with events in emission order, or a failed result
        """
        self.last_poll_at = time.time()

        if self.cursor is None:
            if not await self.initialize():
                return PollResult(
                    chain_id=self.chain_id, chain_name=self.name, ok=False, error=self.last_error
                )
            return PollResult(
                chain_id=self.chain_id, chain_name=self.name, ok=True,
                from_block=self.cursor, to_block=self.cursor,
            )

        head = await self._head()
        if not head.ok:
            return self._failed(f"cannot read chain head: {head.error}")

        self.connected = True
        self.last_error = None

        if head.value <= self.cursor:
            return PollResult(
                chain_id=self.chain_id, chain_name=self.name, ok=True,
                from_block=self.cursor, to_block=self.cursor,
            )

        from_block = self.cursor + 1
        to_block = min(head.value, self.cursor + self.max_block_range)
        self.logger.debug(f"{self.name}: Checking for events from block {from_block} to {to_block}")

        async def fetch_logs(w3: AsyncWeb3):
            event = getattr(self._contract(w3).events, self.EVENT_NAME)
            return await event.get_logs(from_block=from_block, to_block=to_block)

        logs = await self.rpc_pool.call(fetch_logs, f"{self.EVENT_NAME} logs")
        if not logs.ok:
            return self._failed(f"cannot fetch logs {from_block}-{to_block}: {logs.error}")

        try:
            ordered = sorted(logs.value, key=lambda e: (e["blockNumber"], e["logIndex"]))
            events = tuple(LockEvent.from_event_data(self.chain_id, e) for e in ordered)
        except (KeyError, TypeError, ValueError) as e:
            return self._failed(f"cannot decode logs {from_block}-{to_block}: {e}")

        if events:
            self.logger.info(f"{self.name}: Found {len(events)} new {self.EVENT_NAME} events!")
        if to_block < head.value:
            self.logger.info(f"{self.name}: Catching up, {head.value - to_block} blocks behind head")

        # Only a fully successful query moves the cursor
        self.cursor = to_block
        return PollResult(
            chain_id=self.chain_id,
            chain_name=self.name,
            ok=True,
            events=events,
            from_block=from_block,
            to_block=to_block,
        )

    def defer_events(self, events: list[LockEvent]) -> None:
        """Keep events the handler failed on until a later round delivers them."""
        self._deferred.extend(events)
        self.logger.warning(f"{self.name}: {len(self._deferred)} event(s) held back, cursor not persisted")

    def take_deferred(self) -> list[LockEvent]:
        deferred, self._deferred = self._deferred, []
        return deferred

    def checkpoint(self) -> None:
        """Persist the cursor once the round's events have been handed off."""
        if self._deferred:
            return
        if self.store is None or self.cursor is None or self.cursor == self._checkpointed:
            return
        self.store.save_cursor(self.chain_id, self.cursor)
        self._checkpointed = self.cursor

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the adapter.

        Returns:
            Dictionary with status information
        """
        return {
            "name": self.name,
            "chain_id": self.chain_id,
            "connected": self.connected,
            "last_scanned_block": self.cursor,
            "deferred_events": len(self._deferred),
            "last_error": self.last_error,
            "last_poll_at": self.last_poll_at,
            "endpoint": self.rpc_pool.last_endpoint,
            "lock_contract": self.config.lock_contract_address,
        }
