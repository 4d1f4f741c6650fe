"""
Fixed-interval scheduler polling every source chain concurrently.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from .models import LockEvent, PollResult
from .source_adapter import ChainSourceAdapter

logger = logging.getLogger(__name__)


EventHandler = Callable[[LockEvent], Awaitable[object]]


class PollScheduler:
    """
    Runs poll rounds over all adapters on a fixed interval.

    Each round polls every chain in parallel with its own timeout, so a slow
    or failing chain never delays or fails its siblings. The next round starts
    one interval after the previous round finished; missed rounds are not
    caught up.
    """

    def __init__(
        self,
        adapters: Sequence[ChainSourceAdapter],
        handler: EventHandler,
        interval: float = 15,
        poll_timeout: float = 10,
    ):
        """
        Args:
            adapters: One adapter per source chain
            handler: Awaited for every discovered event, in emission order per chain
            interval: Seconds between the end of a round and the next one
            poll_timeout: Per-chain budget for a single poll
        """
        self.adapters = list(adapters)
        self.handler = handler
        self.interval = interval
        self.poll_timeout = poll_timeout

        self.rounds = 0
        self.running = False
        self._stop_event = asyncio.Event()

    async def _poll(self, adapter: ChainSourceAdapter) -> PollResult:
        try:
            return await asyncio.wait_for(adapter.poll_once(), timeout=self.poll_timeout)
        except asyncio.TimeoutError:
            error = f"poll timed out after {self.poll_timeout}s"
        except Exception as e:
            error = f"unexpected poll failure: {e}"
            logger.error(f"{adapter.name}: {error}", exc_info=True)

        adapter.connected = False
        adapter.last_error = error
        logger.warning(f"{adapter.name}: {error}; cursor stays at {adapter.cursor}")
        return PollResult(chain_id=adapter.chain_id, chain_name=adapter.name, ok=False, error=error)

    async def _deliver(self, adapter: ChainSourceAdapter, result: PollResult) -> None:
        # Events held back by an earlier round go first, keeping emission order
        backlog = adapter.take_deferred()
        if backlog:
            logger.info(f"{adapter.name}: Re-delivering {len(backlog)} held back event(s)")

        failed: list[LockEvent] = []
        for event in (*backlog, *result.events):
            try:
                await self.handler(event)
            except Exception as e:
                failed.append(event)
                logger.error(
                    f"{adapter.name}: Failed to hand off event {event.tx_hash}#{event.log_index}: {e}",
                    exc_info=True,
                )

        # The persisted cursor only moves once every event is safely recorded
        if failed:
            adapter.defer_events(failed)
        else:
            adapter.checkpoint()

    async def run_round(self) -> list[PollResult]:
        """
        Poll all chains once and hand discovered events to the handler.

        Returns:
            One PollResult per adapter, in adapter order
        """
        self.rounds += 1
        logger.debug(f"Polling {len(self.adapters)} chains in parallel (round {self.rounds})")

        results = await asyncio.gather(*(self._poll(adapter) for adapter in self.adapters))

        for adapter, result in zip(self.adapters, results):
            await self._deliver(adapter, result)

        failed = [r.chain_name for r in results if not r.ok]
        if failed:
            logger.warning(f"Round {self.rounds}: {len(failed)} chain(s) failed: {', '.join(failed)}")
        return results

    async def run(self) -> None:
        """Run rounds until stopped. A stop takes effect between rounds."""
        self.running = True
        logger.info(f"Starting poll scheduler for {len(self.adapters)} chains every {self.interval} seconds")
        try:
            while not self._stop_event.is_set():
                await self.run_round()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass  # Next round
        finally:
            self.running = False
            logger.info("Poll scheduler stopped")

    def stop(self) -> None:
        """Stop scheduling new rounds."""
        self._stop_event.set()
