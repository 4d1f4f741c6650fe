"""
Event processor for lock events.

This module turns accepted EthLocked events into relay jobs: a mint of the
wrapped token followed, once the mint is confirmed, by a reward transfer.
Acceptance is filtered through the processed-event ledger and the persisted
set of in-flight relays, so a replayed event never produces a second mint.
"""

import logging
from typing import TYPE_CHECKING, Any

from web3 import Web3

from .models import JobKind, LockEvent, RelayJob
from .utils.state_store import ProcessedEventLedger, RelayStateStore

if TYPE_CHECKING:
    from .tx_sequencer import TransactionSequencer

logger = logging.getLogger(__name__)


STAGE_MINT = "mint"
STAGE_REWARD = "reward"


def compute_reward(amount: int, percent: int = 10) -> int:
    """Reward owed for a lock, in integer smallest units (rounded down)."""
    return amount * percent // 100


def format_ether(amount: int) -> str:
    return f"{Web3.from_wei(amount, 'ether')}"


class EventProcessor:
    """Accepts lock events and chains their mint and reward jobs."""

    REWARD_PERCENT: int = 10

    def __init__(
        self,
        ledger: ProcessedEventLedger,
        store: RelayStateStore,
        sequencer: "TransactionSequencer",
        token: Any,
        reward_token: Any,
        chain_names: dict[int, str] | None = None,
    ) -> None:
        """Initialize the event processor.

        Args:
            ledger: Processed-event ledger checked before accepting an event
            store: Durable store for in-flight relays and dead letters
            sequencer: Transaction queue all jobs are submitted to
            token: Wrapped token contract (mint, balanceOf)
            reward_token: Reward token contract (transfer, balanceOf)
            chain_names: Source chain id to display name
        """
        self.ledger = ledger
        self.store = store
        self.sequencer = sequencer
        self.token = token
        self.reward_token = reward_token
        self.chain_names = chain_names or {}

        self.events_seen = 0
        self.events_accepted = 0
        self.duplicates_skipped = 0
        self.teleports_completed = 0

    def _chain_name(self, chain_id: int) -> str:
        return self.chain_names.get(chain_id, f"Chain {chain_id}")

    async def process_lock_event(self, event: LockEvent) -> RelayJob | None:
        """
        Accept a lock event and queue its mint.

        Args:
            event: Lock event discovered by a source adapter

        Returns:
            The queued mint job, or None if the event was already handled
        """
        self.events_seen += 1
        event_id = event.event_id
        chain_name = self._chain_name(event.source_chain_id)

        if self.ledger.has_processed(event_id):
            logger.info(f"{chain_name}: Skipping already processed event {event_id[:10]}...")
            self.duplicates_skipped += 1
            return None
        if self.store.is_pending(event_id):
            logger.info(f"{chain_name}: Event {event_id[:10]}... is already queued")
            self.duplicates_skipped += 1
            return None

        if event.origin_chain_id != event.source_chain_id:
            logger.warning(
                f"{chain_name}: Event origin chain {event.origin_chain_id} differs "
                f"from source chain {event.source_chain_id}"
            )

        logger.info(
            f"{chain_name}: Detected lock: user={event.user}, "
            f"amount={format_ether(event.amount)} ETH, chain={event.origin_chain_id}"
        )
        logger.info(f"{chain_name}: Transaction hash: {event.tx_hash}")

        # Persist before queueing so a crash cannot lose an accepted event
        self.store.add_pending(event, stage=STAGE_MINT)
        self.events_accepted += 1

        job = self._mint_job(event)
        self.sequencer.enqueue(job)
        return job

    def _mint_job(self, event: LockEvent) -> RelayJob:
        chain_name = self._chain_name(event.source_chain_id)
        event_id = event.event_id

        async def on_success(receipt: Any) -> None:
            await self._on_mint_confirmed(event, receipt)

        async def on_abandon(reason: str) -> None:
            await self._on_abandoned(event, JobKind.MINT, reason)

        # 1:1 mint, both sides use the same decimals
        return RelayJob(
            job_id=f"mint-{event_id[:10]}",
            kind=JobKind.MINT,
            event_id=event_id,
            chain_name=chain_name,
            function=self.token.functions.mint(event.user, event.amount),
            on_success=on_success,
            on_abandon=on_abandon,
        )

    def _reward_job(self, event: LockEvent) -> RelayJob:
        chain_name = self._chain_name(event.source_chain_id)
        event_id = event.event_id
        reward = compute_reward(event.amount, self.REWARD_PERCENT)

        async def on_success(receipt: Any) -> None:
            await self._on_reward_confirmed(event, reward)

        async def on_abandon(reason: str) -> None:
            await self._on_abandoned(event, JobKind.REWARD, reason)

        return RelayJob(
            job_id=f"reward-{event_id[:10]}",
            kind=JobKind.REWARD,
            event_id=event_id,
            chain_name=chain_name,
            function=self.reward_token.functions.transfer(event.user, reward),
            on_success=on_success,
            on_abandon=on_abandon,
        )

    async def _on_mint_confirmed(self, event: LockEvent, receipt: Any) -> None:
        chain_name = self._chain_name(event.source_chain_id)

        # Mark this event as processed to prevent double minting
        self.ledger.mark_processed(event.event_id)
        self.store.set_pending_stage(event.event_id, STAGE_REWARD)
        logger.info(f"{chain_name}: Successfully minted {format_ether(event.amount)} wETH to {event.user}")

        try:
            balance = await self.token.functions.balanceOf(event.user).call()
            logger.info(f"{chain_name}: User {event.user} now has {format_ether(balance)} wETH")
        except Exception as e:
            logger.warning(f"{chain_name}: Could not read wETH balance of {event.user}: {e}")

        self.sequencer.enqueue(self._reward_job(event))

    async def _on_reward_confirmed(self, event: LockEvent, reward: int) -> None:
        chain_name = self._chain_name(event.source_chain_id)
        self.store.remove_pending(event.event_id)
        self.teleports_completed += 1

        try:
            balance = await self.reward_token.functions.balanceOf(event.user).call()
            logger.info(f"{chain_name}: Reward sent successfully. User now has {format_ether(balance)} reward tokens")
        except Exception as e:
            logger.warning(f"{chain_name}: Could not read reward balance of {event.user}: {e}")

        logger.info("CROSS-CHAIN TELEPORT COMPLETED:")
        logger.info(f"   Source: {chain_name} (Chain ID: {event.source_chain_id})")
        logger.info(f"   Amount: {format_ether(event.amount)} ETH -> {format_ether(event.amount)} wETH")
        logger.info(f"   Reward: {format_ether(reward)}")
        logger.info(f"   User: {event.user}")

    async def _on_abandoned(self, event: LockEvent, kind: JobKind, reason: str) -> None:
        chain_name = self._chain_name(event.source_chain_id)
        self.store.add_dead_letter(event.event_id, kind.value, reason)
        self.store.remove_pending(event.event_id)
        logger.error(
            f"{chain_name}: {kind.value} for event {event.event_id[:10]}... abandoned ({reason}); "
            "recorded as dead letter"
        )

    def resume_pending(self) -> int:
        """
        Re-queue relays that were accepted but not finished before a restart.

        Returns:
            Number of jobs queued
        """
        resumed = 0
        for event, stage in self.store.iter_pending():
            chain_name = self._chain_name(event.source_chain_id)
            if stage == STAGE_MINT and not self.ledger.has_processed(event.event_id):
                self.sequencer.enqueue(self._mint_job(event))
            else:
                # Mint confirmed before the restart; only the reward is owed
                if stage == STAGE_MINT:
                    self.store.set_pending_stage(event.event_id, STAGE_REWARD)
                self.sequencer.enqueue(self._reward_job(event))
            logger.info(f"{chain_name}: Resumed {stage} for event {event.event_id[:10]}...")
            resumed += 1
        return resumed

    def get_stats(self) -> dict:
        """
        Get current processor statistics.

        Returns:
            Dictionary with current state metrics
        """
        return {
            "events_seen": self.events_seen,
            "events_accepted": self.events_accepted,
            "duplicates_skipped": self.duplicates_skipped,
            "teleports_completed": self.teleports_completed,
            "processed_events": len(self.ledger),
            "pending_relays": self.store.pending_count(),
            "dead_letters": self.store.dead_letter_count(),
        }
