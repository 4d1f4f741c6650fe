"""
Teleport Relayer implementation.

This module contains the main relayer service that wires the source chain
adapters, the poll scheduler, the event processor and the destination
transaction sequencer together and manages their lifecycle.
"""

import asyncio
import logging
from typing import Any

from .config import RelayerConfig
from .event_processor import EventProcessor, format_ether
from .scheduler import PollScheduler
from .source_adapter import ChainSourceAdapter
from .tx_sequencer import TransactionSequencer
from .utils.contract_utility import ContractUtility
from .utils.rpc_pool import RpcEndpointPool, disconnect, ensure_connected
from .utils.state_store import ProcessedEventLedger, RelayStateStore

logger = logging.getLogger(__name__)


class TeleportRelayer:
    """
    Main relayer service that orchestrates polling, acceptance and submission.

    This class focuses on coordination and lifecycle management, delegating
    event acceptance to the EventProcessor and all destination-chain writes to
    the TransactionSequencer.
    """

    STATUS_LOG_INTERVAL = 30  # seconds

    def __init__(self, config: RelayerConfig):
        """
        Initialize the Teleport Relayer.

        Args:
            config: Relayer configuration
        """
        self.config = config
        self.running = False

        # Initialize utilities
        self._init_utilities()

        # Initialize components
        self.event_processor = EventProcessor(
            ledger=self.ledger,
            store=self.store,
            sequencer=self.sequencer,
            token=self.token,
            reward_token=self.reward_token,
            chain_names={chain.chain_id: chain.name for chain in config.source_chains},
        )
        self.scheduler = PollScheduler(
            adapters=self.adapters,
            handler=self.event_processor.process_lock_event,
            interval=config.monitoring.polling_interval,
            poll_timeout=config.monitoring.poll_timeout,
        )

        # Async coordination
        self.shutdown_event = asyncio.Event()

    def _init_utilities(self) -> None:
        """
        Initialize state, destination contracts, the sequencer and one
        adapter per source chain.
        """
        monitoring = self.config.monitoring

        self.store = RelayStateStore(self.config.state_path)
        self.ledger = ProcessedEventLedger(self.store)

        self.contract_util = ContractUtility(
            rpc_url=self.config.destination.rpc_url,
            secret=self.config.destination.private_key,
            request_timeout=monitoring.request_timeout,
        )
        self.token = self.contract_util.get_contract("WrappedToken", self.config.destination.token_address)
        self.reward_token = self.contract_util.get_contract(
            "RewardToken", self.config.destination.reward_token_address
        )

        self.sequencer = TransactionSequencer(
            w3=self.contract_util.w3,
            account=self.contract_util.account,
            receipt_timeout=monitoring.receipt_timeout,
            retry_backoff=monitoring.retry_backoff,
            max_retry_backoff=monitoring.max_retry_backoff,
            funds_cooldown=monitoring.funds_cooldown,
            max_job_attempts=monitoring.max_job_attempts,
        )

        lock_abi = self.contract_util.get_contract_abi("LockContract")
        self.adapters = [
            ChainSourceAdapter(
                config=chain,
                abi=lock_abi,
                rpc_pool=RpcEndpointPool(chain.name, chain.rpc_urls, monitoring.request_timeout),
                store=self.store,
                max_block_range=monitoring.max_block_range,
            )
            for chain in self.config.source_chains
        ]

        logger.info(f"Relayer address: {self.sequencer.address}")

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "TeleportRelayer":
        """
        Create a TeleportRelayer instance from environment variables.

        Args:
            env_file: Optional .env file to load first

        Returns:
            Configured TeleportRelayer instance

        Raises:
            ValueError: If required environment variables are missing
        """
        config = RelayerConfig.from_env(env_file)
        config.log_config()
        return cls(config)

    async def _log_destination_contracts(self) -> None:
        """Log token metadata and signer balances; diagnostic only."""
        address = self.sequencer.address
        try:
            await ensure_connected(self.contract_util.w3)
            name = await self.token.functions.name().call()
            symbol = await self.token.functions.symbol().call()
            decimals = await self.token.functions.decimals().call()
            logger.info(f"Connected to destination token contract: {name} ({symbol}) with {decimals} decimals")

            reward_name = await self.reward_token.functions.name().call()
            reward_symbol = await self.reward_token.functions.symbol().call()
            logger.info(f"Connected to reward token contract: {reward_name} ({reward_symbol})")

            balances = await self.signer_balances()
            logger.info(f"Relayer native balance: {format_ether(balances['native'])} ETH")
            logger.info(f"Relayer reward balance: {format_ether(balances['reward_token'])} {reward_symbol}")
        except Exception as e:
            logger.warning(f"Could not read destination contract details for {address}: {e}")

    async def initialize(self) -> None:
        """Prepare cursors and re-queue relays left unfinished by a previous run."""
        await self._log_destination_contracts()

        results = await asyncio.gather(*(adapter.initialize() for adapter in self.adapters))
        for adapter, ok in zip(self.adapters, results):
            if not ok:
                logger.warning(f"{adapter.name}: Not reachable at startup, will retry on the next round")

        if resumed := self.event_processor.resume_pending():
            logger.info(f"Re-queued {resumed} unfinished relay jobs from the previous run")

    async def signer_balances(self) -> dict[str, int]:
        """Native and reward token balances of the relayer signer."""
        address = self.sequencer.address
        native = await self.contract_util.w3.eth.get_balance(address)
        reward = await self.reward_token.functions.balanceOf(address).call()
        return {"native": int(native), "reward_token": int(reward)}

    async def get_status(self) -> dict[str, Any]:
        """
        Read-only health view for an operational dashboard.

        Returns:
            Per-chain adapter status, signer balances and queue state
        """
        try:
            balances: dict[str, Any] = await self.signer_balances()
            balances["error"] = None
        except Exception as e:
            balances = {"native": None, "reward_token": None, "error": str(e)}

        return {
            "running": self.running,
            "chains": [adapter.get_status() for adapter in self.adapters],
            "signer": {"address": self.sequencer.address, **balances},
            "queue": self.sequencer.get_status(),
            "relays": self.event_processor.get_stats(),
            "poll_rounds": self.scheduler.rounds,
        }

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            stats = self.event_processor.get_stats()
            connected = sum(1 for adapter in self.adapters if adapter.connected)
            logger.info(
                f"Status: {connected}/{len(self.adapters)} chains connected, "
                f"{self.sequencer.queue_depth} jobs queued, "
                f"{stats['processed_events']} processed, "
                f"{stats['pending_relays']} pending, "
                f"{stats['dead_letters']} dead letters"
            )

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed."""
        for name, task in tasks.items():
            if task.done() and name != "status":  # status task can end normally
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Stop workers between units of work, then clean up tasks."""
        self.scheduler.stop()
        self.sequencer.stop()

        for name in ("scheduler", "sequencer"):
            if (task := tasks.get(name)) and not task.done():
                try:
                    # Workers finish their current submission before exiting
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed during shutdown: {e}", exc_info=True)

        for task in tasks.values():
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass  # Expected when cancelling

        await self._close_connections()
        self.store.close()

    async def _close_connections(self) -> None:
        for adapter in self.adapters:
            await adapter.rpc_pool.close()
        try:
            await disconnect(self.contract_util.w3)
        except Exception as e:
            logger.warning(f"Could not close destination connection: {e}")

    async def run(self) -> None:
        """Main event loop for the relayer service."""
        self.running = True
        logger.info("Multi-Chain ETH Teleportation Relayer starting...")
        logger.info(f"Monitoring {len(self.adapters)} chains for ETH lock events")
        logger.info(f"Polling interval: {self.config.monitoring.polling_interval}s")

        tasks: dict[str, asyncio.Task] = {}
        try:
            await self.initialize()

            tasks = {
                "sequencer": asyncio.create_task(self.sequencer.run()),
                "scheduler": asyncio.create_task(self.scheduler.run()),
                "status": asyncio.create_task(self._periodic_status_logger()),
            }

            logger.info("Relayer listening for EthLocked events on multiple chains...")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass  # Continue running

                if not await self._check_task_health(tasks):
                    logger.error("Critical task failure, shutting down")
                    raise RuntimeError("Critical relayer task stopped unexpectedly")

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._cleanup_tasks(tasks)
            logger.info("Teleport Relayer stopped")

    def stop(self) -> None:
        """Stop the relayer service between rounds and between submissions."""
        self.running = False
        self.shutdown_event.set()
