"""
Transaction queue and nonce sequencer for the destination chain.

All destination-chain writes from the relayer's signing key go through a
single TransactionSequencer. Jobs are executed strictly one at a time: the
next job is not built until the previous one has a receipt, so every
transaction gets the next nonce and no two submissions race each other.
"""

import asyncio
import logging
import time
from typing import Any

from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.exceptions import TimeExhausted, TransactionNotFound
from web3.types import TxReceipt

from .models import RelayJob, SubmissionErrorKind
from .utils.rpc_pool import ensure_connected

logger = logging.getLogger(__name__)


NONCE_CONFLICT_MARKERS = ("nonce too low", "already known")
INSUFFICIENT_FUNDS_MARKERS = ("insufficient funds",)


def classify_submission_error(error: BaseException) -> SubmissionErrorKind:
    """
    Map a submission error to the sequencer's reaction.

    Args:
        error: Exception raised while building, sending or confirming a job

    Returns:
        SubmissionErrorKind for the error
    """
    message = str(error).lower()
    if any(marker in message for marker in NONCE_CONFLICT_MARKERS):
        return SubmissionErrorKind.NONCE_CONFLICT
    if any(marker in message for marker in INSUFFICIENT_FUNDS_MARKERS):
        return SubmissionErrorKind.INSUFFICIENT_FUNDS
    return SubmissionErrorKind.RETRYABLE


class TransactionReverted(Exception):
    """A mined transaction reported status 0."""

    def __init__(self, tx_hash: str, receipt: Any):
        super().__init__(f"Transaction {tx_hash} reverted in block {receipt.get('blockNumber')}")
        self.tx_hash = tx_hash
        self.receipt = receipt


class TransactionStillPending(Exception):
    """An earlier broadcast of the job has not been mined yet."""


class TransactionSequencer:
    """
    Single-key, single-destination submission pipeline.

    Other components only call ``enqueue``; the queue itself is owned by the
    worker started with ``run``. One sequencer must exist per
    (destination chain, signing key) pair.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        account: LocalAccount,
        receipt_timeout: float = 120,
        retry_backoff: float = 5.0,
        max_retry_backoff: float = 60.0,
        funds_cooldown: float = 30.0,
        max_job_attempts: int = 10,
    ):
        """
        Initialize the sequencer.

        Args:
            w3: Destination chain client
            account: Local signing account
            receipt_timeout: Seconds to wait for each receipt
            retry_backoff: Base delay after a retryable failure
            max_retry_backoff: Upper bound for the exponential backoff
            funds_cooldown: Queue pause after an insufficient funds error
            max_job_attempts: Retryable attempts before a job is abandoned, 0 for no limit
        """
        self.w3 = w3
        self.account = account
        self.receipt_timeout = receipt_timeout
        self.retry_backoff = retry_backoff
        self.max_retry_backoff = max_retry_backoff
        self.funds_cooldown = funds_cooldown
        self.max_job_attempts = max_job_attempts

        self._queue: asyncio.Queue[RelayJob] = asyncio.Queue()
        self._stop_event = asyncio.Event()
        self.current_job: RelayJob | None = None
        self.running = False

        # Signer state
        self.next_nonce: int | None = None
        self.paused_until: float | None = None

        # Counters for the status view
        self.confirmed = 0
        self.dropped = 0
        self.abandoned = 0

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def queue_depth(self) -> int:
        """Jobs waiting plus the one being executed."""
        return self._queue.qsize() + (1 if self.current_job is not None else 0)

    def enqueue(self, job: RelayJob) -> None:
        """Append a job to the queue without blocking."""
        self._queue.put_nowait(job)
        logger.debug(f"{job.chain_name}: Queued {job.job_id} (depth {self.queue_depth})")

    async def _sleep(self, seconds: float) -> bool:
        """Wait unless stopped. Returns True if a stop was requested."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _next_job(self) -> RelayJob | None:
        getter = asyncio.ensure_future(self._queue.get())
        stopper = asyncio.ensure_future(self._stop_event.wait())
        done, pending = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        if getter in done:
            return getter.result()
        return None

    async def run(self) -> None:
        """Drain the queue until stopped. Stops only between submissions."""
        self.running = True
        logger.info(f"Transaction sequencer started for signer {self.address}")
        try:
            while not self._stop_event.is_set():
                job = await self._next_job()
                if job is None:
                    break
                self.current_job = job
                try:
                    await self._execute(job)
                finally:
                    self.current_job = None
                    self._queue.task_done()
        finally:
            self.running = False
            logger.info(f"Transaction sequencer stopped with {self._queue.qsize()} jobs queued")

    def stop(self) -> None:
        """Request the worker to stop after the current submission."""
        self._stop_event.set()

    async def drain(self) -> None:
        """Wait until every queued job, including chained ones, has finished."""
        await self._queue.join()

    async def _execute(self, job: RelayJob) -> None:
        while True:
            try:
                receipt = await self._submit(job)
            except TransactionStillPending as e:
                # Not a failure: the broadcast may still be mined, so it is never counted or abandoned
                logger.info(f"{job.chain_name}: {e}, waiting again for {job.job_id}")
                if await self._sleep(self.retry_backoff):
                    return
                continue
            except Exception as e:
                kind = classify_submission_error(e)
                if not await self._handle_failure(job, kind, e):
                    return
                continue

            await self._complete(job, receipt)
            return

    async def _complete(self, job: RelayJob, receipt: TxReceipt) -> None:
        self.confirmed += 1
        if job.on_success is None:
            return
        try:
            await job.on_success(receipt)
        except Exception as e:
            # The transaction is final; never resubmit because of a callback error
            logger.error(f"{job.chain_name}: Success callback for {job.job_id} failed: {e}", exc_info=True)

    async def _handle_failure(self, job: RelayJob, kind: SubmissionErrorKind, error: Exception) -> bool:
        """
        React to a failed attempt.

        Returns:
            True to retry the same job, False to move on
        """
        logger.error(f"{job.chain_name}: Transaction {job.job_id} failed ({kind.value}): {error}")

        match kind:
            case SubmissionErrorKind.NONCE_CONFLICT:
                receipt = await self._confirmed_previous(job)
                if receipt is not None:
                    logger.info(f"{job.chain_name}: Earlier broadcast of {job.job_id} is confirmed")
                    await self._complete(job, receipt)
                    return False

                logger.warning(
                    f"{job.chain_name}: Skipping {job.job_id} due to nonce issue; "
                    "assuming it was already applied"
                )
                self.dropped += 1
                await self._abandon(job, SubmissionErrorKind.NONCE_CONFLICT.value)
                return False

            case SubmissionErrorKind.INSUFFICIENT_FUNDS:
                logger.error(
                    f"{job.chain_name}: Insufficient funds for signer {self.address}, "
                    f"pausing queue for {self.funds_cooldown}s"
                )
                self.paused_until = time.time() + self.funds_cooldown
                stopped = await self._sleep(self.funds_cooldown)
                self.paused_until = None
                return not stopped

            case _ if job.last_tx_hash is not None:
                # Receipt lookup failed while a broadcast is outstanding; re-check it, do not count
                logger.info(f"{job.chain_name}: Will check {job.last_tx_hash} again for {job.job_id}")
                return not await self._sleep(self.retry_backoff)

            case _:
                job.attempts += 1
                if self.max_job_attempts and job.attempts >= self.max_job_attempts:
                    logger.error(
                        f"{job.chain_name}: Giving up on {job.job_id} after {job.attempts} attempts"
                    )
                    self.abandoned += 1
                    await self._abandon(job, f"max_attempts: {error}")
                    return False

                delay = min(self.retry_backoff * 2 ** (job.attempts - 1), self.max_retry_backoff)
                logger.info(f"{job.chain_name}: Retrying {job.job_id} in {delay:.1f}s (attempt {job.attempts})")
                return not await self._sleep(delay)

    async def _abandon(self, job: RelayJob, reason: str) -> None:
        if job.on_abandon is None:
            return
        try:
            await job.on_abandon(reason)
        except Exception as e:
            logger.error(f"{job.chain_name}: Abandon callback for {job.job_id} failed: {e}", exc_info=True)

    async def _confirmed_previous(self, job: RelayJob) -> TxReceipt | None:
        """Receipt of any earlier broadcast of this job that succeeded, newest first."""
        for tx_hash in reversed(job.broadcast_hashes):
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                continue
            except Exception as e:
                logger.warning(f"{job.chain_name}: Could not check {tx_hash}: {e}")
                continue
            if receipt.get("status") == 1:
                return receipt
        return None

    async def _await_previous(self, job: RelayJob) -> TxReceipt | None:
        """
        Wait on a transaction broadcast by an earlier attempt.

        Returns:
            The receipt if it was mined, None if the node dropped it

        Raises:
            TransactionStillPending: still in the mempool, do not resubmit yet
            TransactionReverted: mined with status 0
        """
        tx_hash = job.last_tx_hash
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted:
            try:
                await self.w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                logger.warning(
                    f"{job.chain_name}: {tx_hash} was dropped, resubmitting {job.job_id} "
                    f"with nonce {job.last_nonce}"
                )
                job.last_tx_hash = None
                job.replace_nonce = True
                return None
            raise TransactionStillPending(f"{tx_hash} is still pending") from None

        job.last_tx_hash = None
        job.replace_nonce = False
        if receipt.get("status") != 1:
            raise TransactionReverted(tx_hash, receipt)
        return receipt

    async def _submit(self, job: RelayJob) -> TxReceipt:
        """Build, sign, send and confirm one attempt of a job."""
        await ensure_connected(self.w3)

        if job.last_tx_hash is not None:
            receipt = await self._await_previous(job)
            if receipt is not None:
                return receipt

        if job.replace_nonce and job.last_nonce is not None:
            # Same nonce as the dropped broadcast, so at most one of them can be mined
            nonce = job.last_nonce
        else:
            # Authoritative nonce from the chain, tolerating externally sent transactions
            nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
        self.next_nonce = nonce

        tx = await job.function.build_transaction({"from": self.address, "nonce": nonce})
        signed = self.account.sign_transaction(tx)
        tx_hash = Web3.to_hex(await self.w3.eth.send_raw_transaction(signed.raw_transaction))
        job.last_tx_hash = tx_hash
        job.last_nonce = nonce
        job.replace_nonce = False
        job.broadcast_hashes.append(tx_hash)
        logger.info(f"{job.chain_name}: Transaction sent with nonce {nonce}: {tx_hash} ({job.job_id})")

        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        job.last_tx_hash = None
        self.next_nonce = nonce + 1

        if receipt.get("status") != 1:
            raise TransactionReverted(tx_hash, receipt)

        logger.info(
            f"{job.chain_name}: Transaction confirmed: {tx_hash} "
            f"({job.kind.value}, block {receipt.get('blockNumber')})"
        )
        return receipt

    def get_status(self) -> dict[str, Any]:
        """
        Get current sequencer statistics.

        Returns:
            Dictionary with queue and signer metrics
        """
        current = self.current_job
        return {
            "signer": self.address,
            "running": self.running,
            "queue_depth": self.queue_depth,
            "current_job": current.job_id if current else None,
            "next_nonce": self.next_nonce,
            "paused": self.paused_until is not None,
            "paused_until": self.paused_until,
            "confirmed": self.confirmed,
            "dropped": self.dropped,
            "abandoned": self.abandoned,
        }
