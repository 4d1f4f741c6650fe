#!/usr/bin/env python3
"""Unit tests for the concurrent poll scheduler."""

import asyncio
import pytest
from unittest.mock import AsyncMock

from teleport_relayer.config import SourceChainConfig
from teleport_relayer.scheduler import PollScheduler
from teleport_relayer.source_adapter import ChainSourceAdapter
from teleport_relayer.utils.rpc_pool import RpcEndpointPool

from conftest import LOCK_CONTRACT, FakeSourceChain, make_log


def adapter_for(chain: FakeSourceChain, chain_id: int, name: str, lock_abi, store) -> ChainSourceAdapter:
    url = f"https://{chain_id}.rpc.test"
    config = SourceChainConfig(
        chain_id=chain_id, name=name, rpc_urls=(url,), lock_contract_address=LOCK_CONTRACT
    )
    pool = RpcEndpointPool(name, [url], client_factory=lambda _url, _timeout: chain)
    adapter = ChainSourceAdapter(config, lock_abi, pool, store=store)
    adapter.cursor = 90
    return adapter


@pytest.fixture
def chains():
    slow = FakeSourceChain(head=100, logs=[make_log(block=93, log_index=0)])
    healthy = FakeSourceChain(head=100, logs=[make_log(block=95, log_index=1, origin=84532)])
    return slow, healthy


@pytest.fixture
def adapters(chains, lock_abi, store):
    slow, healthy = chains
    return (
        adapter_for(slow, 11155111, "Ethereum Sepolia", lock_abi, store),
        adapter_for(healthy, 84532, "Base Sepolia", lock_abi, store),
    )


class TestPollScheduler:
    """Test suite for PollScheduler."""

    @pytest.mark.asyncio
    async def test_slow_chain_does_not_block_others(self, chains, adapters, store):
        """Test that a timed-out chain keeps its cursor while siblings complete."""
        slow, _ = chains
        slow.delay = 1.0
        eth, base = adapters
        handler = AsyncMock()
        scheduler = PollScheduler([eth, base], handler, interval=1, poll_timeout=0.1)

        results = await scheduler.run_round()

        assert [r.ok for r in results] == [False, True]
        assert "timed out" in results[0].error
        handler.assert_awaited_once()
        delivered = handler.await_args.args[0]
        assert delivered.source_chain_id == 84532 and delivered.block_number == 95

        assert eth.cursor == 90 and not eth.connected
        assert store.load_cursor(11155111) is None
        assert base.cursor == 100
        assert store.load_cursor(84532) == 100

    @pytest.mark.asyncio
    async def test_failed_chain_recovers_next_round(self, chains, adapters):
        slow, _ = chains
        slow.fail = True
        eth, base = adapters
        handler = AsyncMock()
        scheduler = PollScheduler([eth, base], handler, interval=1, poll_timeout=0.5)

        await scheduler.run_round()
        slow.fail = False
        results = await scheduler.run_round()

        assert results[0].ok
        assert slow.queries[-1] == (91, 100)
        assert {call.args[0].source_chain_id for call in handler.await_args_list} == {11155111, 84532}
        assert scheduler.rounds == 2

    @pytest.mark.asyncio
    async def test_unexpected_adapter_error_is_contained(self, adapters):
        eth, base = adapters
        eth.poll_once = AsyncMock(side_effect=RuntimeError("decoder exploded"))
        scheduler = PollScheduler([eth, base], AsyncMock(), interval=1, poll_timeout=0.5)

        results = await scheduler.run_round()

        assert not results[0].ok
        assert "decoder exploded" in results[0].error
        assert results[1].ok

    @pytest.mark.asyncio
    async def test_handler_failure_skips_checkpoint(self, adapters, store):
        """Test that the persisted cursor stays put if an event was not handed off."""
        _, base = adapters
        handler = AsyncMock(side_effect=RuntimeError("store unavailable"))
        scheduler = PollScheduler([base], handler, interval=1, poll_timeout=0.5)

        results = await scheduler.run_round()

        assert results[0].ok
        assert store.load_cursor(84532) is None

    @pytest.mark.asyncio
    async def test_failed_event_is_redelivered_before_checkpoint(self, chains, adapters, store):
        """Test that a later round delivers the held back event before persisting past it."""
        _, healthy = chains
        _, base = adapters
        handler = AsyncMock(side_effect=[RuntimeError("store unavailable"), None])
        scheduler = PollScheduler([base], handler, interval=1, poll_timeout=0.5)

        await scheduler.run_round()
        assert base.cursor == 100
        assert store.load_cursor(84532) is None
        assert base.get_status()["deferred_events"] == 1

        healthy.head = 110
        await scheduler.run_round()

        assert [call.args[0].block_number for call in handler.await_args_list] == [95, 95]
        assert store.load_cursor(84532) == 110
        assert base.get_status()["deferred_events"] == 0

    @pytest.mark.asyncio
    async def test_held_back_events_keep_emission_order(self, chains, adapters, store):
        _, healthy = chains
        _, base = adapters
        handler = AsyncMock(side_effect=[RuntimeError("store unavailable"), None, None])
        scheduler = PollScheduler([base], handler, interval=1, poll_timeout=0.5)

        await scheduler.run_round()
        healthy.head = 110
        healthy.logs.append(make_log(block=105, log_index=0, origin=84532))
        await scheduler.run_round()

        assert [call.args[0].block_number for call in handler.await_args_list] == [95, 95, 105]
        assert store.load_cursor(84532) == 110

    @pytest.mark.asyncio
    async def test_backlog_delivered_while_chain_is_down(self, chains, adapters, store):
        """Test that held back events are retried even when the chain's poll fails."""
        _, healthy = chains
        _, base = adapters
        handler = AsyncMock(side_effect=[RuntimeError("store unavailable"), None])
        scheduler = PollScheduler([base], handler, interval=1, poll_timeout=0.5)

        await scheduler.run_round()
        healthy.fail = True
        results = await scheduler.run_round()

        assert not results[0].ok
        assert handler.await_count == 2
        assert store.load_cursor(84532) == 100

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, adapters):
        handler = AsyncMock()
        scheduler = PollScheduler(list(adapters), handler, interval=0.01, poll_timeout=0.5)

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=1)

        assert scheduler.rounds >= 2
        assert not scheduler.running
        # Each event is delivered exactly once across rounds
        assert handler.await_count == 2
