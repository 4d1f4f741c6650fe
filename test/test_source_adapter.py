#!/usr/bin/env python3
"""Unit tests for the source chain polling adapter."""

import pytest

from teleport_relayer.config import SourceChainConfig
from teleport_relayer.source_adapter import ChainSourceAdapter
from teleport_relayer.utils.rpc_pool import RpcEndpointPool

from conftest import LOCK_CONTRACT, FakeSourceChain, make_log


def make_adapter(lock_abi, *chains: FakeSourceChain, store=None, max_block_range: int = 2000,
                 chain_id: int = 84532) -> ChainSourceAdapter:
    urls = [f"https://rpc{i}.base.test" for i in range(len(chains))]
    by_url = dict(zip(urls, chains))
    config = SourceChainConfig(
        chain_id=chain_id,
        name="Base Sepolia",
        rpc_urls=tuple(urls),
        lock_contract_address=LOCK_CONTRACT,
    )
    pool = RpcEndpointPool(config.name, urls, client_factory=lambda url, timeout: by_url[url])
    return ChainSourceAdapter(config, lock_abi, pool, store=store, max_block_range=max_block_range)


class TestChainSourceAdapter:
    """Test suite for ChainSourceAdapter."""

    def test_abi_without_event_rejected(self, lock_abi):
        abi = [item for item in lock_abi if item.get("name") != "EthLocked"]
        with pytest.raises(ValueError, match="EthLocked not found"):
            make_adapter(abi, FakeSourceChain())

    @pytest.mark.asyncio
    async def test_first_poll_starts_at_head(self, lock_abi):
        """Test that history before the first start is not scanned."""
        chain = FakeSourceChain(head=100, logs=[make_log(block=99, log_index=0)])
        adapter = make_adapter(lock_abi, chain)

        result = await adapter.poll_once()

        assert result.ok
        assert result.events == ()
        assert adapter.cursor == 100
        assert chain.queries == []

    @pytest.mark.asyncio
    async def test_resumes_from_persisted_cursor(self, lock_abi, store):
        store.save_cursor(84532, 90)
        chain = FakeSourceChain(head=100, logs=[make_log(block=95, log_index=0)])
        adapter = make_adapter(lock_abi, chain, store=store)

        assert await adapter.initialize()
        result = await adapter.poll_once()

        assert adapter.cursor == 100
        assert chain.queries == [(91, 100)]
        assert [e.block_number for e in result.events] == [95]

    @pytest.mark.asyncio
    async def test_events_in_emission_order(self, lock_abi):
        chain = FakeSourceChain(head=100, logs=[
            make_log(block=97, log_index=4),
            make_log(block=95, log_index=7),
            make_log(block=97, log_index=1),
        ])
        adapter = make_adapter(lock_abi, chain)
        adapter.cursor = 90

        result = await adapter.poll_once()

        assert result.from_block == 91 and result.to_block == 100
        assert [(e.block_number, e.log_index) for e in result.events] == [(95, 7), (97, 1), (97, 4)]
        assert all(e.source_chain_id == 84532 for e in result.events)

    @pytest.mark.asyncio
    async def test_head_at_cursor_is_empty_success(self, lock_abi):
        chain = FakeSourceChain(head=100)
        adapter = make_adapter(lock_abi, chain)
        adapter.cursor = 100

        result = await adapter.poll_once()

        assert result.ok and result.events == ()
        assert adapter.cursor == 100
        assert chain.queries == []

    @pytest.mark.asyncio
    async def test_cursor_unchanged_on_log_failure(self, lock_abi):
        """Test that a failed range is retried whole on the next round."""
        chain = FakeSourceChain(head=100, logs=[make_log(block=95, log_index=0)])
        chain.fail_logs = True
        adapter = make_adapter(lock_abi, chain)
        adapter.cursor = 90

        result = await adapter.poll_once()

        assert not result.ok
        assert "cannot fetch logs 91-100" in result.error
        assert adapter.cursor == 90
        assert not adapter.connected

        chain.fail_logs = False
        retry = await adapter.poll_once()
        assert retry.ok
        assert chain.queries[-1] == (91, 100)
        assert len(retry.events) == 1

    @pytest.mark.asyncio
    async def test_cursor_unchanged_on_head_failure(self, lock_abi):
        chain = FakeSourceChain(head=100)
        chain.fail = True
        adapter = make_adapter(lock_abi, chain)
        adapter.cursor = 90

        result = await adapter.poll_once()

        assert not result.ok
        assert "cannot read chain head" in result.error
        assert adapter.cursor == 90
        assert adapter.get_status()["last_error"] == result.error

    @pytest.mark.asyncio
    async def test_falls_back_to_secondary_endpoint(self, lock_abi):
        primary = FakeSourceChain(head=100)
        primary.fail = primary.fail_logs = True
        backup = FakeSourceChain(head=100, logs=[make_log(block=92, log_index=0)])
        adapter = make_adapter(lock_abi, primary, backup)
        adapter.cursor = 90

        result = await adapter.poll_once()

        assert result.ok
        assert len(result.events) == 1
        assert adapter.get_status()["endpoint"] == "https://rpc1.base.test"

    @pytest.mark.asyncio
    async def test_block_range_is_capped(self, lock_abi):
        chain = FakeSourceChain(head=10_000)
        adapter = make_adapter(lock_abi, chain, max_block_range=500)
        adapter.cursor = 1_000

        await adapter.poll_once()
        await adapter.poll_once()

        assert chain.queries == [(1_001, 1_500), (1_501, 2_000)]
        assert adapter.cursor == 2_000

    @pytest.mark.asyncio
    async def test_checkpoint_persists_cursor(self, lock_abi, store):
        chain = FakeSourceChain(head=100)
        adapter = make_adapter(lock_abi, chain, store=store)
        adapter.cursor = 90

        await adapter.poll_once()
        assert store.load_cursor(84532) is None

        adapter.checkpoint()
        assert store.load_cursor(84532) == 100

    @pytest.mark.asyncio
    async def test_deferred_events_block_checkpoint(self, lock_abi, store):
        chain = FakeSourceChain(head=100, logs=[make_log(block=95, log_index=0, origin=84532)])
        adapter = make_adapter(lock_abi, chain, store=store)
        adapter.cursor = 90

        result = await adapter.poll_once()
        adapter.defer_events(list(result.events))
        adapter.checkpoint()
        assert store.load_cursor(84532) is None

        assert adapter.take_deferred() == list(result.events)
        adapter.checkpoint()
        assert store.load_cursor(84532) == 100
