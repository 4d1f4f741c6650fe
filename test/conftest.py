"""Shared fakes for relayer tests: source chains, destination chain, contracts."""

import asyncio
from collections import deque
from types import SimpleNamespace
from typing import Any

import pytest
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from teleport_relayer.utils.contract_utility import ContractUtility
from teleport_relayer.utils.state_store import ProcessedEventLedger, RelayStateStore


USER = Web3.to_checksum_address("0x" + "ab" * 20)
OTHER_USER = Web3.to_checksum_address("0x" + "cd" * 20)
LOCK_CONTRACT = "0x" + "11" * 20
TOKEN_ADDRESS = Web3.to_checksum_address("0x" + "22" * 20)
REWARD_ADDRESS = Web3.to_checksum_address("0x" + "33" * 20)
SIGNER = Web3.to_checksum_address("0x" + "44" * 20)


def tx_hash_for(n: int) -> bytes:
    return n.to_bytes(32, "big")


def make_log(block: int, log_index: int, user: str = USER, amount: int = 10**18,
             origin: int = 11155111, tx_hash: bytes | None = None) -> dict[str, Any]:
    """EthLocked log in the shape returned by web3's get_logs."""
    return {
        "args": {"user": user, "amount": amount, "originChainId": origin},
        "event": "EthLocked",
        "transactionHash": tx_hash or tx_hash_for(block * 1000 + log_index),
        "logIndex": log_index,
        "blockNumber": block,
    }


# ---- Source chain -----------------------------------------------------------

class _FakeLockEvent:
    def __init__(self, chain: "FakeSourceChain"):
        self._chain = chain

    async def get_logs(self, from_block: int, to_block: int) -> list[dict[str, Any]]:
        self._chain.queries.append((from_block, to_block))
        if self._chain.delay:
            await asyncio.sleep(self._chain.delay)
        if self._chain.fail_logs:
            raise TimeoutError("eth_getLogs timed out")
        return [log for log in self._chain.logs if from_block <= log["blockNumber"] <= to_block]


class FakeSourceChain:
    """Stands in for an AsyncWeb3 client of a source chain."""

    provider = None

    def __init__(self, head: int = 100, logs: list[dict[str, Any]] | None = None):
        self.head = head
        self.logs = list(logs or [])
        self.fail = False
        self.fail_logs = False
        self.delay = 0.0
        self.queries: list[tuple[int, int]] = []
        self.events = SimpleNamespace(EthLocked=_FakeLockEvent(self))

    @property
    def eth(self) -> "FakeSourceChain":
        return self

    @property
    def block_number(self):
        return self._block_number()

    async def _block_number(self) -> int:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("connection refused")
        return self.head

    def contract(self, address: str, abi: list) -> "FakeSourceChain":
        return self


# ---- Destination chain ------------------------------------------------------

class FakeCall:
    """A bound contract function as produced by ``contract.functions.name(*args)``."""

    def __init__(self, contract: "FakeContract", name: str, args: tuple):
        self.contract = contract
        self.name = name
        self.args = args

    async def build_transaction(self, params: dict[str, Any]) -> dict[str, Any]:
        chain = self.contract.chain
        if chain is not None:
            chain.log.append(f"build:{self.name}")
        return {"to": self.contract.address, "fn": self.name, "args": self.args, **params}

    async def call(self) -> Any:
        if self.name == "balanceOf":
            return self.contract.balances.get(self.args[0], 0)
        return None


class _FakeFunctions:
    def __init__(self, contract: "FakeContract"):
        self._contract = contract

    def __getattr__(self, name: str):
        def bind(*args):
            return FakeCall(self._contract, name, args)
        return bind


class FakeContract:
    def __init__(self, address: str, chain: "FakeDestinationChain | None" = None):
        self.address = address
        self.chain = chain
        self.balances: dict[str, int] = {}
        self.functions = _FakeFunctions(self)


class FakeDestinationChain:
    """
    Stands in for the destination AsyncWeb3 client.

    Enforces strict nonce ordering like a real node and lets tests inject
    send failures and reverted receipts.
    """

    provider = None

    def __init__(self):
        self.nonce = 0
        self.sent: list[dict[str, Any]] = []
        self.attempts: list[dict[str, Any]] = []
        self.receipts: dict[str, dict[str, Any]] = {}
        self.log: list[str] = []
        self.send_failures: deque[Exception] = deque()
        self.revert_next = 0
        self.receipt_timeouts = 0
        # Hashes the node claims not to know, although they were mined
        self.forgotten: set[str] = set()
        self.native_balance = 10**18
        self.contracts: dict[str, FakeContract] = {}

    @property
    def eth(self) -> "FakeDestinationChain":
        return self

    def fail_next_send(self, *errors: Exception) -> None:
        self.send_failures.extend(errors)

    async def get_transaction_count(self, address: str, block_identifier: str = "latest") -> int:
        return self.nonce

    async def send_raw_transaction(self, raw: dict[str, Any]) -> bytes:
        await asyncio.sleep(0)
        self.attempts.append(raw)
        if self.send_failures:
            raise self.send_failures.popleft()
        if raw["nonce"] != self.nonce:
            raise ValueError({"code": -32000, "message": "nonce too low"})

        self.nonce += 1
        self.sent.append(raw)
        self.log.append(f"send:{raw['fn']}")
        tx_hash = Web3.to_hex(tx_hash_for(len(self.sent)))

        status = 1
        if self.revert_next:
            self.revert_next -= 1
            status = 0
        elif (contract := self.contracts.get(raw["to"])) is not None and raw["fn"] in ("mint", "transfer"):
            to, amount = raw["args"]
            contract.balances[to] = contract.balances.get(to, 0) + amount

        self.receipts[tx_hash] = {
            "status": status,
            "blockNumber": 1000 + len(self.sent),
            "transactionHash": tx_hash,
        }
        return tx_hash_for(len(self.sent))

    async def wait_for_transaction_receipt(self, tx_hash: str, timeout: float = 120) -> dict[str, Any]:
        await asyncio.sleep(0)
        if self.receipt_timeouts:
            self.receipt_timeouts -= 1
            raise TimeExhausted(f"Transaction {tx_hash} is not in the chain after {timeout} seconds")
        receipt = self.receipts[tx_hash]
        self.log.append(f"receipt:{receipt['transactionHash']}")
        return receipt

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any]:
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction with hash: '{tx_hash}' not found.")
        return self.receipts[tx_hash]

    async def get_transaction(self, tx_hash: str) -> dict[str, Any]:
        if tx_hash not in self.receipts or tx_hash in self.forgotten:
            raise TransactionNotFound(f"Transaction with hash: '{tx_hash}' not found.")
        return {"hash": tx_hash}

    async def get_balance(self, address: str) -> int:
        return self.native_balance

    def contract(self, address: str, abi: list) -> FakeContract:
        contract = FakeContract(address, self)
        self.contracts[address] = contract
        return contract


class FakeAccount:
    """Signs by passing the transaction dict through as the raw payload."""

    def __init__(self, address: str = SIGNER):
        self.address = address
        self.signed: list[dict[str, Any]] = []

    def sign_transaction(self, tx: dict[str, Any]) -> SimpleNamespace:
        self.signed.append(tx)
        return SimpleNamespace(raw_transaction=tx)


async def run_until_drained(sequencer, timeout: float = 5.0) -> None:
    """Run the sequencer until its queue, including chained jobs, is empty."""
    task = asyncio.create_task(sequencer.run())
    try:
        await asyncio.wait_for(sequencer.drain(), timeout=timeout)
    finally:
        sequencer.stop()
        await asyncio.wait_for(task, timeout=timeout)


# ---- Fixtures ---------------------------------------------------------------

@pytest.fixture
def lock_abi() -> list:
    return ContractUtility().get_contract_abi("LockContract")


@pytest.fixture
def store(tmp_path):
    state = RelayStateStore(tmp_path / "state.sqlite")
    yield state
    state.close()


@pytest.fixture
def ledger(store) -> ProcessedEventLedger:
    return ProcessedEventLedger(store)


@pytest.fixture
def destination() -> FakeDestinationChain:
    return FakeDestinationChain()


@pytest.fixture
def account() -> FakeAccount:
    return FakeAccount()
