import json
from pathlib import Path

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3, Web3
from web3.contract import AsyncContract

from .rpc_pool import make_async_web3


class ContractUtility:
    """
    Utility for destination-chain contract interaction and ABI loading.

    Can be used in two modes:
    1. Full mode: Initialize with an RPC URL and secret for contract interaction
    2. ABI-only mode: Initialize with empty strings to just load ABIs
    """

    CONTRACTS_DIR = Path(__file__).parent.parent / "contracts"

    def __init__(self, rpc_url: str = "", secret: str = "", request_timeout: int = 10):
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: Destination chain RPC endpoint (optional for ABI-only mode)
            secret: Private key of the relayer signer (optional for ABI-only mode)
            request_timeout: HTTP timeout per request in seconds
        """
        if rpc_url and secret:
            self.account: LocalAccount | None = Account.from_key(secret)
            self.w3: AsyncWeb3 | None = make_async_web3(rpc_url, request_timeout)
        else:
            # ABI-only mode - no network connection needed
            self.account = None
            self.w3 = None

    def get_contract_abi(self, contract_name: str) -> list:
        """Fetches ABI of the given contract from the bundled contracts folder"""
        contract_path = (self.CONTRACTS_DIR / f"{contract_name}.json").resolve()

        with contract_path.open() as file:
            contract_data = json.load(file)

        return contract_data["abi"]

    def get_contract(self, contract_name: str, address: str) -> AsyncContract:
        """Bind a bundled ABI to an address on the destination chain."""
        if self.w3 is None:
            raise RuntimeError("ContractUtility was created in ABI-only mode")
        return self.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=self.get_contract_abi(contract_name),
        )
