"""
Configuration module for the Teleport Relayer.

This module provides type-safe configuration dataclasses with validation for
the relayer that watches EthLocked events on several source chains and mints
wrapped tokens on a single destination chain. Configuration is loaded from
environment variables (optionally via a .env file) with sensible defaults
where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import ClassVar
from urllib.parse import urlparse

from dotenv import load_dotenv
from web3 import Web3

logger = logging.getLogger(__name__)


def _validate_rpc_url(url: str, label: str) -> None:
    if not url:
        raise ValueError(f"{label} RPC URL is required")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https", "ws", "wss"):
        raise ValueError(
            f"Invalid RPC URL scheme for {label}: {parsed.scheme}. "
            "Expected http, https, ws, or wss"
        )


def _checksum(address: str, label: str) -> str:
    if not address:
        raise ValueError(f"{label} address is required")
    if not Web3.is_address(address):
        raise ValueError(f"Invalid {label} address: {address}")
    return Web3.to_checksum_address(address)


@dataclass(frozen=True, slots=True)
class SourceChainConfig:
    """Configuration for one source chain carrying a lock contract.

    Attributes:
        chain_id: Numeric chain identifier
        name: Human readable chain name used in logs
        rpc_urls: Ranked RPC endpoints, primary first
        lock_contract_address: Checksummed address of the lock contract
    """

    chain_id: int
    name: str
    rpc_urls: tuple[str, ...]
    lock_contract_address: str

    def __post_init__(self) -> None:
        """Validate source chain configuration."""
        if self.chain_id <= 0:
            raise ValueError(f"Chain id must be positive, got {self.chain_id}")
        if not self.rpc_urls:
            raise ValueError(f"{self.name}: at least one RPC URL is required")
        for url in self.rpc_urls:
            _validate_rpc_url(url, self.name)

        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(
            self,
            "lock_contract_address",
            _checksum(self.lock_contract_address, f"{self.name} lock contract"),
        )

    @property
    def rpc_url(self) -> str:
        """Primary RPC endpoint."""
        return self.rpc_urls[0]


@dataclass(frozen=True, slots=True)
class DestinationChainConfig:
    """Configuration for the destination chain and the relayer signer.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint of the destination chain
        token_address: Wrapped token contract the relayer mints on
        reward_token_address: Reward token contract the relayer pays from
        private_key: Signer key holding the minter role
    """

    rpc_url: str
    token_address: str
    reward_token_address: str
    private_key: str = field(repr=False)

    def __post_init__(self) -> None:
        """Validate destination chain configuration."""
        _validate_rpc_url(self.rpc_url, "Destination")
        object.__setattr__(self, "token_address", _checksum(self.token_address, "token contract"))
        object.__setattr__(
            self,
            "reward_token_address",
            _checksum(self.reward_token_address, "reward token contract"),
        )

        # Should be 64 hex chars, optionally with 0x prefix
        key = self.private_key.removeprefix("0x")
        if len(key) != 64:
            raise ValueError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )
        try:
            int(key, 16)
        except ValueError:
            raise ValueError("Invalid private key format. Must be hexadecimal") from None


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for polling and transaction submission."""
    polling_interval: int = 15  # seconds between poll rounds
    poll_timeout: int = 10  # per-chain poll budget, must be below the interval
    request_timeout: int = 10  # HTTP request timeout in seconds
    max_block_range: int = 2000  # blocks per log query
    receipt_timeout: int = 120  # seconds to wait for a receipt
    retry_backoff: float = 5.0  # base delay after a retryable failure
    max_retry_backoff: float = 60.0
    funds_cooldown: float = 30.0  # queue pause on insufficient funds
    max_job_attempts: int = 10  # 0 retries forever

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.polling_interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.poll_timeout <= 0:
            raise ValueError(f"Poll timeout must be positive, got {self.poll_timeout}")
        if self.poll_timeout >= self.polling_interval:
            raise ValueError(
                f"Poll timeout ({self.poll_timeout}s) must be shorter than "
                f"the polling interval ({self.polling_interval}s)"
            )
        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.max_block_range <= 0:
            raise ValueError(f"Max block range must be positive, got {self.max_block_range}")
        if self.receipt_timeout <= 0:
            raise ValueError(f"Receipt timeout must be positive, got {self.receipt_timeout}")
        if self.retry_backoff < 0 or self.max_retry_backoff < self.retry_backoff:
            raise ValueError(
                f"Invalid retry backoff window: {self.retry_backoff}s..{self.max_retry_backoff}s"
            )
        if self.funds_cooldown < 0:
            raise ValueError(f"Funds cooldown must be non-negative, got {self.funds_cooldown}")
        if self.max_job_attempts < 0:
            raise ValueError(f"Max job attempts must be non-negative, got {self.max_job_attempts}")


@dataclass(frozen=True, slots=True)
class KnownChain:
    """Catalog entry for a supported source chain."""
    name: str
    chain_id: int
    env_prefix: str


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the Teleport Relayer.

    Attributes:
        source_chains: Enabled source chains
        destination: Destination chain and signer configuration
        monitoring: Polling and submission settings
        state_path: sqlite file holding cursors and relay state
    """

    source_chains: tuple[SourceChainConfig, ...]
    destination: DestinationChainConfig
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    state_path: str = "data/relayer_state.sqlite"

    KNOWN_SOURCE_CHAINS: ClassVar[tuple[KnownChain, ...]] = (
        KnownChain("Ethereum Sepolia", 11155111, "ETH_SEPOLIA"),
        KnownChain("Base Sepolia", 84532, "BASE_SEPOLIA"),
        KnownChain("ZkSync Era Sepolia", 300, "ZKSYNC_SEPOLIA"),
        KnownChain("Unichain Sepolia", 1301, "UNICHAIN_SEPOLIA"),
        KnownChain("Arbitrum Sepolia", 421614, "ARBITRUM_SEPOLIA"),
        KnownChain("Scroll Sepolia", 534351, "SCROLL_SEPOLIA"),
        KnownChain("Optimism Sepolia", 11155420, "OPTIMISM_SEPOLIA"),
    )

    def __post_init__(self) -> None:
        """Validate relayer configuration."""
        if not self.source_chains:
            raise ValueError(
                "No source chains configured. Set <CHAIN>_RPC and "
                "<CHAIN>_LOCK_CONTRACT for at least one supported chain"
            )
        chain_ids = [chain.chain_id for chain in self.source_chains]
        if len(set(chain_ids)) != len(chain_ids):
            raise ValueError(f"Duplicate source chain ids: {chain_ids}")
        if not self.state_path:
            raise ValueError("State path is required (STATE_PATH)")

    @classmethod
    def load_source_chains(cls) -> tuple[SourceChainConfig, ...]:
        """
        Build source chain configs for every catalog chain that has both an
        RPC endpoint and a lock contract configured.

        ``<PREFIX>_RPC`` may hold a comma-separated list of endpoints,
        ranked primary first.
        """
        chains: list[SourceChainConfig] = []
        for known in cls.KNOWN_SOURCE_CHAINS:
            raw_rpc = os.environ.get(f"{known.env_prefix}_RPC", "")
            lock_contract = os.environ.get(f"{known.env_prefix}_LOCK_CONTRACT", "")
            rpc_urls = tuple(url.strip() for url in raw_rpc.split(",") if url.strip())

            if not rpc_urls or not lock_contract:
                logger.info(f"Skipping {known.name} - missing RPC or contract address")
                continue

            chains.append(SourceChainConfig(
                chain_id=known.chain_id,
                name=known.name,
                rpc_urls=rpc_urls,
                lock_contract_address=lock_contract,
            ))
        return tuple(chains)

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "RelayerConfig":
        """
        Load configuration from environment variables.

        Args:
            env_file: Optional .env file; existing variables take precedence

        Returns:
            RelayerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        load_dotenv(env_file, override=False)

        required: dict[str, str] = {}
        for name in ("DST_RPC", "PRIVATE_KEY", "TOKEN_CONTRACT", "REWARD_TOKEN_CONTRACT"):
            if not (value := os.environ.get(name, "")):
                raise ValueError(f"{name} environment variable is required")
            required[name] = value

        destination = DestinationChainConfig(
            rpc_url=required["DST_RPC"],
            token_address=required["TOKEN_CONTRACT"],
            reward_token_address=required["REWARD_TOKEN_CONTRACT"],
            private_key=required["PRIVATE_KEY"],
        )

        monitoring = MonitoringConfig(
            polling_interval=int(os.environ.get("POLLING_INTERVAL", "15")),
            poll_timeout=int(os.environ.get("POLL_TIMEOUT", "10")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "10")),
            max_block_range=int(os.environ.get("MAX_BLOCK_RANGE", "2000")),
            receipt_timeout=int(os.environ.get("RECEIPT_TIMEOUT", "120")),
            retry_backoff=float(os.environ.get("RETRY_BACKOFF", "5")),
            max_retry_backoff=float(os.environ.get("MAX_RETRY_BACKOFF", "60")),
            funds_cooldown=float(os.environ.get("FUNDS_COOLDOWN", "30")),
            max_job_attempts=int(os.environ.get("MAX_JOB_ATTEMPTS", "10")),
        )

        return cls(
            source_chains=cls.load_source_chains(),
            destination=destination,
            monitoring=monitoring,
            state_path=os.environ.get("STATE_PATH", "data/relayer_state.sqlite"),
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format (hiding sensitive data)."""
        logger.info("=" * 60)
        logger.info("Teleport Relayer Configuration")
        logger.info("=" * 60)

        logger.info(f"Source Chains ({len(self.source_chains)}):")
        for chain in self.source_chains:
            logger.info(f"  {chain.name} (Chain ID: {chain.chain_id})")
            logger.info(f"    RPC URLs: {len(chain.rpc_urls)} configured, primary {chain.rpc_url}")
            logger.info(f"    Lock Contract: {chain.lock_contract_address}")

        logger.info("Destination Chain:")
        logger.info(f"  RPC URL: {self.destination.rpc_url}")
        logger.info(f"  Token: {self.destination.token_address}")
        logger.info(f"  Reward Token: {self.destination.reward_token_address}")
        logger.info(f"  Private Key: {'[SET]' if self.destination.private_key else '[NOT SET]'}")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Poll Timeout: {self.monitoring.poll_timeout} seconds")
        logger.info(f"  Max Block Range: {self.monitoring.max_block_range}")
        logger.info(f"  Receipt Timeout: {self.monitoring.receipt_timeout} seconds")
        logger.info(f"  Funds Cooldown: {self.monitoring.funds_cooldown} seconds")
        attempts = self.monitoring.max_job_attempts or "unbounded"
        logger.info(f"  Max Job Attempts: {attempts}")

        logger.info(f"State Path: {self.state_path}")
        logger.info("=" * 60)
