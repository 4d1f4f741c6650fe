"""
Ranked RPC endpoints with fallback for a single chain.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.providers import WebSocketProvider
from web3.providers.persistent import PersistentConnectionProvider

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RpcResult(Generic[T]):
    """Tagged outcome of an RPC call: either a value or a failure reason."""
    ok: bool
    value: T | None = None
    error: str | None = None
    endpoint: str | None = None


def make_async_web3(rpc_url: str, request_timeout: int = 10) -> AsyncWeb3:
    """Create an AsyncWeb3 client, over WebSocket for ws:// and wss:// URLs."""
    provider = (
        WebSocketProvider(rpc_url, request_timeout=request_timeout)
        if rpc_url.startswith(("ws:", "wss:"))
        else AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
    )
    return AsyncWeb3(provider)


async def ensure_connected(w3: AsyncWeb3) -> None:
    """Open (or reopen) the socket of a persistent provider. HTTP clients need nothing."""
    provider = w3.provider
    if isinstance(provider, PersistentConnectionProvider) and not await provider.is_connected():
        await provider.connect()


async def disconnect(w3: AsyncWeb3) -> None:
    provider = w3.provider
    if isinstance(provider, PersistentConnectionProvider) and await provider.is_connected():
        await provider.disconnect()


class RpcEndpointPool:
    """
    Ranked list of RPC endpoints for one chain.

    Every call is tried against the endpoints in rank order and the first
    success wins. Failures are collected into the returned result instead of
    being raised, so callers decide what a failed call means for them.
    """

    def __init__(
        self,
        name: str,
        rpc_urls: Sequence[str],
        request_timeout: int = 10,
        client_factory: Callable[[str, int], AsyncWeb3] = make_async_web3,
    ):
        """
        Args:
            name: Chain name used in log messages
            rpc_urls: Endpoints, primary first
            request_timeout: HTTP timeout per request in seconds
            client_factory: Builds a client for an endpoint URL
        """
        if not rpc_urls:
            raise ValueError(f"{name}: at least one RPC URL is required")
        self.name = name
        self.endpoints: list[tuple[str, AsyncWeb3]] = [
            (url, client_factory(url, request_timeout)) for url in rpc_urls
        ]
        self.last_endpoint: str | None = None

    async def call(self, operation: Callable[[AsyncWeb3], Awaitable[T]], description: str) -> RpcResult[T]:
        """
        Run an operation against the endpoints until one succeeds.

        Args:
            operation: Coroutine factory receiving the client to use
            description: Short label for log messages

        Returns:
            RpcResult with the value, or with the joined failure reasons
        """
        errors: list[str] = []
        for rank, (url, w3) in enumerate(self.endpoints):
            try:
                await ensure_connected(w3)
                value = await operation(w3)
            except Exception as e:
                errors.append(f"{url}: {e}")
                if rank + 1 < len(self.endpoints):
                    logger.warning(f"{self.name}: {description} failed on {url}, trying next endpoint: {e}")
                continue

            if rank > 0:
                logger.info(f"{self.name}: {description} served by fallback endpoint {url}")
            self.last_endpoint = url
            return RpcResult(ok=True, value=value, endpoint=url)

        return RpcResult(ok=False, error="; ".join(errors))

    async def close(self) -> None:
        """Disconnect persistent providers; a no-op for HTTP endpoints."""
        for url, w3 in self.endpoints:
            try:
                await disconnect(w3)
            except Exception as e:
                logger.warning(f"{self.name}: Error disconnecting from {url}: {e}")
