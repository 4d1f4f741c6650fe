#!/usr/bin/env python3
"""Entry point for the Teleport Relayer service.

Loads configuration from the environment (and an optional .env file) and runs
the relayer until interrupted. Exits non-zero on configuration errors and on
unexpected failures so an external supervisor can restart it.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from teleport_relayer.relayer import TeleportRelayer

# Set up root logger
logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


async def main() -> None:
    """Main entry point for the Teleport Relayer."""
    parser = argparse.ArgumentParser(
        description="Teleport Relayer - mint wrapped ETH for locks on multiple source chains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  DST_RPC                 - Destination chain RPC endpoint
  PRIVATE_KEY             - Relayer signer key (minter role)
  TOKEN_CONTRACT          - Wrapped token contract on the destination chain
  REWARD_TOKEN_CONTRACT   - Reward token contract on the destination chain
  <CHAIN>_RPC             - Source RPC endpoint(s), comma-separated, primary first
  <CHAIN>_LOCK_CONTRACT   - Lock contract on the source chain
  POLLING_INTERVAL        - Seconds between poll rounds (default: 15)
  STATE_PATH              - Relay state file (default: data/relayer_state.sqlite)
  LOG_LEVEL               - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Load variables from this .env file (existing variables win)"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Teleport Relayer Starting ===")

    try:
        relayer = TeleportRelayer.from_env(env_file=args.env_file)
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Required environment variables:")
        logger.error("  - DST_RPC: Destination chain RPC endpoint")
        logger.error("  - PRIVATE_KEY: Private key for signing transactions")
        logger.error("  - TOKEN_CONTRACT: Wrapped token contract address")
        logger.error("  - REWARD_TOKEN_CONTRACT: Reward token contract address")
        logger.error("  - <CHAIN>_RPC and <CHAIN>_LOCK_CONTRACT for at least one source chain")
        sys.exit(1)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, relayer.stop)
        except NotImplementedError:
            pass  # Not supported on this platform; KeyboardInterrupt still applies

    try:
        await relayer.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        relayer.stop()
    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
