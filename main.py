#!/usr/bin/env python3
"""Entry point for the BlockFinaX sync engine.

Preloads a user's trade finance and treasury records for the configured
network, then keeps them fresh from live contract events.
"""

import argparse
import asyncio
import logging
import os
import sys

# Configure logging before any other imports create loggers
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

# Get logger for this module
logger = logging.getLogger(__name__)

from web3 import Web3

from blockfinax_sync.engine import SyncEngine


async def main() -> None:
    """Main entry point for the sync engine.

    Parses startup arguments, loads configuration from environment,
    and runs the engine for the given user address.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="BlockFinaX Sync - Event sync and record cache for trade finance and treasury data",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_URL                  - HTTP RPC endpoint (required)
  WS_URL                   - WebSocket endpoint (derived from RPC_URL if omitted)
  CHAIN_ID                 - Chain ID (default: 4202, Lisk Sepolia)
  CONTRACT_ADDRESS         - Diamond address (defaults to the known deployment)
  MAX_QUERY_SPAN           - Blocks per eth_getLogs query (default: 10)
  MAX_RANGE                - Blocks scanned on first sync (default: 2000)
  STORE_PATH               - JSON file for persisted state (default: in memory)
  PER_USER_DAILY_LIMIT_USD - Sponsored gas per user per day (default: 0.50)
  LOG_LEVEL                - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "user",
        help="Wallet address whose records are synced"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Sync once and exit instead of following live events"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)

    if not Web3.is_address(args.user):
        logger.error(f"Invalid wallet address: {args.user}")
        sys.exit(1)

    logger.info("=== BlockFinaX Sync Starting ===")
    logger.info("Loading configuration from environment...")

    try:
        engine: SyncEngine = SyncEngine.from_env()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        logger.error("Required environment variables:")
        logger.error("  - RPC_URL: RPC endpoint of the network to sync")
        sys.exit(1)

    try:
        await engine.run(Web3.to_checksum_address(args.user), live=not args.once)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
        engine.stop()
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
