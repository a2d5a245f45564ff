"""Command line entry point.

Run a fork of Ethereum mainnet and replay live swaps on it:

.. code-block:: shell

    export INFURA_API_KEY=...
    fork-forwarder --network mainnet --log-level info

All options can be given as environment variables, see :py:meth:`fork_forwarder.config.Config.from_env`.
"""

import argparse
import asyncio
import datetime
import logging
import os
import sys

from fork_forwarder.config import Config, Network
from fork_forwarder.exceptions import ConfigurationError, StartupError
from fork_forwarder.forwarder import launch
from fork_forwarder.utils import setup_console_logging

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fork a live network with Anvil and replay its Swap events on the fork",
        epilog="Environment variables: INFURA_API_KEY (required), FORWARDER_NETWORK, FORWARDER_BLOCK_TIME, "
        "FORWARDER_TX_RETRY_TIMES, FORWARDER_TX_RETRY_INTERVAL, FORWARDER_TEST_MODE, FORWARDER_MAX_IN_FLIGHT, "
        "FORWARDER_RESUBSCRIBE_ATTEMPTS, FORWARDER_FORK_PORT, ANVIL_COMMAND, LOG_LEVEL",
    )
    parser.add_argument(
        "--network",
        choices=[n.value for n in Network],
        default=None,
        help="Live network to fork (default: FORWARDER_NETWORK or mainnet)",
    )
    parser.add_argument(
        "--test-mode",
        action="store_true",
        default=None,
        help="Simulate replays with eth_call instead of sending transactions",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=None,
        help="How many times a failed replay is retried",
    )
    parser.add_argument(
        "--retry-interval",
        type=float,
        default=None,
        help="Seconds between replay attempts",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "info"),
        choices=["debug", "info", "warning", "error", "critical"],
        help="Logging level (default: info)",
    )
    return parser


async def run(config: Config):
    """Start forwarding and block until it ends."""
    forwarder = await launch(config)
    task = forwarder.run_in_background()
    logger.info("Fork is live at %s", forwarder.json_rpc_url)
    print(forwarder.json_rpc_url, flush=True)
    try:
        await task
    finally:
        await forwarder.close()


def main(argv=None) -> int:
    args = create_parser().parse_args(argv)

    setup_console_logging(args.log_level)

    try:
        config = Config.from_env(
            network=Network(args.network) if args.network else None,
            test_mode=args.test_mode,
            tx_retry_times=args.retries,
            tx_retry_interval=datetime.timedelta(seconds=args.retry_interval) if args.retry_interval is not None else None,
        )
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 1

    try:
        asyncio.run(run(config))
    except StartupError as e:
        logger.error("Startup failed: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
