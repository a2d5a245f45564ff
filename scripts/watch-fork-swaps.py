"""Fork mainnet and watch live swaps being simulated on the fork.

- Starts an Anvil fork of Ethereum mainnet through Infura.

- Subscribes to live Uniswap v2 style Swap events and simulates each of them
  on the fork with `eth_call` (test mode), so no fork state is changed.

- Prints forwarding statistics every few seconds until interrupted.

To run:

.. code-block:: shell

    # Switch between INFO and DEBUG
    export LOG_LEVEL=INFO
    export INFURA_API_KEY=...
    python scripts/watch-fork-swaps.py

"""
import asyncio
import datetime
import logging

from web3 import AsyncHTTPProvider, AsyncWeb3

from fork_forwarder.config import Config
from fork_forwarder.forwarder import launch
from fork_forwarder.utils import setup_console_logging

logger = logging.getLogger(__name__)


async def watch(config: Config, report_interval=datetime.timedelta(seconds=10)):
    forwarder = await launch(config)
    task = forwarder.run_in_background()
    fork_web3 = AsyncWeb3(AsyncHTTPProvider(forwarder.json_rpc_url))

    try:
        while not task.done():
            await asyncio.sleep(report_interval.total_seconds())
            dispatcher = forwarder.dispatcher
            logger.info(
                "Fork block %s, swaps seen %d, simulated %d, failed %d, in flight %d",
                f"{await fork_web3.eth.block_number:,}",
                dispatcher.dispatched,
                dispatcher.succeeded,
                dispatcher.failed,
                dispatcher.in_flight,
            )
    finally:
        await forwarder.close()


def main():
    setup_console_logging()
    config = Config.from_env(test_mode=True, tx_retry_times=0)
    try:
        asyncio.run(watch(config))
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
