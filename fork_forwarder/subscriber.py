"""Live Swap event subscription.

- We subscribe to all `Swap(address,uint256,uint256,uint256,uint256,address)` logs,
  emitted by Uniswap v2 compatible pairs, over `eth_subscribe("logs")`.

- The subscription starts at the head block of the live network: no history is replayed.
  The head is read on the same websocket right before the filter is installed,
  and anything the node pushes from before the head is dropped.

- :py:func:`resubscribing_swaps` keeps the stream alive over websocket disconnects.
  A reconnect starts again from the then-current head, so events mined
  while we were disconnected can be missed, and events of the head block
  can be delivered twice.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from eth_typing import HexStr
from eth_utils import keccak
from web3 import AsyncWeb3
from web3.types import LogReceipt
from web3.utils.subscriptions import LogsSubscription

from fork_forwarder.exceptions import StartupError, StreamTerminated, SubscriptionError

logger = logging.getLogger(__name__)


#: The event we forward
SWAP_EVENT_SIGNATURE = "Swap(address,uint256,uint256,uint256,uint256,address)"

#: topic0 of the Swap event
SWAP_TOPIC = HexStr("0x" + keccak(text=SWAP_EVENT_SIGNATURE).hex())


def convert_jsonrpc_value_to_int(val: str | int) -> int:
    """Convert hex string or int to int.

    Depending on the node and web3.py formatters, block numbers
    come either as JSON numbers or hex strings.
    """
    if type(val) == int:
        return val
    return int(val, 16)


def build_swap_filter(from_block: int) -> dict:
    """Filter parameters for `eth_subscribe("logs")`.

    :param from_block:
        The head block at the subscription time
    """
    return {
        "topics": [SWAP_TOPIC],
        "fromBlock": hex(from_block),
    }


class SwapLogsSubscription(LogsSubscription):
    """`logs` subscription for Swap events, anchored to a start block.

    :py:class:`web3.utils.subscriptions.LogsSubscription` only takes `address` and `topics`,
    so we add `fromBlock` to the filter it sends with `eth_subscribe`.
    """

    def __init__(self, from_block: int, **kwargs):
        super().__init__(topics=[SWAP_TOPIC], **kwargs)
        self.from_block = from_block
        self.logs_filter.update(build_swap_filter(from_block))
        self._subscription_params = ("logs", self.logs_filter)


class SwapSubscription:
    """Swap logs from one websocket subscription.

    Iterate with `async for`. The iteration never ends on its own:
    it either waits for the next log or raises :py:class:`StreamTerminated`.
    """

    def __init__(self, web3: AsyncWeb3, subscription_id: str, start_block: int):
        #: Upstream websocket connection
        self.web3 = web3

        #: Id returned by eth_subscribe
        self.subscription_id = subscription_id

        #: Head block at subscription time, logs before this are never delivered
        self.start_block = start_block

        #: How many logs we have passed through
        self.delivered = 0

    def __repr__(self):
        return f"<SwapSubscription {self.subscription_id} from block {self.start_block:,}, delivered {self.delivered}>"

    def __aiter__(self) -> AsyncIterator[LogReceipt]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LogReceipt]:
        try:
            async for response in self.web3.socket.process_subscriptions():
                if response.get("subscription") != self.subscription_id:
                    continue

                log = response["result"]

                if log.get("removed"):
                    logger.debug("Skipping log removed by chain reorganisation, tx %s", log.get("transactionHash"))
                    continue

                block_number = convert_jsonrpc_value_to_int(log["blockNumber"])
                if block_number < self.start_block:
                    logger.debug("Dropping log from block %d before the subscription start %d", block_number, self.start_block)
                    continue

                self.delivered += 1
                yield log
        except StreamTerminated:
            raise
        except Exception as e:
            raise StreamTerminated(f"Swap log stream {self.subscription_id} died: {type(e).__name__}: {e}") from e

        raise StreamTerminated(f"Swap log stream {self.subscription_id} closed")

    async def close(self):
        """Unsubscribe and close the websocket.

        Errors are logged, not raised: the connection is often dead already.
        """
        try:
            await self.web3.eth.unsubscribe(self.subscription_id)
        except Exception as e:
            logger.debug("Could not unsubscribe %s: %s", self.subscription_id, e)

        await _disconnect_quietly(self.web3)


async def subscribe_swaps(web3: AsyncWeb3) -> SwapSubscription:
    """Install the Swap log filter starting from the current head.

    :param web3:
        Websocket connection to the live network

    :raise SubscriptionError:
        Head block could not be read or the node refused the subscription
    """

    try:
        head = await web3.eth.get_block("latest")
        start_block = convert_jsonrpc_value_to_int(head["number"])
    except Exception as e:
        raise SubscriptionError(f"Could not read the head block: {type(e).__name__}: {e}") from e

    try:
        subscription_id = await web3.subscription_manager.subscribe(SwapLogsSubscription(start_block))
    except Exception as e:
        raise SubscriptionError(f"Could not install Swap log filter from block {start_block}: {type(e).__name__}: {e}") from e

    logger.info("Subscribed to Swap events from block %s, topic %s, subscription %s", f"{start_block:,}", SWAP_TOPIC, subscription_id)
    return SwapSubscription(web3, subscription_id, start_block)


async def resubscribing_swaps(
    connect: Callable[[], Awaitable[AsyncWeb3]],
    attempts: int,
    subscription: Optional[SwapSubscription] = None,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
) -> AsyncIterator[LogReceipt]:
    """Swap logs that survive websocket disconnects.

    When the stream dies, close it, open a new connection with `connect`,
    read the new head and subscribe again.

    :param connect:
        Coroutine opening a new upstream connection, e.g. `lambda: connect_upstream(config)`

    :param attempts:
        How many reconnects we try in a row before giving up.
        The counter resets every time a log comes through.
        With zero the first stream failure is final.

    :param subscription:
        Already installed subscription to start with

    :param base_delay:
        Seconds to wait before the first reconnect, doubled for every following attempt

    :param max_delay:
        Cap for the reconnect wait

    :raise StreamTerminated:
        When all reconnect attempts are used up
    """

    assert attempts >= 0
    failures = 0

    try:
        while True:
            if subscription is None:
                if failures:
                    delay = min(base_delay * (2 ** (failures - 1)), max_delay)
                    logger.info("Reconnecting to the upstream in %.1f seconds, attempt %d/%d", delay, failures, attempts)
                    await asyncio.sleep(delay)

                web3 = None
                try:
                    web3 = await connect()
                    subscription = await subscribe_swaps(web3)
                except StartupError as e:
                    if web3 is not None:
                        await _disconnect_quietly(web3)
                    failures += 1
                    logger.warning("Resubscribe failed: %s", e)
                    if failures > attempts:
                        raise StreamTerminated(f"Gave up reconnecting after {attempts} attempts: {e}") from e
                    continue

            try:
                async for log in subscription:
                    failures = 0
                    yield log
            except StreamTerminated as e:
                failures += 1
                logger.warning("Upstream stream terminated: %s", e)
                await subscription.close()
                subscription = None
                if failures > attempts:
                    raise
    finally:
        if subscription is not None:
            await subscription.close()


async def _disconnect_quietly(web3: AsyncWeb3):
    try:
        await web3.provider.disconnect()
    except Exception as e:
        logger.warning("Error closing the upstream websocket: %s", e)
