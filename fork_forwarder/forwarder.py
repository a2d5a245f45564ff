"""Fork a live network and forward its Swap events to the fork.

Startup runs in this order, any failure aborts it:

1. Launch the Anvil fork and capture its endpoint and funded key
2. Connect to the fork over HTTP
3. Connect to the live network over websocket
4. Subscribe to Swap logs from the current head

After that :py:class:`Forwarder` runs on background: each Swap log is handed
to a :py:class:`fork_forwarder.processor.SwapReplayer` task. The fork is owned
by the background task and shut down when forwarding ends.

Example:

.. code-block:: python

    config = Config.from_env()
    fork_url = await start(config)
    web3 = Web3(HTTPProvider(fork_url))
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from web3 import AsyncWeb3

from fork_forwarder.chain import connect_fork, connect_upstream
from fork_forwarder.config import Config
from fork_forwarder.dispatcher import Dispatcher
from fork_forwarder.exceptions import StartupError, StreamTerminated
from fork_forwarder.fork import ForkLaunch, launch_fork
from fork_forwarder.processor import SwapReplayer
from fork_forwarder.subscriber import SwapSubscription, resubscribing_swaps, subscribe_swaps

logger = logging.getLogger(__name__)


#: Forwarders started with :py:func:`start`.
#:
#: The caller only gets the fork URL back, so we hold the reference
#: that keeps the background task and the fork alive.
_running: set["Forwarder"] = set()


@dataclass(eq=False)
class Forwarder:
    """A running fork and the machinery feeding it events."""

    config: Config

    #: The fork, closed when forwarding ends
    fork: ForkLaunch

    #: Read-write connection to the fork
    fork_web3: AsyncWeb3

    #: Streaming connection to the live network
    upstream_web3: AsyncWeb3

    #: The subscription installed at startup
    subscription: SwapSubscription

    dispatcher: Dispatcher

    #: Background forwarding task, set by :py:meth:`run_in_background`
    task: Optional[asyncio.Task] = None

    @property
    def json_rpc_url(self) -> str:
        """Fork JSON-RPC endpoint."""
        return self.fork.json_rpc_url

    def run_in_background(self) -> asyncio.Task:
        """Start forwarding without waiting for it."""
        assert self.task is None, "Already running"
        self.task = asyncio.create_task(self.run(), name="forward-swaps")
        return self.task

    async def reconnect_upstream(self) -> AsyncWeb3:
        """Open a new upstream connection and hand it to the replayer.

        Replays in flight pick the new connection up on their next attempt.
        """
        web3 = await connect_upstream(self.config)
        self.upstream_web3 = web3
        if isinstance(self.dispatcher.processor, SwapReplayer):
            self.dispatcher.processor.upstream_web3 = web3
        return web3

    async def run(self):
        """Forward events until the upstream stream is gone for good."""
        events = resubscribing_swaps(
            self.reconnect_upstream,
            self.config.resubscribe_attempts,
            self.subscription,
        )

        try:
            await self.dispatcher.forward(events)
        except StreamTerminated as e:
            logger.error("Forwarding stopped, upstream stream terminated: %s", e)
        except Exception as e:
            logger.error("Forwarding crashed: %s", e, exc_info=True)
            raise
        finally:
            await events.aclose()
            logger.info(
                "Forwarded %d events, %d succeeded, %d failed, %d still in flight",
                self.dispatcher.dispatched,
                self.dispatcher.succeeded,
                self.dispatcher.failed,
                self.dispatcher.in_flight,
            )
            await asyncio.to_thread(self.fork.close)
            _running.discard(self)

    async def close(self):
        """Stop forwarding and shut down the fork."""
        if self.task is not None and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        else:
            await self.subscription.close()
            await asyncio.to_thread(self.fork.close)


async def launch(config: Config, fork_url: Optional[str] = None) -> Forwarder:
    """Set up the fork, both connections and the subscription.

    Forwarding is not started: call :py:meth:`Forwarder.run_in_background`.

    :param config:
        Forwarder configuration

    :param fork_url:
        Override the JSON-RPC URL the fork copies its state from

    :raise StartupError:
        Any of the startup steps failed. A fork already launched is shut down.
    """
    config.log_config()

    fork = await asyncio.to_thread(launch_fork, config, fork_url)

    try:
        fork_web3 = await connect_fork(fork.json_rpc_url)
        upstream_web3 = await connect_upstream(config)
        try:
            subscription = await subscribe_swaps(upstream_web3)
        except StartupError:
            await upstream_web3.provider.disconnect()
            raise
    except StartupError:
        logger.error("Startup failed, shutting down the fork at %s", fork.json_rpc_url)
        await asyncio.to_thread(fork.close)
        raise

    replayer = SwapReplayer.from_config(config, fork_web3, upstream_web3, fork.get_signing_account())
    dispatcher = Dispatcher(replayer, max_in_flight=config.max_in_flight)

    return Forwarder(
        config=config,
        fork=fork,
        fork_web3=fork_web3,
        upstream_web3=upstream_web3,
        subscription=subscription,
        dispatcher=dispatcher,
    )


async def start(config: Config) -> str:
    """Launch the fork and start forwarding live Swap events to it.

    Returns as soon as the fork is live and the subscription is installed.
    Forwarding continues on background for the life of the event loop.

    :return:
        Fork JSON-RPC endpoint

    :raise StartupError:
        Fork launch, connection or subscription failed
    """
    forwarder = await launch(config)
    forwarder.run_in_background()
    _running.add(forwarder)
    return forwarder.json_rpc_url
