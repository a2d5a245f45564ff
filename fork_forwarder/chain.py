"""JSON-RPC connections to the fork and to the live network.

Both connections are plain :py:class:`web3.AsyncWeb3` instances.
Passing the instance around shares the same underlying connection:
every event task talks to the fork through one HTTP session and
to the live network through one websocket.
"""

import logging

from web3 import AsyncHTTPProvider, AsyncWeb3, WebSocketProvider

from fork_forwarder.config import Config
from fork_forwarder.exceptions import ForkConnectionError, UpstreamConnectionError
from fork_forwarder.utils import get_url_domain

logger = logging.getLogger(__name__)


async def connect_fork(json_rpc_url: str, request_timeout: float = 30.0) -> AsyncWeb3:
    """Open the read-write connection to a launched fork.

    :param json_rpc_url:
        :py:attr:`fork_forwarder.fork.ForkLaunch.json_rpc_url`

    :param request_timeout:
        HTTP request timeout in seconds

    :raise ForkConnectionError:
        If the fork does not answer
    """
    web3 = AsyncWeb3(AsyncHTTPProvider(json_rpc_url, request_kwargs={"timeout": request_timeout}))

    try:
        connected = await web3.is_connected(show_traceback=True)
    except Exception as e:
        raise ForkConnectionError(f"Could not connect to fork at {json_rpc_url}: {e}") from e

    if not connected:
        raise ForkConnectionError(f"Could not connect to fork at {json_rpc_url}")

    logger.info("Connected to fork %s", json_rpc_url)
    return web3


async def connect_upstream(config: Config) -> AsyncWeb3:
    """Open the persistent websocket connection to the live network.

    The connection must be closed with `await web3.provider.disconnect()`.

    :param config:
        Selects the websocket endpoint

    :raise UpstreamConnectionError:
        If the websocket handshake fails
    """
    url = config.get_upstream_websocket_url()
    domain = get_url_domain(url)

    try:
        web3 = await AsyncWeb3(WebSocketProvider(url, max_connection_retries=1))
    except Exception as e:
        # Exception messages may contain the URL with the API key
        raise UpstreamConnectionError(f"Could not connect to {config.network.value} websocket at {domain}: {type(e).__name__}") from e

    logger.info("Connected to %s %s websocket at %s", config.provider.value, config.network.value, domain)
    return web3
