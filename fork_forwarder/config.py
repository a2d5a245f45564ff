"""Forwarder configuration.

- :py:class:`Config` is a frozen dataclass: tasks get it by reference and nobody
  can change it after startup.

- Endpoints are derived from the selected :py:class:`Provider` and :py:class:`Network`.

Example:

.. code-block:: python

    import datetime
    from fork_forwarder.config import Config, Network

    config = Config(
        network=Network.testnet,
        api_key=os.environ["INFURA_API_KEY"],
        block_time=datetime.timedelta(seconds=1),
        tx_retry_times=3,
        tx_retry_interval=datetime.timedelta(seconds=2),
    )

"""

import datetime
import enum
import logging
import os
from dataclasses import dataclass
from typing import Optional

from fork_forwarder.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


#: Hardhat / Anvil default development mnemonic.
#:
#: Anvil pre-funds the accounts derived from this mnemonic.
DEFAULT_FORK_MNEMONIC = "test test test test test test test test test test test junk"


class Provider(enum.Enum):
    """Which node service we read the live network from."""

    infura = "infura"


class Network(enum.Enum):
    """Which live network we fork and follow."""

    mainnet = "mainnet"

    #: Ethereum Sepolia
    testnet = "testnet"


#: (provider, network) -> HTTP JSON-RPC base URL, the API key is appended as a path segment
HTTP_ENDPOINTS = {
    (Provider.infura, Network.mainnet): "https://mainnet.infura.io/v3",
    (Provider.infura, Network.testnet): "https://sepolia.infura.io/v3",
}

#: (provider, network) -> websocket JSON-RPC base URL, the API key is appended as a path segment
WEBSOCKET_ENDPOINTS = {
    (Provider.infura, Network.mainnet): "wss://mainnet.infura.io/ws/v3",
    (Provider.infura, Network.testnet): "wss://sepolia.infura.io/ws/v3",
}


@dataclass(frozen=True, slots=True)
class Config:
    """Everything the forwarder needs to run.

    Only `api_key` is mandatory.
    """

    #: Live network API key
    api_key: str

    #: Mainnet or testnet
    network: Network = Network.mainnet

    #: Node service
    provider: Provider = Provider.infura

    #: How often the fork mines a block.
    #:
    #: Zero means the fork auto-mines a block for every transaction.
    block_time: datetime.timedelta = datetime.timedelta(seconds=1)

    #: How many times a failed event replay is retried.
    #:
    #: The replay is attempted `tx_retry_times + 1` times in total.
    tx_retry_times: int = 3

    #: Sleep between replay attempts
    tx_retry_interval: datetime.timedelta = datetime.timedelta(seconds=2)

    #: Simulate replays with `eth_call` instead of broadcasting transactions to the fork.
    #:
    #: This does not pick the network. Older versions of this tool used a test flag
    #: to switch to testnet endpoints, use `network=Network.testnet` for that.
    test_mode: bool = False

    #: Max number of event replays running at the same time.
    #:
    #: `None` for no limit. Incoming events are never held back by this limit,
    #: only their processing waits.
    max_in_flight: Optional[int] = None

    #: How many times in a row we reinstall the upstream subscription after the stream dies.
    #:
    #: Set to zero to stop forwarding on the first stream failure.
    resubscribe_attempts: int = 3

    #: Localhost port for the fork node, `None` picks a random free port
    fork_port: Optional[int] = None

    #: How many seconds we wait the fork node to answer JSON-RPC after the launch
    fork_launch_wait: float = 20.0

    #: How many pre-funded accounts the fork creates
    fork_accounts: int = 10

    #: Mnemonic the fork derives its pre-funded accounts from
    fork_mnemonic: str = DEFAULT_FORK_MNEMONIC

    #: Command used to launch the fork node
    anvil_command: str = "anvil"

    def __post_init__(self):
        if not self.api_key:
            raise ConfigurationError("API key is required (INFURA_API_KEY)")

        if not isinstance(self.network, Network):
            raise ConfigurationError(f"Unknown network: {self.network}")

        if not isinstance(self.provider, Provider):
            raise ConfigurationError(f"Unknown provider: {self.provider}")

        if (self.provider, self.network) not in WEBSOCKET_ENDPOINTS:
            raise ConfigurationError(f"{self.provider.value} does not serve {self.network.value}")

        if self.block_time < datetime.timedelta(0):
            raise ConfigurationError(f"Block time must be non-negative, got {self.block_time}")

        if self.tx_retry_times < 0:
            raise ConfigurationError(f"Retry count must be non-negative, got {self.tx_retry_times}")

        if self.tx_retry_interval < datetime.timedelta(0):
            raise ConfigurationError(f"Retry interval must be non-negative, got {self.tx_retry_interval}")

        if self.max_in_flight is not None and self.max_in_flight <= 0:
            raise ConfigurationError(f"max_in_flight must be positive or unset, got {self.max_in_flight}")

        if self.resubscribe_attempts < 0:
            raise ConfigurationError(f"Resubscribe attempts must be non-negative, got {self.resubscribe_attempts}")

        if self.fork_accounts <= 0:
            raise ConfigurationError(f"The fork needs at least one funded account, got {self.fork_accounts}")

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides) -> "Config":
        """Read the configuration from environment variables.

        :param environ:
            Mapping to read from, defaults to `os.environ`

        :param overrides:
            Field values taking precedence over the environment,
            e.g. command line arguments. `None` values are ignored.

        :raise ConfigurationError:
            If a variable is missing or cannot be parsed
        """

        if environ is None:
            environ = os.environ

        try:
            values = dict(
                api_key=environ.get("INFURA_API_KEY", ""),
                provider=Provider(environ.get("FORWARDER_PROVIDER", "infura").lower()),
                network=Network(environ.get("FORWARDER_NETWORK", "mainnet").lower()),
                block_time=datetime.timedelta(seconds=float(environ.get("FORWARDER_BLOCK_TIME", "1"))),
                tx_retry_times=int(environ.get("FORWARDER_TX_RETRY_TIMES", "3")),
                tx_retry_interval=datetime.timedelta(seconds=float(environ.get("FORWARDER_TX_RETRY_INTERVAL", "2"))),
                test_mode=_parse_bool(environ.get("FORWARDER_TEST_MODE", "false")),
                resubscribe_attempts=int(environ.get("FORWARDER_RESUBSCRIBE_ATTEMPTS", "3")),
                anvil_command=environ.get("ANVIL_COMMAND", "anvil"),
            )

            if environ.get("FORWARDER_MAX_IN_FLIGHT"):
                values["max_in_flight"] = int(environ["FORWARDER_MAX_IN_FLIGHT"])

            if environ.get("FORWARDER_FORK_PORT"):
                values["fork_port"] = int(environ["FORWARDER_FORK_PORT"])
        except ValueError as e:
            raise ConfigurationError(f"Could not parse configuration from environment: {e}") from e

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def get_fork_source_url(self) -> str:
        """HTTP JSON-RPC URL the fork copies its state from."""
        return f"{HTTP_ENDPOINTS[(self.provider, self.network)]}/{self.api_key}"

    def get_upstream_websocket_url(self) -> str:
        """Websocket JSON-RPC URL we stream live events from."""
        return f"{WEBSOCKET_ENDPOINTS[(self.provider, self.network)]}/{self.api_key}"

    def log_config(self):
        """Dump the configuration without secrets."""
        logger.info(
            "Forwarding %s %s, block time %s, %d retries every %s, test mode %s, max in flight %s",
            self.provider.value,
            self.network.value,
            self.block_time,
            self.tx_retry_times,
            self.tx_retry_interval,
            self.test_mode,
            self.max_in_flight or "unlimited",
        )


def _parse_bool(value: str) -> bool:
    value = value.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Not a boolean: {value}")
