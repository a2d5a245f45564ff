"""Ephemeral mainnet fork using Anvil.

- `Anvil <https://book.getfoundry.sh/reference/anvil/>`__ is a local testnet node
  from the Foundry project. Given `--fork-url` it copies the state of the live network
  lazily from the head block at the launch time.

- Anvil pre-funds a set of accounts derived from a mnemonic.
  We derive the same private keys locally, so the forwarder can sign
  transactions on the fork without any unlock tricks.

To install Anvil:

.. code-block:: shell

    curl -L https://foundry.paradigm.xyz | bash
    foundryup

The fork lives as long as the :py:class:`ForkLaunch` is not closed.
"""

import datetime
import logging
import os
import shutil
import sys
import time
from dataclasses import dataclass, field
from subprocess import DEVNULL, PIPE
from typing import Optional

import psutil
import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import HTTPProvider, Web3

from fork_forwarder.config import Config
from fork_forwarder.exceptions import ForkLaunchError
from fork_forwarder.utils import ProcessOutputDrain, find_free_port, get_url_domain, is_localhost_port_listening, shutdown_hard

logger = logging.getLogger(__name__)


#: Mappings between Anvil command line parameters and our internal argument names
CLI_FLAGS = {
    "port": "--port",
    "fork": "--fork-url",
    "block_time": "--block-time",
    "accounts": "--accounts",
    "mnemonic": "--mnemonic",
}


def _launch(cmd: str, **kwargs) -> tuple[psutil.Popen, list[str], Optional[ProcessOutputDrain]]:
    """Launch the Anvil subprocess.

    Anvil logs every JSON-RPC call it serves. The output is drained on background
    threads for the whole life of the fork.

    :return:
        The process, the command line used and the output drain
    """
    cmd_list = cmd.split(" ")
    for key, value in kwargs.items():
        if value is None:
            continue
        cmd_list.extend([CLI_FLAGS[key], str(value)])

    # Do not leak the API key in the fork URL or the mnemonic to logs
    loggable = [get_url_domain(c) if c.startswith("http") else c for c in cmd_list]
    if "--mnemonic" in cmd_list:
        loggable[cmd_list.index("--mnemonic") + 1] = "***"
    logger.info("Launching anvil: %s", " ".join(loggable))

    out = DEVNULL if sys.platform == "win32" else PIPE
    env = os.environ.copy()
    env["RUST_BACKTRACE"] = "1"  # Get tracebacks from crashed anvil
    process = psutil.Popen(cmd_list, stdin=DEVNULL, stdout=out, stderr=out, env=env)
    output = ProcessOutputDrain(process, "anvil") if out == PIPE else None
    return process, cmd_list, output


def derive_fork_keys(mnemonic: str, count: int) -> list[LocalAccount]:
    """Derive the private keys of the accounts Anvil pre-funds.

    Uses the standard Ethereum derivation path `m/44'/60'/0'/0/{index}`,
    the same Anvil uses.

    :param mnemonic:
        Mnemonic given to Anvil with `--mnemonic`

    :param count:
        How many accounts to derive

    :return:
        Accounts in the same order as `eth_accounts` on the fork
    """
    Account.enable_unaudited_hdwallet_features()
    return [Account.from_mnemonic(mnemonic, account_path=f"m/44'/60'/0'/0/{i}") for i in range(count)]


def format_block_time(block_time: datetime.timedelta) -> int | float | None:
    """Convert block time to the `--block-time` argument.

    :return:
        Seconds, or `None` for auto-mining
    """
    seconds = block_time.total_seconds()
    if seconds == 0:
        return None
    if seconds.is_integer():
        return int(seconds)
    return seconds


@dataclass
class ForkLaunch:
    """Control an Anvil fork running on background.

    Comes with a helpful :py:meth:`close` method when it is time to put the fork to rest.
    """

    #: Which port was bound by Anvil
    port: int

    #: Used command-line to spin up anvil
    cmd: list[str]

    #: Where does Anvil listen to JSON-RPC
    json_rpc_url: str

    #: UNIX process that we opened
    process: psutil.Popen

    #: Pre-funded accounts on the fork
    keys: list[LocalAccount] = field(default_factory=list)

    #: The live network block number at the moment we forked
    fork_block_number: Optional[int] = None

    #: Background reader of the Anvil stdout and stderr
    output: Optional[ProcessOutputDrain] = None

    #: Set after close() has been called
    closed: bool = False

    def get_signing_account(self) -> LocalAccount:
        """The funded account used to replay events."""
        assert self.keys, "Fork has no funded accounts"
        return self.keys[0]

    def close(self, log_level: Optional[int] = None, block=True, block_timeout=30) -> tuple[bytes, bytes]:
        """Close the background Anvil process.

        Safe to call multiple times.

        :param log_level:
            Dump Anvil messages to logging

        :param block:
            Block the execution until anvil is gone

        :param block_timeout:
            How long time we try to kill Anvil until giving up.

        :return:
            Anvil stdout, stderr
        """
        if self.closed:
            return b"", b""

        self.closed = True
        stdout, stderr = shutdown_hard(
            self.process,
            log_level=log_level,
            block=block,
            block_timeout=block_timeout,
            check_port=self.port,
            output=self.output,
        )
        logger.info("Fork shutdown %s", self.json_rpc_url)
        return stdout, stderr


def launch_fork(
    config: Config,
    fork_url: Optional[str] = None,
    attempts=3,
    test_request_timeout=3.0,
) -> ForkLaunch:
    """Fork the configured live network with Anvil.

    This function waits `config.fork_launch_wait` seconds for the `anvil` process
    to start and complete the chain fork. Anvil launch may fail without any output,
    usually because the upstream node throttles us. In this case we kill the process
    and try again, up to `attempts` times.

    Example:

    .. code-block:: python

        launch = launch_fork(config)
        try:
            web3 = Web3(HTTPProvider(launch.json_rpc_url))
            assert web3.eth.block_number > 0
        finally:
            launch.close()

    :param config:
        Network, API key, block time and fork node options

    :param fork_url:
        Override the JSON-RPC URL we fork from.

        If not given, use the provider endpoint from `config`.

    :param attempts:
        How many times we try to start Anvil

    :param test_request_timeout:
        Timeout for the JSON-RPC requests that check if Anvil is up

    :return:
        Running fork

    :raise ForkLaunchError:
        Anvil missing, crashed, or never answered
    """

    if shutil.which(config.anvil_command.split(" ")[0]) is None:
        raise ForkLaunchError(f"{config.anvil_command} command not in PATH {os.environ.get('PATH')}")

    if config.fork_port is None:
        port = find_free_port()
    else:
        port = config.fork_port
        if is_localhost_port_listening(port):
            raise ForkLaunchError(f"localhost port {port} occupied.\nYou might have a zombie Anvil process around.\nRun to kill: kill -SIGKILL $(lsof -ti:{port})")

    if fork_url is None:
        fork_url = config.get_fork_source_url()

    url = f"http://localhost:{port}"

    args = dict(
        port=port,
        fork=fork_url,
        block_time=format_block_time(config.block_time),
        accounts=config.fork_accounts,
        mnemonic=config.fork_mnemonic,
    )

    attempts_left = attempts
    current_block = chain_id = None
    web3 = None

    while attempts_left > 0:
        try:
            process, final_cmd, output = _launch(config.anvil_command, **args)
        except OSError as e:
            raise ForkLaunchError(f"Could not start {config.anvil_command}: {e}") from e

        timeout = time.time() + config.fork_launch_wait

        # Use shorter read timeout here - otherwise requests will wait > 10s if something is wrong
        web3 = Web3(HTTPProvider(url, request_kwargs={"timeout": test_request_timeout}))
        while time.time() < timeout:
            if process.poll() is not None:
                # Anvil died, e.g. it could not fetch the fork state
                break

            try:
                current_block = web3.eth.block_number
                chain_id = web3.eth.chain_id
                break
            except (requests.exceptions.ConnectionError, requests.exceptions.ReadTimeout) as e:
                logger.debug("Anvil not ready, got exception %s", e)
                time.sleep(0.1)
                continue

        if current_block is None:
            logger.error("Could not read the latest block from anvil %s within %f seconds, shutting down and dumping output", url, config.fork_launch_wait)
            stdout, stderr = shutdown_hard(
                process,
                log_level=logging.ERROR,
                block=True,
                check_port=port,
                output=output,
            )

            attempts_left -= 1
            # The tail is bounded, so count what the drain has seen
            printed = output.bytes_read["stdout"] if output is not None else len(stdout)
            if printed == 0 and attempts_left > 0:
                logger.info("anvil did not start properly, try again, attempts left %d", attempts_left)
                continue

            raise ForkLaunchError(f"Could not read block number from Anvil after the launch at {url}, stdout is {len(stdout)} bytes, stderr is {len(stderr)} bytes")
        else:
            break

    logger.info(f"anvil forked network {chain_id}, the current block is {current_block:,}, fork JSON-RPC is {url}")

    keys = derive_fork_keys(config.fork_mnemonic, config.fork_accounts)
    launch = ForkLaunch(port, final_cmd, url, process, keys=keys, fork_block_number=current_block, output=output)

    try:
        funded = web3.eth.accounts
    except Exception as e:
        launch.close(log_level=logging.ERROR)
        raise ForkLaunchError(f"Could not list fork accounts: {e}") from e

    signer = launch.get_signing_account()
    if signer.address not in funded:
        launch.close()
        raise ForkLaunchError(f"Derived key {signer.address} is not among fork funded accounts {funded}")

    return launch
