"""Command line entry point tests."""
import pytest

import fork_forwarder.main as main_module
from fork_forwarder.exceptions import ForkLaunchError
from fork_forwarder.main import create_parser, main


def test_parse_args():
    args = create_parser().parse_args(["--network", "testnet", "--test-mode", "--retries", "5"])
    assert args.network == "testnet"
    assert args.test_mode is True
    assert args.retries == 5
    assert args.retry_interval is None


def test_missing_api_key_exits(monkeypatch):
    monkeypatch.delenv("INFURA_API_KEY", raising=False)
    assert main(["--log-level", "error"]) == 1


def test_startup_failure_exits(monkeypatch):
    monkeypatch.setenv("INFURA_API_KEY", "abc")
    seen = []

    async def broken_launch(config):
        seen.append(config)
        raise ForkLaunchError("anvil crashed")

    monkeypatch.setattr(main_module, "launch", broken_launch)

    assert main(["--network", "testnet", "--retries", "0", "--log-level", "error"]) == 1
    (config,) = seen
    assert config.network.value == "testnet"
    assert config.tx_retry_times == 0


def test_bad_network_rejected():
    with pytest.raises(SystemExit):
        create_parser().parse_args(["--network", "goerli"])
