"""Swap replay tests against a fake fork."""
import asyncio
import datetime
from types import SimpleNamespace

import pytest
from eth_account import Account
from hexbytes import HexBytes

from conftest import PAIR_ADDRESS, RECEIVER_ADDRESS, ROUTER_ADDRESS, make_swap_log, make_upstream
from fork_forwarder.exceptions import EventDecodeError, ReplayFailed, ReplayReverted
from fork_forwarder.processor import ReplayResult, SwapReplayer, decode_swap, process_event


@pytest.fixture()
def sleeps(monkeypatch) -> list:
    """Record retry sleeps instead of sleeping."""
    recorded = []

    async def fake_sleep(delay, *args, **kwargs):
        recorded.append(delay)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return recorded


@pytest.fixture()
def swap_log() -> dict:
    return make_swap_log(18_000_000, log_index=7)


@pytest.fixture()
def upstream_web3(swap_log) -> SimpleNamespace:
    """Live network that knows the transaction of `swap_log`."""
    web3 = make_upstream()
    web3.eth.transactions[swap_log["transactionHash"].to_0x_hex()] = {
        "from": "0x2222222222222222222222222222222222222222",
        "to": ROUTER_ADDRESS,
        "input": HexBytes("0x38ed1739"),
        "value": 0,
    }
    return web3


class FailingReplayer(SwapReplayer):
    """Fails the first `failures` attempts."""

    def __init__(self, failures: int, **kwargs):
        super().__init__(fork_web3=None, upstream_web3=None, account=None, **kwargs)
        self.failures = failures
        self.attempts = []

    async def replay(self, event, attempt=1):
        self.attempts.append(attempt)
        if len(self.attempts) <= self.failures:
            raise RuntimeError(f"attempt {attempt} failed")
        return ReplayResult(event, attempt)


def test_decode_swap(swap_log):
    event = decode_swap(swap_log)
    assert event.pair_address == PAIR_ADDRESS
    assert event.sender == ROUTER_ADDRESS
    assert event.to == RECEIVER_ADDRESS
    assert (event.amount0_in, event.amount1_in, event.amount0_out, event.amount1_out) == (1000, 0, 0, 2000)
    assert event.block_number == 18_000_000
    assert event.log_index == 7
    assert event.tx_hash == swap_log["transactionHash"].to_0x_hex()


def test_decode_not_a_swap(swap_log):
    swap_log["topics"][0] = HexBytes(b"\x01" * 32)
    with pytest.raises(EventDecodeError, match="Not a Swap event"):
        decode_swap(swap_log)


def test_decode_missing_topics(swap_log):
    swap_log["topics"] = swap_log["topics"][:2]
    with pytest.raises(EventDecodeError, match="3 topics"):
        decode_swap(swap_log)


def test_decode_bad_data(swap_log):
    swap_log["data"] = HexBytes("0x1234")
    with pytest.raises(EventDecodeError):
        decode_swap(swap_log)


@pytest.mark.asyncio
async def test_retry_until_success(swap_log, sleeps):
    replayer = FailingReplayer(2, retry_times=3, retry_interval=datetime.timedelta(seconds=2))
    result = await replayer.process(swap_log)
    assert result.attempts == 3
    assert replayer.attempts == [1, 2, 3]
    assert sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_retries_exhausted(swap_log, sleeps):
    """Processing is attempted retry_times + 1 times, spaced by the retry interval."""
    replayer = FailingReplayer(100, retry_times=3, retry_interval=datetime.timedelta(milliseconds=500))

    with pytest.raises(ReplayFailed) as exc_info:
        await replayer.process(swap_log)

    assert replayer.attempts == [1, 2, 3, 4]
    assert sleeps == [0.5, 0.5, 0.5]
    assert exc_info.value.address == PAIR_ADDRESS
    assert exc_info.value.attempts == 4
    assert "attempt 4 failed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_no_retries(swap_log, sleeps):
    replayer = FailingReplayer(100, retry_times=0, retry_interval=datetime.timedelta(seconds=2))
    with pytest.raises(ReplayFailed):
        await replayer.process(swap_log)
    assert replayer.attempts == [1]
    assert sleeps == []


@pytest.mark.asyncio
async def test_decode_error_is_not_retried(swap_log, sleeps):
    swap_log["topics"] = []
    replayer = FailingReplayer(0, retry_times=3, retry_interval=datetime.timedelta(seconds=2))
    with pytest.raises(EventDecodeError):
        await replayer.process(swap_log)
    assert replayer.attempts == []


@pytest.mark.asyncio
async def test_test_mode_simulates(swap_log, fork_web3, upstream_web3):
    """Test mode runs eth_call and never broadcasts."""
    account = Account.create()
    result = await process_event(
        swap_log,
        fork_web3,
        upstream_web3,
        retry_times=0,
        retry_interval=datetime.timedelta(0),
        account=account,
        test_mode=True,
    )

    assert result.call_output == b"\x01"
    assert result.tx_hash is None
    assert fork_web3.eth.sent == []

    (tx,) = fork_web3.eth.calls
    assert tx["from"] == account.address
    assert tx["to"] == ROUTER_ADDRESS
    assert tx["data"] == HexBytes("0x38ed1739")
    assert tx["chainId"] == 1


@pytest.mark.asyncio
async def test_broadcast_replay(swap_log, fork_web3, upstream_web3):
    """Replays are signed by the fork account with consecutive nonces."""
    replayer = SwapReplayer(fork_web3, upstream_web3, Account.create(), retry_times=0, retry_interval=datetime.timedelta(0))

    first, second = await asyncio.gather(replayer.process(swap_log), replayer.process(swap_log))

    assert len(fork_web3.eth.sent) == 2
    assert fork_web3.eth.nonce == 2
    assert first.tx_hash != second.tx_hash
    assert first.gas_used == 120_000


@pytest.mark.asyncio
async def test_reverted_replay_fails(swap_log, fork_web3, upstream_web3, sleeps):
    fork_web3.eth.receipt_status = 0
    replayer = SwapReplayer(fork_web3, upstream_web3, Account.create(), retry_times=1, retry_interval=datetime.timedelta(seconds=1))

    with pytest.raises(ReplayFailed) as exc_info:
        await replayer.process(swap_log)

    assert isinstance(exc_info.value.last_error, ReplayReverted)
    assert len(fork_web3.eth.sent) == 2
    assert sleeps == [1.0]
