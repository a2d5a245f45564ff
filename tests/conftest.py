"""Fake JSON-RPC connections for forwarder unit tests.

The fakes implement only the parts of :py:class:`web3.AsyncWeb3`
the forwarder touches.
"""
import asyncio
from types import SimpleNamespace
from typing import Optional

import pytest
from eth_abi import encode
from hexbytes import HexBytes

from fork_forwarder.subscriber import SWAP_TOPIC


#: A Uniswap v2 pair on mainnet (WETH/USDC)
PAIR_ADDRESS = "0xB4e16d0168e52d35CaCD2c6185b44281Ec28C9Dc"

#: Uniswap v2 router
ROUTER_ADDRESS = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"

RECEIVER_ADDRESS = "0x1111111111111111111111111111111111111111"


def make_swap_log(
    block_number: int,
    address=PAIR_ADDRESS,
    tx_hash: Optional[str] = None,
    log_index=0,
    amounts=(1000, 0, 0, 2000),
    removed=False,
) -> dict:
    """Build a Swap log like eth_subscribe delivers it."""
    if tx_hash is None:
        tx_hash = "0x" + f"{block_number:x}".rjust(64, "a")
    return {
        "address": address,
        "topics": [
            HexBytes(SWAP_TOPIC),
            HexBytes(bytes(12) + HexBytes(ROUTER_ADDRESS)),
            HexBytes(bytes(12) + HexBytes(RECEIVER_ADDRESS)),
        ],
        "data": HexBytes(encode(["uint256", "uint256", "uint256", "uint256"], list(amounts))),
        "blockNumber": block_number,
        "transactionHash": HexBytes(tx_hash),
        "logIndex": log_index,
        "removed": removed,
    }


class FakeSocket:
    """Pushes canned subscription messages, then ends or fails."""

    def __init__(self, messages: list, error: Optional[Exception] = None):
        self.messages = messages
        self.error = error

    async def process_subscriptions(self):
        for message in self.messages:
            await asyncio.sleep(0)
            yield message
        if self.error:
            raise self.error


class FakeProvider:
    def __init__(self):
        self.disconnected = False

    async def disconnect(self):
        self.disconnected = True


class FakeUpstreamEth:
    def __init__(self, head: int):
        self.head = head
        self.unsubscribed = []
        self.transactions = {}

    async def get_block(self, block_identifier):
        assert block_identifier == "latest"
        return {"number": self.head}

    async def unsubscribe(self, subscription_id):
        self.unsubscribed.append(subscription_id)
        return True

    async def get_transaction(self, tx_hash):
        return self.transactions[HexBytes(tx_hash).to_0x_hex()]


class FakeSubscriptionManager:
    """Accepts subscription objects and records their `eth_subscribe` params."""

    def __init__(self, subscription_id: str, subscribe_error: Optional[Exception] = None):
        self.subscription_id = subscription_id
        self.subscribe_error = subscribe_error
        self.subscriptions = []

    @property
    def filters(self) -> list:
        return [s.subscription_params[1] for s in self.subscriptions]

    async def subscribe(self, subscription):
        assert subscription.subscription_params[0] == "logs"
        if self.subscribe_error:
            raise self.subscribe_error
        self.subscriptions.append(subscription)
        return self.subscription_id


def make_upstream(head=100, logs=(), subscription_id="0xsub1", error=None, subscribe_error=None) -> SimpleNamespace:
    """Fake websocket connection streaming `logs` for one subscription."""
    messages = [{"subscription": subscription_id, "result": log} for log in logs]
    return SimpleNamespace(
        eth=FakeUpstreamEth(head),
        subscription_manager=FakeSubscriptionManager(subscription_id, subscribe_error),
        socket=FakeSocket(messages, error),
        provider=FakeProvider(),
    )


class FakeForkEth:
    """Fork side JSON-RPC calls."""

    def __init__(self, chain_id=1, receipt_status=1):
        self._chain_id = chain_id
        self.receipt_status = receipt_status
        self.calls = []
        self.sent = []
        self.nonce = 0

    async def _value(self, value):
        return value

    @property
    def chain_id(self):
        return self._value(self._chain_id)

    @property
    def gas_price(self):
        return self._value(1_000_000_000)

    async def call(self, tx):
        self.calls.append(tx)
        return HexBytes(b"\x01")

    async def estimate_gas(self, tx):
        return 150_000

    async def get_transaction_count(self, address, block_identifier):
        assert block_identifier == "pending"
        return self.nonce

    async def send_raw_transaction(self, raw):
        self.sent.append(raw)
        self.nonce += 1
        return HexBytes(bytes([len(self.sent)]) * 32)

    async def wait_for_transaction_receipt(self, tx_hash, timeout=120.0):
        return {"status": self.receipt_status, "gasUsed": 120_000, "transactionHash": tx_hash}


@pytest.fixture()
def fork_web3() -> SimpleNamespace:
    return SimpleNamespace(eth=FakeForkEth(), provider=FakeProvider())
