"""Replay live Swap events on the fork.

For every Swap log we:

1. Decode the Uniswap v2 style payload for logging and sanity checking.

2. Fetch the transaction that emitted the log from the live network.

3. Send the same call (`to`, `data`, `value`) to the fork from the fork's funded account.
   In test mode the call is only simulated with `eth_call`.

4. On failure sleep and try again, up to the configured retry count.

The replayed transaction is signed by the fork account, not by the original sender,
so calls relying on the original sender's balances or approvals revert on the fork.
A reverted replay counts as a failed attempt.
"""

import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress, HexStr
from hexbytes import HexBytes
from web3 import AsyncWeb3, Web3
from web3.types import LogReceipt, TxParams

from fork_forwarder.config import Config
from fork_forwarder.exceptions import EventDecodeError, ReplayFailed, ReplayReverted
from fork_forwarder.subscriber import SWAP_TOPIC, convert_jsonrpc_value_to_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SwapEvent:
    """Decoded Uniswap v2 Swap log.

    .. code-block:: text

        event Swap(
          address indexed sender,
          uint amount0In,
          uint amount1In,
          uint amount0Out,
          uint amount1Out,
          address indexed to
        );
    """

    #: The pair contract that emitted the event
    pair_address: ChecksumAddress

    #: Router or whoever called swap() on the pair
    sender: ChecksumAddress

    #: Receiver of the output tokens
    to: ChecksumAddress

    amount0_in: int
    amount1_in: int
    amount0_out: int
    amount1_out: int

    #: Live network block
    block_number: int

    #: Live network transaction
    tx_hash: HexStr

    log_index: int

    def __repr__(self):
        return f"<Swap on {self.pair_address} in tx {self.tx_hash} block {self.block_number:,}>"


@dataclass(frozen=True, slots=True)
class ReplayResult:
    """Outcome of a successful replay."""

    #: The replayed event
    event: SwapEvent

    #: How many attempts it took
    attempts: int

    #: Fork transaction hash, `None` in test mode
    tx_hash: Optional[HexStr] = None

    #: Gas used on the fork, `None` in test mode
    gas_used: Optional[int] = None

    #: `eth_call` output in test mode
    call_output: Optional[bytes] = None


def _topic_to_address(topic: str | bytes) -> ChecksumAddress:
    raw = HexBytes(topic)
    if len(raw) != 32:
        raise EventDecodeError(f"Expected 32 bytes topic, got {len(raw)} bytes: {raw.hex()}")
    return Web3.to_checksum_address(raw[12:])


def decode_swap(log: LogReceipt) -> SwapEvent:
    """Decode a raw Swap log.

    :param log:
        Log as delivered by the websocket subscription

    :raise EventDecodeError:
        The log is not a Uniswap v2 Swap event
    """

    try:
        topics = log["topics"]
        if len(topics) != 3:
            raise EventDecodeError(f"Swap event needs 3 topics, got {len(topics)}")

        if HexBytes(topics[0]) != HexBytes(SWAP_TOPIC):
            raise EventDecodeError(f"Not a Swap event, topic0 is {HexBytes(topics[0]).hex()}")

        amount0_in, amount1_in, amount0_out, amount1_out = decode(["uint256", "uint256", "uint256", "uint256"], HexBytes(log["data"]))

        return SwapEvent(
            pair_address=Web3.to_checksum_address(log["address"]),
            sender=_topic_to_address(topics[1]),
            to=_topic_to_address(topics[2]),
            amount0_in=amount0_in,
            amount1_in=amount1_in,
            amount0_out=amount0_out,
            amount1_out=amount1_out,
            block_number=convert_jsonrpc_value_to_int(log["blockNumber"]),
            tx_hash=HexStr(HexBytes(log["transactionHash"]).to_0x_hex()),
            log_index=convert_jsonrpc_value_to_int(log["logIndex"]),
        )
    except EventDecodeError:
        raise
    except (KeyError, ValueError, TypeError, DecodingError) as e:
        raise EventDecodeError(f"Could not decode Swap log {log.get('transactionHash')}: {e}") from e


class SwapReplayer:
    """Replay Swap events on the fork with retries.

    One replayer is shared by all event tasks. The nonce of the signing
    account is allocated under a lock, so concurrent replays do not
    broadcast with the same nonce.
    """

    def __init__(
        self,
        fork_web3: AsyncWeb3,
        upstream_web3: AsyncWeb3,
        account: LocalAccount,
        retry_times: int,
        retry_interval: datetime.timedelta,
        test_mode=False,
        receipt_timeout: float = 120.0,
    ):
        assert retry_times >= 0, f"Got bad retry count {retry_times}"
        self.fork_web3 = fork_web3
        self.upstream_web3 = upstream_web3
        self.account = account
        self.retry_times = retry_times
        self.retry_interval = retry_interval
        self.test_mode = test_mode
        self.receipt_timeout = receipt_timeout
        self.nonce_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: Config, fork_web3: AsyncWeb3, upstream_web3: AsyncWeb3, account: LocalAccount) -> "SwapReplayer":
        return cls(
            fork_web3,
            upstream_web3,
            account,
            retry_times=config.tx_retry_times,
            retry_interval=config.tx_retry_interval,
            test_mode=config.test_mode,
        )

    async def __call__(self, log: LogReceipt) -> ReplayResult:
        return await self.process(log)

    async def process(self, log: LogReceipt) -> ReplayResult:
        """Replay one event, retrying on failure.

        :raise EventDecodeError:
            Malformed log, not retried

        :raise ReplayFailed:
            All `retry_times + 1` attempts failed
        """
        event = decode_swap(log)
        attempts = self.retry_times + 1
        last_error = None

        for attempt in range(1, attempts + 1):
            try:
                result = await self.replay(event, attempt)
                logger.debug("Replayed %s on attempt %d: %s", event, attempt, result.tx_hash or "simulated")
                return result
            except Exception as e:
                last_error = e
                if attempt < attempts:
                    logger.warning(
                        "Attempt %d/%d to replay %s failed: %s. Retrying in %s",
                        attempt,
                        attempts,
                        event,
                        e,
                        self.retry_interval,
                    )
                    await asyncio.sleep(self.retry_interval.total_seconds())

        raise ReplayFailed(event.pair_address, attempts, last_error)

    async def build_transaction(self, event: SwapEvent) -> TxParams:
        """Build the fork transaction equivalent to the live transaction of the event."""
        original = await self.upstream_web3.eth.get_transaction(event.tx_hash)

        tx: TxParams = {
            "from": self.account.address,
            "data": original["input"],
            "value": original["value"],
            "chainId": await self.fork_web3.eth.chain_id,
        }

        # None for contract deployments
        if original.get("to"):
            tx["to"] = original["to"]

        return tx

    async def replay(self, event: SwapEvent, attempt: int = 1) -> ReplayResult:
        """Make one replay attempt.

        :raise ReplayReverted:
            The fork transaction reverted
        """
        tx = await self.build_transaction(event)

        if self.test_mode:
            output = await self.fork_web3.eth.call(tx)
            return ReplayResult(event, attempt, call_output=bytes(output))

        async with self.nonce_lock:
            tx["gas"] = await self.fork_web3.eth.estimate_gas(tx)
            tx["gasPrice"] = await self.fork_web3.eth.gas_price
            tx["nonce"] = await self.fork_web3.eth.get_transaction_count(self.account.address, "pending")
            signed = self.account.sign_transaction(tx)
            tx_hash = await self.fork_web3.eth.send_raw_transaction(signed.raw_transaction)

        receipt = await self.fork_web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt["status"] != 1:
            raise ReplayReverted(f"Fork transaction {HexBytes(tx_hash).to_0x_hex()} replaying {event.tx_hash} reverted")

        return ReplayResult(
            event,
            attempt,
            tx_hash=HexStr(HexBytes(tx_hash).to_0x_hex()),
            gas_used=receipt["gasUsed"],
        )


async def process_event(
    event: LogReceipt,
    fork_web3: AsyncWeb3,
    upstream_web3: AsyncWeb3,
    retry_times: int,
    retry_interval: datetime.timedelta,
    account: LocalAccount,
    test_mode=False,
) -> ReplayResult:
    """Replay a single Swap log on the fork.

    Convenience wrapper around :py:class:`SwapReplayer` for one-off use.
    Does not coordinate nonces with other concurrent calls: share a
    :py:class:`SwapReplayer` instance for that.
    """
    replayer = SwapReplayer(
        fork_web3,
        upstream_web3,
        account,
        retry_times=retry_times,
        retry_interval=retry_interval,
        test_mode=test_mode,
    )
    return await replayer.process(event)
