"""Fire-and-forget dispatching tests."""
import asyncio
import logging

import pytest

from conftest import PAIR_ADDRESS, make_swap_log
from fork_forwarder.dispatcher import Dispatcher
from fork_forwarder.exceptions import ReplayFailed, StreamTerminated


async def stream(logs):
    for log in logs:
        yield log


async def settle():
    """Let spawned tasks run."""
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_dispatch_in_arrival_order():
    """Every event gets a task and the tasks start in arrival order."""
    started = []

    async def processor(log):
        started.append(log["blockNumber"])

    dispatcher = Dispatcher(processor)
    with pytest.raises(StreamTerminated, match="ended"):
        await dispatcher.forward(stream([make_swap_log(b) for b in (100, 101, 102)]))

    await settle()
    assert started == [100, 101, 102]
    assert dispatcher.dispatched == 3
    assert dispatcher.succeeded == 3
    assert dispatcher.in_flight == 0


@pytest.mark.asyncio
async def test_slow_event_does_not_block_the_next():
    """A stuck processor does not hold back the events behind it."""
    release = asyncio.Event()
    finished = []

    async def processor(log):
        if log["blockNumber"] == 100:
            await release.wait()
        finished.append(log["blockNumber"])

    dispatcher = Dispatcher(processor)
    with pytest.raises(StreamTerminated):
        await dispatcher.forward(stream([make_swap_log(100), make_swap_log(101)]))

    await settle()
    assert finished == [101]
    assert dispatcher.in_flight == 1

    release.set()
    await asyncio.gather(*dispatcher.tasks)
    assert finished == [101, 100]
    assert dispatcher.in_flight == 0


@pytest.mark.asyncio
async def test_failed_event_is_logged_and_contained(caplog):
    """Processor errors are logged with the emitting address and do not stop forwarding."""
    failing_pair = "0x0d4a11d5EEaaC28EC3F61d100daF4d40471f1852"

    async def processor(log):
        if log["address"] == failing_pair:
            raise ReplayFailed(failing_pair, 4, RuntimeError("execution reverted"))

    dispatcher = Dispatcher(processor)
    logs = [make_swap_log(100, address=failing_pair), make_swap_log(101)]

    with caplog.at_level(logging.ERROR, logger="fork_forwarder.dispatcher"):
        with pytest.raises(StreamTerminated):
            await dispatcher.forward(stream(logs))
        await settle()

    assert dispatcher.failed == 1
    assert dispatcher.succeeded == 1
    assert f"could not process event {failing_pair}" in caplog.text
    assert PAIR_ADDRESS not in caplog.text


@pytest.mark.asyncio
async def test_max_in_flight():
    """Concurrency limit is respected while all events are still accepted."""
    running = 0
    peak = 0

    async def processor(log):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        running -= 1

    dispatcher = Dispatcher(processor, max_in_flight=2)
    with pytest.raises(StreamTerminated):
        await dispatcher.forward(stream([make_swap_log(b) for b in range(100, 106)]))

    # Everything was dispatched before any processing finished
    assert dispatcher.dispatched == 6

    await asyncio.gather(*dispatcher.tasks)
    assert peak == 2
    assert dispatcher.succeeded == 6


@pytest.mark.asyncio
async def test_stream_error_propagates():
    async def broken():
        yield make_swap_log(100)
        raise StreamTerminated("websocket died")

    async def processor(log):
        pass

    dispatcher = Dispatcher(processor)
    with pytest.raises(StreamTerminated, match="websocket died"):
        await dispatcher.forward(broken())
    assert dispatcher.dispatched == 1
