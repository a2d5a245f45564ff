"""Fire-and-forget event dispatching.

The dispatcher pulls events one by one and starts an independent
:py:class:`asyncio.Task` for each of them. A slow or stuck event never delays
reading the next one. Completion order of the tasks is not defined.
"""

import asyncio
import logging
from typing import Any, AsyncIterable, Awaitable, Callable, Optional

from web3.types import LogReceipt

from fork_forwarder.exceptions import StreamTerminated

logger = logging.getLogger(__name__)


#: Processes one event, raises on failure
EventProcessor = Callable[[LogReceipt], Awaitable[Any]]


class Dispatcher:
    """Forward events to concurrent processor tasks.

    - Processor errors are caught at the task boundary and logged with the
      address of the contract that emitted the event. They never reach the
      forwarding loop.

    - The dispatcher never awaits, joins or cancels the tasks it starts.
      References to running tasks are kept only so that the event loop does not
      garbage collect them mid-flight.

    - `max_in_flight` limits how many processors run at the same time.
      The limit is applied inside the spawned task, so pulling events
      never waits for it.
    """

    def __init__(self, processor: EventProcessor, max_in_flight: Optional[int] = None):
        assert max_in_flight is None or max_in_flight > 0, f"Got bad max_in_flight {max_in_flight}"
        self.processor = processor
        self.max_in_flight = max_in_flight
        self.semaphore = asyncio.Semaphore(max_in_flight) if max_in_flight else None

        #: Tasks started and not yet finished
        self.tasks: set[asyncio.Task] = set()

        #: Total events handed to processors
        self.dispatched = 0

        #: Events whose processing ended in an error
        self.failed = 0

        #: Events processed successfully
        self.succeeded = 0

    @property
    def in_flight(self) -> int:
        """How many event tasks are still running."""
        return len(self.tasks)

    def dispatch(self, event: LogReceipt) -> asyncio.Task:
        """Start processing one event on background and return immediately."""
        self.dispatched += 1
        task = asyncio.create_task(self._run(dict(event)), name=f"process-event-{self.dispatched}")
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def _run(self, event: LogReceipt):
        address = event.get("address")
        try:
            if self.semaphore is not None:
                async with self.semaphore:
                    await self.processor(event)
            else:
                await self.processor(event)
            self.succeeded += 1
        except Exception as e:
            self.failed += 1
            logger.error("could not process event %s: %s", address, e)
            logger.debug("Event processing failure details", exc_info=True)

    async def forward(self, events: AsyncIterable[LogReceipt]):
        """Dispatch every event from the stream.

        Never returns normally. Errors of the stream are propagated to the caller
        and a stream running dry raises :py:class:`fork_forwarder.exceptions.StreamTerminated`.
        Event tasks already started keep running.
        """
        async for event in events:
            logger.debug("Dispatching event from %s, block %s, tx %s", event.get("address"), event.get("blockNumber"), event.get("transactionHash"))
            self.dispatch(event)

        raise StreamTerminated("Event stream ended")
