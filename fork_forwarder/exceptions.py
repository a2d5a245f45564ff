"""Errors raised by the fork forwarder.

There are three families of failures:

- Startup errors (:py:class:`StartupError` and subclasses) abort :py:func:`fork_forwarder.forwarder.start`
  before it returns a fork endpoint. There is no retry.

- :py:class:`StreamTerminated` ends the background forwarding once the upstream
  log subscription dies and cannot be reinstalled.

- Per-event errors (:py:class:`EventDecodeError`, :py:class:`ReplayFailed`) stay inside
  the task processing that event and only show up in the logs.
"""


class ForkForwarderError(Exception):
    """Base class for all errors of this package."""


class ConfigurationError(ForkForwarderError, ValueError):
    """Configuration value missing or out of range."""


class StartupError(ForkForwarderError):
    """Something went wrong before forwarding could begin."""


class ForkLaunchError(StartupError):
    """The fork node process could not be started or never became responsive."""


class ForkConnectionError(StartupError):
    """Could not connect to the JSON-RPC endpoint of a launched fork."""


class UpstreamConnectionError(StartupError):
    """Could not open the websocket connection to the live network."""


class SubscriptionError(StartupError):
    """Reading the head block or installing the log filter failed."""


class StreamTerminated(ForkForwarderError):
    """The upstream log stream closed or errored."""


class EventDecodeError(ForkForwarderError):
    """A log did not look like a Swap event."""


class ReplayReverted(ForkForwarderError):
    """The replayed transaction was mined on the fork, but reverted."""


class ReplayFailed(ForkForwarderError):
    """Replaying an event on the fork failed on every attempt.

    :param address:
        The contract that emitted the original event

    :param attempts:
        How many times we tried

    :param last_error:
        The exception raised by the last attempt
    """

    def __init__(self, address: str, attempts: int, last_error: Exception):
        self.address = address
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Replaying event from {address} failed after {attempts} attempts: {last_error}")
