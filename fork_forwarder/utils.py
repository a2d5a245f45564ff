"""Process, port and logging helpers."""

import collections
import logging
import os
import random
import socket
import threading
import time
from typing import Optional
from urllib.parse import urlparse

import coloredlogs
import psutil


logger = logging.getLogger(__name__)


def is_localhost_port_listening(port: int, host="localhost") -> bool:
    """Check if some process is already serving on a localhost port.

    :return: True if there is a process occupying the port
    """

    a_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        return a_socket.connect_ex((host, port)) == 0
    finally:
        a_socket.close()


def find_free_port(min_port: int = 20_000, max_port: int = 40_000, max_attempt: int = 20) -> int:
    """Pick a random free localhost port for the fork node.

    .. note ::

        Subject to race condition with other processes binding ports,
        but should be rareish.

    :param min_port:
        Minimum port range

    :param max_port:
        Maximum port range

    :param max_attempt:
        Give up and die with an exception if no port found after this many attempts.

    :return:
        Free port number
    """

    assert type(min_port) == int
    assert type(max_port) == int
    assert type(max_attempt) == int

    for attempt in range(0, max_attempt):
        random_port = random.randrange(start=min_port, stop=max_port)
        logger.debug("Attempting to allocate port %d for the fork", random_port)
        if not is_localhost_port_listening(random_port, "127.0.0.1"):
            return random_port

    raise RuntimeError(f"Could not find a free port in range {min_port} - {max_port} after {max_attempt} attempts")


class ProcessOutputDrain:
    """Read stdout and stderr of a child process on background threads.

    A long-lived child writing to a pipe nobody reads stops once
    the OS pipe buffer is full. Every line is logged on debug level
    and the last `tail_lines` lines of each pipe are kept for :py:func:`shutdown_hard`.
    """

    def __init__(self, process: psutil.Popen, name: str, tail_lines=500):
        self.name = name

        #: How many bytes the child has written, per pipe
        self.bytes_read = {"stdout": 0, "stderr": 0}

        self.tails = {}
        self.threads = []
        for stream_name in ("stdout", "stderr"):
            pipe = getattr(process, stream_name)
            self.tails[stream_name] = collections.deque(maxlen=tail_lines)
            if pipe is None:
                continue
            thread = threading.Thread(target=self._drain, args=(pipe, stream_name), name=f"{name}-{stream_name}", daemon=True)
            thread.start()
            self.threads.append(thread)

    def _drain(self, pipe, stream_name: str):
        tail = self.tails[stream_name]
        for line in iter(pipe.readline, b""):
            self.bytes_read[stream_name] += len(line)
            tail.append(line)
            logger.debug("%s %s: %s", self.name, stream_name, line.decode("utf-8", errors="replace").rstrip())

    def collect(self, timeout=5.0) -> tuple[bytes, bytes]:
        """Wait for the pipes to close and return the kept output.

        :return:
            stdout tail, stderr tail
        """
        for thread in self.threads:
            thread.join(timeout)
        return b"".join(self.tails["stdout"]), b"".join(self.tails["stderr"])


def shutdown_hard(
    process: psutil.Popen,
    log_level: Optional[int] = None,
    block=True,
    block_timeout=30,
    check_port: Optional[int] = None,
    output: Optional[ProcessOutputDrain] = None,
) -> tuple[bytes, bytes]:
    """SIGKILL the fork node and collect whatever it printed.

    :param process:
        Process to kill

    :param log_level:
        If set, dump the process stdout and stderr to the Python logging using this level.

    :param block:
        Block the execution until the port given in `check_port` is free again.

    :param block_timeout:
        How long we give for process to clean up after itself

    :param check_port:
        TCP/IP localhost port the process was serving

    :param output:
        Drain already reading the process pipes.
        If not given, the pipes are read directly.

    :return:
        stdout, stderr as bytes
    """

    if process.poll() is None:
        process.kill()

    if output is not None:
        stdout, stderr = output.collect()
    else:
        stdout = process.stdout.read() if process.stdout is not None else b""
        stderr = process.stderr.read() if process.stderr is not None else b""

    if log_level is not None:
        for stream_name, data in (("stdout", stdout), ("stderr", stderr)):
            for line in data.splitlines():
                logger.log(log_level, "%s: %s", stream_name, line.decode("utf-8", errors="replace").strip())

    if block:
        assert check_port is not None, "Give check_port to block the execution"
        deadline = time.time() + block_timeout
        while time.time() < deadline:
            if not is_localhost_port_listening(check_port):
                return stdout, stderr
            time.sleep(0.1)

        raise AssertionError(f"Could not terminate the fork node in {block_timeout} seconds, stdout is {len(stdout)} bytes, stderr is {len(stderr)} bytes")

    return stdout, stderr


def get_url_domain(url: str) -> str:
    """Redact URL so that only domain is displayed.

    Infura carries the API key in the path, so never log full URLs.
    """
    parsed = urlparse(url)
    if parsed.port in (80, 443, None):
        return parsed.hostname
    else:
        return f"{parsed.hostname}:{parsed.port}"


def setup_console_logging(log_level: Optional[str] = None, default_log_level="info") -> logging.Logger:
    """Set up coloured log output for the command line.

    - The level is `log_level`, or read from `LOG_LEVEL` environment variable,
      falling back to `default_log_level`

    - Tune down noisy dependency library logging

    :return:
        Root logger
    """

    level = (log_level or os.environ.get("LOG_LEVEL", default_log_level)).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    fmt = "%(asctime)s %(name)-36s %(levelname)-8s %(message)s"
    date_fmt = "%H:%M:%S"
    coloredlogs.install(level=numeric_level, fmt=fmt, datefmt=date_fmt)

    # Mute noise
    logging.getLogger("web3.providers.AsyncHTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.providers.WebSocketProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("web3.manager.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("websockets.client").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logging.getLogger()
