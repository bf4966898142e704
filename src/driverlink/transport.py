"""Byte-stream transports connecting the client to the driver process."""

import logging
import os
import subprocess
from collections.abc import Sequence
from typing import BinaryIO

logger = logging.getLogger(__name__)

DRIVER_PATH_ENV_VAR: str = "DRIVERLINK_DRIVER_PATH"
_READ_CHUNK_SIZE: int = 64 * 1024
_PROCESS_EXIT_TIMEOUT_SECONDS: float = 2.0


class Transport:
    """Bidirectional byte stream consumed by a connection.

    ``write`` may be called from many threads but the connection serializes
    those calls; ``read_chunk`` is only ever called by the reader thread.
    """

    def write(self, data: bytes) -> None:
        """Write one complete frame.

        :param data: Frame bytes.
        """
        raise NotImplementedError

    def read_chunk(self) -> bytes:
        """Block until bytes are available.

        :returns: Next chunk, or ``b""`` once the stream is closed.
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release the underlying stream."""
        raise NotImplementedError


class PipeTransport(Transport):
    """Transport over a pair of binary pipes, usually a driver's stdin/stdout."""

    _writer: BinaryIO
    _reader: BinaryIO
    _process: subprocess.Popen | None
    _is_closed: bool

    def __init__(
        self,
        writer: BinaryIO,
        reader: BinaryIO,
        process: subprocess.Popen | None = None,
    ) -> None:
        """Initialize a pipe transport.

        :param writer: Writable binary stream (driver stdin).
        :param reader: Readable binary stream (driver stdout).
        :param process: Optional driver process to terminate on close.
        """
        self._writer = writer
        self._reader = reader
        self._process = process
        self._is_closed = False

    @classmethod
    def spawn(cls, command: Sequence[str]) -> "PipeTransport":
        """Start a driver subprocess and attach to its stdin/stdout.

        The driver's stderr is inherited so its diagnostics stay visible.

        :param command: Executable and arguments.
        :returns: Transport bound to the new process.
        """
        process: subprocess.Popen = subprocess.Popen(
            list(command),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            bufsize=0,
        )
        logger.debug("Started driver process %s (pid %d)", command[0], process.pid)
        return cls(process.stdin, process.stdout, process=process)

    @property
    def process(self) -> subprocess.Popen | None:
        """Return the owned driver process, if any.

        :returns: Process handle or ``None``.
        """
        return self._process

    def write(self, data: bytes) -> None:
        """Write one frame and flush it.

        :param data: Frame bytes.
        """
        self._writer.write(data)
        self._writer.flush()

    def read_chunk(self) -> bytes:
        """Read whatever is available from the driver.

        :returns: Next chunk, or ``b""`` at end of stream.
        """
        read1 = getattr(self._reader, "read1", None)
        if read1 is not None:
            return read1(_READ_CHUNK_SIZE)
        return os.read(self._reader.fileno(), _READ_CHUNK_SIZE)

    def close(self) -> None:
        """Close both pipes and stop the driver process."""
        if self._is_closed is True:
            return
        self._is_closed = True

        try:
            self._writer.close()
        except OSError as exc:
            logger.debug("Closing driver stdin failed: %s", exc)

        process: subprocess.Popen | None = self._process
        if process is not None:
            try:
                process.wait(timeout=_PROCESS_EXIT_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("Driver process %d did not exit; killing it", process.pid)
                process.kill()
                process.wait(timeout=_PROCESS_EXIT_TIMEOUT_SECONDS)

        try:
            self._reader.close()
        except OSError as exc:
            logger.debug("Closing driver stdout failed: %s", exc)


def resolve_driver_executable(executable: str | None = None) -> str:
    """Resolve the driver executable from an argument or the environment.

    :param executable: Explicit executable path.
    :returns: Executable path.
    :raises ValueError: If neither the argument nor the environment names one.
    """
    if executable is not None:
        return executable
    from_env: str | None = os.environ.get(DRIVER_PATH_ENV_VAR)
    if from_env is None or len(from_env) == 0:
        raise ValueError(
            f"No driver executable given and {DRIVER_PATH_ENV_VAR} is not set"
        )
    return from_env
