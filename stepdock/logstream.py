"""
LogStream - live, single-pass reader over a container's output.

A background thread pumps the runtime's multiplexed log stream through the
demultiplexer and forwards plain payload bytes through a bounded in-process
pipe. The LogStream owns the thread: closing the stream (or cancelling it)
closes the source, which unblocks the pump, and joins the thread so no pump
outlives its reader.
"""

import io
import logging
import queue
import threading
from typing import BinaryIO, Optional

from stepdock.errors import RuntimeOperationFailure, StepdockError
from stepdock.stdcopy import iter_frames

logger = logging.getLogger(__name__)

# Chunks buffered between the pump and the reader
PIPE_CAPACITY = 64

# Seconds between cancel/close checks while blocked
_POLL_INTERVAL = 0.1

_EOF = object()


class LogStream(io.RawIOBase):
    """
    Readable byte stream of a container's combined stdout/stderr.

    Bytes are yielded in arrival order. The stream reaches EOF when the
    runtime closes the log stream, and cannot be rewound.

    Usage:
        with engine.tail(step) as logs:
            for line in logs:
                ...
    """

    def __init__(
        self,
        source: BinaryIO,
        name: str = "",
        cancel: Optional[threading.Event] = None,
    ):
        """
        Start pumping source.

        Args:
            source: Multiplexed log stream from RuntimeClient.container_logs
            name: Container name, used in log messages
            cancel: Event that ends the stream when set
        """
        super().__init__()
        self._source = source
        self._name = name
        self._cancel = cancel
        self._pipe: queue.Queue = queue.Queue(maxsize=PIPE_CAPACITY)
        self._pending = b""
        self._error: Optional[BaseException] = None
        self._eof = False
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._pump, name=f"logstream-{name}", daemon=True
        )
        self._thread.start()

    # -------------------------------------------------------------------------
    # Pump (background thread)
    # -------------------------------------------------------------------------

    def _put(self, item) -> bool:
        """Block until item is queued; False if the reader went away."""
        while not self._stopped.is_set():
            try:
                self._pipe.put(item, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _pump(self) -> None:
        try:
            for _stream, payload in iter_frames(self._source):
                if not payload:
                    continue
                if not self._put(payload):
                    return
        except StepdockError as e:
            if not self._stopped.is_set():
                logger.warning(f"Log stream for {self._name} failed: {e}")
                self._put(e)
        except Exception as e:
            if self._stopped.is_set():
                # Source closed underneath the pump by close()
                logger.debug(f"Log stream for {self._name} closed: {e}")
            else:
                logger.warning(f"Reading log stream for {self._name} failed: {e}")
                self._put(RuntimeOperationFailure(
                    f"container_logs {self._name}: {e}",
                    operation="container_logs",
                    resource=self._name,
                    cause=e,
                ))
        finally:
            self._close_source()
            self._put(_EOF)

    def _close_source(self) -> None:
        try:
            self._source.close()
        except (OSError, ValueError) as e:
            logger.debug(f"Closing log source for {self._name}: {e}")

    # -------------------------------------------------------------------------
    # Reader
    # -------------------------------------------------------------------------

    def readable(self) -> bool:
        return True

    def _next_chunk(self) -> Optional[bytes]:
        """Block for the next chunk; None at EOF or on cancellation."""
        while True:
            if self._stopped.is_set():
                return None
            if self._cancel is not None and self._cancel.is_set():
                logger.debug(f"Log stream for {self._name} cancelled")
                self.close()
                return None
            try:
                item = self._pipe.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _EOF:
                return None
            if isinstance(item, BaseException):
                self._error = item
                return None
            return item

    def readinto(self, b) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed LogStream")
        if not self._pending and not self._eof:
            chunk = self._next_chunk()
            if chunk is None:
                self._eof = True
                if self._error is not None:
                    error, self._error = self._error, None
                    raise error
            else:
                self._pending = chunk

        n = min(len(b), len(self._pending))
        b[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n

    def close(self) -> None:
        """Close the stream, the underlying log source, and join the pump."""
        if self.closed:
            return
        self._stopped.set()
        self._close_source()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
            if self._thread.is_alive():
                logger.warning(f"Log pump for {self._name} did not stop")
        super().close()
