"""
Demultiplexer for the Docker combined stdout/stderr stream.

When a container runs without a TTY, the runtime multiplexes its output into
one stream of frames. Each frame has an 8-byte header:

    [STREAM, 0, 0, 0, SIZE1, SIZE2, SIZE3, SIZE4][PAYLOAD]

STREAM is 0 (stdin), 1 (stdout), 2 (stderr) or 3 (system error) and SIZE is
the big-endian uint32 payload length. Frames arrive in the order the runtime
observed the writes, so copying payloads in frame order preserves the
interleaving of stdout and stderr.
"""

import struct
from typing import BinaryIO, Iterator, Protocol

from stepdock.errors import RuntimeOperationFailure, StreamFormatError


STDIN = 0
STDOUT = 1
STDERR = 2
SYSTEMERR = 3

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxL")


class Writer(Protocol):
    def write(self, data: bytes) -> object:
        ...


def _read_exact(src: BinaryIO, size: int) -> bytes:
    """Read exactly size bytes, or fewer only at end of stream."""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = src.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def iter_frames(src: BinaryIO) -> Iterator[tuple[int, bytes]]:
    """
    Yield (stream, payload) for each frame of a multiplexed stream.

    Stops cleanly at end of stream on a frame boundary.

    Raises:
        StreamFormatError: If the stream ends mid-frame or carries an
            unknown stream id
        RuntimeOperationFailure: If the runtime sends a system-error frame
    """
    while True:
        header = _read_exact(src, HEADER_SIZE)
        if not header:
            return
        if len(header) < HEADER_SIZE:
            raise StreamFormatError(
                f"unexpected EOF in frame header ({len(header)} of {HEADER_SIZE} bytes)",
                operation="container_logs",
            )

        stream, size = _HEADER.unpack(header)
        if stream not in (STDIN, STDOUT, STDERR, SYSTEMERR):
            raise StreamFormatError(
                f"unrecognized stream id: {stream}", operation="container_logs"
            )

        payload = _read_exact(src, size)
        if len(payload) < size:
            raise StreamFormatError(
                f"unexpected EOF in frame payload ({len(payload)} of {size} bytes)",
                operation="container_logs",
            )

        if stream == SYSTEMERR:
            raise RuntimeOperationFailure(
                f"error from daemon in stream: {payload.decode('utf-8', 'replace')}",
                operation="container_logs",
            )
        yield stream, payload


def std_copy(dst_out: Writer, dst_err: Writer, src: BinaryIO) -> int:
    """
    Copy a multiplexed stream, routing stdout and stderr payloads.

    Stdin frames (only present on attach streams) are routed to dst_out.

    Returns:
        Total number of payload bytes written
    """
    written = 0
    for stream, payload in iter_frames(src):
        if stream == STDERR:
            dst_err.write(payload)
        else:
            dst_out.write(payload)
        written += len(payload)
    return written
