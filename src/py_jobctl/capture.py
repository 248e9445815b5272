"""Capture pipe and bounded output buffer.

A command's output is collected through an anonymous pipe: the child
writes to one end, the engine reads the other.  Two rules keep this
from hanging:

    - **The read end is non-blocking** while the job runs, so the wait
      loop can keep calling the host's event hook.  "Would block" just
      means "nothing yet".
    - **The parent closes its copy of the write end** straight after
      forking.  Otherwise the pipe never reports EOF, because the
      parent itself would still count as a writer.

The buffer has a fixed capacity.  Bytes beyond it are still read (so
the child never stalls on a full pipe) but dropped, and the buffer
remembers that it truncated.
"""

import os


class OutputBuffer:
    """Append-only byte buffer with a hard capacity."""

    def __init__(self, capacity: int) -> None:
        """Create an empty buffer holding at most *capacity* bytes."""
        self._capacity = capacity
        self._data = bytearray()
        self._dropped = 0

    @property
    def capacity(self) -> int:
        """Return the maximum number of bytes kept."""
        return self._capacity

    @property
    def dropped(self) -> int:
        """Return how many bytes were discarded for lack of room."""
        return self._dropped

    @property
    def truncated(self) -> bool:
        """Return True if any output was discarded."""
        return self._dropped > 0

    def append(self, chunk: bytes) -> int:
        """Keep as much of *chunk* as fits.

        Returns:
            The number of bytes kept.

        """
        room = self._capacity - len(self._data)
        kept = chunk[: max(room, 0)]
        self._data.extend(kept)
        self._dropped += len(chunk) - len(kept)
        return len(kept)

    def getvalue(self) -> bytes:
        """Return the bytes kept so far."""
        return bytes(self._data)

    def __len__(self) -> int:
        """Return the number of bytes kept."""
        return len(self._data)


class CapturePipe:
    """The pipe a job's output flows through."""

    def __init__(self) -> None:
        """Create the pipe; the read end is made non-blocking.

        Raises:
            OSError: If the pipe cannot be created.

        """
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        self._eof = False
        self._write_open = True
        self._read_open = True

    @property
    def read_fd(self) -> int:
        """Return the descriptor the engine reads from."""
        return self._read_fd

    @property
    def write_fd(self) -> int:
        """Return the descriptor children write to."""
        return self._write_fd

    @property
    def eof(self) -> bool:
        """Return True once every writer has closed its end."""
        return self._eof

    def close_write(self) -> None:
        """Close the parent's copy of the write end."""
        if self._write_open:
            self._write_open = False
            os.close(self._write_fd)

    def read_available(self, buffer: OutputBuffer, chunk_size: int) -> int:
        """Read at most one chunk without blocking.

        Returns:
            The number of bytes read (0 when nothing was ready).

        """
        if self._eof or not self._read_open:
            return 0
        try:
            chunk = os.read(self._read_fd, chunk_size)
        except BlockingIOError:
            return 0
        if not chunk:
            self._eof = True
            return 0
        buffer.append(chunk)
        return len(chunk)

    def drain(self, buffer: OutputBuffer, chunk_size: int) -> None:
        """Read everything that is left, blocking until EOF."""
        if self._eof or not self._read_open:
            return
        os.set_blocking(self._read_fd, True)
        while chunk := os.read(self._read_fd, chunk_size):
            buffer.append(chunk)
        self._eof = True

    def close(self) -> None:
        """Close both ends (idempotent)."""
        self.close_write()
        if self._read_open:
            self._read_open = False
            os.close(self._read_fd)
