"""
Fan-out of one byte stream to several independent consumers.

The primary consumer reads through `FanOut.primary` like a normal file
object. Every chunk it pulls from the source is also offered to each attached
branch through that branch's bounded queue, and each branch is drained by its
own worker thread. A slow branch eventually blocks the producer once its
queue fills; a branch that gives up stops receiving data instead of stalling
the primary.
"""

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

_EOF = object()
_POLL_SECONDS = 0.5


class BranchAborted(Exception):
    """Raised inside a branch consumer when the fan-out was aborted."""
    pass


class BranchReader:
    """
    Consumer side of one branch.

    Iterate it (or call read()) to receive the chunks the primary consumer
    read, in the same order.
    """

    def __init__(self, max_chunks: int):
        self._queue = queue.Queue(maxsize=max_chunks)
        self._closed = threading.Event()
        self._aborted = threading.Event()
        self.bytes_received = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self):
        """Stop accepting data; the producer skips this branch from now on."""
        self._closed.set()

    def _offer(self, item):
        """Producer side: block until queued, or drop if the branch closed."""
        while not self._closed.is_set():
            try:
                self._queue.put(item, timeout=_POLL_SECONDS)
                return
            except queue.Full:
                continue

    def _abort(self):
        self._aborted.set()

    def read(self) -> bytes:
        """
        Return the next chunk, or b'' at end of stream.

        Raises:
            BranchAborted: If the fan-out was aborted before end of stream
        """
        while True:
            if self._aborted.is_set():
                raise BranchAborted("stream aborted by producer")
            try:
                item = self._queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            if item is _EOF:
                return b''
            self.bytes_received += len(item)
            return item

    def __iter__(self):
        while True:
            chunk = self.read()
            if not chunk:
                return
            yield chunk


class _PrimaryReader:
    """File-like view of the source that tees every chunk into the branches."""

    def __init__(self, fanout: 'FanOut'):
        self._fanout = fanout

    def read(self, size: int = -1) -> bytes:
        return self._fanout._read(size)

    def readable(self) -> bool:
        return True


class FanOut:
    """
    Duplicate a readable byte stream to a primary reader and N branches.

    Usage:
        fanout = FanOut(process.stdout)
        future = fanout.attach(write_to_scratch_file)
        hot_store.put_stream(key, fanout.primary)
        fanout.finish()
        future.result()
    """

    def __init__(self, source, max_chunks: int = 16, read_size: int = 1024 * 1024):
        """
        Args:
            source: Object with read(size) returning bytes
            max_chunks: Queue bound per branch
            read_size: Read size used when the primary asks for "everything"
        """
        self._source = source
        self._max_chunks = max_chunks
        self._read_size = read_size
        self._branches: List[BranchReader] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._eof = False
        self.bytes_read = 0
        self.primary = _PrimaryReader(self)

    def attach(self, consumer: Callable[[BranchReader], object]) -> Future:
        """
        Add a branch and start `consumer(branch)` on its own thread.

        Must be called before the primary starts reading.

        Returns:
            Future resolving to the consumer's return value
        """
        if self.bytes_read:
            raise RuntimeError("branches must be attached before reading starts")

        branch = BranchReader(self._max_chunks)
        self._branches.append(branch)

        if self._executor is None:
            self._executor = ThreadPoolExecutor(thread_name_prefix='fanout')

        def run():
            try:
                return consumer(branch)
            finally:
                # Anything the consumer did not read is dropped
                branch.close()

        return self._executor.submit(run)

    def _read(self, size: int) -> bytes:
        with self._lock:
            if self._eof:
                return b''

            chunk = self._source.read(size if size and size > 0 else self._read_size)
            if not chunk:
                self._send_eof()
                return b''

            self.bytes_read += len(chunk)
            for branch in self._branches:
                branch._offer(chunk)
            return chunk

    def _send_eof(self):
        self._eof = True
        for branch in self._branches:
            branch._offer(_EOF)

    def finish(self):
        """Drain whatever the primary left unread so branches see the full stream."""
        while self._read(self._read_size):
            pass
        self._shutdown(wait=False)

    def abort(self):
        """Stop all branches without delivering end of stream."""
        # Branches close first so a producer blocked on a full queue releases the lock
        for branch in self._branches:
            branch._abort()
            branch.close()
        with self._lock:
            self._eof = True
        logger.debug("Fan-out aborted after %d bytes", self.bytes_read)
        self._shutdown(wait=False)

    def _shutdown(self, wait: bool):
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
