"""
Unit tests for stream fan-out (tierkeep/backup/fanout.py).
"""

import io
import threading

import pytest

from tierkeep.backup.fanout import BranchAborted, FanOut


def _collect(branch):
    return b''.join(branch)


class TestFanOut:
    """Test duplicating a stream to a primary reader and branches."""

    def test_branches_receive_identical_bytes(self):
        data = bytes(range(256)) * 4096
        fanout = FanOut(io.BytesIO(data), max_chunks=4)
        first = fanout.attach(_collect)
        second = fanout.attach(_collect)

        primary = bytearray()
        while True:
            chunk = fanout.primary.read(3000)
            if not chunk:
                break
            primary.extend(chunk)
        fanout.finish()

        assert bytes(primary) == data
        assert first.result(timeout=10) == data
        assert second.result(timeout=10) == data
        assert fanout.bytes_read == len(data)

    def test_finish_drains_unread_source(self):
        """Branches see the whole stream even if the primary stopped early."""
        data = b'abc' * 10000
        fanout = FanOut(io.BytesIO(data), read_size=1024)
        future = fanout.attach(_collect)

        fanout.primary.read(10)
        fanout.finish()

        assert future.result(timeout=10) == data

    def test_closed_branch_does_not_block_primary(self):
        """A branch that gives up stops receiving data."""
        data = b'x' * (1024 * 64)
        fanout = FanOut(io.BytesIO(data), max_chunks=1, read_size=1024)

        def give_up(branch):
            branch.read()
            raise OSError("disk full")

        future = fanout.attach(give_up)

        primary = bytearray()
        while True:
            chunk = fanout.primary.read(1024)
            if not chunk:
                break
            primary.extend(chunk)
        fanout.finish()

        assert bytes(primary) == data
        with pytest.raises(OSError):
            future.result(timeout=10)

    def test_abort_unblocks_branch(self):
        fanout = FanOut(io.BytesIO(b'data' * 100), max_chunks=2)
        started = threading.Event()

        def consume(branch):
            started.set()
            return _collect(branch)

        future = fanout.attach(consume)
        fanout.primary.read(4)
        started.wait(5)
        fanout.abort()

        with pytest.raises(BranchAborted):
            future.result(timeout=10)
        assert fanout.primary.read(10) == b''

    def test_attach_after_reading_fails(self):
        fanout = FanOut(io.BytesIO(b'data'))
        fanout.primary.read(2)

        with pytest.raises(RuntimeError):
            fanout.attach(_collect)

    def test_no_branches(self):
        fanout = FanOut(io.BytesIO(b'plain'))
        assert fanout.primary.read() == b'plain'
        assert fanout.primary.read() == b''
        fanout.finish()
