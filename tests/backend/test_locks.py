"""
Threaded tests for the shared read-write lock.
"""

import os
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../backend"))

from locks import ReadWriteLock


def _start(target):
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


def _wait_for(condition, timeout=2.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return False


class TestReadWriteLock:
    """Test suite for the ReadWriteLock class."""

    def setup_method(self):
        """Set up test fixtures."""
        self.lock = ReadWriteLock()

    def test_readers_share_the_lock(self):
        barrier = threading.Barrier(3, timeout=2.0)
        errors = []

        def reader():
            with self.lock.read():
                try:
                    # only passes if all three readers are inside at once
                    barrier.wait()
                except threading.BrokenBarrierError as exc:
                    errors.append(exc)

        threads = [_start(reader) for _ in range(3)]
        for thread in threads:
            thread.join(timeout=3.0)

        assert errors == []

    def test_writer_excludes_readers(self):
        acquired = threading.Event()

        def reader():
            with self.lock.read():
                acquired.set()

        self.lock.acquire_write()
        thread = _start(reader)
        assert not acquired.wait(0.1)

        self.lock.release_write()
        assert acquired.wait(2.0)
        thread.join(timeout=2.0)

    def test_writer_waits_for_readers(self):
        acquired = threading.Event()

        def writer():
            with self.lock.write():
                acquired.set()

        self.lock.acquire_read()
        thread = _start(writer)
        assert not acquired.wait(0.1)

        self.lock.release_read()
        assert acquired.wait(2.0)
        thread.join(timeout=2.0)

    def test_writers_exclude_each_other(self):
        inside = []
        overlaps = []

        def writer():
            for _ in range(50):
                with self.lock.write():
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(len(inside))
                    inside.pop()

        threads = [_start(writer) for _ in range(4)]
        for thread in threads:
            thread.join(timeout=5.0)

        assert overlaps == []

    def test_waiting_writer_blocks_new_readers(self):
        order = []

        def writer():
            with self.lock.write():
                order.append("writer")

        def late_reader():
            with self.lock.read():
                order.append("reader")

        self.lock.acquire_read()
        writer_thread = _start(writer)
        assert _wait_for(lambda: self.lock._waiting_writers == 1)

        reader_thread = _start(late_reader)
        time.sleep(0.1)
        assert order == []

        self.lock.release_read()
        writer_thread.join(timeout=2.0)
        reader_thread.join(timeout=2.0)
        assert order == ["writer", "reader"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
