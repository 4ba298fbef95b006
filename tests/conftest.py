"""Shared fixtures: an in-memory ByteLink with scripted device responses."""

import pytest

from ipdbg_la.errors import LinkError


class FakeLink:
    """Mock ByteLink. Host writes land in ``tx``; ``feed()`` queues device output.

    ``chunk_limit`` caps how much a single read returns, to exercise partial
    transfers.
    """

    def __init__(self, chunk_limit=None):
        self.tx = bytearray()
        self._rx = bytearray()
        self.chunk_limit = chunk_limit
        self.fail_writes = False
        self.closed = False
        self.reads = 0

    def feed(self, data: bytes) -> None:
        self._rx.extend(data)

    def is_readable(self) -> bool:
        return bool(self._rx)

    def read_nonblocking(self, max_len: int) -> bytes:
        self.reads += 1
        n = min(max_len, len(self._rx))
        if self.chunk_limit is not None:
            n = min(n, self.chunk_limit)
        data = bytes(self._rx[:n])
        del self._rx[:n]
        return data

    def write(self, data: bytes) -> int:
        if self.fail_writes:
            raise LinkError("Send error: broken pipe")
        self.tx.extend(data)
        return len(data)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_link():
    return FakeLink()
