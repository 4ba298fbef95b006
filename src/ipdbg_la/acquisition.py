"""Sample accumulation and run-length decoding for one acquisition.

The decoder is driven from outside: every time the link reports data, the
owner calls ``on_readable()`` once. Each call does at most one
non-blocking read. When the raw byte budget is full the samples are
expanded and pushed to the sink as a pre-trigger block, a trigger marker
and a post-trigger block, followed by the end marker.
"""

import csv
import enum
import io
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Protocol, Sequence

from .capabilities import DeviceCapabilities
from .errors import AcquisitionError, LinkError
from .link import ByteLink

logger = logging.getLogger(__name__)

CHUNK_SIZE = 16 * 1024


class State(enum.Enum):
    ACCUMULATING = "accumulating"
    DECODING = "decoding"
    DELIVERING = "delivering"
    DONE = "done"
    ABORTED = "aborted"


class DeliverySink(Protocol):
    def logic(self, data: bytes, unitsize: int) -> None: ...

    def trigger(self) -> None: ...

    def end(self) -> None: ...


@dataclass
class DecodedSampleSet:
    data: bytes | bytearray
    total_samples: int
    delay_value: int
    unitsize: int

    @property
    def pre_trigger(self) -> memoryview:
        return memoryview(self.data)[:self.delay_value * self.unitsize]

    @property
    def post_trigger(self) -> memoryview:
        return memoryview(self.data)[self.delay_value * self.unitsize:
                                     self.total_samples * self.unitsize]


def extract_bits(data: bytes | memoryview, bit_offset: int, width: int) -> int:
    """Read a ``width``-bit field starting ``bit_offset`` bits into ``data``.

    ``data`` is little-endian: bit 0 is the LSB of the first byte. Bits past
    the end of ``data`` read as zero.
    """
    if width <= 0:
        return 0
    return (int.from_bytes(data, "little") >> bit_offset) & ((1 << width) - 1)


def runlength_decode(raw: bytearray, caps: DeviceCapabilities,
                     limit_samples: int, raw_delay: int) -> DecodedSampleSet:
    """Expand run-length coded raw samples.

    Each raw sample carries ``repeat - 1`` in its low ``runlength_code_width``
    bits, the payload above that. The pre-trigger count is re-expressed in
    expanded samples by summing the repeats of the first ``raw_delay`` raw
    samples. With a zero code width the raw buffer is returned untouched.

    Raises MemoryError if the expanded buffer can't be allocated.
    """
    unitsize = caps.data_width_bytes
    code_width = caps.runlength_code_width
    if code_width == 0:
        return DecodedSampleSet(raw, limit_samples, raw_delay, unitsize)

    raw_width = caps.raw_data_width_bytes
    view = memoryview(raw)
    repeats = []
    total = 0
    delay = 0
    for i in range(limit_samples):
        sample = view[i * raw_width:(i + 1) * raw_width]
        count = extract_bits(sample, 0, code_width) + 1
        repeats.append(count)
        total += count
        if i < raw_delay:
            delay += count

    out = bytearray(total * unitsize)
    payload_bits = unitsize * 8
    pos = 0
    for i, count in enumerate(repeats):
        sample = view[i * raw_width:(i + 1) * raw_width]
        payload = extract_bits(sample, code_width, payload_bits).to_bytes(unitsize, "little")
        size = count * unitsize
        out[pos:pos + size] = payload * count
        pos += size

    return DecodedSampleSet(out, total, delay, unitsize)


class AcquisitionDecoder:
    """State machine for one acquisition: accumulate, decode, deliver."""

    def __init__(
        self,
        link: ByteLink,
        caps: DeviceCapabilities,
        limit_samples: int,
        delay_value: int,
        sink: DeliverySink,
        on_done: Callable[[], None] | None = None,
    ):
        self._link = link
        self._caps = caps
        self._sink = sink
        self._on_done = on_done
        self.limit_samples = limit_samples
        self.raw_delay = delay_value
        self.budget = limit_samples * caps.raw_data_width_bytes
        self.transferred_bytes = 0
        self.total_samples = 0
        self.delay_value = 0
        self.state = State.ACCUMULATING
        # abort() may come from another thread while on_readable() runs
        self._lock = threading.RLock()
        try:
            self._buffer: bytearray | None = bytearray(self.budget)
        except MemoryError as e:
            logger.error("Sample buffer allocation of %d bytes failed", self.budget)
            self._finish(State.ABORTED)
            raise AcquisitionError("Sample buffer allocation failed") from e

    @property
    def finished(self) -> bool:
        return self.state in (State.DONE, State.ABORTED)

    def on_readable(self) -> bool:
        """Handle one readiness notification.

        Returns True while more data is expected, False once the decoder
        has finished (or was already finished).
        """
        with self._lock:
            return self._handle_readable()

    def _handle_readable(self) -> bool:
        if self.state is not State.ACCUMULATING:
            return False

        try:
            chunk = self._link.read_nonblocking(CHUNK_SIZE)
        except LinkError as e:
            logger.error("Receive failed after %d/%d bytes: %s",
                         self.transferred_bytes, self.budget, e)
            self.abort()
            raise AcquisitionError(f"Receive failed: {e}") from e

        if chunk:
            take = min(len(chunk), self.budget - self.transferred_bytes)
            self._buffer[self.transferred_bytes:self.transferred_bytes + take] = chunk[:take]
            self.transferred_bytes += take
            if take < len(chunk):
                logger.debug("Dropped %d bytes past the sample budget", len(chunk) - take)

        if self.transferred_bytes < self.budget:
            return True

        self._decode_and_deliver()
        return False

    def _decode_and_deliver(self) -> None:
        self.state = State.DECODING
        try:
            decoded = runlength_decode(self._buffer, self._caps,
                                       self.limit_samples, self.raw_delay)
        except MemoryError as e:
            logger.error("Decoded sample buffer allocation failed")
            self.abort()
            raise AcquisitionError("Decoded sample buffer allocation failed") from e
        self._buffer = None
        self.total_samples = decoded.total_samples
        self.delay_value = decoded.delay_value

        self.state = State.DELIVERING
        logger.info("Acquired %d samples, %d before trigger",
                    decoded.total_samples, decoded.delay_value)
        if decoded.delay_value > 0:
            self._sink.logic(decoded.pre_trigger, decoded.unitsize)
        self._sink.trigger()
        self._sink.logic(decoded.post_trigger, decoded.unitsize)
        self._finish(State.DONE)

    def abort(self) -> None:
        """Drop buffered data and end the acquisition. Safe to call repeatedly."""
        with self._lock:
            if self.finished:
                return
            logger.info("Acquisition aborted in state %s", self.state.value)
            self._finish(State.ABORTED)

    def _finish(self, state: State) -> None:
        self._buffer = None
        self.state = state
        self._sink.end()
        if self._on_done:
            self._on_done()


@dataclass
class CaptureCollector:
    """DeliverySink that keeps the delivered samples in memory."""

    unitsize: int = 0
    pre_trigger: bytearray = field(default_factory=bytearray)
    post_trigger: bytearray = field(default_factory=bytearray)
    triggered: bool = False
    ended: bool = False

    def logic(self, data: bytes, unitsize: int) -> None:
        self.unitsize = unitsize
        target = self.post_trigger if self.triggered else self.pre_trigger
        target.extend(data)

    def trigger(self) -> None:
        self.triggered = True

    def end(self) -> None:
        self.ended = True

    @property
    def data(self) -> bytes:
        return bytes(self.pre_trigger + self.post_trigger)

    @property
    def trigger_position(self) -> int:
        return len(self.pre_trigger) // self.unitsize if self.unitsize else 0

    @property
    def total_samples(self) -> int:
        if not self.unitsize:
            return 0
        return (len(self.pre_trigger) + len(self.post_trigger)) // self.unitsize

    def sample_values(self) -> list[int]:
        data = self.data
        size = self.unitsize
        if not size:
            return []
        return [int.from_bytes(data[i:i + size], "little")
                for i in range(0, len(data), size)]

    def to_csv(self, channel_names: Sequence[str]) -> str:
        """One row per sample: index, trigger flag, then one column per channel."""
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow(["sample", "trigger", *channel_names])
        trig = self.trigger_position
        for i, value in enumerate(self.sample_values()):
            levels = [(value >> ch) & 1 for ch in range(len(channel_names))]
            writer.writerow([i, int(i == trig), *levels])
        return buf.getvalue()
