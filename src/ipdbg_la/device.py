"""One IPDBG LA device session: link, negotiated capabilities, acquisition state."""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Sequence

from .acquisition import AcquisitionDecoder, DeliverySink, State
from .capabilities import CapabilityNegotiator, DeviceCapabilities
from .errors import AcquisitionError, IpdbgError
from .framing import CMD_RESET, CMD_START, FrameEncoder
from .link import RECEIVE_TIMEOUT, ByteLink
from .trigger import (
    ChannelTrigger,
    TriggerVectors,
    compute_delay,
    send_delay,
    send_trigger,
    translate_trigger,
)

logger = logging.getLogger(__name__)

DEFAULT_CAPTURE_RATIO = 50
CAPTURE_TIMEOUT = 30.0  # seconds
IDLE_SLEEP = 0.001


def generate_session_id() -> str:
    return uuid.uuid4().hex[:8]


@dataclass
class AcquisitionParameters:
    limit_samples: int = 0
    capture_ratio: int = DEFAULT_CAPTURE_RATIO
    delay_value: int = 0


@dataclass
class IpdbgDevice:
    """Owns everything tied to one connection to an LA core."""

    link: ByteLink
    receive_timeout: float = RECEIVE_TIMEOUT
    session_id: str = field(default_factory=generate_session_id)
    caps: DeviceCapabilities | None = field(default=None, init=False)
    params: AcquisitionParameters = field(default_factory=AcquisitionParameters, init=False)
    vectors: TriggerVectors | None = field(default=None, init=False, repr=False)
    decoder: AcquisitionDecoder | None = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self._encoder = FrameEncoder(self.link)

    def open(self) -> DeviceCapabilities:
        """Reset the core and run the capability handshake."""
        self.send_reset()
        self.caps = CapabilityNegotiator(self.link, self.receive_timeout).negotiate()
        self.params = AcquisitionParameters(limit_samples=self.caps.limit_samples_max)
        self.vectors = TriggerVectors.zeroed(self.caps.data_width_bytes)
        return self.caps

    def _ensure_open(self) -> DeviceCapabilities:
        if self.caps is None:
            raise IpdbgError(f"Device {self.session_id} has not been negotiated")
        return self.caps

    @property
    def acquiring(self) -> bool:
        return self.decoder is not None

    def configure(self, limit_samples: int | None = None,
                  capture_ratio: int | None = None) -> AcquisitionParameters:
        caps = self._ensure_open()
        if limit_samples is not None:
            if not 1 <= limit_samples <= caps.limit_samples_max:
                raise ValueError(
                    f"limit_samples must be between 1 and {caps.limit_samples_max}, "
                    f"got {limit_samples}")
            self.params.limit_samples = limit_samples
        if capture_ratio is not None:
            if not 0 <= capture_ratio <= 100:
                raise ValueError(f"capture_ratio must be between 0 and 100, got {capture_ratio}")
            self.params.capture_ratio = capture_ratio
        return self.params

    def send_reset(self) -> None:
        if not self._encoder.send_opcode(CMD_RESET):
            logger.warning("Couldn't send reset")

    def send_start(self) -> None:
        if not self._encoder.send_opcode(CMD_START):
            logger.warning("Couldn't send start")

    def start_acquisition(self, triggers: Sequence[ChannelTrigger],
                          sink: DeliverySink) -> AcquisitionDecoder:
        """Program trigger and delay, start the core, return the decoder to feed."""
        caps = self._ensure_open()
        if self.acquiring:
            raise IpdbgError(f"Device {self.session_id} is already acquiring")
        for trig in triggers:
            if trig.enabled and not 0 <= trig.channel_index < caps.data_width:
                raise ValueError(
                    f"Trigger channel {trig.channel_index} out of range "
                    f"(0..{caps.data_width - 1})")

        translate_trigger(triggers, self.vectors)
        send_trigger(self._encoder, self.vectors)

        self.params.delay_value = compute_delay(self.params.limit_samples,
                                                self.params.capture_ratio)
        send_delay(self._encoder, self.params.delay_value, caps.addr_width_bytes)
        logger.info("Starting acquisition: %d samples, delay %d",
                    self.params.limit_samples, self.params.delay_value)
        self.send_start()

        self.decoder = AcquisitionDecoder(
            self.link, caps, self.params.limit_samples,
            self.params.delay_value, sink, on_done=self._release_decoder)
        return self.decoder

    def _release_decoder(self) -> None:
        logger.debug("Acquisition on %s finished", self.session_id)
        self.decoder = None

    def run_acquisition(self, triggers: Sequence[ChannelTrigger], sink: DeliverySink,
                        timeout: float = CAPTURE_TIMEOUT) -> AcquisitionDecoder:
        """Start an acquisition and dispatch readiness events until it finishes.

        Each iteration hands at most one readiness notification to the
        decoder. Raises AcquisitionError if the capture doesn't complete
        within ``timeout`` seconds (the trigger may never have fired), or if
        ``stop_acquisition()`` aborted it from another thread.
        """
        decoder = self.start_acquisition(triggers, sink)
        deadline = time.monotonic() + timeout
        while not decoder.finished:
            if self.link.is_readable():
                decoder.on_readable()
                continue
            if time.monotonic() >= deadline:
                got = decoder.transferred_bytes
                decoder.abort()
                raise AcquisitionError(
                    f"Capture timed out after {timeout}s "
                    f"({got}/{decoder.budget} bytes received)")
            time.sleep(IDLE_SLEEP)
        if decoder.state is State.ABORTED:
            raise AcquisitionError(
                f"Acquisition aborted after {decoder.transferred_bytes}/{decoder.budget} bytes")
        return decoder

    def stop_acquisition(self) -> None:
        decoder = self.decoder
        if decoder is not None:
            decoder.abort()
        self.send_reset()

    def close(self) -> None:
        decoder = self.decoder
        if decoder is not None:
            decoder.abort()
        self.link.close()
