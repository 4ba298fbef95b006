"""Capability negotiation with an IPDBG LA core.

The handshake runs once per connection:

  1. ID request, answered with "IDBG" (protocol v0) or "idbg" (v1)
  2. feature bitmask (v1 only)
  3. data and address bus widths
  4. run-length code width, if the run-length coder is present
  5. channel names, if the channel-name augmenter is present
  6. sample rate, if the sample-rate augmenter is present

Only the ID check is mandatory. Every later query falls back to a default
and logs a warning when the device doesn't answer.
"""

import dataclasses
import enum
import logging
import struct
from dataclasses import dataclass

from .errors import LinkError, ProtocolMismatchError, ReadTimeout
from .framing import (
    CMD_GET_BUS_WIDTHS,
    CMD_GET_CHANNEL_NAMES,
    CMD_GET_FEATURES,
    CMD_GET_LA_ID,
    CMD_GET_RLC_WIDTH,
    CMD_GET_SAMPLE_RATE,
    FrameEncoder,
)
from .link import RECEIVE_TIMEOUT, ByteLink, receive_exact

logger = logging.getLogger(__name__)

ID_V0 = b"IDBG"
ID_V1 = b"idbg"
MAX_CHANNEL_COUNT = 0xFF


class Feature(enum.IntFlag):
    NONE = 0
    AUGMENTER_APP = 0x01
    RUNLENGTH_CODER = 0x02
    AUGMENTER_SAMPLERATE = 0x04
    AUGMENTER_CHANNEL_NAMES = 0x08


def _ceil_bytes(bits: int) -> int:
    return (bits + 7) // 8


def default_channel_names(count: int) -> tuple[str, ...]:
    return tuple(f"CH{i}" for i in range(count))


@dataclass(frozen=True)
class DeviceCapabilities:
    """What the core told us about itself. Fixed for the connection's lifetime."""

    data_width: int
    addr_width: int
    features: Feature = Feature.NONE
    runlength_code_width: int = 0
    protocol_version: int = 0
    sample_rate: int | None = None
    channel_names: tuple[str, ...] = ()

    @property
    def data_width_bytes(self) -> int:
        return _ceil_bytes(self.data_width)

    @property
    def addr_width_bytes(self) -> int:
        return _ceil_bytes(self.addr_width)

    @property
    def limit_samples_max(self) -> int:
        return 1 << self.addr_width

    @property
    def raw_data_width_bytes(self) -> int:
        """Bytes per sample on the wire, run-length field included."""
        return _ceil_bytes(self.data_width + self.runlength_code_width)

    def to_dict(self) -> dict:
        return {
            "protocol_version": self.protocol_version,
            "data_width": self.data_width,
            "addr_width": self.addr_width,
            "limit_samples_max": self.limit_samples_max,
            "features": [f.name for f in Feature if f and f in self.features],
            "runlength_code_width": self.runlength_code_width,
            "sample_rate": self.sample_rate,
            "channel_names": list(self.channel_names),
        }


def decode_capabilities(buf: bytes) -> DeviceCapabilities:
    """Decode the 8-byte bus-width answer: two little-endian u32 fields."""
    if len(buf) < 8:
        buf = bytes(buf) + bytes(8 - len(buf))
    data_width, addr_width = struct.unpack("<II", bytes(buf[:8]))
    return DeviceCapabilities(
        data_width=data_width,
        addr_width=addr_width,
        channel_names=default_channel_names(data_width),
    )


class CapabilityNegotiator:
    """Runs the startup handshake over a ByteLink."""

    def __init__(self, link: ByteLink, timeout: float = RECEIVE_TIMEOUT):
        self._link = link
        self._encoder = FrameEncoder(link)
        self._timeout = timeout

    def _receive(self, size: int) -> bytes:
        return receive_exact(self._link, size, self._timeout)

    def request_id(self) -> int:
        """Check the core's identity. Returns the protocol version.

        Raises ReadTimeout if nothing comes back, ProtocolMismatchError if
        the token is neither "IDBG" nor "idbg".
        """
        if not self._encoder.send_opcode(CMD_GET_LA_ID):
            logger.warning("Couldn't send ID request")
        try:
            ident = self._receive(4)
        except ReadTimeout:
            logger.error("Couldn't read device ID")
            raise
        if ident == ID_V0:
            return 0
        if ident == ID_V1:
            return 1
        raise ProtocolMismatchError(
            f"Invalid device ID: expected 'idbg' or 'IDBG', got {ident!r}")

    def get_features(self, version: int) -> Feature:
        if version == 0:
            return Feature.NONE
        if not self._encoder.send_opcode(CMD_GET_FEATURES):
            logger.warning("Can't send get features command")
            return Feature.NONE
        try:
            buf = self._receive(4)
        except (ReadTimeout, LinkError) as e:
            logger.warning("Can't get features from device: %s", e)
            return Feature.NONE
        return Feature(struct.unpack("<I", buf)[0])

    def get_bus_widths(self) -> DeviceCapabilities:
        if not self._encoder.send_opcode(CMD_GET_BUS_WIDTHS):
            logger.warning("Can't send read command")
        try:
            buf = self._receive(8)
        except (ReadTimeout, LinkError) as e:
            logger.warning("Can't get address and data width from device: %s", e)
            buf = getattr(e, "received", b"")
        return decode_capabilities(buf)

    def get_runlength_width(self, features: Feature) -> int:
        if Feature.RUNLENGTH_CODER not in features:
            return 0
        if not self._encoder.send_opcode(CMD_GET_RLC_WIDTH):
            logger.warning("Can't send get runlength counter width command")
            return 0
        try:
            return self._receive(1)[0]
        except (ReadTimeout, LinkError) as e:
            logger.warning("Can't get runlength counter width from device: %s", e)
            return 0

    def get_channel_names(self, features: Feature, count: int) -> tuple[str, ...]:
        """Ask the core for its channel names.

        A failed read only affects the channel being read; its name falls
        back to "CH<i>" and the loop moves on to the next one.
        """
        defaults = default_channel_names(count)
        if Feature.AUGMENTER_CHANNEL_NAMES not in features:
            return defaults
        if count > MAX_CHANNEL_COUNT:
            logger.warning("Channel count %d doesn't fit in one byte, "
                           "using default channel names", count)
            return defaults
        if not self._encoder.send_opcode(CMD_GET_CHANNEL_NAMES):
            logger.warning("Can't send cmd get channel names")
            return defaults
        if not self._encoder.send_opcode(count):
            logger.warning("Can't send number of channels")
            return defaults

        names = []
        for i in range(count):
            try:
                length = self._receive(1)[0]
            except (ReadTimeout, LinkError) as e:
                logger.warning("Can't get channel name length of CH%d: %s", i, e)
                names.append(defaults[i])
                continue
            try:
                raw = self._receive(length) if length else b""
            except (ReadTimeout, LinkError) as e:
                logger.warning("Can't get channel name of CH%d: %s", i, e)
                names.append(defaults[i])
                continue
            names.append(raw.decode("utf-8", errors="replace"))
        return tuple(names)

    def get_sample_rate(self, features: Feature) -> int | None:
        if Feature.AUGMENTER_SAMPLERATE not in features:
            return None
        if not self._encoder.send_opcode(CMD_GET_SAMPLE_RATE):
            logger.warning("Can't send cmd get sample rate")
            return None
        try:
            buf = self._receive(8)
        except (ReadTimeout, LinkError) as e:
            logger.warning("Can't receive sample rate: %s", e)
            return None
        return struct.unpack("<Q", buf)[0]

    def negotiate(self) -> DeviceCapabilities:
        version = self.request_id()
        features = self.get_features(version)
        widths = self.get_bus_widths()
        caps = dataclasses.replace(
            widths,
            protocol_version=version,
            features=features,
            runlength_code_width=self.get_runlength_width(features),
        )
        caps = dataclasses.replace(
            caps,
            channel_names=self.get_channel_names(features, caps.data_width),
            sample_rate=self.get_sample_rate(features),
        )
        logger.info(
            "IPDBG LA v%d: %d channels, %d address bits, features 0x%x, "
            "rlc width %d", version, caps.data_width, caps.addr_width,
            int(features), caps.runlength_code_width)
        return caps
