"""Trigger translation and serialization.

A trigger is a list of per-channel conditions. The core matches them with
five bit-vectors, one bit per channel:

  mask / value            level of the current sample
  mask_last / value_last  level of the previous sample (for edges)
  edge_mask               any change on the channel

Vectors go out most-significant byte first, after a three-opcode preamble.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .framing import (
    CMD_CFG_LA,
    CMD_CFG_TRIGGER,
    CMD_LA_DELAY,
    CMD_TRIG_MASK,
    CMD_TRIG_MASK_LAST,
    CMD_TRIG_MASKS,
    CMD_TRIG_MASKS_LAST,
    CMD_TRIG_SELECT_EDGE_MASK,
    CMD_TRIG_SET_EDGE_MASK,
    CMD_TRIG_VALUE,
    CMD_TRIG_VALUE_LAST,
    FrameEncoder,
)

logger = logging.getLogger(__name__)


class TriggerMatch(enum.Enum):
    ONE = "one"
    ZERO = "zero"
    RISING = "rising"
    FALLING = "falling"
    EDGE = "edge"


@dataclass
class ChannelTrigger:
    channel_index: int
    match: TriggerMatch
    enabled: bool = True


@dataclass
class TriggerVectors:
    mask: bytearray = field(default_factory=bytearray)
    value: bytearray = field(default_factory=bytearray)
    mask_last: bytearray = field(default_factory=bytearray)
    value_last: bytearray = field(default_factory=bytearray)
    edge_mask: bytearray = field(default_factory=bytearray)

    @classmethod
    def zeroed(cls, width_bytes: int) -> "TriggerVectors":
        return cls(*(bytearray(width_bytes) for _ in range(5)))

    @property
    def width_bytes(self) -> int:
        return len(self.mask)

    def clear(self) -> None:
        for vec in (self.mask, self.value, self.mask_last,
                    self.value_last, self.edge_mask):
            vec[:] = bytes(len(vec))


def translate_trigger(triggers: Iterable[ChannelTrigger],
                      vectors: TriggerVectors) -> TriggerVectors:
    """Fill ``vectors`` from the channel conditions, clearing them first.

    Disabled conditions are skipped and leave their bits at zero.
    """
    vectors.clear()
    width_bits = vectors.width_bytes * 8

    for trig in triggers:
        if not trig.enabled:
            continue
        idx = trig.channel_index
        if not 0 <= idx < width_bits:
            raise ValueError(f"Trigger channel {idx} out of range (0..{width_bits - 1})")
        byte = idx // 8
        bit = 1 << (idx % 8)
        inv = ~bit & 0xFF

        match trig.match:
            case TriggerMatch.ONE:
                vectors.value[byte] |= bit
                vectors.mask[byte] |= bit
                vectors.mask_last[byte] &= inv
                vectors.edge_mask[byte] &= inv
            case TriggerMatch.ZERO:
                vectors.value[byte] &= inv
                vectors.mask[byte] |= bit
                vectors.mask_last[byte] &= inv
                vectors.edge_mask[byte] &= inv
            case TriggerMatch.RISING:
                vectors.value[byte] |= bit
                vectors.value_last[byte] &= inv
                vectors.mask[byte] |= bit
                vectors.mask_last[byte] |= bit
                vectors.edge_mask[byte] &= inv
            case TriggerMatch.FALLING:
                vectors.value[byte] &= inv
                vectors.value_last[byte] |= bit
                vectors.mask[byte] |= bit
                vectors.mask_last[byte] |= bit
                vectors.edge_mask[byte] &= inv
            case TriggerMatch.EDGE:
                vectors.mask[byte] &= inv
                vectors.mask_last[byte] &= inv
                vectors.edge_mask[byte] |= bit

    return vectors


def parse_triggers(specs: Sequence[dict],
                   channel_names: Sequence[str] = ()) -> list[ChannelTrigger]:
    """Build ChannelTriggers from JSON-style dicts.

    Each entry is ``{"channel": 3 | "CLK", "match": "rising", "enabled": true}``.
    """
    triggers = []
    for spec in specs:
        channel = spec["channel"]
        if isinstance(channel, str) and not channel.isdigit():
            if channel not in channel_names:
                raise ValueError(
                    f"Unknown channel '{channel}'. Available: {', '.join(channel_names)}")
            index = list(channel_names).index(channel)
        else:
            index = int(channel)
        try:
            match = TriggerMatch(str(spec["match"]).lower())
        except ValueError:
            valid = ", ".join(m.value for m in TriggerMatch)
            raise ValueError(f"Unknown trigger match '{spec['match']}'. Valid: {valid}") from None
        triggers.append(ChannelTrigger(index, match, spec.get("enabled", True)))
    return triggers


# (group selector, vector selector, attribute) in transmission order
_TRIGGER_SEQUENCE = (
    (CMD_TRIG_MASKS, CMD_TRIG_MASK, "mask"),
    (CMD_TRIG_MASKS, CMD_TRIG_VALUE, "value"),
    (CMD_TRIG_MASKS_LAST, CMD_TRIG_MASK_LAST, "mask_last"),
    (CMD_TRIG_MASKS_LAST, CMD_TRIG_VALUE_LAST, "value_last"),
    (CMD_TRIG_SELECT_EDGE_MASK, CMD_TRIG_SET_EDGE_MASK, "edge_mask"),
)


def send_trigger(encoder: FrameEncoder, vectors: TriggerVectors) -> None:
    """Transmit all five vectors, most-significant byte first."""
    for group, selector, name in _TRIGGER_SEQUENCE:
        encoder.send_opcode(CMD_CFG_TRIGGER)
        encoder.send_opcode(group)
        encoder.send_opcode(selector)
        vec = getattr(vectors, name)
        for b in reversed(vec):
            encoder.send_escaped(bytes([b]))
        logger.debug("Trigger %s: %s", name, vec[::-1].hex())


def compute_delay(limit_samples: int, capture_ratio: int) -> int:
    """Number of raw samples to record before the trigger."""
    return int((limit_samples - 1) / 100.0 * capture_ratio)


def send_delay(encoder: FrameEncoder, delay_value: int, addr_width_bytes: int) -> None:
    encoder.send_opcode(CMD_CFG_LA)
    encoder.send_opcode(CMD_LA_DELAY)
    for b in delay_value.to_bytes(addr_width_bytes, "big"):
        encoder.send_escaped(bytes([b]))
