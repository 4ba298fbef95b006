"""IPDBG LA wire opcodes and escape framing.

Opcodes are single raw bytes. Payload bytes that collide with RESET or
ESCAPE are prefixed with ESCAPE so the core never mistakes data for a
command. There is no acknowledgment on the wire, so write failures are
logged and encoding carries on.
"""

import logging

from .errors import LinkError
from .link import ByteLink

logger = logging.getLogger(__name__)

# Top-level commands
CMD_RESET = 0xEE
CMD_ESCAPE = 0x55
CMD_START = 0xFE
CMD_CFG_LA = 0x0F
CMD_CFG_TRIGGER = 0xF0

# Capability queries
CMD_GET_BUS_WIDTHS = 0xAA
CMD_GET_LA_ID = 0xBB
CMD_GET_FEATURES = 0x10
CMD_GET_RLC_WIDTH = 0x60
CMD_GET_CHANNEL_NAMES = 0x70
CMD_GET_SAMPLE_RATE = 0x80

# Trigger subcommands
CMD_TRIG_MASKS = 0xF1
CMD_TRIG_MASK = 0xF3
CMD_TRIG_VALUE = 0xF7
CMD_TRIG_MASKS_LAST = 0xF9
CMD_TRIG_MASK_LAST = 0xFB
CMD_TRIG_VALUE_LAST = 0xFF
CMD_TRIG_SELECT_EDGE_MASK = 0xF5
CMD_TRIG_SET_EDGE_MASK = 0xF6

# LA subcommands
CMD_LA_DELAY = 0x1F

_RESERVED = (CMD_RESET, CMD_ESCAPE)


def escape(data: bytes) -> bytes:
    """Prefix every RESET/ESCAPE byte in ``data`` with ESCAPE."""
    out = bytearray()
    for b in data:
        if b in _RESERVED:
            out.append(CMD_ESCAPE)
        out.append(b)
    return bytes(out)


class FrameEncoder:
    """Writes opcodes and escaped payload onto a ByteLink."""

    def __init__(self, link: ByteLink):
        self._link = link

    def _send(self, data: bytes, what: str) -> bool:
        try:
            sent = self._link.write(data)
        except LinkError as e:
            logger.warning("Couldn't send %s: %s", what, e)
            return False
        if sent < len(data):
            logger.warning("Only sent %d/%d bytes of %s", sent, len(data), what)
            return False
        return True

    def send_opcode(self, code: int) -> bool:
        """Send a single command byte unescaped. Returns False on failure."""
        logger.debug("-> opcode 0x%02X", code)
        return self._send(bytes([code]), f"opcode 0x{code:02X}")

    def send_escaped(self, data: bytes) -> bool:
        """Send payload bytes one at a time, escaping reserved values."""
        ok = True
        for b in escape(data):
            if not self._send(bytes([b]), "data"):
                ok = False
        return ok
