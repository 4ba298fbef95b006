"""MCP server for IPDBG logic analyzer cores: session-based capture control."""

import asyncio
import json
import logging
import os
from datetime import datetime

from mcp.server import Server
from mcp.types import TextContent, Tool

from .config import Config

logger = logging.getLogger(__name__)

PREVIEW_SAMPLES = 32

_SESSION_ID = {
    "type": "string",
    "description": "Session ID from open_device",
}

TOOLS = [
    Tool(
        name="open_device",
        description="Connect to an IPDBG LA core (TCP via the IPDBG JTAG host, or a serial port), "
                    "reset it and negotiate capabilities. Returns a session_id for subsequent calls.",
        inputSchema={
            "type": "object",
            "properties": {
                "host": {
                    "type": "string",
                    "description": "IPDBG JTAG host address (default from --host)",
                },
                "port": {
                    "type": "integer",
                    "description": "TCP port of the LA core (default from --port, usually 4242)",
                },
                "serial_port": {
                    "type": "string",
                    "description": "Serial port path; when given, TCP settings are ignored",
                },
                "baud": {
                    "type": "integer",
                    "description": "Serial baud rate (default: 115200)",
                    "default": 115200,
                },
            },
        },
    ),
    Tool(
        name="close_device",
        description="Close a device session and release the connection.",
        inputSchema={
            "type": "object",
            "properties": {"session_id": _SESSION_ID},
            "required": ["session_id"],
        },
    ),
    Tool(
        name="get_capabilities",
        description="Show negotiated capabilities (bus widths, features, channel names, "
                    "sample rate) and the current acquisition settings.",
        inputSchema={
            "type": "object",
            "properties": {"session_id": _SESSION_ID},
            "required": ["session_id"],
        },
    ),
    Tool(
        name="configure_acquisition",
        description="Set the sample budget and the share of samples kept before the trigger.",
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": _SESSION_ID,
                "limit_samples": {
                    "type": "integer",
                    "description": "Number of raw samples to capture (1..limit_samples_max)",
                },
                "capture_ratio": {
                    "type": "integer",
                    "description": "Percentage of samples before the trigger (0-100, default 50)",
                },
            },
            "required": ["session_id"],
        },
    ),
    Tool(
        name="capture",
        description="Arm the trigger, run one acquisition and export the decoded samples. "
                    "Writes a raw .bin (one little-endian word per sample) and optionally a CSV.",
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": _SESSION_ID,
                "triggers": {
                    "type": "array",
                    "description": "Trigger conditions; empty triggers immediately",
                    "items": {
                        "type": "object",
                        "properties": {
                            "channel": {
                                "type": ["integer", "string"],
                                "description": "Channel index or name",
                            },
                            "match": {
                                "type": "string",
                                "enum": ["one", "zero", "rising", "falling", "edge"],
                            },
                            "enabled": {"type": "boolean", "default": True},
                        },
                        "required": ["channel", "match"],
                    },
                },
                "timeout": {
                    "type": "number",
                    "description": "Give up after this many seconds (default from --capture-timeout)",
                },
                "export_csv": {
                    "type": "boolean",
                    "description": "Also write a per-channel CSV (default: false)",
                    "default": False,
                },
                "output_dir": {
                    "type": "string",
                    "description": "Export directory (default from --output-dir)",
                },
            },
            "required": ["session_id"],
        },
    ),
    Tool(
        name="reset_device",
        description="Abort any running acquisition and send RESET to the core.",
        inputSchema={
            "type": "object",
            "properties": {"session_id": _SESSION_ID},
            "required": ["session_id"],
        },
    ),
]


def _text(content: str) -> list[TextContent]:
    return [TextContent(type="text", text=content)]


def _json(data) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, indent=2))]


def create_server(config: Config | None = None) -> Server:
    config = config or Config()
    server = Server("ipdbg-la")
    sessions: dict = {}

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        try:
            return await _dispatch(name, arguments, sessions, config)
        except Exception as e:
            logger.exception("Tool %s failed", name)
            return _text(f"Error: {e}")

    return server


def _open_device(args: dict, config: Config):
    from .device import IpdbgDevice
    from .link import DEFAULT_BAUD, open_link

    link = open_link(
        host=args.get("host", config.host),
        port=args.get("port", config.port),
        serial_port=args.get("serial_port"),
        baud=args.get("baud", DEFAULT_BAUD),
    )
    device = IpdbgDevice(link, receive_timeout=config.timeout)
    try:
        device.open()
    except Exception:
        link.close()
        raise
    return device


def _status(device) -> dict:
    return {
        "session_id": device.session_id,
        "capabilities": device.caps.to_dict(),
        "limit_samples": device.params.limit_samples,
        "capture_ratio": device.params.capture_ratio,
        "acquiring": device.acquiring,
    }


def _run_capture(device, args: dict, config: Config) -> dict:
    from .acquisition import CaptureCollector
    from .trigger import parse_triggers

    triggers = parse_triggers(args.get("triggers", []), device.caps.channel_names)
    timeout = args.get("timeout", config.capture_timeout)
    collector = CaptureCollector()
    device.run_acquisition(triggers, collector, timeout=timeout)

    output_dir = os.path.abspath(args.get("output_dir", config.output_dir))
    os.makedirs(output_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    base = os.path.join(output_dir, f"ipdbg_{device.session_id}_{timestamp}")

    bin_path = base + ".bin"
    with open(bin_path, "wb") as f:
        f.write(collector.data)
    result = {
        "session_id": device.session_id,
        "total_samples": collector.total_samples,
        "trigger_position": collector.trigger_position,
        "unitsize": collector.unitsize,
        "sample_rate": device.caps.sample_rate,
        "bin_file": bin_path,
    }

    if args.get("export_csv", False):
        csv_path = base + ".csv"
        with open(csv_path, "w", newline="") as f:
            f.write(collector.to_csv(device.caps.channel_names))
        result["csv_file"] = csv_path

    width = collector.unitsize * 2
    result["preview"] = [f"{v:0{width}x}" for v in collector.sample_values()[:PREVIEW_SAMPLES]]
    return result


async def _dispatch(name: str, args: dict, sessions: dict,
                    config: Config | None = None) -> list[TextContent]:
    config = config or Config()

    match name:
        case "open_device":
            device = await asyncio.to_thread(_open_device, args, config)
            sessions[device.session_id] = device
            return _json(_status(device))

        case "close_device":
            device = _get_session(sessions, args["session_id"])
            await asyncio.to_thread(device.close)
            del sessions[device.session_id]
            return _json({
                "session_id": device.session_id,
                "status": "closed",
            })

        case "get_capabilities":
            device = _get_session(sessions, args["session_id"])
            return _json(_status(device))

        case "configure_acquisition":
            device = _get_session(sessions, args["session_id"])
            device.configure(
                limit_samples=args.get("limit_samples"),
                capture_ratio=args.get("capture_ratio"),
            )
            return _json(_status(device))

        case "capture":
            device = _get_session(sessions, args["session_id"])
            result = await asyncio.to_thread(_run_capture, device, args, config)
            return _json(result)

        case "reset_device":
            device = _get_session(sessions, args["session_id"])
            await asyncio.to_thread(device.stop_acquisition)
            return _json({
                "session_id": device.session_id,
                "status": "reset",
            })

        case _:
            return _text(f"Unknown tool: {name}")


def _get_session(sessions: dict, session_id: str):
    """Look up a session by ID, raising a clear error if not found."""
    from .device import IpdbgDevice

    device: IpdbgDevice | None = sessions.get(session_id)
    if device is None:
        active = list(sessions.keys())
        raise ValueError(
            f"No session with id '{session_id}'. "
            f"Active sessions: {active if active else 'none, use open_device first'}"
        )
    return device
