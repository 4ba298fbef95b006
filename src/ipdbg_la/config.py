import argparse
import os
from dataclasses import dataclass


@dataclass
class Config:
    host: str = "127.0.0.1"
    port: int = 4242
    output_dir: str = "./captures"
    timeout: float = 2.0
    capture_timeout: float = 30.0
    log_level: str = "info"
    log_file: str | None = None


def parse_args() -> Config:
    parser = argparse.ArgumentParser(description="IPDBG Logic Analyzer MCP Server")
    parser.add_argument("--host", default="127.0.0.1", help="Default IPDBG JTAG host address")
    parser.add_argument("--port", type=int, default=4242, help="Default IPDBG LA port")
    parser.add_argument("--output-dir", default="./captures", help="Default capture export directory")
    parser.add_argument("--timeout", type=float, default=2.0,
                        help="Read timeout in seconds for handshake queries")
    parser.add_argument("--capture-timeout", type=float, default=30.0,
                        help="Give up on a capture after this many seconds")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
    )
    parser.add_argument("--log-file", default=None, help="Log to file instead of stderr")
    args = parser.parse_args()
    return Config(
        host=args.host,
        port=args.port,
        output_dir=os.path.abspath(args.output_dir),
        timeout=args.timeout,
        capture_timeout=args.capture_timeout,
        log_level=args.log_level,
        log_file=args.log_file,
    )
