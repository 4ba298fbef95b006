"""MCP server entry point for ipdbg-la."""

import asyncio
import logging

from mcp.server.stdio import stdio_server

from .config import parse_args
from .server import create_server

logger = logging.getLogger(__name__)


async def _run():
    config = parse_args()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.log_file:
        handlers = [logging.FileHandler(config.log_file)]

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        handlers=handlers,
    )

    server = create_server(config)
    init_options = server.create_initialization_options()

    async with stdio_server() as (read_stream, write_stream):
        logger.info("IPDBG LA MCP server starting")
        await server.run(read_stream, write_stream, init_options)


def main():
    asyncio.run(_run())


if __name__ == "__main__":
    main()
