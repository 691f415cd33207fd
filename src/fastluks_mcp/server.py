"""
MCP server for LUKS volume provisioning.
"""
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

from mcp.server import Server
from mcp.types import Resource, Tool, TextContent

from .config_manager import ConfigManager
from .descriptor_store import DescriptorStore
from .luks_tools import get_luks_tools, handle_luks_tool

# Configure logging - log to both file and stderr
# File logging allows tailing progress: tail -f /tmp/fastluks-mcp.log
log_file = Path("/tmp/fastluks-mcp.log")
logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(log_file, mode='a'),  # Append mode
        logging.StreamHandler()  # stderr - may show in MCP client
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"fastluks-mcp server starting (log file: {log_file})")

# Initialize server
app = Server("fastluks-mcp")

DESCRIPTOR_URI = "luks://descriptor"


@app.list_resources()
async def list_resources() -> list[Resource]:
    """List the recorded volume descriptor."""
    return [
        Resource(
            uri=DESCRIPTOR_URI,
            name="LUKS Volume Descriptor",
            mimeType="application/json",
            description="Configuration recorded by the last successful provisioning run"
        )
    ]


@app.read_resource()
async def read_resource(uri: str) -> str:
    """Read the volume descriptor."""
    if str(uri) != DESCRIPTOR_URI:
        raise ValueError(f"Unknown resource URI: {uri}")

    config = ConfigManager().load()
    descriptor = DescriptorStore(config.luks_cryptdev_file, config.success_file).load()
    if descriptor is None:
        return json.dumps({})
    return json.dumps(asdict(descriptor), indent=2)


@app.list_tools()
async def list_tools() -> list[Tool]:
    """List available LUKS provisioning tools."""
    return get_luks_tools()


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls."""
    return await handle_luks_tool(name, arguments or {})


def main():
    """Main entry point for the MCP server."""
    import asyncio
    import mcp.server.stdio

    async def run():
        async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
            await app.run(
                read_stream,
                write_stream,
                app.create_initialization_options()
            )

    asyncio.run(run())


if __name__ == "__main__":
    main()
