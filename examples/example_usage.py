"""
Example usage of the MCP Filter Proxy

Launches the proxy in front of the demo upstream server with only the
"hello" and "add" tools allowed, then lists and calls tools through it.
"""

import asyncio
import sys
from pathlib import Path

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

DEMO_SERVER = Path(__file__).resolve().parent.parent / "tests" / "demo_upstream_server.py"


async def main():
    server_params = StdioServerParameters(
        command=sys.executable,
        args=["-m", "mcp_filter_proxy", str(DEMO_SERVER), "hello", "add"],
    )

    async with stdio_client(server_params) as (read, write):
        async with ClientSession(read, write) as session:
            init_result = await session.initialize()
            print(f"Connected to {init_result.serverInfo.name} {init_result.serverInfo.version}")

            tools = await session.list_tools()
            print(f"Exposed tools: {[tool.name for tool in tools.tools]}")

            result = await session.call_tool("hello", {"name": "World"})
            print(f"hello -> {result.content[0].text}")

            result = await session.call_tool("add", {"a": 5, "b": 3})
            print(f"add -> {result.content[0].text}")

            try:
                await session.call_tool("multiply", {"a": 5, "b": 3})
            except McpError as e:
                print(f"multiply -> rejected: {e.error.message}")


if __name__ == "__main__":
    asyncio.run(main())
