"""
MCP Filter Proxy

Wraps an MCP tool server and exposes only an allow-listed subset of its tools,
forwarding calls to those tools and rejecting everything else.
"""

__version__ = "0.1.0"
__author__ = "MCP Filter Proxy Contributors"

from mcp_filter_proxy.catalog import filter_tools
from mcp_filter_proxy.config import WrapperConfig, load_config
from mcp_filter_proxy.errors import (
    CleanupError,
    InvalidUpstreamModuleError,
    ToolNotFoundError,
    UnsupportedTargetError,
    UpstreamConnectionError,
    WrapperError,
)
from mcp_filter_proxy.server import FilteredToolServer
from mcp_filter_proxy.wrapper import MCPFilterWrapper, WrapperState

__all__ = [
    "MCPFilterWrapper",
    "WrapperState",
    "WrapperConfig",
    "load_config",
    "FilteredToolServer",
    "filter_tools",
    "WrapperError",
    "UpstreamConnectionError",
    "UnsupportedTargetError",
    "InvalidUpstreamModuleError",
    "ToolNotFoundError",
    "CleanupError",
]
