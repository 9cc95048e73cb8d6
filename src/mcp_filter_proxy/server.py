"""
Downstream MCP server exposing the filtered tool catalog.
"""

from typing import AbstractSet, Any, Dict, List, Optional, Protocol, Type

from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.models import InitializationOptions
from mcp.shared.exceptions import McpError
from mcp.types import (
    CallToolRequest,
    CallToolRequestParams,
    CallToolResult,
    ClientRequest,
    ListToolsRequest,
    ListToolsResult,
    ServerResult,
    Tool,
)

from mcp_filter_proxy import __version__
from mcp_filter_proxy.catalog import filter_tools, unmatched_tool_names
from mcp_filter_proxy.errors import ToolNotFoundError
from mcp_filter_proxy.logging_config import get_logger

logger = get_logger(__name__)


class ToolClient(Protocol):
    """The part of ``mcp.ClientSession`` the proxy relies on."""

    async def list_tools(self) -> ListToolsResult: ...

    async def send_request(self, request: ClientRequest, result_type: Type[Any]) -> Any: ...


class FilteredToolServer:
    """MCP server that serves an allow-listed subset of an upstream's tools."""

    def __init__(
        self,
        upstream: ToolClient,
        allowed_tools: AbstractSet[str],
        server_name: str = "mcp-filter-proxy",
    ):
        """
        Initialize the downstream server.

        Handlers are registered here, before any transport is attached.

        Args:
            upstream: Client session connected to the upstream server
            allowed_tools: Tool names permitted through the proxy
            server_name: Name reported to downstream clients
        """
        self.upstream = upstream
        self.allowed_tools = frozenset(allowed_tools)
        self.tools: List[Tool] = []
        self.server = Server(server_name, version=__version__)

        self._register_handlers()

    def _register_handlers(self) -> None:
        """Register the tools/list and tools/call handlers.

        The SDK's call_tool decorator validates arguments and turns exceptions
        into error results, so the raw request handlers are used instead.
        """
        self.server.request_handlers[ListToolsRequest] = self._list_tools_request
        self.server.request_handlers[CallToolRequest] = self._call_tool_request

    async def load_catalog(self) -> List[Tool]:
        """Fetch the upstream catalog once and keep the filtered snapshot."""
        result = await self.upstream.list_tools()
        self.tools = filter_tools(result.tools, self.allowed_tools)

        logger.info(
            f"Exposing {len(self.tools)} of {len(result.tools)} upstream tools: "
            f"{[tool.name for tool in self.tools]}"
        )
        unmatched = unmatched_tool_names(result.tools, self.allowed_tools)
        if unmatched:
            logger.info(f"Allowed tools not provided by upstream: {unmatched}")
        return self.tools

    async def handle_list_tools(self) -> ListToolsResult:
        return ListToolsResult(tools=list(self.tools))

    async def handle_call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]]
    ) -> CallToolResult:
        """
        Forward a tool call to the upstream if the tool is allowed.

        The upstream result is returned as received, without output validation.

        Raises:
            ToolNotFoundError: If the tool is not in the allow-set
            McpError: Re-raised unchanged when the upstream rejects the call
        """
        if name not in self.allowed_tools:
            logger.warning(f"Rejected call to tool outside the allow-set: {name}")
            raise ToolNotFoundError(name)

        # ClientSession.call_tool checks structured output against the tool's
        # outputSchema and may re-list tools, so the raw request is sent instead
        request = ClientRequest(
            CallToolRequest(
                method="tools/call",
                params=CallToolRequestParams(name=name, arguments=arguments or {}),
            )
        )
        logger.debug(f"Forwarding tool call: {name}")
        try:
            return await self.upstream.send_request(request, CallToolResult)
        except McpError as e:
            logger.error(f"Upstream error calling tool {name}: {e}", exc_info=True)
            raise

    async def _list_tools_request(self, req: ListToolsRequest) -> ServerResult:
        return ServerResult(await self.handle_list_tools())

    async def _call_tool_request(self, req: CallToolRequest) -> ServerResult:
        result = await self.handle_call_tool(req.params.name, req.params.arguments)
        return ServerResult(result)

    def initialization_options(self) -> InitializationOptions:
        return InitializationOptions(
            server_name=self.server.name,
            server_version=__version__,
            capabilities=self.server.get_capabilities(
                notification_options=NotificationOptions(),
                experimental_capabilities={},
            ),
        )

    async def serve(self, read_stream: Any, write_stream: Any) -> None:
        """Run the protocol loop until the downstream client disconnects."""
        await self.server.run(read_stream, write_stream, self.initialization_options())
