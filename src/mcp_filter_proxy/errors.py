"""
Exception types raised by the filter proxy.

Failures reported by the upstream for an allowed tool are not wrapped: an
``isError`` result is returned as-is and an ``McpError`` from the client
session is re-raised unchanged.
"""

from mcp.shared.exceptions import McpError
from mcp.types import INVALID_PARAMS, ErrorData


class WrapperError(Exception):
    """Base class for filter proxy errors."""


class UpstreamConnectionError(WrapperError, ConnectionError):
    """The upstream could not be reached or the handshake failed."""


class UnsupportedTargetError(UpstreamConnectionError):
    """The upstream target string has no known connection strategy."""

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(
            f"Unsupported upstream target: {target!r}. Expected a local file "
            "(./server.py, /abs/server.js, ...), a package reference "
            "(npm:<package>, pypi:<package>) or module:<dotted.name>"
        )


class InvalidUpstreamModuleError(WrapperError):
    """An in-process upstream module does not provide a usable server factory."""


class ToolNotFoundError(WrapperError, McpError):
    """A downstream client asked for a tool outside the allow-set."""

    def __init__(self, name: str) -> None:
        self.tool_name = name
        super().__init__(ErrorData(code=INVALID_PARAMS, message=f"Tool not found: {name}"))


class CleanupError(WrapperError):
    """A teardown step failed. Logged and collected, never raised to callers."""

    def __init__(self, step: str, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Error during cleanup step '{step}': {cause}")
