"""
Tool catalog filtering.

The upstream's tool descriptors are passed through untouched; only the
``name`` field is consulted.
"""

from typing import AbstractSet, List, Sequence

from mcp.types import Tool


def filter_tools(tools: Sequence[Tool], allowed: AbstractSet[str]) -> List[Tool]:
    """
    Keep the tools whose name is in the allow-set.

    Upstream order is preserved. Allowed names the upstream does not expose
    are ignored.

    Args:
        tools: Full upstream catalog
        allowed: Tool names permitted through the proxy

    Returns:
        The exposed catalog, referencing the upstream descriptors
    """
    return [tool for tool in tools if tool.name in allowed]


def unmatched_tool_names(tools: Sequence[Tool], allowed: AbstractSet[str]) -> List[str]:
    """Return the allowed names that match no upstream tool, sorted."""
    available = {tool.name for tool in tools}
    return sorted(name for name in allowed if name not in available)
