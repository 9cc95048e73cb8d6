"""
Main entry point for the MCP Filter Proxy.

Usage: mcp-filter-proxy UPSTREAM_TARGET TOOL_NAME [TOOL_NAME ...]
"""

import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from mcp_filter_proxy.config import DEFAULT_CONNECT_TIMEOUT, WrapperConfig, load_config
from mcp_filter_proxy.logging_config import get_logger, setup_logging
from mcp_filter_proxy.wrapper import MCPFilterWrapper

logger = get_logger(__name__)

USAGE = "Usage: mcp-filter-proxy UPSTREAM_TARGET TOOL_NAME [TOOL_NAME ...]"


def parse_args(argv: List[str]) -> WrapperConfig:
    """
    Build the configuration from positional arguments or MCP_FILTER_PROXY_CONFIG.

    Prints the usage message and exits with status 1 when arguments are missing.
    """
    config_path = os.getenv("MCP_FILTER_PROXY_CONFIG")
    if not argv and config_path:
        return load_config(config_path)

    if len(argv) < 2:
        print(USAGE, file=sys.stderr)
        sys.exit(1)

    timeout = os.getenv("MCP_FILTER_PROXY_CONNECT_TIMEOUT")
    try:
        connect_timeout = float(timeout) if timeout else DEFAULT_CONNECT_TIMEOUT
    except ValueError as e:
        raise ValueError(f"Invalid MCP_FILTER_PROXY_CONNECT_TIMEOUT: {timeout!r}") from e

    return WrapperConfig.from_cli(argv[0], argv[1:], connect_timeout=connect_timeout)


def _install_signal_handlers(stop_requested: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows event loops: Ctrl+C arrives as KeyboardInterrupt instead
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")


async def async_main(config: WrapperConfig) -> None:
    """Run the proxy until the downstream client disconnects or a signal arrives."""
    wrapper = MCPFilterWrapper(config)
    stop_requested = asyncio.Event()
    _install_signal_handlers(stop_requested)

    signalled = False
    stop_wait = asyncio.create_task(stop_requested.wait())
    try:
        starting = asyncio.create_task(wrapper.start())
        await asyncio.wait({starting, stop_wait}, return_when=asyncio.FIRST_COMPLETED)

        if not starting.done():
            starting.cancel()
            await asyncio.wait({starting})
            signalled = True
            logger.info("Termination signal received during startup, shutting down")
        else:
            starting.result()

            closed = asyncio.create_task(wrapper.wait_closed())
            done, _ = await asyncio.wait(
                {closed, stop_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if closed in done:
                closed.result()
            else:
                closed.cancel()
                signalled = True
                logger.info("Termination signal received, shutting down")
    finally:
        stop_wait.cancel()
        await wrapper.stop()

    if signalled:
        # The stdio reader thread blocks until stdin yields a line, so exit
        # without waiting for it
        logging.shutdown()
        sys.stderr.flush()
        os._exit(0)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    log_level = os.getenv("MCP_FILTER_PROXY_LOG_LEVEL", "INFO")
    setup_logging(level=log_level)

    try:
        config = parse_args(sys.argv[1:] if argv is None else argv)
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
