"""
Lifecycle management for the MCP filter proxy.

Startup connects the upstream first and then opens the downstream listener.
Teardown runs in reverse: downstream listener, upstream session, upstream
transport (which terminates a spawned child process).
"""

import asyncio
from enum import Enum
from typing import Any, AsyncContextManager, Awaitable, Callable, List, Optional, Tuple

from mcp.server.stdio import stdio_server
from mcp.types import Tool

from mcp_filter_proxy.config import WrapperConfig
from mcp_filter_proxy.errors import CleanupError
from mcp_filter_proxy.logging_config import get_logger
from mcp_filter_proxy.server import FilteredToolServer
from mcp_filter_proxy.upstream import ModuleLoader, UpstreamLink, UpstreamSession

logger = get_logger(__name__)

TransportFactory = Callable[[], AsyncContextManager[Tuple[Any, Any]]]

# Seconds to wait for the downstream listener to unwind after cancellation
DOWNSTREAM_CLOSE_TIMEOUT = 5.0


class WrapperState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SERVING = "serving"
    STOPPING = "stopping"
    STOPPED = "stopped"


class MCPFilterWrapper:
    """
    Wraps one upstream MCP server and exposes an allow-listed subset of its tools.

    ``stop()`` is the single teardown entry point. It is idempotent and safe to
    call from a signal-driven shutdown path; signal wiring belongs to the host.
    """

    def __init__(
        self,
        config: WrapperConfig,
        downstream_transport: Optional[TransportFactory] = None,
        loader: Optional[ModuleLoader] = None,
    ):
        """
        Initialize the wrapper.

        Args:
            config: Upstream target and allow-set
            downstream_transport: Factory for the downstream (read, write) stream
                context. Defaults to the process's stdin/stdout.
            loader: Module loader for module: targets. Defaults to importlib.
        """
        self.config = config
        self.state = WrapperState.IDLE
        self.cleanup_errors: List[CleanupError] = []
        self._downstream_transport = downstream_transport or stdio_server
        self._loader = loader
        self._link: Optional[UpstreamLink] = None
        self._proxy: Optional[FilteredToolServer] = None
        self._downstream_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Future] = None

    @property
    def upstream(self) -> Optional[UpstreamSession]:
        return self._link.session if self._link is not None else None

    @property
    def tools(self) -> List[Tool]:
        """The tool catalog exposed downstream."""
        return list(self._proxy.tools) if self._proxy is not None else []

    async def __aenter__(self) -> "MCPFilterWrapper":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """
        Connect to the upstream and start serving the filtered catalog.

        On failure every partially created resource is torn down and the
        original error is re-raised.
        """
        if self.state is not WrapperState.IDLE:
            raise RuntimeError(f"Cannot start wrapper in state {self.state.value}")

        self.state = WrapperState.CONNECTING
        self.cleanup_errors = []
        try:
            self._link = UpstreamLink(
                self.config.upstream_target,
                connect_timeout=self.config.connect_timeout,
                env=self.config.upstream_env,
                loader=self._loader,
            )
            upstream = await self._link.open()

            self._proxy = FilteredToolServer(
                upstream.session,
                self.config.allowed_tools,
                server_name=self.config.server_name,
            )
            await self._proxy.load_catalog()
            await self._start_downstream()
        except Exception as e:
            logger.error(f"Failed to start MCP filter proxy: {e}")
            await self.stop()
            raise

        self.state = WrapperState.SERVING
        logger.info(f"MCP filter proxy serving {self.config.upstream_target}")

    async def _start_downstream(self) -> None:
        listening = asyncio.Event()
        task = asyncio.create_task(self._serve_downstream(listening), name="downstream")
        self._downstream_task = task

        listening_wait = asyncio.create_task(listening.wait())
        try:
            await asyncio.wait({listening_wait, task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            listening_wait.cancel()

        if not listening.is_set():
            error = task.exception()
            if error is not None:
                raise error
            raise RuntimeError("Downstream listener exited before accepting connections")

    async def _serve_downstream(self, listening: asyncio.Event) -> None:
        async with self._downstream_transport() as (read_stream, write_stream):
            listening.set()
            await self._proxy.serve(read_stream, write_stream)
        logger.info("Downstream client disconnected")

    async def wait_closed(self) -> None:
        """Wait until the downstream listener finishes, re-raising its failure."""
        task = self._downstream_task
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()

    async def stop(self) -> None:
        """Tear down all resources. Safe to call repeatedly and concurrently."""
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._cleanup())
        await asyncio.shield(self._stop_task)

    async def _cleanup(self) -> None:
        self.state = WrapperState.STOPPING

        task, self._downstream_task = self._downstream_task, None
        self._proxy = None
        if task is not None:
            await self._cleanup_step("close downstream listener", self._close_downstream(task))

        link, self._link = self._link, None
        if link is not None:
            await self._cleanup_step("close upstream session", link.close_session())
            await self._cleanup_step("terminate upstream transport", link.terminate())

        self.state = WrapperState.STOPPED
        logger.info("MCP filter proxy stopped")

    async def _close_downstream(self, task: asyncio.Task) -> None:
        if task.done():
            # Failures of a finished listener were already surfaced by start() or wait_closed()
            if not task.cancelled():
                task.exception()
            return
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=DOWNSTREAM_CLOSE_TIMEOUT)
        if not done:
            raise TimeoutError(
                f"Downstream listener did not stop within {DOWNSTREAM_CLOSE_TIMEOUT}s"
            )
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()

    async def _cleanup_step(self, step: str, action: Awaitable[None]) -> None:
        try:
            await action
        except Exception as e:
            error = CleanupError(step, e)
            logger.warning(f"{error}", exc_info=True)
            self.cleanup_errors.append(error)
