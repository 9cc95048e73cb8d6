"""
Upstream connection handling.

An upstream target is either spawned as a child process and spoken to over
its stdio pipes, or loaded in-process from a Python module exposing a
``create_server()`` factory and spoken to over in-memory streams.
"""

import asyncio
import importlib
import inspect
import sys
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import IO, Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.server.lowlevel import Server
from mcp.shared.memory import create_client_server_memory_streams
from mcp.types import Implementation

from mcp_filter_proxy.errors import (
    InvalidUpstreamModuleError,
    UnsupportedTargetError,
    UpstreamConnectionError,
)
from mcp_filter_proxy.logging_config import get_logger

logger = get_logger(__name__)

LOCAL_PATH_PREFIXES = ("./", "../", "/")

# Interpreter command line per local file suffix
INTERPRETERS: Dict[str, List[str]] = {
    ".py": [sys.executable],
    ".js": ["node"],
    ".mjs": ["node"],
    ".cjs": ["node"],
    ".ts": ["deno", "run", "--allow-read", "--allow-write", "--allow-run", "--allow-net"],
}

# Generic "run this package" command per package scheme
PACKAGE_RUNNERS: Dict[str, List[str]] = {
    "npm:": ["npx", "-y"],
    "pypi:": ["uvx"],
}

MODULE_PREFIX = "module:"
FACTORY_NAME = "create_server"

# Seconds to wait for a released session or transport to unwind
CLOSE_TIMEOUT = 10.0
TERMINATE_TIMEOUT = 10.0

STDERR_TAIL_LINES = 20

ModuleLoader = Callable[[str], Any]


class UpstreamKind(str, Enum):
    """Connection strategy selected by the shape of the target string."""

    LOCAL_FILE = "local_file"
    PACKAGE = "package"
    MODULE = "module"


def _local_suffix(target: str) -> Optional[str]:
    if not target.startswith(LOCAL_PATH_PREFIXES):
        return None
    for suffix in INTERPRETERS:
        if target.endswith(suffix):
            return suffix
    return None


def _package_scheme(target: str) -> Optional[str]:
    for scheme in PACKAGE_RUNNERS:
        if target.startswith(scheme) and len(target) > len(scheme):
            return scheme
    return None


def classify_target(target: str) -> UpstreamKind:
    """
    Select the connection strategy for an upstream target.

    Raises:
        UnsupportedTargetError: If the target matches no known shape
    """
    if _local_suffix(target) is not None:
        return UpstreamKind.LOCAL_FILE
    if _package_scheme(target) is not None:
        return UpstreamKind.PACKAGE
    if target.startswith(MODULE_PREFIX) and len(target) > len(MODULE_PREFIX):
        return UpstreamKind.MODULE
    raise UnsupportedTargetError(target)


def spawn_parameters(
    target: str, env: Optional[Dict[str, str]] = None
) -> StdioServerParameters:
    """Build the child process command line for a local file or package target."""
    suffix = _local_suffix(target)
    if suffix is not None:
        command, *args = INTERPRETERS[suffix]
        return StdioServerParameters(command=command, args=[*args, target], env=env)

    scheme = _package_scheme(target)
    if scheme is not None:
        command, *args = PACKAGE_RUNNERS[scheme]
        return StdioServerParameters(
            command=command, args=[*args, target[len(scheme):]], env=env
        )

    raise UnsupportedTargetError(target)


@dataclass
class SpawnedUpstream:
    """Upstream running as a child process, reached over its stdio pipes."""

    parameters: StdioServerParameters
    session: ClientSession
    stderr_log: IO[str]

    def stderr_tail(self, lines: int = STDERR_TAIL_LINES) -> str:
        return _read_tail(self.stderr_log, lines)


@dataclass
class EmbeddedUpstream:
    """Upstream server object loaded into this process."""

    module_name: str
    server: Server
    session: ClientSession


UpstreamSession = Union[SpawnedUpstream, EmbeddedUpstream]


def _read_tail(log: Optional[IO[str]], lines: int) -> str:
    if log is None or log.closed:
        return ""
    log.flush()
    log.seek(0)
    return "".join(log.readlines()[-lines:])


def _root_cause(error: BaseException) -> BaseException:
    """Unwrap single-member exception groups raised by task groups."""
    while len(getattr(error, "exceptions", ())) == 1:
        error = error.exceptions[0]
    return error


@asynccontextmanager
async def _embedded_streams(server: Server) -> AsyncIterator[Tuple[Any, Any]]:
    """Run ``server`` in a task group and yield client streams connected to it."""
    async with create_client_server_memory_streams() as (client_streams, server_streams):
        async with anyio.create_task_group() as tg:
            tg.start_soon(
                partial(
                    server.run,
                    server_streams[0],
                    server_streams[1],
                    server.create_initialization_options(),
                    raise_exceptions=False,
                )
            )
            try:
                yield client_streams
            finally:
                tg.cancel_scope.cancel()


class UpstreamLink:
    """
    Owns the connection to one upstream server.

    The transport and client session contexts are entered and exited inside a
    single background task, which keeps them alive between ``open()`` and
    ``terminate()``. A failed ``open()`` may leave a child process behind, so
    callers must still call ``terminate()``.
    """

    def __init__(
        self,
        target: str,
        connect_timeout: float,
        env: Optional[Dict[str, str]] = None,
        loader: Optional[ModuleLoader] = None,
    ):
        self.target = target
        self.kind = classify_target(target)
        self.connect_timeout = connect_timeout
        self.env = env
        self.server_info: Optional[Implementation] = None
        self._loader = loader or importlib.import_module
        self._parameters: Optional[StdioServerParameters] = None
        self._stderr_log: Optional[IO[str]] = None
        self._session: Optional[UpstreamSession] = None
        self._error: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._release_session = asyncio.Event()
        self._session_closed = asyncio.Event()
        self._release_transport = asyncio.Event()

    @property
    def session(self) -> Optional[UpstreamSession]:
        return self._session

    async def open(self) -> UpstreamSession:
        """
        Start the upstream and complete the MCP handshake.

        Returns:
            The live upstream session

        Raises:
            UpstreamConnectionError: If the upstream cannot be reached in time
            InvalidUpstreamModuleError: If a module target has no usable factory
        """
        if self._task is not None:
            raise RuntimeError(f"Upstream link for {self.target} was already opened")

        server: Optional[Server] = None
        if self.kind is UpstreamKind.MODULE:
            server = await self._load_embedded_server()
            logger.info(f"Connecting to in-process upstream: {self.target}")
        else:
            self._parameters = spawn_parameters(self.target, self.env)
            self._stderr_log = tempfile.TemporaryFile(
                mode="w+", encoding="utf-8", errors="replace"
            )
            logger.info(
                f"Connecting to upstream {self.target} "
                f"(command: {self._parameters.command}, args: {self._parameters.args})"
            )

        self._task = asyncio.create_task(self._hold(server), name=f"upstream:{self.target}")

        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            self._log_stderr_tail()
            raise UpstreamConnectionError(
                f"Timeout connecting to upstream {self.target} ({self.connect_timeout}s)"
            ) from None

        if self._error is not None:
            self._log_stderr_tail()
            cause = _root_cause(self._error)
            raise UpstreamConnectionError(
                f"Failed to connect to upstream {self.target}: {cause}"
            ) from cause

        if self.server_info is not None:
            logger.info(
                f"Connected to upstream server: {self.server_info.name}, "
                f"version: {self.server_info.version}"
            )
        return self._session

    async def close_session(self) -> None:
        """Close the client session, leaving the transport in place."""
        if self._task is None or self._task.done() or not self._ready.is_set():
            return
        self._release_session.set()
        await asyncio.wait_for(self._session_closed.wait(), timeout=CLOSE_TIMEOUT)
        logger.debug(f"Closed upstream session for {self.target}")

    async def terminate(self) -> None:
        """Tear down the transport, terminating a spawned child process."""
        task, self._task = self._task, None
        try:
            if task is not None and not task.done():
                self._release_session.set()
                self._release_transport.set()
                if not self._ready.is_set():
                    task.cancel()
                done, _ = await asyncio.wait({task}, timeout=TERMINATE_TIMEOUT)
                if not done:
                    logger.warning(
                        f"Upstream {self.target} did not shut down within "
                        f"{TERMINATE_TIMEOUT}s, cancelling"
                    )
                    task.cancel()
                    await asyncio.wait({task})
                logger.debug(f"Terminated upstream transport for {self.target}")
        finally:
            self._session = None
            if self._stderr_log is not None:
                self._stderr_log.close()
                self._stderr_log = None

    async def _load_embedded_server(self) -> Server:
        module_name = self.target[len(MODULE_PREFIX):]
        try:
            module = self._loader(module_name)
        except ImportError as e:
            raise InvalidUpstreamModuleError(
                f"Failed to import upstream module {module_name}: {e}"
            ) from e

        factory = getattr(module, FACTORY_NAME, None)
        if not callable(factory):
            raise InvalidUpstreamModuleError(
                f"The module {module_name} does not export a {FACTORY_NAME} function"
            )

        server = factory()
        if inspect.isawaitable(server):
            server = await server
        # FastMCP instances wrap a lowlevel server
        server = getattr(server, "_mcp_server", server)
        if not isinstance(server, Server):
            raise InvalidUpstreamModuleError(
                f"{module_name}.{FACTORY_NAME}() returned {type(server).__name__}, "
                "expected an MCP Server"
            )
        return server

    def _open_transport(self, server: Optional[Server]):
        if server is not None:
            return _embedded_streams(server)
        return stdio_client(self._parameters, errlog=self._stderr_log)

    def _wrap_session(self, session: ClientSession, server: Optional[Server]) -> UpstreamSession:
        if server is not None:
            return EmbeddedUpstream(
                module_name=self.target[len(MODULE_PREFIX):], server=server, session=session
            )
        return SpawnedUpstream(
            parameters=self._parameters, session=session, stderr_log=self._stderr_log
        )

    async def _hold(self, server: Optional[Server]) -> None:
        """Background task keeping the transport and session open until released."""
        try:
            async with self._open_transport(server) as (read_stream, write_stream):
                try:
                    async with ClientSession(read_stream, write_stream) as session:
                        init_result = await session.initialize()
                        self.server_info = init_result.serverInfo
                        self._session = self._wrap_session(session, server)
                        self._ready.set()
                        await self._release_session.wait()
                finally:
                    self._session_closed.set()
                await self._release_transport.wait()
        except Exception as e:
            if not self._ready.is_set():
                self._error = e
                self._ready.set()
            else:
                logger.error(f"Connection to upstream {self.target} failed: {e}", exc_info=True)
        finally:
            self._session_closed.set()

    def _log_stderr_tail(self) -> None:
        tail = _read_tail(self._stderr_log, STDERR_TAIL_LINES)
        if tail:
            logger.error(f"Upstream {self.target} stderr:\n{tail.rstrip()}")
