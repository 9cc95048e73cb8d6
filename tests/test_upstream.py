"""
Tests for upstream target classification and connection handling.
"""

import sys
from types import SimpleNamespace

import pytest
from mcp.server.fastmcp import FastMCP

from demo_upstream_server import build_server
from mcp_filter_proxy.errors import (
    InvalidUpstreamModuleError,
    UnsupportedTargetError,
    UpstreamConnectionError,
)
from mcp_filter_proxy.upstream import (
    EmbeddedUpstream,
    SpawnedUpstream,
    UpstreamKind,
    UpstreamLink,
    classify_target,
    spawn_parameters,
)


class TestClassifyTarget:
    """Tests for classify_target."""

    @pytest.mark.parametrize(
        "target",
        ["./server.py", "../servers/server.js", "/opt/mcp/server.ts", "./server.mjs", "./a.cjs"],
    )
    def test_local_files(self, target):
        assert classify_target(target) is UpstreamKind.LOCAL_FILE

    @pytest.mark.parametrize(
        "target", ["npm:@modelcontextprotocol/server-everything", "pypi:mcp-server-time"]
    )
    def test_packages(self, target):
        assert classify_target(target) is UpstreamKind.PACKAGE

    def test_module(self):
        assert classify_target("module:my_servers.calculator") is UpstreamKind.MODULE

    @pytest.mark.parametrize(
        "target",
        [
            "server.py",  # no path marker
            "./server.txt",  # unknown suffix
            "./server",  # no suffix
            "https://example.com/mcp",
            "npm:",
            "module:",
            "some-package",
        ],
    )
    def test_unsupported(self, target):
        with pytest.raises(UnsupportedTargetError) as exc_info:
            classify_target(target)
        assert exc_info.value.target == target

    def test_unsupported_is_connection_error(self):
        with pytest.raises(ConnectionError):
            classify_target("ftp://server")


class TestSpawnParameters:
    """Tests for spawn_parameters."""

    def test_python_file_uses_current_interpreter(self):
        params = spawn_parameters("./server.py")
        assert params.command == sys.executable
        assert params.args == ["./server.py"]

    def test_node_file(self):
        params = spawn_parameters("/srv/server.js")
        assert params.command == "node"
        assert params.args == ["/srv/server.js"]

    def test_deno_file(self):
        params = spawn_parameters("./server.ts")
        assert params.command == "deno"
        assert params.args == [
            "run",
            "--allow-read",
            "--allow-write",
            "--allow-run",
            "--allow-net",
            "./server.ts",
        ]

    def test_npm_package(self):
        params = spawn_parameters("npm:@modelcontextprotocol/server-everything")
        assert params.command == "npx"
        assert params.args == ["-y", "@modelcontextprotocol/server-everything"]

    def test_pypi_package(self):
        params = spawn_parameters("pypi:mcp-server-time")
        assert params.command == "uvx"
        assert params.args == ["mcp-server-time"]

    def test_env_passed(self):
        params = spawn_parameters("./server.py", env={"TOKEN": "abc"})
        assert params.env == {"TOKEN": "abc"}

    def test_module_target_not_spawnable(self):
        with pytest.raises(UnsupportedTargetError):
            spawn_parameters("module:servers.calc")


class TestEmbeddedUpstream:
    """Tests for in-process upstream loading."""

    @pytest.mark.asyncio
    async def test_open_and_terminate(self, demo_loader):
        link = UpstreamLink("module:servers.demo", connect_timeout=5, loader=demo_loader)
        try:
            upstream = await link.open()
            assert isinstance(upstream, EmbeddedUpstream)
            assert upstream.module_name == "servers.demo"
            assert demo_loader.loaded == ["servers.demo"]
            assert link.server_info.name == "demo-upstream-server"

            tools = await upstream.session.list_tools()
            assert [tool.name for tool in tools.tools] == ["hello", "add", "multiply", "fail"]
        finally:
            await link.close_session()
            await link.terminate()
        assert link.session is None

    @pytest.mark.asyncio
    async def test_async_factory(self):
        async def create_server():
            return build_server()

        link = UpstreamLink(
            "module:servers.demo",
            connect_timeout=5,
            loader=lambda name: SimpleNamespace(create_server=create_server),
        )
        try:
            upstream = await link.open()
            result = await upstream.session.call_tool("add", {"a": 2, "b": 2})
            assert result.content[0].text == "Result: 4"
        finally:
            await link.terminate()

    @pytest.mark.asyncio
    async def test_fastmcp_factory(self):
        def create_server():
            app = FastMCP("fast-demo")

            @app.tool()
            def shout(text: str) -> str:
                """Upper-case the text."""
                return text.upper()

            return app

        link = UpstreamLink(
            "module:servers.fast",
            connect_timeout=5,
            loader=lambda name: SimpleNamespace(create_server=create_server),
        )
        try:
            upstream = await link.open()
            tools = await upstream.session.list_tools()
            assert [tool.name for tool in tools.tools] == ["shout"]
        finally:
            await link.terminate()

    @pytest.mark.asyncio
    async def test_import_failure(self):
        def loader(name):
            raise ModuleNotFoundError(f"No module named '{name}'")

        link = UpstreamLink("module:missing.module", connect_timeout=5, loader=loader)
        with pytest.raises(InvalidUpstreamModuleError, match="missing.module"):
            await link.open()
        await link.terminate()

    @pytest.mark.asyncio
    async def test_missing_factory(self):
        link = UpstreamLink(
            "module:servers.empty", connect_timeout=5, loader=lambda name: SimpleNamespace()
        )
        with pytest.raises(InvalidUpstreamModuleError, match="create_server"):
            await link.open()

    @pytest.mark.asyncio
    async def test_factory_returns_wrong_type(self):
        link = UpstreamLink(
            "module:servers.bad",
            connect_timeout=5,
            loader=lambda name: SimpleNamespace(create_server=lambda: object()),
        )
        with pytest.raises(InvalidUpstreamModuleError, match="expected an MCP Server"):
            await link.open()


class TestUpstreamLinkLifecycle:
    """Teardown behaviour independent of the connection kind."""

    def test_unsupported_target_rejected_at_construction(self):
        with pytest.raises(UnsupportedTargetError):
            UpstreamLink("not a target", connect_timeout=5)

    @pytest.mark.asyncio
    async def test_teardown_without_open(self):
        link = UpstreamLink("./server.py", connect_timeout=5)
        await link.close_session()
        await link.terminate()
        await link.terminate()

    @pytest.mark.asyncio
    async def test_open_twice_rejected(self, demo_loader):
        link = UpstreamLink("module:servers.demo", connect_timeout=5, loader=demo_loader)
        try:
            await link.open()
            with pytest.raises(RuntimeError):
                await link.open()
        finally:
            await link.terminate()


class TestSpawnedUpstream:
    """Tests that spawn real child processes."""

    @pytest.mark.asyncio
    async def test_spawn_demo_server(self, demo_server_path):
        link = UpstreamLink(demo_server_path, connect_timeout=30)
        try:
            upstream = await link.open()
            assert isinstance(upstream, SpawnedUpstream)
            assert upstream.parameters.command == sys.executable
            assert upstream.parameters.args == [demo_server_path]

            result = await upstream.session.call_tool("hello", {"name": "World"})
            assert result.content[0].text == "Hello, World!"

            assert "demo-upstream-server starting" in upstream.stderr_tail()
        finally:
            await link.close_session()
            await link.terminate()

    @pytest.mark.asyncio
    async def test_child_exits_during_handshake(self, tmp_path, caplog):
        script = tmp_path / "broken_server.py"
        script.write_text("import sys\nsys.stderr.write('boom: bad config\\n')\nsys.exit(3)\n")

        link = UpstreamLink(str(script), connect_timeout=5)
        try:
            with pytest.raises(UpstreamConnectionError):
                await link.open()
        finally:
            await link.terminate()
        assert "boom: bad config" in caplog.text

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, tmp_path):
        script = tmp_path / "silent_server.py"
        script.write_text("import time\ntime.sleep(60)\n")

        link = UpstreamLink(str(script), connect_timeout=0.5)
        try:
            with pytest.raises(UpstreamConnectionError, match="Timeout"):
                await link.open()
        finally:
            await link.terminate()
        assert link.session is None
