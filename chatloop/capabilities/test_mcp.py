import json
from contextlib import AsyncExitStack, asynccontextmanager
from types import SimpleNamespace
from unittest.mock import patch

import asyncio
import pytest

from chatloop.capabilities.mcp import (
    McpCapability,
    McpServerConfig,
    connect_mcp_servers,
    load_mcp_capabilities,
    load_mcp_server_configs,
    normalize_call_tool_result,
)


def _text(value: str):
    return SimpleNamespace(type="text", text=value)


class FakeSession:
    def __init__(self, results):
        self.results = results
        self.calls = []

    async def list_tools(self):
        return SimpleNamespace(
            tools=[
                SimpleNamespace(
                    name="list_issues",
                    description="List issues",
                    inputSchema={
                        "type": "object",
                        "properties": {"repo": {"type": "string"}},
                    },
                ),
                SimpleNamespace(name="ping", description=None, inputSchema=None),
            ]
        )

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        return self.results[name]


def test_error_results_join_text_content():
    result = SimpleNamespace(
        isError=True, content=[_text("401"), _text("bad token")], structuredContent=None
    )

    assert normalize_call_tool_result(result) == {
        "success": False,
        "error": "401\nbad token",
    }


def test_structured_content_preferred():
    result = SimpleNamespace(
        isError=False, content=[_text("ignored")], structuredContent={"count": 2}
    )

    assert normalize_call_tool_result(result) == {
        "success": True,
        "data": {"count": 2},
    }


def test_single_json_text_entry_is_parsed():
    result = SimpleNamespace(isError=False, content=[_text('{"ok": 1}')])

    assert normalize_call_tool_result(result) == {"success": True, "data": {"ok": 1}}


def test_plain_text_entries_are_joined():
    result = SimpleNamespace(isError=False, content=[_text("a"), _text("b")])

    assert normalize_call_tool_result(result) == {"success": True, "data": "a\nb"}


@pytest.mark.asyncio
async def test_load_and_invoke_mcp_capabilities():
    session = FakeSession(
        {"list_issues": SimpleNamespace(isError=False, content=[_text("[1, 2]")])}
    )

    capabilities = await load_mcp_capabilities(session)

    assert [c.describe().name for c in capabilities] == ["list_issues", "ping"]
    assert capabilities[1].describe().parameters == {
        "type": "object",
        "properties": {},
    }
    assert isinstance(capabilities[0], McpCapability)

    result = await capabilities[0].invoke({"repo": "chatloop"})

    assert result == {"success": True, "data": [1, 2]}
    assert session.calls == [("list_issues", {"repo": "chatloop"})]


def test_server_configs_read_from_file_plus_env_command(tmp_path):
    path = tmp_path / "mcp.json"
    path.write_text(
        json.dumps(
            {
                "servers": [
                    {"name": "github", "command": "npx", "args": ["github-mcp"]},
                    {"name": "files", "command": "files-mcp", "env": {"ROOT": "/srv"}},
                ]
            }
        )
    )

    configs = load_mcp_server_configs(str(path), command="weather-mcp", args=["--stdio"])

    assert [(c.name, c.command, c.args) for c in configs] == [
        ("github", "npx", ["github-mcp"]),
        ("files", "files-mcp", []),
        ("default", "weather-mcp", ["--stdio"]),
    ]
    assert configs[1].env == {"ROOT": "/srv"}


def test_missing_or_broken_config_file_means_no_servers(tmp_path):
    broken = tmp_path / "mcp.json"
    broken.write_text("{not json")

    assert load_mcp_server_configs(str(tmp_path / "absent.json")) == []
    assert load_mcp_server_configs(str(broken)) == []


class _ToolSession:
    def __init__(self, *names):
        self.names = names

    async def list_tools(self):
        return SimpleNamespace(
            tools=[
                SimpleNamespace(name=n, description=n, inputSchema=None)
                for n in self.names
            ]
        )


def _fake_sessions(behaviour, closed):
    @asynccontextmanager
    async def fake_stdio_mcp_session(command, args=None, env=None):
        action = behaviour[command]
        if isinstance(action, Exception):
            raise action
        if action == "hang":
            await asyncio.sleep(10)
        try:
            yield action
        finally:
            closed.append(command)

    return fake_stdio_mcp_session


@pytest.mark.asyncio
async def test_failing_and_slow_servers_are_skipped():
    closed = []
    behaviour = {
        "github-mcp": _ToolSession("list_issues"),
        "broken-mcp": FileNotFoundError("broken-mcp not installed"),
        "slow-mcp": "hang",
        "files-mcp": _ToolSession("read_file", "list_issues"),
    }
    configs = [
        McpServerConfig(name=command.split("-")[0], command=command)
        for command in behaviour
    ]

    with patch(
        "chatloop.capabilities.mcp.stdio_mcp_session", _fake_sessions(behaviour, closed)
    ):
        async with AsyncExitStack() as stack:
            capabilities = await connect_mcp_servers(stack, configs, timeout=0.05)
            assert [c.name for c in capabilities] == ["list_issues", "read_file"]
            assert closed == []

    assert sorted(closed) == ["files-mcp", "github-mcp"]
