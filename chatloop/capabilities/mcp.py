"""
Capabilities backed by the tools of an MCP server.

Each McpCapability wraps one tool advertised by an initialized
mcp.ClientSession and normalizes CallToolResult into the capability result
shape.
"""

import json
import logging
import os
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import asyncio

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from pydantic import BaseModel

from chatloop.capabilities.base import Capability
from chatloop.models import ToolSchema
from chatloop.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")


def _text_entries(content: Any) -> List[str]:
    texts = []
    for entry in content or []:
        text = getattr(entry, "text", None)
        if text is None and isinstance(entry, dict):
            text = entry.get("text")
        if isinstance(text, str):
            texts.append(text)
    return texts


def _try_parse_json(text: str) -> Optional[Any]:
    stripped = text.strip()
    if not stripped or stripped[0] not in "{[":
        return None
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return None


def normalize_call_tool_result(result: Any) -> Dict[str, Any]:
    texts = _text_entries(getattr(result, "content", None))
    if getattr(result, "isError", False):
        return {
            "success": False,
            "error": "\n".join(texts) or "MCP tool reported an error",
        }

    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        return {"success": True, "data": structured}
    if len(texts) == 1:
        parsed = _try_parse_json(texts[0])
        return {"success": True, "data": parsed if parsed is not None else texts[0]}
    return {"success": True, "data": "\n".join(texts)}


class McpCapability(Capability):
    def __init__(self, session: ClientSession, tool: Any):
        self.session = session
        self._schema = ToolSchema(
            name=tool.name,
            description=tool.description or "",
            parameters=tool.inputSchema or {"type": "object", "properties": {}},
        )

    def describe(self) -> ToolSchema:
        return self._schema

    async def invoke(self, args: Dict[str, Any]) -> Dict[str, Any]:
        logger.debug(f"[McpCapability] Calling {self._schema.name} with {args}")
        result = await self.session.call_tool(self._schema.name, args)
        return normalize_call_tool_result(result)


async def load_mcp_capabilities(session: ClientSession) -> List[McpCapability]:
    listed = await session.list_tools()
    capabilities = [McpCapability(session, tool) for tool in listed.tools]
    logger.info(f"[McpCapability] Loaded {len(capabilities)} MCP tools")
    return capabilities


@asynccontextmanager
async def stdio_mcp_session(
    command: str,
    args: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
) -> AsyncIterator[ClientSession]:
    """Run an MCP server as a local process and yield an initialized session."""
    params = StdioServerParameters(command=command, args=args or [], env=env)
    async with stdio_client(params) as (read, write):
        async with ClientSession(read, write) as session:
            await session.initialize()
            yield session


class McpServerConfig(BaseModel):
    name: str
    command: str
    args: List[str] = []
    env: Optional[Dict[str, str]] = None


def load_mcp_server_configs(
    path: str,
    command: str = "",
    args: Optional[List[str]] = None,
) -> List[McpServerConfig]:
    """
    Read the "servers" list of an MCP config file. A missing file means no
    servers; a server given through `command` is appended as "default".
    """
    configs: List[McpServerConfig] = []
    if path and os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            configs = [
                McpServerConfig.model_validate(s) for s in data.get("servers", [])
            ]
            logger.info(f"[McpCapability] Found {len(configs)} MCP servers in {path}")
        except (OSError, ValueError, AttributeError) as exc:
            log_exception_with_details(
                logger, f"[McpCapability] Ignoring unreadable MCP config {path}", exc
            )
    elif path:
        logger.info(f"[McpCapability] No MCP config at {path}")
    if command:
        configs.append(McpServerConfig(name="default", command=command, args=args or []))
    return configs


async def _close_quietly(stack: AsyncExitStack, name: str) -> None:
    try:
        await stack.aclose()
    except Exception as exc:
        log_exception_with_details(
            logger, f"[McpCapability] Error closing MCP server {name}", exc,
            logging.WARNING,
        )


async def connect_mcp_servers(
    stack: AsyncExitStack,
    configs: Sequence[McpServerConfig],
    timeout: float,
) -> List[McpCapability]:
    """
    Start each configured server and load its tools. A server that fails or
    does not answer within `timeout` seconds is logged and skipped. Sessions
    that connected stay open until `stack` closes. When two servers offer the
    same tool name, the first one wins.
    """
    capabilities: List[McpCapability] = []
    seen = set()
    for config in configs:
        logger.info(
            f"[McpCapability] Starting MCP server {config.name}: {config.command} {' '.join(config.args)}"
        )
        server_stack = AsyncExitStack()
        try:
            async with asyncio.timeout(timeout):
                session = await server_stack.enter_async_context(
                    stdio_mcp_session(config.command, config.args, config.env)
                )
                loaded = await load_mcp_capabilities(session)
        except Exception as exc:
            log_exception_with_details(
                logger, f"[McpCapability] Skipping MCP server {config.name}", exc
            )
            await _close_quietly(server_stack, config.name)
            continue

        stack.push_async_callback(_close_quietly, server_stack, config.name)
        for capability in loaded:
            if capability.name in seen:
                logger.warning(
                    f"[McpCapability] Tool {capability.name} from {config.name} shadows an earlier server, skipping"
                )
                continue
            seen.add(capability.name)
            capabilities.append(capability)
        logger.info(f"[McpCapability] Connected to MCP server {config.name}")
    return capabilities
