"""
Tool execution coordinator.

Runs reconstructed tool calls against the capability registry sequentially
and in list order, producing exactly one ToolResult per call with matching
tool_call_id. A failing call is converted into a {success: False, error}
result and never stops the calls after it.
"""

import logging
from typing import List, Optional, Sequence

import asyncio

from opentelemetry import trace
from pydantic_core import to_jsonable_python

from chatloop.capabilities.base import as_result
from chatloop.capabilities.registry import CapabilityRegistry
from chatloop.models import ToolCall, ToolResult
from chatloop.utils.exception_logging import format_exception_message

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

CANCELLED_ERROR = "cancelled"


class ToolExecutionCoordinator:
    def __init__(self, registry: CapabilityRegistry):
        self.registry = registry

    async def execute(
        self,
        tool_calls: Sequence[ToolCall],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[ToolResult]:
        results: List[ToolResult] = []
        for call in tool_calls:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[ToolExecution] Skipping {call.name} ({call.id}): cancelled")
                results.append(ToolResult.failure(call.id, CANCELLED_ERROR))
                continue
            results.append(await self.execute_one(call))
        return results

    async def execute_one(self, call: ToolCall) -> ToolResult:
        """Execute a single call. Never raises."""
        # Created manually; workflows may invoke this from their own tasks
        span = tracer.start_span("execute_tool_call")
        span.set_attribute("tool.name", call.name)
        span.set_attribute("tool.call_id", call.id)
        try:
            result = await self._run(call)
            if result.success:
                span.set_attribute("tool.success", True)
            else:
                span.set_attribute("error", True)
                span.set_attribute("error.message", str(result.error or ""))
            return result
        finally:
            span.end()

    async def _run(self, call: ToolCall) -> ToolResult:
        capability = self.registry.get(call.name)
        if capability is None:
            logger.warning(f"[ToolExecution] Unknown tool requested: {call.name}")
            return ToolResult.failure(call.id, f"unknown tool: {call.name}")

        if call.argument_error:
            logger.warning(
                f"[ToolExecution] {call.name} ({call.id}) has undecodable arguments: {call.argument_error}"
            )
            return ToolResult.failure(call.id, call.argument_error)

        args = call.args if call.args is not None else {}
        logger.info(f"[ToolExecution] Calling {call.name} ({call.id}) with {args}")
        try:
            raw = await capability.invoke(args)
            # Stored in memory and persisted as JSON; unknown types become strings
            result = to_jsonable_python(as_result(raw), fallback=str)
        except Exception as exc:
            error = format_exception_message(exc)
            logger.error(f"[ToolExecution] {call.name} ({call.id}) raised: {error}")
            return ToolResult.failure(call.id, error)

        if result.get("success") is False:
            error = result.get("error") or f"{call.name} failed"
            logger.info(f"[ToolExecution] {call.name} ({call.id}) failed: {error}")
            return ToolResult(
                tool_call_id=call.id,
                result={**result, "error": str(error)},
                error=str(error),
            )
        logger.debug(f"[ToolExecution] {call.name} ({call.id}) succeeded")
        return ToolResult(tool_call_id=call.id, result=result)
