"""
ChunkReader: turns a raw streaming model response into StreamEvents.

Supports:
- OpenAI-compatible SSE ("data: {...}" lines, "data: [DONE]" terminator),
  including reasoning_content/reasoning deltas, <think> blocks inside content,
  and tool_calls deltas keyed by index.
- Gemini-style payloads (candidates[0].content.parts with text, thought and
  functionCall entries), whose tool-call fragments carry no index.

Usage:
    async with ChunkReader(response_lines) as reader:
        async for event in reader.events():
            ...
"""

import json
import logging
from typing import Any, AsyncGenerator, AsyncIterable, List

from opentelemetry import trace

from chatloop.llm.think import ThinkSplitter
from chatloop.streaming.events import (
    EventPart,
    ReasoningFragment,
    StreamEvent,
    TextFragment,
    ToolCallFragment,
)

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)


class LLMStreamError(Exception):
    """The model endpoint failed or reported an error mid-stream."""


class ChunkReader:
    def __init__(self, source: AsyncIterable[Any]):
        self.source = source
        self._entered = False
        self._splitter = ThinkSplitter()
        self._done = False

    async def __aenter__(self):
        self._entered = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self._entered = False
        if hasattr(self.source, "aclose"):
            try:
                await self.source.aclose()
            except Exception as e:
                logger.debug(f"[ChunkReader] Error closing source: {e}")
        return False

    @staticmethod
    def _normalize_chunk(raw_chunk: Any) -> str:
        if isinstance(raw_chunk, (bytes, bytearray)):
            return raw_chunk.decode("utf-8")
        if isinstance(raw_chunk, dict):
            return json.dumps(raw_chunk)
        return str(raw_chunk)

    def parse_line(self, line: str) -> List[EventPart]:
        """Parse one SSE line into event parts. Sets the done flag on [DONE]."""
        line = line.strip()
        if not line or line.startswith(":") or line.startswith("event:"):
            return []
        if line.startswith("data:"):
            line = line[5:].strip()
        if line == "[DONE]":
            self._done = True
            return self._splitter.flush()

        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            return self._splitter.feed(line)
        if not isinstance(parsed, dict):
            return []

        if parsed.get("error"):
            error = parsed["error"]
            message = error.get("message") if isinstance(error, dict) else error
            raise LLMStreamError(f"Model reported an error: {message}")

        if parsed.get("choices"):
            return self._parse_openai_choice(parsed["choices"][0])
        if parsed.get("candidates"):
            return self._parse_gemini_candidate(parsed["candidates"][0])
        return []

    def _parse_openai_choice(self, choice: dict) -> List[EventPart]:
        delta = choice.get("delta") or choice.get("message") or {}
        parts: List[EventPart] = []

        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
        if isinstance(reasoning, str) and reasoning:
            parts.append(ReasoningFragment(reasoning))

        content = delta.get("content")
        if isinstance(content, str) and content:
            parts.extend(self._splitter.feed(content))

        for position, tc in enumerate(delta.get("tool_calls") or []):
            function = tc.get("function") or {}
            arguments = function.get("arguments")
            parts.append(
                ToolCallFragment(
                    name=function.get("name") or None,
                    args=arguments if isinstance(arguments, dict) else None,
                    arguments_delta=arguments if isinstance(arguments, str) else None,
                    index=tc.get("index", position),
                    call_id=tc.get("id") or None,
                )
            )
        return parts

    def _parse_gemini_candidate(self, candidate: dict) -> List[EventPart]:
        content = candidate.get("content") or {}
        parts: List[EventPart] = []
        for part in content.get("parts") or []:
            if "functionCall" in part:
                call = part["functionCall"] or {}
                args = call.get("args")
                parts.append(
                    ToolCallFragment(
                        name=call.get("name") or None,
                        args=args if isinstance(args, dict) else None,
                        call_id=call.get("id") or None,
                    )
                )
            elif part.get("thought") and part.get("text"):
                parts.append(ReasoningFragment(part["text"]))
            elif part.get("text"):
                parts.extend(self._splitter.feed(part["text"]))
        return parts

    async def events(self) -> AsyncGenerator[StreamEvent, None]:
        if not self._entered:
            raise RuntimeError("ChunkReader must be used as async context manager")

        # Manually managed span; async generators may exit early
        span = tracer.start_span("chunk_reader.events")
        chunk_count = 0
        event_count = 0
        try:
            async for raw_chunk in self.source:
                chunk_count += 1
                for line in self._normalize_chunk(raw_chunk).splitlines():
                    parts = self.parse_line(line)
                    if parts:
                        event_count += 1
                        yield StreamEvent(parts=parts)
                    if self._done:
                        break
                if self._done:
                    break
            if not self._done:
                tail = self._splitter.flush()
                if tail:
                    event_count += 1
                    yield StreamEvent(parts=tail)
            span.set_attribute("chunk_reader.total_chunks", chunk_count)
            span.set_attribute("chunk_reader.events", event_count)
        except GeneratorExit:
            span.set_attribute("chunk_reader.early_exit", True)
            raise
        except LLMStreamError as exc:
            span.set_attribute("error", True)
            span.set_attribute("error.message", str(exc))
            raise
        finally:
            span.end()


async def read_events(source: AsyncIterable[Any]) -> AsyncGenerator[StreamEvent, None]:
    async with ChunkReader(source) as reader:
        async for event in reader.events():
            yield event
