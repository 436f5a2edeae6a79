"""
Streaming response aggregation.

Consumes the event stream of one generation request and separates narrative
text, reasoning text and tool calls. Tool calls may arrive fragmented across
events:

- Fragments carrying a continuation marker (`index`) are accumulated per
  marker: name and id are set once, argument text is concatenated and decoded
  when the stream ends.
- Fragments without a marker follow the positional rule: if the most recently
  opened call has the same name and still has no arguments, the fragment's
  arguments are merged into it; otherwise a new call is opened. Two calls to
  the same tool issued back-to-back before either receives arguments are
  indistinguishable under this rule and collapse into one.
"""

import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Callable, Dict, List, Optional, Tuple

import asyncio

from opentelemetry import trace

from chatloop.models import ToolCall, new_tool_call_id
from chatloop.streaming.events import (
    ReasoningFragment,
    StreamEvent,
    TextFragment,
    ToolCallFragment,
)

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)


class GenerationCancelled(Exception):
    """Raised when a cancellation signal is observed mid-stream."""


def _is_json_string(value: str) -> bool:
    stripped = value.strip()
    if not stripped or stripped[0] not in "{[":
        return False
    try:
        json.loads(stripped)
        return True
    except json.JSONDecodeError:
        return False


def parse_tool_arguments(text: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """
    Decode streamed argument text into an object.

    Returns (args, error). Empty text decodes to {}. Double-encoded payloads
    and nested values that are themselves JSON strings are unwrapped.
    """
    stripped = (text or "").strip()
    if not stripped:
        return {}, None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as exc:
        return None, f"Invalid tool arguments JSON: {exc}"
    if isinstance(data, str) and _is_json_string(data):
        data = json.loads(data)
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return None, "Tool arguments must be a JSON object"
    for key, value in data.items():
        if isinstance(value, str) and _is_json_string(value):
            data[key] = json.loads(value)
    return data, None


@dataclass
class _PendingCall:
    name: str
    call_id: Optional[str] = None
    index: Optional[int] = None
    args: Optional[Dict[str, Any]] = None
    arguments_text: str = ""


class ToolCallAccumulator:
    def __init__(self) -> None:
        self._calls: List[_PendingCall] = []
        self._by_index: Dict[int, _PendingCall] = {}

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.index is not None:
            self._feed_keyed(fragment)
        else:
            self._feed_positional(fragment)

    def _feed_keyed(self, fragment: ToolCallFragment) -> None:
        pending = self._by_index.get(fragment.index)
        if pending is None:
            pending = _PendingCall(name="", index=fragment.index)
            self._by_index[fragment.index] = pending
            self._calls.append(pending)
        if fragment.call_id and not pending.call_id:
            pending.call_id = fragment.call_id
        if fragment.name and not self._repeats_name(pending, fragment):
            pending.name += fragment.name
        if fragment.arguments_delta:
            pending.arguments_text += fragment.arguments_delta
        if fragment.args is not None:
            pending.args = dict(fragment.args)

    @staticmethod
    def _repeats_name(pending: _PendingCall, fragment: ToolCallFragment) -> bool:
        # Some servers repeat the full name on every delta, others split it.
        # Name pieces always precede the arguments, so an equal name that
        # arrives with or after argument text is a repeat.
        if fragment.name != pending.name:
            return False
        return bool(
            pending.arguments_text
            or fragment.arguments_delta
            or fragment.args is not None
            or pending.args is not None
        )

    def _feed_positional(self, fragment: ToolCallFragment) -> None:
        if not fragment.name:
            logger.debug("[StreamAggregator] Ignoring unnamed tool-call fragment")
            return
        last = self._calls[-1] if self._calls else None
        if (
            last is not None
            and last.index is None
            and last.name == fragment.name
            and last.args is None
        ):
            if fragment.args is not None:
                last.args = dict(fragment.args)
            return
        self._calls.append(
            _PendingCall(
                name=fragment.name,
                call_id=fragment.call_id,
                args=dict(fragment.args) if fragment.args is not None else None,
            )
        )

    def finish(self) -> List[ToolCall]:
        tool_calls: List[ToolCall] = []
        for pending in self._calls:
            if not pending.name:
                logger.warning(
                    f"[StreamAggregator] Dropping tool call without a name (index={pending.index})"
                )
                continue
            args = pending.args
            error = None
            if args is None and pending.arguments_text:
                args, error = parse_tool_arguments(pending.arguments_text)
                if error:
                    logger.warning(
                        f"[StreamAggregator] {error} for tool '{pending.name}': {pending.arguments_text[:200]}"
                    )
            tool_calls.append(
                ToolCall(
                    id=pending.call_id or new_tool_call_id(),
                    name=pending.name,
                    args=args,
                    argument_error=error,
                )
            )
        return tool_calls


@dataclass
class AggregatedResponse:
    narrative_text: str = ""
    reasoning_text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class StreamAggregator:
    async def aggregate(
        self,
        events: AsyncIterable[StreamEvent],
        on_first_event: Optional[Callable[[], Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AggregatedResponse:
        narrative: List[str] = []
        reasoning: List[str] = []
        accumulator = ToolCallAccumulator()
        event_count = 0

        with tracer.start_as_current_span("stream.aggregate") as span:
            async for event in events:
                if cancel_event is not None and cancel_event.is_set():
                    span.set_attribute("stream.cancelled", True)
                    raise GenerationCancelled("generation cancelled")
                event_count += 1
                if event_count == 1 and on_first_event is not None:
                    maybe_awaitable = on_first_event()
                    if inspect.isawaitable(maybe_awaitable):
                        await maybe_awaitable
                for part in event.parts:
                    if isinstance(part, TextFragment):
                        narrative.append(part.text)
                    elif isinstance(part, ReasoningFragment):
                        reasoning.append(part.text)
                    elif isinstance(part, ToolCallFragment):
                        accumulator.feed(part)

            response = AggregatedResponse(
                narrative_text="".join(narrative),
                reasoning_text="".join(reasoning),
                tool_calls=accumulator.finish(),
            )
            span.set_attribute("stream.events", event_count)
            span.set_attribute("stream.tool_calls", len(response.tool_calls))
            span.set_attribute("stream.narrative_chars", len(response.narrative_text))

        logger.debug(
            f"[StreamAggregator] {event_count} events, {len(response.tool_calls)} tool calls"
        )
        return response
