"""
Turn controller: one user utterance in, one persisted assistant message out.

Completed workflow:
    IDLE -> CLASSIFYING -> WORKFLOW_ATTEMPT -> PERSIST -> DONE
Default flow (no workflow, or one that deferred or failed):
    IDLE -> CLASSIFYING [-> WORKFLOW_ATTEMPT] -> DEFAULT_GENERATE
         [-> EXECUTE_TOOLS -> FOLLOWUP_GENERATE] -> PERSIST -> DONE

The user message is appended before anything can fail, and PERSIST always
runs; unexpected errors become the assistant's content.
"""

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, List, Optional

import asyncio

from opentelemetry import trace

from chatloop.capabilities.registry import CapabilityRegistry
from chatloop.intent.router import (
    IntentRouter,
    WorkflowCompleted,
    WorkflowDeferred,
    WorkflowFailed,
    WorkflowOutcome,
    coerce_workflow_outcome,
    should_attempt_workflow,
)
from chatloop.memory.store import ConversationMemoryStore
from chatloop.models import (
    GenerationRequest,
    Intent,
    Message,
    MessageRole,
    ToolCall,
    ToolResult,
    TranscriptEntry,
    TranscriptRole,
)
from chatloop.streaming.aggregator import AggregatedResponse, StreamAggregator
from chatloop.streaming.events import GenerationBackend
from chatloop.tools.executor import ToolExecutionCoordinator
from chatloop.turn.prompt import (
    build_system_preamble,
    extract_domain_expertise,
    format_tool_results,
    format_workflow_response,
    resolve_temporal_context,
)
from chatloop.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)
from chatloop.vars import (
    AGENT_LANGUAGE,
    AGENT_NAME,
    AGENT_TIMEZONE,
    GENERIC_ASSISTANCE_ACTION,
    WORKFLOW_CONFIDENCE_THRESHOLD,
)

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

# Follow-up passes that may execute tools. Tool calls requested by the last
# allowed pass are logged and dropped.
MAX_TOOL_ROUNDS = 1


class TurnState(str, Enum):
    IDLE = "idle"
    CLASSIFYING = "classifying"
    WORKFLOW_ATTEMPT = "workflow_attempt"
    DEFAULT_GENERATE = "default_generate"
    EXECUTE_TOOLS = "execute_tools"
    FOLLOWUP_GENERATE = "followup_generate"
    PERSIST = "persist"
    DONE = "done"


class _FirstChunkSignal:
    """Invokes the caller's callback at most once; callback errors are logged."""

    def __init__(self, callback: Optional[Callable[[], Any]]):
        self._callback = callback
        self.fired = False

    async def fire(self) -> None:
        if self.fired:
            return
        self.fired = True
        if self._callback is None:
            return
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            log_exception_with_details(
                logger, "[TurnController] on_first_chunk callback failed", exc,
                logging.WARNING,
            )


@dataclass
class _TurnRecord:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_results: List[ToolResult] = field(default_factory=list)


class TurnController:
    def __init__(
        self,
        memory: ConversationMemoryStore,
        registry: CapabilityRegistry,
        router: IntentRouter,
        backend: GenerationBackend,
        aggregator: Optional[StreamAggregator] = None,
        coordinator: Optional[ToolExecutionCoordinator] = None,
        confidence_threshold: float = WORKFLOW_CONFIDENCE_THRESHOLD,
        generic_action: str = GENERIC_ASSISTANCE_ACTION,
        agent_name: str = AGENT_NAME,
        language: str = AGENT_LANGUAGE,
        timezone: str = AGENT_TIMEZONE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.memory = memory
        self.registry = registry
        self.router = router
        self.backend = backend
        self.aggregator = aggregator or StreamAggregator()
        self.coordinator = coordinator or ToolExecutionCoordinator(registry)
        self.confidence_threshold = confidence_threshold
        self.generic_action = generic_action
        self.agent_name = agent_name
        self.language = language
        self.timezone = timezone
        self.clock = clock
        self.state = TurnState.IDLE
        self.domain_expertise: List[str] = []

    def list_tools(self) -> List[str]:
        return self.registry.names()

    async def clear_memory(self) -> None:
        await self.memory.clear()
        self.domain_expertise = []

    def memory_stats(self) -> dict:
        return {**self.memory.stats(), "tools_available": self.registry.names()}

    def system_preamble(self) -> str:
        self.domain_expertise = extract_domain_expertise(
            self.memory.history(), known=self.domain_expertise
        )
        temporal = resolve_temporal_context(
            self.timezone, self.clock() if self.clock else None
        )
        return build_system_preamble(
            self.registry.capability_map(),
            temporal,
            domains=self.domain_expertise,
            agent_name=self.agent_name,
            language=self.language,
        )

    async def process_turn(
        self,
        user_text: str,
        on_first_chunk: Optional[Callable[[], Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Run one turn. The answer is delivered through memory; read it with
        memory.latest_assistant_message() once this returns.
        """
        signal = _FirstChunkSignal(on_first_chunk)
        record = _TurnRecord()
        self.memory.append(Message(role=MessageRole.USER, content=user_text))

        with tracer.start_as_current_span("turn.process") as span:
            try:
                await self._run(user_text, record, signal, cancel_event)
            except Exception as exc:
                log_exception_with_details(logger, "[TurnController] Turn failed", exc)
                span.set_attribute("error", True)
                span.set_attribute("error.message", format_exception_message(exc))
                record.content = f"I encountered an error: {format_exception_message(exc)}"
                await signal.fire()

            self.state = TurnState.PERSIST
            self.memory.append(
                Message(
                    role=MessageRole.ASSISTANT,
                    content=record.content,
                    tool_calls=record.tool_calls or None,
                    tool_results=record.tool_results or None,
                )
            )
            await self.memory.persist()
            span.set_attribute("turn.tool_calls", len(record.tool_calls))
        self.state = TurnState.DONE

    async def _run(
        self,
        user_text: str,
        record: _TurnRecord,
        signal: _FirstChunkSignal,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        self.state = TurnState.CLASSIFYING
        intent = await self._classify(user_text)

        if intent is not None and should_attempt_workflow(
            intent, self.confidence_threshold, self.generic_action
        ):
            self.state = TurnState.WORKFLOW_ATTEMPT
            outcome = await self._attempt_workflow(intent, user_text)
            await signal.fire()
            if isinstance(outcome, WorkflowCompleted):
                record.content = format_workflow_response(outcome)
                return

        self.state = TurnState.DEFAULT_GENERATE
        # The memory projection already ends with this turn's user message
        transcript = self.memory.transcript()
        response = await self._generate(transcript, signal, cancel_event)

        rounds = 0
        while response.has_tool_calls and rounds < MAX_TOOL_ROUNDS:
            rounds += 1
            self.state = TurnState.EXECUTE_TOOLS
            results = await self.coordinator.execute(response.tool_calls, cancel_event)
            record.tool_calls.extend(response.tool_calls)
            record.tool_results.extend(results)

            transcript = transcript + [
                TranscriptEntry(role=TranscriptRole.MODEL, text=response.narrative_text),
                TranscriptEntry(role=TranscriptRole.USER, text=format_tool_results(results)),
            ]
            self.state = TurnState.FOLLOWUP_GENERATE
            response = await self._generate(transcript, signal, cancel_event)

        if response.has_tool_calls:
            logger.warning(
                f"[TurnController] Ignoring {len(response.tool_calls)} tool calls after "
                f"{MAX_TOOL_ROUNDS} tool round(s): {[c.name for c in response.tool_calls]}"
            )
        record.content = response.narrative_text

    async def _classify(self, user_text: str) -> Optional[Intent]:
        try:
            intent = await self.router.classify(user_text, self.memory.history())
            logger.info(
                f"[TurnController] Intent {intent.category}/{intent.action} ({intent.confidence:.2f})"
            )
            return intent
        except Exception as exc:
            log_exception_with_details(
                logger, "[TurnController] Intent classification failed, using default flow",
                exc, logging.WARNING,
            )
            return None

    async def _attempt_workflow(self, intent: Intent, user_text: str) -> WorkflowOutcome:
        with tracer.start_as_current_span("turn.workflow") as span:
            span.set_attribute("workflow.action", intent.action)
            try:
                raw = await self.router.run_workflow(
                    intent, user_text, self.coordinator.execute_one
                )
                outcome = coerce_workflow_outcome(raw)
            except Exception as exc:
                log_exception_with_details(
                    logger, "[TurnController] Workflow failed, using default flow",
                    exc, logging.WARNING,
                )
                span.set_attribute("error", True)
                span.set_attribute("error.message", format_exception_message(exc))
                return WorkflowFailed(error=format_exception_message(exc))

            if isinstance(outcome, WorkflowDeferred):
                logger.info(
                    f"[TurnController] Workflow {intent.action} deferred to default flow: {outcome.reason}"
                )
            elif isinstance(outcome, WorkflowFailed):
                logger.warning(
                    f"[TurnController] Workflow {intent.action} failed: {outcome.error}"
                )
            span.set_attribute("workflow.outcome", type(outcome).__name__)
            return outcome

    async def _generate(
        self,
        transcript: List[TranscriptEntry],
        signal: _FirstChunkSignal,
        cancel_event: Optional[asyncio.Event],
    ) -> AggregatedResponse:
        request = GenerationRequest(
            transcript=transcript,
            tool_schemas=self.registry.schemas(),
            system_preamble=self.system_preamble(),
        )
        return await self.aggregator.aggregate(
            self.backend.stream(request),
            on_first_event=signal.fire,
            cancel_event=cancel_event,
        )
