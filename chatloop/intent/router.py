"""
Intent routing boundary.

The router classifies an utterance and, when asked, runs a pre-built
workflow. Workflows may report their outcome either as one of the tagged
outcome classes below or in the loose WorkflowResult shape
({success, summary, ..., useDefaultFlow, error}); coerce_workflow_outcome()
turns either into exactly one of Completed / Deferred / Failed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from chatloop.models import Intent, Message, ToolCall, ToolResult, WorkflowResult
from chatloop.vars import GENERIC_ASSISTANCE_ACTION, WORKFLOW_CONFIDENCE_THRESHOLD

ToolInvoker = Callable[[ToolCall], Awaitable[ToolResult]]


@dataclass(frozen=True)
class WorkflowCompleted:
    summary: str = ""
    actions: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    next_steps: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class WorkflowDeferred:
    reason: Optional[str] = None


@dataclass(frozen=True)
class WorkflowFailed:
    error: str = "workflow failed"


WorkflowOutcome = Union[WorkflowCompleted, WorkflowDeferred, WorkflowFailed]


def coerce_workflow_outcome(
    raw: Union[WorkflowOutcome, WorkflowResult, dict, None],
) -> WorkflowOutcome:
    if isinstance(raw, (WorkflowCompleted, WorkflowDeferred, WorkflowFailed)):
        return raw
    if raw is None:
        return WorkflowFailed(error="workflow returned no result")
    if isinstance(raw, dict):
        raw = WorkflowResult.model_validate(raw)
    if not isinstance(raw, WorkflowResult):
        raise TypeError(f"Unsupported workflow result type: {type(raw).__name__}")

    if raw.success:
        return WorkflowCompleted(
            summary=raw.summary or "",
            actions=list(raw.actions or []),
            recommendations=list(raw.recommendations or []),
            next_steps=list(raw.next_steps or []),
        )
    if raw.use_default_flow:
        return WorkflowDeferred(reason=raw.error)
    return WorkflowFailed(error=raw.error or "workflow failed")


def should_attempt_workflow(
    intent: Intent,
    threshold: float = WORKFLOW_CONFIDENCE_THRESHOLD,
    generic_action: str = GENERIC_ASSISTANCE_ACTION,
) -> bool:
    """Only confident, non-generic classifications are routed to workflows."""
    return intent.confidence >= threshold and intent.action != generic_action


class IntentRouter(ABC):
    @abstractmethod
    async def classify(
        self, utterance: str, history: Sequence[Message] = ()
    ) -> Intent:
        pass  # pragma: no cover

    @abstractmethod
    async def run_workflow(
        self, intent: Intent, utterance: str, tool_invoker: ToolInvoker
    ) -> Union[WorkflowOutcome, WorkflowResult, dict]:
        pass  # pragma: no cover


class PassthroughIntentRouter(IntentRouter):
    """Sends every utterance to open-ended generation."""

    def __init__(self, generic_action: str = GENERIC_ASSISTANCE_ACTION):
        self.generic_action = generic_action

    async def classify(
        self, utterance: str, history: Sequence[Message] = ()
    ) -> Intent:
        return Intent(category="general", action=self.generic_action, confidence=0.0)

    async def run_workflow(
        self, intent: Intent, utterance: str, tool_invoker: ToolInvoker
    ) -> Any:
        return WorkflowDeferred(reason="no workflows configured")
