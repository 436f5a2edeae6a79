"""Shared test doubles for the turn pipeline."""

from typing import Any, Dict, List, Optional, Sequence

from chatloop.capabilities.base import Capability
from chatloop.intent.router import IntentRouter
from chatloop.models import GenerationRequest, Intent, Message, ToolSchema
from chatloop.streaming.events import StreamEvent, TextFragment, ToolCallFragment


def text_event(text: str) -> StreamEvent:
    return StreamEvent(parts=[TextFragment(text)])


def tool_event(name: str, args: Optional[Dict[str, Any]] = None) -> StreamEvent:
    return StreamEvent(parts=[ToolCallFragment(name=name, args=args)])


class ScriptedBackend:
    """
    Replays one scripted list of events per stream() call and records the
    requests it received. A script entry that is an exception is raised
    after the events preceding it in that pass.
    """

    def __init__(self, *passes: Sequence[Any]):
        self.passes = list(passes)
        self.requests: List[GenerationRequest] = []

    async def stream(self, request: GenerationRequest):
        self.requests.append(request)
        if not self.passes:
            raise AssertionError("backend called more often than scripted")
        for item in self.passes.pop(0):
            if isinstance(item, BaseException):
                raise item
            yield item


class FakeRouter(IntentRouter):
    def __init__(
        self,
        intent: Optional[Intent] = None,
        outcome: Any = None,
        classify_error: Optional[Exception] = None,
        workflow_error: Optional[Exception] = None,
        workflow_calls: Sequence[Any] = (),
    ):
        self.intent = intent or Intent(
            category="general", action="intelligent_assistance", confidence=0.1
        )
        self.outcome = outcome
        self.classify_error = classify_error
        self.workflow_error = workflow_error
        self.workflow_calls = list(workflow_calls)
        self.classified: List[str] = []
        self.workflows_run: List[Intent] = []
        self.tool_results: List[Any] = []

    async def classify(self, utterance: str, history: Sequence[Message] = ()) -> Intent:
        self.classified.append(utterance)
        if self.classify_error:
            raise self.classify_error
        return self.intent

    async def run_workflow(self, intent, utterance, tool_invoker):
        self.workflows_run.append(intent)
        for call in self.workflow_calls:
            self.tool_results.append(await tool_invoker(call))
        if self.workflow_error:
            raise self.workflow_error
        return self.outcome


class RecordingCapability(Capability):
    def __init__(self, name: str, result: Any = None, error: Optional[Exception] = None):
        self._name = name
        self.result = result if result is not None else {"success": True, "data": name}
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def describe(self) -> ToolSchema:
        return ToolSchema(name=self._name, description=f"{self._name} tool")

    async def invoke(self, args: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(args)
        if self.error:
            raise self.error
        return self.result
