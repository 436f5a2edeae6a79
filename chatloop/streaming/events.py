from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

from chatloop.models import GenerationRequest


@dataclass(frozen=True)
class TextFragment:
    text: str


@dataclass(frozen=True)
class ReasoningFragment:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    """
    Partial tool-call descriptor.

    `args` carries a complete argument object (Gemini-style transports);
    `arguments_delta` carries a slice of JSON text that must be concatenated
    (OpenAI-style transports). `index` is a continuation marker when the
    transport provides one.
    """

    name: Optional[str] = None
    args: Optional[Dict[str, Any]] = None
    arguments_delta: Optional[str] = None
    index: Optional[int] = None
    call_id: Optional[str] = None


EventPart = Union[TextFragment, ReasoningFragment, ToolCallFragment]


@dataclass
class StreamEvent:
    parts: List[EventPart] = field(default_factory=list)


class GenerationBackend(Protocol):
    def stream(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        ...
