import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(time.time() * 1000)


def new_message_id() -> str:
    return str(uuid.uuid4())


def new_tool_call_id() -> str:
    return f"tool_{uuid.uuid4().hex[:12]}"


class _CamelModel(BaseModel):
    """Stored JSON uses camelCase keys, Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class TranscriptRole(str, Enum):
    USER = "user"
    MODEL = "model"


class ToolCall(_CamelModel):
    id: str = Field(default_factory=new_tool_call_id)
    name: str
    # None means no arguments arrived on the stream
    args: Optional[Dict[str, Any]] = None
    argument_error: Optional[str] = Field(default=None, exclude=True)


class ToolResult(_CamelModel):
    tool_call_id: str
    result: Any = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        if self.error is not None:
            return False
        if isinstance(self.result, dict) and self.result.get("success") is False:
            return False
        return True

    @classmethod
    def failure(cls, tool_call_id: str, error: str) -> "ToolResult":
        return cls(
            tool_call_id=tool_call_id,
            result={"success": False, "error": error},
            error=error,
        )


class Message(_CamelModel):
    id: str = Field(default_factory=new_message_id)
    role: MessageRole
    content: str
    timestamp: int = Field(default_factory=now_ms)
    tool_calls: Optional[List[ToolCall]] = None
    tool_results: Optional[List[ToolResult]] = None


class AgentMemory(_CamelModel):
    messages: List[Message] = Field(default_factory=list)
    last_updated: int = Field(default_factory=now_ms)


class TranscriptEntry(BaseModel):
    role: TranscriptRole
    text: str


class ToolSchema(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class GenerationRequest(BaseModel):
    transcript: List[TranscriptEntry]
    tool_schemas: List[ToolSchema] = Field(default_factory=list)
    system_preamble: str = ""


class Intent(BaseModel):
    category: str
    action: str
    confidence: float = Field(ge=0.0, le=1.0)


class WorkflowResult(_CamelModel):
    """Loose result shape returned by workflow implementations."""

    success: bool = False
    summary: Optional[str] = None
    actions: Optional[List[str]] = None
    recommendations: Optional[List[str]] = None
    next_steps: Optional[List[str]] = None
    use_default_flow: Optional[bool] = None
    error: Optional[str] = None
