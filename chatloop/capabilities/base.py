"""
Tool capability contract.

A capability describes itself with a ToolSchema and is invoked with a dict of
arguments. invoke() returns {"success": bool, "data"?: Any, "error"?: str}.
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from chatloop.models import ToolSchema


class Capability(ABC):
    @abstractmethod
    def describe(self) -> ToolSchema:
        pass  # pragma: no cover

    @abstractmethod
    async def invoke(self, args: Dict[str, Any]) -> Dict[str, Any]:
        pass  # pragma: no cover

    @property
    def name(self) -> str:
        return self.describe().name


def as_result(value: Any) -> Dict[str, Any]:
    """Wrap a plain return value in the {success, data} result shape."""
    if isinstance(value, dict) and isinstance(value.get("success"), bool):
        return value
    return {"success": True, "data": value}


class FunctionCapability(Capability):
    """Adapts a sync or async callable taking keyword arguments."""

    def __init__(
        self,
        name: str,
        fn: Callable[..., Any],
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ):
        self._schema = ToolSchema(
            name=name,
            description=description or (inspect.getdoc(fn) or ""),
            parameters=parameters or {"type": "object", "properties": {}},
        )
        self._fn = fn

    def describe(self) -> ToolSchema:
        return self._schema

    async def invoke(self, args: Dict[str, Any]) -> Dict[str, Any]:
        value = self._fn(**args)
        if inspect.isawaitable(value):
            value = await value
        return as_result(value)
