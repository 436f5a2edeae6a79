import logging
from fnmatch import fnmatch
from types import MappingProxyType
from typing import Iterable, List, Optional

from chatloop.capabilities.base import Capability
from chatloop.models import ToolSchema

logger = logging.getLogger("uvicorn.error")


class CapabilityRegistry:
    """
    Read-only name -> capability mapping, built once per process and shared
    by every session.
    """

    def __init__(
        self,
        capabilities: Iterable[Capability] = (),
        include: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ):
        include_patterns = [p for p in include or [] if p]
        exclude_patterns = [p for p in exclude or [] if p]
        tools: dict[str, Capability] = {}
        for capability in capabilities:
            name = capability.describe().name
            if include_patterns and not any(fnmatch(name, p) for p in include_patterns):
                logger.debug(f"[CapabilityRegistry] Skipping non-included tool {name}")
                continue
            if any(fnmatch(name, p) for p in exclude_patterns):
                logger.debug(f"[CapabilityRegistry] Skipping excluded tool {name}")
                continue
            if name in tools:
                raise ValueError(f"Duplicate tool name: {name}")
            tools[name] = capability
        self._tools = MappingProxyType(tools)
        logger.info(f"[CapabilityRegistry] Registered {len(tools)} tools")

    def get(self, name: str) -> Optional[Capability]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def schemas(self) -> List[ToolSchema]:
        return [capability.describe() for capability in self._tools.values()]

    def capability_map(self) -> str:
        """Markdown bullet list of tools for the system preamble."""
        lines = [
            f"- **{schema.name}**: {schema.description}" for schema in self.schemas()
        ]
        if not lines:
            return "- Tools are initializing..."
        return "\n".join(lines)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
