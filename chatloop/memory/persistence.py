"""
Durable storage backends for a session's AgentMemory.

Both operations are fallible: `load` raises FileNotFoundError when nothing
was stored yet and ValueError when the stored payload is unusable. The memory
store decides how to degrade.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import ValidationError

from chatloop.models import AgentMemory


class MemoryPersistence(ABC):
    @abstractmethod
    async def load(self) -> AgentMemory:
        pass  # pragma: no cover

    @abstractmethod
    async def save(self, memory: AgentMemory) -> None:
        pass  # pragma: no cover


class JsonFileMemoryPersistence(MemoryPersistence):
    def __init__(self, path: str):
        if not path:
            raise ValueError("Memory file path is required")
        self.path = os.path.abspath(path)

    def _read(self) -> AgentMemory:
        with open(self.path, "r", encoding="utf-8") as handle:
            try:
                payload = json.load(handle)
            except json.JSONDecodeError as exc:
                raise ValueError(
                    f"Stored memory at {self.path} is invalid JSON"
                ) from exc
        try:
            return AgentMemory.model_validate(payload)
        except ValidationError as exc:
            raise ValueError(
                f"Stored memory at {self.path} does not match the memory schema"
            ) from exc

    def _write(self, payload: dict) -> None:
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)

    async def load(self) -> AgentMemory:
        return await asyncio.to_thread(self._read)

    async def save(self, memory: AgentMemory) -> None:
        payload = memory.model_dump(mode="json", by_alias=True, exclude_none=True)
        await asyncio.to_thread(self._write, payload)


class InMemoryMemoryPersistence(MemoryPersistence):
    """Keeps a serialized snapshot in process; nothing survives a restart."""

    def __init__(self, initial: Optional[AgentMemory] = None):
        self._snapshot: Optional[str] = (
            initial.model_dump_json(by_alias=True) if initial else None
        )
        self.save_count = 0

    async def load(self) -> AgentMemory:
        if self._snapshot is None:
            raise FileNotFoundError("No memory stored yet")
        return AgentMemory.model_validate_json(self._snapshot)

    async def save(self, memory: AgentMemory) -> None:
        self._snapshot = memory.model_dump_json(by_alias=True, exclude_none=True)
        self.save_count += 1
