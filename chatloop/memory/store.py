import logging
from typing import List, Optional

from opentelemetry import trace

from chatloop.memory.persistence import MemoryPersistence
from chatloop.models import (
    AgentMemory,
    Message,
    MessageRole,
    TranscriptEntry,
    TranscriptRole,
    now_ms,
)
from chatloop.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

_TRANSCRIPT_ROLES = {
    MessageRole.USER: TranscriptRole.USER,
    MessageRole.TOOL: TranscriptRole.USER,
    MessageRole.ASSISTANT: TranscriptRole.MODEL,
}


class ConversationMemoryStore:
    """
    Append-only, size-bounded conversation log for one session.

    Appends are never trimmed immediately; the bound is enforced on persist()
    so a turn sees its full history while it runs. One store per session, and
    only one turn may use it at a time.
    """

    def __init__(self, persistence: MemoryPersistence, max_messages: int = 19):
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.persistence = persistence
        self.max_messages = max_messages
        self._memory = AgentMemory()

    async def load(self) -> AgentMemory:
        """Load stored memory; missing or unreadable storage starts empty."""
        try:
            self._memory = await self.persistence.load()
            logger.info(
                f"[MemoryStore] Loaded {len(self._memory.messages)} messages"
            )
        except FileNotFoundError:
            logger.info("[MemoryStore] No existing memory found, starting fresh")
            self._memory = AgentMemory()
        except Exception as exc:
            log_exception_with_details(
                logger, "[MemoryStore] Failed to load memory", exc, logging.WARNING
            )
            self._memory = AgentMemory()
        return self._memory

    def append(self, message: Message) -> None:
        self._memory.messages.append(message)

    def history(self) -> List[Message]:
        return list(self._memory.messages)

    @property
    def last_updated(self) -> int:
        return self._memory.last_updated

    def _truncate(self) -> None:
        overflow = len(self._memory.messages) - self.max_messages
        if overflow > 0:
            self._memory.messages = self._memory.messages[overflow:]
            logger.debug(f"[MemoryStore] Dropped {overflow} oldest messages")

    async def persist(self) -> bool:
        """Enforce the size bound and flush. Returns False if the save failed."""
        with tracer.start_as_current_span("memory.persist") as span:
            self._truncate()
            self._memory.last_updated = now_ms()
            span.set_attribute("memory.message_count", len(self._memory.messages))
            try:
                await self.persistence.save(self._memory)
                return True
            except Exception as exc:
                span.set_attribute("error", True)
                span.set_attribute("error.message", str(exc))
                log_exception_with_details(
                    logger, "[MemoryStore] Failed to save memory", exc
                )
                return False

    async def clear(self) -> None:
        self._memory = AgentMemory()
        await self.persist()
        logger.info("[MemoryStore] Memory cleared")

    def transcript(self) -> List[TranscriptEntry]:
        """Project stored messages onto the roles the model understands."""
        return [
            TranscriptEntry(role=_TRANSCRIPT_ROLES[message.role], text=message.content)
            for message in self._memory.messages
        ]

    def latest_assistant_message(self) -> Optional[Message]:
        for message in reversed(self._memory.messages):
            if message.role == MessageRole.ASSISTANT:
                return message
        return None

    def stats(self) -> dict:
        return {
            "message_count": len(self._memory.messages),
            "last_updated": self._memory.last_updated,
        }
