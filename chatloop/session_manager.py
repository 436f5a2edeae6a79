import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import asyncio

from chatloop.capabilities.registry import CapabilityRegistry
from chatloop.intent.router import IntentRouter
from chatloop.memory.persistence import (
    InMemoryMemoryPersistence,
    JsonFileMemoryPersistence,
    MemoryPersistence,
)
from chatloop.memory.store import ConversationMemoryStore
from chatloop.models import Message
from chatloop.streaming.events import GenerationBackend
from chatloop.turn.controller import TurnController
from chatloop.vars import MEMORY_DIR, MEMORY_MAX_MESSAGES

logger = logging.getLogger("uvicorn.error")

_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


def validate_session_id(session_id: str) -> str:
    if not _SESSION_ID_PATTERN.match(session_id or "") or session_id in (".", ".."):
        raise ValueError(f"Invalid session id: {session_id!r}")
    return session_id


@dataclass
class ChatSession:
    session_id: str
    controller: TurnController
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def memory(self) -> ConversationMemoryStore:
        return self.controller.memory


class SessionManager:
    """
    Owns one TurnController, memory store and lock per session id. Turns of a
    session run one at a time; the registry, router and backend are shared.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        router: IntentRouter,
        backend: GenerationBackend,
        memory_dir: str = MEMORY_DIR,
        max_messages: int = MEMORY_MAX_MESSAGES,
        controller_options: Optional[Dict[str, Any]] = None,
    ):
        self.registry = registry
        self.router = router
        self.backend = backend
        self.memory_dir = memory_dir
        self.max_messages = max_messages
        self.controller_options = controller_options or {}
        self._sessions: Dict[str, ChatSession] = {}
        self._create_lock = asyncio.Lock()

    def _memory_path(self, session_id: str) -> str:
        return os.path.join(self.memory_dir, f"{session_id}.json")

    def _persistence_for(self, session_id: str) -> MemoryPersistence:
        if self.memory_dir:
            return JsonFileMemoryPersistence(self._memory_path(session_id))
        return InMemoryMemoryPersistence()

    def known(self, session_id: str) -> bool:
        """True if the session is live or has stored memory."""
        validate_session_id(session_id)
        if session_id in self._sessions:
            return True
        return bool(self.memory_dir) and os.path.exists(self._memory_path(session_id))

    def session_ids(self) -> List[str]:
        return list(self._sessions.keys())

    async def get_or_create(self, session_id: str) -> ChatSession:
        validate_session_id(session_id)
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        async with self._create_lock:
            session = self._sessions.get(session_id)
            if session is None:
                memory = ConversationMemoryStore(
                    self._persistence_for(session_id), self.max_messages
                )
                await memory.load()
                controller = TurnController(
                    memory=memory,
                    registry=self.registry,
                    router=self.router,
                    backend=self.backend,
                    **self.controller_options,
                )
                session = ChatSession(session_id=session_id, controller=controller)
                self._sessions[session_id] = session
                logger.info(f"[SessionManager] Opened session {session_id}")
        return session

    async def process_turn(
        self,
        session_id: str,
        user_text: str,
        on_first_chunk: Optional[Callable[[], Any]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[Message]:
        session = await self.get_or_create(session_id)
        async with session.lock:
            await session.controller.process_turn(
                user_text, on_first_chunk=on_first_chunk, cancel_event=cancel_event
            )
            return session.memory.latest_assistant_message()

    async def clear(self, session_id: str) -> None:
        session = await self.get_or_create(session_id)
        async with session.lock:
            await session.controller.clear_memory()

    def pop(self, session_id: str) -> Optional[ChatSession]:
        return self._sessions.pop(session_id, None)

    async def close(self, session_id: str) -> bool:
        """
        Release a live session. Stored memory is kept, so a later turn on the
        same id reopens the conversation. Waits for a running turn to finish.
        """
        validate_session_id(session_id)
        session = self.pop(session_id)
        if session is None:
            return False
        async with session.lock:
            pass
        logger.info(f"[SessionManager] Closed session {session_id}")
        return True
