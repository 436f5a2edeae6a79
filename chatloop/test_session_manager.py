import asyncio
import json
import os

import pytest

from chatloop.capabilities.registry import CapabilityRegistry
from chatloop.intent.router import PassthroughIntentRouter
from chatloop.session_manager import SessionManager, validate_session_id
from chatloop.streaming.events import StreamEvent, TextFragment


class EchoBackend:
    """Answers with the last user entry; yields control between events."""

    def __init__(self):
        self.active = 0
        self.max_active = 0

    async def stream(self, request):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            yield StreamEvent(parts=[TextFragment(f"echo: {request.transcript[-1].text}")])
            await asyncio.sleep(0)
        finally:
            self.active -= 1


def _manager(backend=None, memory_dir=""):
    return SessionManager(
        registry=CapabilityRegistry(),
        router=PassthroughIntentRouter(),
        backend=backend or EchoBackend(),
        memory_dir=memory_dir,
    )


@pytest.mark.parametrize("session_id", ["", "../etc", "a/b", ".", "x" * 129])
def test_invalid_session_ids_rejected(session_id):
    with pytest.raises(ValueError):
        validate_session_id(session_id)


@pytest.mark.asyncio
async def test_turns_return_latest_assistant_message():
    manager = _manager()

    message = await manager.process_turn("s1", "hello")

    assert message.content == "echo: hello"
    assert manager.session_ids() == ["s1"]


@pytest.mark.asyncio
async def test_turns_of_one_session_are_serialized():
    backend = EchoBackend()
    manager = _manager(backend)

    await asyncio.gather(*(manager.process_turn("s1", f"m{i}") for i in range(5)))

    session = await manager.get_or_create("s1")
    assert backend.max_active == 1
    assert len(session.memory.history()) == 10


@pytest.mark.asyncio
async def test_sessions_have_separate_memory():
    manager = _manager()

    await manager.process_turn("a", "first")
    await manager.process_turn("b", "second")

    a = await manager.get_or_create("a")
    assert [m.content for m in a.memory.history()] == ["first", "echo: first"]


@pytest.mark.asyncio
async def test_file_backed_sessions_survive_restart(tmp_path):
    await _manager(memory_dir=str(tmp_path)).process_turn("s1", "remember me")

    stored = json.loads((tmp_path / "s1.json").read_text())
    assert stored["messages"][0]["content"] == "remember me"
    assert "lastUpdated" in stored

    restarted = _manager(memory_dir=str(tmp_path))
    assert restarted.known("s1") is True
    assert restarted.known("s2") is False
    session = await restarted.get_or_create("s1")
    assert len(session.memory.history()) == 2


@pytest.mark.asyncio
async def test_clear_empties_memory(tmp_path):
    manager = _manager(memory_dir=str(tmp_path))
    await manager.process_turn("s1", "hi")

    await manager.clear("s1")

    session = await manager.get_or_create("s1")
    assert session.memory.history() == []
    assert os.path.exists(tmp_path / "s1.json")


@pytest.mark.asyncio
async def test_close_releases_live_session_and_keeps_memory(tmp_path):
    manager = _manager(memory_dir=str(tmp_path))
    await manager.process_turn("s1", "hi")

    assert await manager.close("s1") is True

    assert manager.session_ids() == []
    assert await manager.close("s1") is False
    assert manager.known("s1") is True
    reopened = await manager.get_or_create("s1")
    assert [m.content for m in reopened.memory.history()] == ["hi", "echo: hi"]


@pytest.mark.asyncio
async def test_close_waits_for_running_turn():
    manager = _manager()
    turn = asyncio.create_task(manager.process_turn("s1", "slow"))
    while "s1" not in manager.session_ids():
        await asyncio.sleep(0)

    closed = await manager.close("s1")

    assert closed is True
    assert turn.done()
    assert (await turn).content == "echo: slow"
