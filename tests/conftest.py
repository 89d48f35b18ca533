from typing import Any

import pytest
import pytest_asyncio

from src.chat.events import EventKind
from src.server.session.store import SQLiteSessionStore


class ListEventSink:
    def __init__(self) -> None:
        self.events: list[tuple[EventKind, dict[str, Any]]] = []

    def send_event(self, kind: EventKind, payload: dict[str, Any]) -> None:
        self.events.append((kind, dict(payload)))

    def kinds(self) -> list[EventKind]:
        return [kind for kind, _ in self.events]

    def text(self, kind: EventKind) -> str:
        return "".join(payload.get("content", "") for k, payload in self.events if k is kind)


@pytest.fixture
def event_sink() -> ListEventSink:
    return ListEventSink()


@pytest_asyncio.fixture
async def store(tmp_path):
    session_store = SQLiteSessionStore(str(tmp_path / "chat.db"))
    await session_store.init()
    yield session_store
    await session_store.close()
