from __future__ import annotations

from typing import Any

import pytest

from fourbyte.message_validator import MessageValidator
from fourbyte.rate_limiter import RateLimiter
from fourbyte.room_registry import RoomRegistry
from fourbyte.session_router import SessionEventRouter


class FakeClock:
    def __init__(self, start: int = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingConnection:
    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    def named(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry() -> RoomRegistry:
    return RoomRegistry(max_rooms=1000, max_members=50, history_limit=100)


@pytest.fixture
def router(registry: RoomRegistry, clock: FakeClock) -> SessionEventRouter:
    return SessionEventRouter(
        registry,
        message_limiter=RateLimiter(10, 10_000, name="messages", clock=clock),
        event_limiter=RateLimiter(10, 60_000, name="events", clock=clock),
        validator=MessageValidator(1000),
    )


@pytest.fixture
def connect(router: SessionEventRouter):
    def _connect(connection_id: str) -> RecordingConnection:
        connection = RecordingConnection(connection_id)
        router.handle_connect(connection)
        return connection

    return _connect
