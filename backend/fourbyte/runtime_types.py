from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Literal

MessageKind = Literal["user", "system"]
ConnectionState = Literal["connected", "in-room", "terminated"]


@dataclass
class Participant:
    connection_id: str
    display_id: str
    display_name: str

    def to_identity(self) -> dict[str, str]:
        return {"id": self.display_id, "name": self.display_name}


@dataclass(frozen=True)
class ChatMessage:
    id: str
    kind: MessageKind
    sender_id: str
    sender_name: str
    content: str
    timestamp: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "content": self.content,
            "timestamp": self.timestamp,
        }


@dataclass
class Room:
    code: str
    history_limit: int
    created_at: int
    members: dict[str, Participant] = field(default_factory=dict)
    history: deque[ChatMessage] = field(default_factory=deque)
    cleanup_task: asyncio.Task[None] | None = None

    @property
    def user_count(self) -> int:
        return len(self.members)


@dataclass
class RateLimitEntry:
    window_start: int
    count: int = 0


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_in: int


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: str | None = None
    sanitized: str | None = None
