from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator


class ClientFrame(BaseModel):
    event: str = Field(min_length=1, max_length=64)
    data: Any = None
    ack: int | str | None = None


class JoinRoomPayload(BaseModel):
    roomId: Any = None
    preferredName: Any = None

    @model_validator(mode="before")
    @classmethod
    def accept_plain_room_code(cls, value: Any) -> Any:
        # Older clients send the bare room code instead of an object.
        if isinstance(value, str):
            return {"roomId": value}
        return value


class SendMessagePayload(BaseModel):
    roomId: Any = None
    content: Any = None


class UpdateUsernamePayload(BaseModel):
    roomId: Any = None
    newName: Any = None
