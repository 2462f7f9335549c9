from __future__ import annotations


class RelayError(RuntimeError):
    """Recoverable failure whose message is safe to show to the client."""

    code = "RELAY_ERROR"
    public_message = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)


class RoomNotFound(RelayError):
    code = "ROOM_NOT_FOUND"
    public_message = "Room not found"


class RoomFull(RelayError):
    code = "ROOM_FULL"
    public_message = "Room is full"


class RoomLimitReached(RoomFull):
    code = "ROOM_LIMIT_REACHED"
    public_message = "Server at capacity. Please try again later."


class CapacityExceeded(RelayError):
    code = "ROOM_CODES_EXHAUSTED"
    public_message = "Unable to generate unique room code. Server at capacity."
