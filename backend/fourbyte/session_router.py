from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import RelayError, RoomNotFound
from .message_validator import MessageValidator
from .rate_limiter import RateLimiter
from .room_registry import RoomRegistry
from .runtime_constants import (
    COOLDOWN_MESSAGE,
    EVENT_CHECK_ROOM,
    EVENT_COOLDOWN_MESSAGE,
    EVENT_CREATE_ROOM,
    EVENT_GET_STATS,
    EVENT_IDENTITY,
    EVENT_JOIN_ROOM,
    EVENT_LEAVE_ROOM,
    EVENT_MESSAGE,
    EVENT_RATE_LIMITED,
    EVENT_ROOM_INFO,
    EVENT_SEND_MESSAGE,
    EVENT_UPDATE_USERNAME,
    EVENT_USER_JOINED,
    EVENT_USER_LEFT,
    EVENT_USER_RENAMED,
    SYSTEM_MESSAGE_PREFIX,
    SYSTEM_SENDER_ID,
    SYSTEM_SENDER_NAME,
    USER_MESSAGE_PREFIX,
)
from .runtime_types import ChatMessage, ConnectionState, RateLimitResult
from .runtime_utils import (
    display_id_for,
    escape_html,
    generate_user_name,
    is_room_code,
    now_ms,
    random_message_id,
    sanitize_user_name,
)
from .schemas.events import JoinRoomPayload, SendMessagePayload, UpdateUsernamePayload

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)

_FAILURE_RESULTS: dict[str, dict[str, Any] | None] = {
    EVENT_CREATE_ROOM: {"success": False, "error": "Failed to create room"},
    EVENT_CHECK_ROOM: {"exists": False},
    EVENT_JOIN_ROOM: {"success": False, "error": "Failed to join room"},
    EVENT_LEAVE_ROOM: None,
    EVENT_SEND_MESSAGE: {"success": False, "error": "Failed to send message"},
    EVENT_UPDATE_USERNAME: {"success": False, "error": "Failed to update name"},
    EVENT_GET_STATS: {"error": "Failed to get stats"},
}


class ClientConnection(Protocol):
    connection_id: str

    def emit(self, event: str, payload: dict[str, Any]) -> None: ...


Handler = Callable[[ClientConnection, Any], Optional[dict[str, Any]]]


def create_system_message(content: str) -> ChatMessage:
    return ChatMessage(
        id=random_message_id(SYSTEM_MESSAGE_PREFIX),
        kind="system",
        sender_id=SYSTEM_SENDER_ID,
        sender_name=SYSTEM_SENDER_NAME,
        content=escape_html(content),
        timestamp=now_ms(),
    )


def _parse(model: type[PayloadT], data: Any) -> PayloadT | None:
    try:
        return model.model_validate(data)
    except ValidationError:
        return None


class SessionEventRouter:
    """Dispatches client events against the room registry.

    Handlers never await. Everything an event causes, including broadcasts,
    is emitted before the next event is looked at, so the order in which
    events are processed is the order in which room members see results.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        *,
        message_limiter: RateLimiter,
        event_limiter: RateLimiter,
        validator: MessageValidator,
    ) -> None:
        self.registry = registry
        self.message_limiter = message_limiter
        self.event_limiter = event_limiter
        self.validator = validator
        self.connections: dict[str, ClientConnection] = {}
        self._handlers: dict[str, Handler] = {
            EVENT_CREATE_ROOM: self._handle_create_room,
            EVENT_CHECK_ROOM: self._handle_check_room,
            EVENT_JOIN_ROOM: self._handle_join_room,
            EVENT_LEAVE_ROOM: self._handle_leave_room,
            EVENT_SEND_MESSAGE: self._handle_send_message,
            EVENT_UPDATE_USERNAME: self._handle_update_username,
            EVENT_GET_STATS: self._handle_get_stats,
        }

    def connection_state(self, connection_id: str) -> ConnectionState:
        if self.registry.get_participant(connection_id) is not None:
            return "in-room"
        if connection_id in self.connections:
            return "connected"
        return "terminated"

    def handle_connect(self, connection: ClientConnection) -> None:
        self.connections[connection.connection_id] = connection
        connection.emit(
            EVENT_IDENTITY,
            {"id": display_id_for(connection.connection_id), "name": generate_user_name()},
        )

    def dispatch(self, connection: ClientConnection, event: str, data: Any = None) -> dict[str, Any] | None:
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("ignoring unknown event %r from %s", event, connection.connection_id)
            return None

        try:
            return handler(connection, data)
        except RelayError as exc:
            logger.info("event %s from %s failed: %s", event, connection.connection_id, exc.code)
            return {"success": False, "error": str(exc)}
        except Exception:
            logger.exception("unexpected error handling %s from %s", event, connection.connection_id)
            failure = _FAILURE_RESULTS.get(event)
            return dict(failure) if failure is not None else None

    def handle_disconnect(self, connection: ClientConnection, reason: str = "unknown") -> None:
        connection_id = connection.connection_id
        logger.info("client disconnected %s reason=%s", connection_id, reason)

        self.message_limiter.remove(connection_id)
        self.event_limiter.remove(connection_id)

        result = self.registry.handle_disconnect(connection_id)
        # Removed after the registry so the leaver gets no broadcast of its own exit.
        self.connections.pop(connection_id, None)
        if result is None:
            return

        code, participant = result
        self._announce_departure(code, participant.display_id, participant.display_name, "disconnected")

    def _broadcast(
        self,
        code: str,
        event: str,
        payload: dict[str, Any],
        exclude: str | None = None,
    ) -> None:
        room = self.registry.get_room(code)
        if room is None:
            return
        for connection_id in list(room.members):
            if connection_id == exclude:
                continue
            connection = self.connections.get(connection_id)
            if connection is not None:
                connection.emit(event, payload)

    def _post_system_message(self, code: str, content: str, exclude: str | None = None) -> None:
        message = create_system_message(content)
        self.registry.add_message(code, message)
        self._broadcast(code, EVENT_MESSAGE, message.to_payload(), exclude=exclude)

    def _announce_departure(self, code: str, display_id: str, display_name: str, verb: str) -> None:
        self._post_system_message(code, f"{display_name} {verb}")
        self._broadcast(
            code,
            EVENT_USER_LEFT,
            {
                "userId": display_id,
                "userName": display_name,
                "userCount": self.registry.get_room_user_count(code),
            },
        )

    def _event_budget(self, connection: ClientConnection) -> RateLimitResult:
        limit = self.event_limiter.check(connection.connection_id)
        if not limit.allowed:
            logger.info("event budget exhausted for %s", connection.connection_id)
        return limit

    def _leave(self, code: str, connection_id: str) -> bool:
        participant = self.registry.leave_room(code, connection_id)
        if participant is None:
            return False
        self._announce_departure(code, participant.display_id, participant.display_name, "left the room")
        return True

    def _handle_create_room(self, connection: ClientConnection, data: Any) -> dict[str, Any]:
        limit = self._event_budget(connection)
        if not limit.allowed:
            return {"success": False, "error": EVENT_COOLDOWN_MESSAGE, "resetIn": limit.reset_in}

        room = self.registry.create_room()
        return {"success": True, "roomId": room.code}

    def _handle_check_room(self, connection: ClientConnection, data: Any) -> dict[str, Any]:
        return {"exists": self.registry.room_exists(data)}

    def _handle_join_room(self, connection: ClientConnection, data: Any) -> dict[str, Any]:
        limit = self._event_budget(connection)
        if not limit.allowed:
            return {"success": False, "error": EVENT_COOLDOWN_MESSAGE, "resetIn": limit.reset_in}

        payload = _parse(JoinRoomPayload, data)
        if payload is None or not self.registry.room_exists(payload.roomId):
            raise RoomNotFound()
        code: str = payload.roomId

        connection_id = connection.connection_id
        self.registry.ensure_can_join(code, connection_id)
        previous = self.registry.get_participant(connection_id)
        already_member = previous is not None and previous[0] == code
        if previous is not None and not already_member:
            self._leave(previous[0], connection_id)

        participant = self.registry.join_room(code, connection_id, payload.preferredName)
        user_count = self.registry.get_room_user_count(code)

        connection.emit(EVENT_IDENTITY, participant.to_identity())
        connection.emit(EVENT_ROOM_INFO, {"roomId": code, "userCount": user_count})

        if not already_member:
            self._post_system_message(code, f"{participant.display_name} joined the room", exclude=connection_id)
            self._broadcast(
                code,
                EVENT_USER_JOINED,
                {
                    "userId": participant.display_id,
                    "userName": participant.display_name,
                    "userCount": user_count,
                },
                exclude=connection_id,
            )

        return {"success": True}

    def _handle_leave_room(self, connection: ClientConnection, data: Any) -> None:
        if not is_room_code(data):
            return None
        self._leave(data, connection.connection_id)
        return None

    def _handle_send_message(self, connection: ClientConnection, data: Any) -> dict[str, Any]:
        connection_id = connection.connection_id
        limit = self.message_limiter.check(connection_id)
        if not limit.allowed:
            connection.emit(EVENT_RATE_LIMITED, {"message": COOLDOWN_MESSAGE, "resetIn": limit.reset_in})
            return {"success": False, "error": "Rate limited"}

        payload = _parse(SendMessagePayload, data)
        membership = self.registry.get_participant(connection_id)
        if payload is None or membership is None or not is_room_code(payload.roomId) or membership[0] != payload.roomId:
            logger.warning("connection %s not in claimed room", connection_id)
            return {"success": False, "error": "Not in room"}

        validation = self.validator.validate(payload.content)
        if not validation.valid:
            return {"success": False, "error": validation.error}

        code, participant = membership
        message = ChatMessage(
            id=random_message_id(USER_MESSAGE_PREFIX),
            kind="user",
            sender_id=participant.display_id,
            sender_name=participant.display_name,
            content=validation.sanitized or "",
            timestamp=now_ms(),
        )
        self.registry.add_message(code, message)
        self._broadcast(code, EVENT_MESSAGE, message.to_payload())
        return {"success": True}

    def _handle_update_username(self, connection: ClientConnection, data: Any) -> dict[str, Any]:
        payload = _parse(UpdateUsernamePayload, data)
        if payload is None or not isinstance(payload.newName, str):
            return {"success": False, "error": "Invalid name"}
        if not is_room_code(payload.roomId):
            return {"success": False, "error": "Invalid room code"}
        if sanitize_user_name(payload.newName, self.registry.username_max_length) is None:
            return {"success": False, "error": "Name too short"}

        connection_id = connection.connection_id
        membership = self.registry.get_participant(connection_id)
        if membership is None:
            return {"success": False, "error": "Failed to update name"}
        code, participant = membership
        old_name = participant.display_name

        updated = self.registry.update_display_name(connection_id, payload.newName)
        if updated is None:
            return {"success": False, "error": "Failed to update name"}

        connection.emit(EVENT_IDENTITY, updated.to_identity())
        if updated.display_name != old_name:
            self._post_system_message(code, f"{old_name} is now {updated.display_name}")
            self._broadcast(
                code,
                EVENT_USER_RENAMED,
                {"userId": updated.display_id, "oldName": old_name, "newName": updated.display_name},
            )

        return {"success": True, "name": updated.display_name}

    def _handle_get_stats(self, connection: ClientConnection, data: Any) -> dict[str, Any]:
        return {
            "rooms": self.registry.get_stats(),
            "rateLimiter": {
                "messages": self.message_limiter.get_stats(),
                "events": self.event_limiter.get_stats(),
            },
        }
