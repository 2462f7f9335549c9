from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from .errors import CapacityExceeded, RoomFull, RoomLimitReached, RoomNotFound
from .runtime_constants import ROOM_CODE_ATTEMPTS
from .runtime_types import ChatMessage, Participant, Room
from .runtime_utils import (
    display_id_for,
    generate_user_name,
    is_room_code,
    now_ms,
    random_room_code,
    sanitize_user_name,
)

logger = logging.getLogger(__name__)


class RoomRegistry:
    """In-memory owner of rooms and their participants.

    Membership lives in two places: ``Room.members`` and the reverse index
    ``connection_id -> (code, participant)`` used on disconnect. Both are
    changed only by ``_attach`` and ``_detach``.
    """

    def __init__(
        self,
        *,
        max_rooms: int = 1000,
        max_members: int = 50,
        history_limit: int = 100,
        cleanup_delay_ms: int = 0,
        username_max_length: int = 20,
        code_factory: Callable[[], str] = random_room_code,
    ) -> None:
        self.max_rooms = max(0, int(max_rooms))
        self.max_members = max(0, int(max_members))
        self.history_limit = max(1, int(history_limit))
        self.cleanup_delay_ms = max(0, int(cleanup_delay_ms))
        self.username_max_length = max(1, int(username_max_length))
        self._code_factory = code_factory
        self.rooms: dict[str, Room] = {}
        self._memberships: dict[str, tuple[str, Participant]] = {}

    @property
    def active_rooms_count(self) -> int:
        return len(self.rooms)

    def _generate_room_code(self) -> str:
        for _ in range(ROOM_CODE_ATTEMPTS):
            code = self._code_factory()
            if code not in self.rooms:
                return code
        raise CapacityExceeded()

    def create_room(self) -> Room:
        if self.max_rooms > 0 and len(self.rooms) >= self.max_rooms:
            raise RoomLimitReached()

        code = self._generate_room_code()
        room = Room(code=code, history_limit=self.history_limit, created_at=now_ms())
        self.rooms[code] = room
        logger.info("room created code=%s rooms=%d", code, len(self.rooms))
        return room

    def room_exists(self, code: Any) -> bool:
        return is_room_code(code) and code in self.rooms

    def get_room(self, code: Any) -> Room | None:
        if not is_room_code(code):
            return None
        return self.rooms.get(code)

    def get_room_user_count(self, code: Any) -> int:
        room = self.get_room(code)
        return room.user_count if room else 0

    def get_participant(self, connection_id: str) -> tuple[str, Participant] | None:
        return self._memberships.get(connection_id)

    def _attach(self, room: Room, participant: Participant) -> None:
        room.members[participant.connection_id] = participant
        self._memberships[participant.connection_id] = (room.code, participant)

    def _detach(self, room: Room, connection_id: str) -> Participant | None:
        participant = room.members.pop(connection_id, None)
        membership = self._memberships.get(connection_id)
        if membership is not None and membership[0] == room.code:
            del self._memberships[connection_id]
        return participant

    def ensure_can_join(self, code: Any, connection_id: str) -> Room:
        """Raise unless ``connection_id`` may join ``code`` right now.

        Existing members always pass. Nothing is changed, so callers can run
        this before tearing down a membership in another room.
        """
        room = self.get_room(code)
        if room is None:
            raise RoomNotFound()
        if connection_id in room.members:
            return room
        if self.max_members > 0 and room.user_count >= self.max_members:
            raise RoomFull()
        return room

    def join_room(
        self,
        code: Any,
        connection_id: str,
        preferred_name: Any = None,
    ) -> Participant:
        room = self.ensure_can_join(code, connection_id)

        existing = room.members.get(connection_id)
        if existing is not None:
            self.cancel_room_cleanup(room.code)
            return existing

        self.cancel_room_cleanup(room.code)

        stale = self._memberships.get(connection_id)
        if stale is not None and stale[0] != room.code:
            logger.warning(
                "connection %s still tracked in room %s, removing before join to %s",
                connection_id,
                stale[0],
                room.code,
            )
            self.leave_room(stale[0], connection_id)

        name = sanitize_user_name(preferred_name, self.username_max_length) if preferred_name else None
        participant = Participant(
            connection_id=connection_id,
            display_id=display_id_for(connection_id),
            display_name=name or generate_user_name(),
        )
        self._attach(room, participant)
        logger.info(
            "user %s (%s) joined room %s users=%d",
            participant.display_name,
            connection_id,
            room.code,
            room.user_count,
        )
        return participant

    def leave_room(self, code: Any, connection_id: str) -> Participant | None:
        room = self.get_room(code)
        if room is None:
            return None

        participant = self._detach(room, connection_id)
        if participant is None:
            return None

        logger.info(
            "user %s left room %s users=%d",
            participant.display_name,
            room.code,
            room.user_count,
        )
        if room.user_count == 0:
            self._schedule_room_cleanup(room)
        return participant

    def handle_disconnect(self, connection_id: str) -> tuple[str, Participant] | None:
        membership = self._memberships.get(connection_id)
        if membership is None:
            return None

        code = membership[0]
        participant = self.leave_room(code, connection_id)
        if participant is None:
            # Reverse index pointed at a room that no longer lists this member.
            self._memberships.pop(connection_id, None)
            return None
        return code, participant

    def add_message(self, code: Any, message: ChatMessage) -> None:
        room = self.get_room(code)
        if room is None:
            return
        room.history.append(message)
        while len(room.history) > room.history_limit:
            room.history.popleft()

    def update_display_name(self, connection_id: str, new_name: Any) -> Participant | None:
        sanitized = sanitize_user_name(new_name, self.username_max_length)
        if sanitized is None:
            return None

        membership = self._memberships.get(connection_id)
        if membership is None:
            return None

        room = self.rooms.get(membership[0])
        if room is None:
            return None

        participant = room.members.get(connection_id)
        if participant is None:
            return None

        participant.display_name = sanitized
        return participant

    def _schedule_room_cleanup(self, room: Room) -> None:
        self.cancel_room_cleanup(room.code)

        if self.cleanup_delay_ms <= 0:
            self.destroy_room(room.code)
            return

        delay_s = self.cleanup_delay_ms / 1000

        async def runner() -> None:
            try:
                await asyncio.sleep(delay_s)
            except asyncio.CancelledError:
                return
            current = self.rooms.get(room.code)
            if current is not room:
                return
            room.cleanup_task = None
            if room.user_count == 0:
                self.destroy_room(room.code)

        room.cleanup_task = asyncio.create_task(runner(), name=f"room-cleanup:{room.code}")
        logger.info("room %s scheduled for cleanup in %dms", room.code, self.cleanup_delay_ms)

    def cancel_room_cleanup(self, code: str) -> None:
        room = self.rooms.get(code)
        if room is None:
            return
        task = room.cleanup_task
        if task is not None and not task.done():
            task.cancel()
        room.cleanup_task = None

    def destroy_room(self, code: str) -> None:
        room = self.rooms.get(code)
        if room is None:
            return

        self.cancel_room_cleanup(code)
        for connection_id in list(room.members):
            self._detach(room, connection_id)
        del self.rooms[code]
        logger.info("room destroyed code=%s rooms=%d", code, len(self.rooms))

    async def shutdown(self) -> None:
        pending = [
            room.cleanup_task
            for room in self.rooms.values()
            if room.cleanup_task is not None and not room.cleanup_task.done()
        ]
        for code in list(self.rooms):
            self.cancel_room_cleanup(code)
        self.rooms.clear()
        self._memberships.clear()

        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_stats(self) -> dict[str, Any]:
        return {
            "totalRooms": len(self.rooms),
            "totalUsers": len(self._memberships),
            "pendingCleanups": sum(
                1
                for room in self.rooms.values()
                if room.cleanup_task is not None and not room.cleanup_task.done()
            ),
            "rooms": [
                {
                    "id": room.code,
                    "userCount": room.user_count,
                    "messageCount": len(room.history),
                    "createdAt": room.created_at,
                }
                for room in self.rooms.values()
            ],
        }
