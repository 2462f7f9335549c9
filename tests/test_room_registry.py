import asyncio
import itertools

import pytest

from fourbyte.errors import CapacityExceeded, RoomFull, RoomLimitReached, RoomNotFound
from fourbyte.room_registry import RoomRegistry
from fourbyte.runtime_types import ChatMessage
from fourbyte.runtime_utils import is_room_code


def _message(index: int) -> ChatMessage:
    return ChatMessage(
        id=f"msg_{index}",
        kind="user",
        sender_id="user_x",
        sender_name="x",
        content=str(index),
        timestamp=index,
    )


def test_create_room_returns_unique_four_digit_codes(registry: RoomRegistry) -> None:
    codes = {registry.create_room().code for _ in range(200)}

    assert len(codes) == 200
    assert all(is_room_code(code) and 1000 <= int(code) <= 9999 for code in codes)
    assert registry.active_rooms_count == 200


def test_room_limit_is_checked_before_code_generation() -> None:
    registry = RoomRegistry(max_rooms=1)
    registry.create_room()

    with pytest.raises(RoomLimitReached) as exc_info:
        registry.create_room()
    assert str(exc_info.value) == "Server at capacity. Please try again later."


def test_code_generation_gives_up_after_bounded_attempts() -> None:
    calls = itertools.count()

    def factory() -> str:
        next(calls)
        return "4321"

    registry = RoomRegistry(code_factory=factory)
    assert registry.create_room().code == "4321"

    with pytest.raises(CapacityExceeded):
        registry.create_room()
    assert next(calls) == 101


@pytest.mark.parametrize("code", ["123", "12345", "abcd", 1234, None, " 1234"])
def test_room_exists_rejects_malformed_codes(registry: RoomRegistry, code) -> None:
    assert registry.room_exists(code) is False


def test_join_unknown_room_raises(registry: RoomRegistry) -> None:
    with pytest.raises(RoomNotFound):
        registry.join_room("0000", "conn-a")
    with pytest.raises(RoomNotFound):
        registry.join_room("not-a-code", "conn-a")


def test_join_uses_sanitized_preferred_name(registry: RoomRegistry) -> None:
    code = registry.create_room().code

    participant = registry.join_room(code, "abcdef123456", "  Ali\x00ce   Smith  ")

    assert participant.display_name == "Alice Smith"
    assert participant.display_id == "user_abcdef12"
    assert registry.get_participant("abcdef123456") == (code, participant)


def test_join_generates_name_when_preferred_is_unusable(registry: RoomRegistry) -> None:
    code = registry.create_room().code

    participant = registry.join_room(code, "conn-a", "   ")

    assert participant.display_name.startswith("User_")
    assert len(participant.display_name) == len("User_0000")


def test_join_is_idempotent_for_existing_member(registry: RoomRegistry) -> None:
    code = registry.create_room().code
    first = registry.join_room(code, "conn-a", "alice")
    second = registry.join_room(code, "conn-a", "bob")

    assert second is first
    assert second.display_name == "alice"
    assert registry.get_room_user_count(code) == 1


def test_join_full_room_raises_but_member_can_rejoin() -> None:
    registry = RoomRegistry(max_members=2)
    code = registry.create_room().code
    registry.join_room(code, "conn-a")
    registry.join_room(code, "conn-b")

    with pytest.raises(RoomFull):
        registry.join_room(code, "conn-c")
    assert registry.join_room(code, "conn-a").connection_id == "conn-a"
    assert registry.get_room_user_count(code) == 2


def test_join_other_room_evicts_stale_membership(registry: RoomRegistry) -> None:
    first = registry.create_room().code
    second = registry.create_room().code
    registry.join_room(first, "conn-a")
    registry.join_room(first, "conn-b")

    registry.join_room(second, "conn-a")

    assert registry.get_participant("conn-a")[0] == second
    assert "conn-a" not in registry.get_room(first).members
    assert registry.get_room_user_count(first) == 1


def test_leave_last_member_destroys_room_without_delay(registry: RoomRegistry) -> None:
    code = registry.create_room().code
    registry.join_room(code, "conn-a")

    left = registry.leave_room(code, "conn-a")

    assert left is not None and left.connection_id == "conn-a"
    assert registry.room_exists(code) is False
    assert registry.get_participant("conn-a") is None


def test_leave_when_not_member_is_noop(registry: RoomRegistry) -> None:
    code = registry.create_room().code
    registry.join_room(code, "conn-a")

    assert registry.leave_room(code, "conn-b") is None
    assert registry.leave_room("9999" if code != "9999" else "1000", "conn-a") is None
    assert registry.get_room_user_count(code) == 1


def test_handle_disconnect_uses_reverse_index(registry: RoomRegistry) -> None:
    code = registry.create_room().code
    registry.join_room(code, "conn-a", "alice")
    registry.join_room(code, "conn-b")

    result = registry.handle_disconnect("conn-a")

    assert result is not None
    assert result[0] == code
    assert result[1].display_name == "alice"
    assert registry.handle_disconnect("conn-a") is None
    assert registry.get_room_user_count(code) == 1


def test_history_keeps_most_recent_messages() -> None:
    registry = RoomRegistry(history_limit=3)
    code = registry.create_room().code

    for index in range(5):
        registry.add_message(code, _message(index))

    assert [message.id for message in registry.get_room(code).history] == ["msg_2", "msg_3", "msg_4"]


def test_update_display_name(registry: RoomRegistry) -> None:
    code = registry.create_room().code
    registry.join_room(code, "conn-a", "alice")

    assert registry.update_display_name("conn-a", "   ") is None
    assert registry.update_display_name("conn-z", "bob") is None

    updated = registry.update_display_name("conn-a", "  bob   builder  ")
    assert updated is not None
    assert updated.display_name == "bob builder"
    assert registry.get_room(code).members["conn-a"].display_name == "bob builder"


def test_update_display_name_is_capped(registry: RoomRegistry) -> None:
    code = registry.create_room().code
    registry.join_room(code, "conn-a")

    updated = registry.update_display_name("conn-a", "x" * 50)
    assert updated.display_name == "x" * 20


def test_destroy_room_detaches_members(registry: RoomRegistry) -> None:
    code = registry.create_room().code
    registry.join_room(code, "conn-a")
    registry.join_room(code, "conn-b")

    registry.destroy_room(code)
    registry.destroy_room(code)

    assert registry.room_exists(code) is False
    assert registry.get_participant("conn-a") is None
    assert registry.get_participant("conn-b") is None
    assert registry.get_stats()["totalUsers"] == 0


def test_get_stats_reports_rooms(registry: RoomRegistry) -> None:
    code = registry.create_room().code
    registry.join_room(code, "conn-a")
    registry.add_message(code, _message(1))

    stats = registry.get_stats()

    assert stats["totalRooms"] == 1
    assert stats["totalUsers"] == 1
    assert stats["pendingCleanups"] == 0
    assert stats["rooms"][0]["id"] == code
    assert stats["rooms"][0]["userCount"] == 1
    assert stats["rooms"][0]["messageCount"] == 1


@pytest.mark.asyncio
async def test_grace_delay_keeps_room_until_timer_fires() -> None:
    registry = RoomRegistry(cleanup_delay_ms=20)
    code = registry.create_room().code
    registry.join_room(code, "conn-a")
    registry.leave_room(code, "conn-a")

    assert registry.room_exists(code) is True
    assert registry.get_stats()["pendingCleanups"] == 1

    await asyncio.sleep(0.1)

    assert registry.room_exists(code) is False


@pytest.mark.asyncio
async def test_rejoin_during_grace_delay_cancels_cleanup_and_keeps_history() -> None:
    registry = RoomRegistry(cleanup_delay_ms=30)
    code = registry.create_room().code
    registry.join_room(code, "conn-a")
    registry.add_message(code, _message(1))
    registry.leave_room(code, "conn-a")

    registry.join_room(code, "conn-b")
    await asyncio.sleep(0.1)

    room = registry.get_room(code)
    assert room is not None
    assert room.cleanup_task is None
    assert [message.id for message in room.history] == ["msg_1"]


@pytest.mark.asyncio
async def test_shutdown_cancels_and_awaits_pending_cleanups() -> None:
    registry = RoomRegistry(cleanup_delay_ms=1_000)
    codes = [registry.create_room().code for _ in range(2)]
    tasks = []
    for index, code in enumerate(codes):
        registry.join_room(code, f"conn-{index}")
        registry.leave_room(code, f"conn-{index}")
        tasks.append(registry.get_room(code).cleanup_task)

    await registry.shutdown()

    assert all(task.done() for task in tasks)
    assert registry.active_rooms_count == 0
    assert registry.get_stats()["totalUsers"] == 0
    await registry.shutdown()


def test_ensure_can_join_changes_nothing() -> None:
    registry = RoomRegistry(max_members=1)
    first = registry.create_room().code
    second = registry.create_room().code
    registry.join_room(first, "conn-a")
    registry.join_room(second, "conn-b")

    with pytest.raises(RoomFull):
        registry.ensure_can_join(second, "conn-a")
    with pytest.raises(RoomNotFound):
        registry.ensure_can_join("0000", "conn-a")
    assert registry.ensure_can_join(first, "conn-a").code == first
    assert registry.get_participant("conn-a")[0] == first


def test_join_full_room_does_not_evict_current_membership() -> None:
    registry = RoomRegistry(max_members=1)
    first = registry.create_room().code
    second = registry.create_room().code
    registry.join_room(first, "conn-a")
    registry.join_room(second, "conn-b")

    with pytest.raises(RoomFull):
        registry.join_room(second, "conn-a")

    assert registry.room_exists(first) is True
    assert registry.get_participant("conn-a")[0] == first
