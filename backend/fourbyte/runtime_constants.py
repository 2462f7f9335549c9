from __future__ import annotations

import re

ROOM_CODE_MIN = 1000
ROOM_CODE_MAX = 9999
ROOM_CODE_ATTEMPTS = 100
ROOM_CODE_PATTERN = re.compile(r"^[0-9]{4}$")

SYSTEM_SENDER_ID = "system"
SYSTEM_SENDER_NAME = "System"
USER_MESSAGE_PREFIX = "msg"
SYSTEM_MESSAGE_PREFIX = "sys"
GENERATED_NAME_PREFIX = "User_"
DISPLAY_ID_PREFIX = "user_"

RATE_LIMIT_SWEEP_INTERVAL_MS = 60_000
COOLDOWN_MESSAGE = "Slow down! You're sending messages too fast."
EVENT_COOLDOWN_MESSAGE = "Too many requests. Please wait a moment."

# Inbound events.
EVENT_CREATE_ROOM = "create-room"
EVENT_CHECK_ROOM = "check-room"
EVENT_JOIN_ROOM = "join-room"
EVENT_LEAVE_ROOM = "leave-room"
EVENT_SEND_MESSAGE = "send-message"
EVENT_UPDATE_USERNAME = "update-username"
EVENT_GET_STATS = "get-stats"

# Outbound events.
EVENT_ACK = "ack"
EVENT_ERROR = "error"
EVENT_IDENTITY = "identity"
EVENT_ROOM_INFO = "room-info"
EVENT_MESSAGE = "message"
EVENT_USER_JOINED = "user-joined"
EVENT_USER_LEFT = "user-left"
EVENT_USER_RENAMED = "user-renamed"
EVENT_RATE_LIMITED = "rate-limited"

ERROR_TOO_MANY_CONNECTIONS = "TOO_MANY_CONNECTIONS"
WS_POLICY_VIOLATION = 1008
OUTBOUND_QUEUE_LIMIT = 256
