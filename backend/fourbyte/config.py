from __future__ import annotations

import os

from dotenv import load_dotenv

from .runtime_constants import OUTBOUND_QUEUE_LIMIT

load_dotenv()


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    return max(minimum, value)


class Settings:
    def __init__(self) -> None:
        self.host = os.getenv("HOST", "0.0.0.0").strip() or "0.0.0.0"
        self.port = _int_env("PORT", 3000, minimum=1)
        self.cors_origin = os.getenv("CORS_ORIGIN", "http://localhost:4200").strip()
        self.cors_origin_from_env = bool(os.getenv("CORS_ORIGIN"))
        self.app_env = os.getenv("APP_ENV", "development").strip().lower() or "development"
        self.log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"

        # Admission and non-message events (create/join).
        self.max_connections_per_ip = _int_env("MAX_CONNECTIONS_PER_IP", 5, minimum=1)
        self.event_rate_limit = _int_env("EVENT_RATE_LIMIT", 10, minimum=1)
        self.event_rate_window_ms = _int_env("EVENT_RATE_WINDOW_MS", 60_000, minimum=1)

        # Chat messages.
        self.rate_limit_max = _int_env("RATE_LIMIT_MAX", 10, minimum=1)
        self.rate_limit_window_ms = _int_env("RATE_LIMIT_WINDOW", 10_000, minimum=1)
        self.message_max_length = _int_env("MESSAGE_MAX_LENGTH", 1000, minimum=1)
        self.message_min_length = 1
        self.message_history_limit = _int_env("MESSAGE_HISTORY_LIMIT", 100, minimum=1)
        self.outbound_queue_limit = _int_env("OUTBOUND_QUEUE_LIMIT", OUTBOUND_QUEUE_LIMIT, minimum=1)

        # Rooms. 0 means unlimited for both ceilings, 0 delay means immediate cleanup.
        self.room_max_users = _int_env("ROOM_MAX_USERS", 50)
        self.room_max_rooms = _int_env("ROOM_MAX_ROOMS", 1000)
        self.room_cleanup_delay_ms = _int_env("ROOM_CLEANUP_DELAY", 0)

        self.username_max_length = _int_env("USERNAME_MAX_LENGTH", 20, minimum=1)

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    def warnings(self) -> list[str]:
        messages: list[str] = []
        if not self.is_production:
            return messages
        if self.cors_origin == "http://localhost:4200":
            messages.append("CORS_ORIGIN is set to localhost in production")
        if not self.cors_origin_from_env:
            messages.append("CORS_ORIGIN not set, using default")
        return messages


settings = Settings()
