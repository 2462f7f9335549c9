from __future__ import annotations

import html
import random
import re
import string
import time
import uuid
from typing import Any, Mapping

from .runtime_constants import (
    DISPLAY_ID_PREFIX,
    GENERATED_NAME_PREFIX,
    ROOM_CODE_MAX,
    ROOM_CODE_MIN,
    ROOM_CODE_PATTERN,
)

_ID_SUFFIX_CHARS = string.digits + string.ascii_lowercase
# Names lose every C0 control char and DEL; messages keep tab, LF and CR.
_NAME_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_MESSAGE_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def now_ms() -> int:
    return int(time.time() * 1000)


def random_id() -> str:
    return uuid.uuid4().hex


def random_message_id(prefix: str) -> str:
    suffix = "".join(random.choices(_ID_SUFFIX_CHARS, k=9))
    return f"{prefix}_{now_ms()}_{suffix}"


def random_room_code() -> str:
    return str(random.randint(ROOM_CODE_MIN, ROOM_CODE_MAX))


def generate_user_name() -> str:
    return f"{GENERATED_NAME_PREFIX}{random.randint(1000, 9999)}"


def display_id_for(connection_id: str) -> str:
    return f"{DISPLAY_ID_PREFIX}{connection_id[:8]}"


def is_room_code(value: Any) -> bool:
    return isinstance(value, str) and ROOM_CODE_PATTERN.match(value) is not None


def strip_message_control_chars(value: str) -> str:
    return _MESSAGE_CONTROL_CHARS.sub("", value)


def escape_html(value: str) -> str:
    return html.escape(value, quote=True)


def sanitize_user_name(raw: Any, max_length: int) -> str | None:
    if not isinstance(raw, str):
        return None
    cleaned = _NAME_CONTROL_CHARS.sub("", raw)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()[:max_length].strip()
    return cleaned or None


def client_address(headers: Mapping[str, str], peer_host: str | None) -> str:
    forwarded_for = headers.get("x-forwarded-for", "")
    if isinstance(forwarded_for, str) and forwarded_for.strip():
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    if peer_host and peer_host.strip():
        return peer_host.strip()
    return "unknown"
