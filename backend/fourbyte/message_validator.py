from __future__ import annotations

from typing import Any

from .runtime_types import ValidationResult
from .runtime_utils import escape_html, strip_message_control_chars


class MessageValidator:
    """Checks chat message content and produces the text that gets stored.

    Sanitizing happens here, before storage or broadcast: control characters
    are removed and HTML-significant characters are escaped.
    """

    def __init__(self, max_length: int, min_length: int = 1) -> None:
        self.max_length = max(1, int(max_length))
        self.min_length = max(1, int(min_length))

    def validate(self, content: Any) -> ValidationResult:
        if not isinstance(content, str) or not content:
            return ValidationResult(valid=False, error="Message cannot be empty")

        trimmed = content.strip()
        if len(trimmed) < self.min_length:
            return ValidationResult(valid=False, error="Message too short")
        if len(trimmed) > self.max_length:
            return ValidationResult(
                valid=False,
                error=f"Message too long (max {self.max_length} characters)",
            )

        cleaned = strip_message_control_chars(trimmed).strip()
        if len(cleaned) < self.min_length:
            return ValidationResult(valid=False, error="Message too short")

        return ValidationResult(valid=True, sanitized=escape_html(cleaned))
