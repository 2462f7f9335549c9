from __future__ import annotations

from fourbyte.application import app

__all__ = ["app"]
