from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class ConnectionGateway:
    """Caps the number of live connections per source address."""

    def __init__(self, max_connections_per_address: int) -> None:
        self.max_connections_per_address = max(1, int(max_connections_per_address))
        self._counts: dict[str, int] = {}

    def admit(self, address: str) -> bool:
        current = self._counts.get(address, 0)
        if current >= self.max_connections_per_address:
            logger.warning(
                "connection rejected address=%s live=%d limit=%d",
                address,
                current,
                self.max_connections_per_address,
            )
            return False
        self._counts[address] = current + 1
        return True

    def release(self, address: str) -> None:
        current = self._counts.get(address, 0)
        if current <= 1:
            self._counts.pop(address, None)
            return
        self._counts[address] = current - 1

    def count(self, address: str) -> int:
        return self._counts.get(address, 0)

    def get_stats(self) -> dict[str, Any]:
        return {
            "trackedAddresses": len(self._counts),
            "liveConnections": sum(self._counts.values()),
            "maxConnectionsPerAddress": self.max_connections_per_address,
        }
