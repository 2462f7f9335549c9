from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from fourbyte.runtime import RelayRuntime

router = APIRouter(tags=["system"])


def _runtime(request: Request) -> RelayRuntime:
    return request.app.state.runtime


@router.get("/health")
@router.get("/api/health")
async def health(request: Request) -> dict[str, object]:
    runtime = _runtime(request)
    ws_stats = await runtime.get_ws_stats()
    ws_summary = {
        "activeConnections": ws_stats["stats"].get("activeConnections", 0),
        "peakConnections": ws_stats["stats"].get("peakConnections", 0),
        "connectAttempts": ws_stats["stats"].get("connectAttempts", 0),
        "connectRejected": ws_stats["stats"].get("connectRejected", 0),
    }
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "activeRooms": runtime.active_rooms_count,
        "websocket": ws_summary,
    }


@router.get("/api/ws-stats")
async def websocket_stats(request: Request) -> dict[str, object]:
    return await _runtime(request).get_ws_stats()
