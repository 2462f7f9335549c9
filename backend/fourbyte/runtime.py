from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .config import Settings, settings as default_settings
from .connection_gateway import ConnectionGateway
from .message_validator import MessageValidator
from .rate_limiter import RateLimiter
from .room_registry import RoomRegistry
from .runtime_constants import (
    ERROR_TOO_MANY_CONNECTIONS,
    EVENT_ACK,
    EVENT_ERROR,
    OUTBOUND_QUEUE_LIMIT,
    WS_POLICY_VIOLATION,
)
from .runtime_utils import client_address, now_ms, random_id
from .schemas.events import ClientFrame
from .session_router import SessionEventRouter

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """One client socket with a bounded, ordered outbound queue.

    ``emit`` never blocks; a single writer task drains the queue so frames
    reach the socket in the order they were produced. A client that lets
    ``max_queue`` frames pile up is disconnected instead of buffered.
    """

    def __init__(
        self,
        websocket: WebSocket,
        connection_id: str,
        address: str,
        on_send_failure: Callable[[], None] | None = None,
        *,
        max_queue: int = OUTBOUND_QUEUE_LIMIT,
        on_overflow: Callable[[], None] | None = None,
    ) -> None:
        self.websocket = websocket
        self.connection_id = connection_id
        self.address = address
        self.overflowed = False
        self._on_send_failure = on_send_failure
        self._on_overflow = on_overflow
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=max(1, int(max_queue)))
        self._writer: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None
        self._closed = False
        self._stop_signalled = False

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._run_writer(), name=f"ws-writer:{self.connection_id}")

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        self.send_frame({"event": event, "data": payload})

    def send_frame(self, frame: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self._handle_overflow()

    def _handle_overflow(self) -> None:
        self.overflowed = True
        self._closed = True
        logger.warning(
            "outbound queue full conn=%s limit=%d, closing slow consumer",
            self.connection_id,
            self._queue.maxsize,
        )
        if self._on_overflow is not None:
            self._on_overflow()
        self._signal_stop()
        self._close_task = asyncio.create_task(
            self._close_socket(WS_POLICY_VIOLATION),
            name=f"ws-close:{self.connection_id}",
        )

    def _signal_stop(self) -> None:
        if self._stop_signalled:
            return
        self._stop_signalled = True
        # Pending frames are dropped only when there is no room for the sentinel.
        if self._queue.full():
            while not self._queue.empty():
                self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def _close_socket(self, code: int) -> None:
        writer = self._writer
        if writer is not None and not writer.done():
            # The writer may be stuck on a send the client never reads.
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
        try:
            await self.websocket.close(code=code)
        except Exception as exc:
            logger.debug("[CLOSE_FAIL] conn=%s reason=%s", self.connection_id, repr(exc))

    async def _run_writer(self) -> None:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            try:
                await self.websocket.send_json(frame)
            except Exception as exc:
                # Connection may already be closed.
                self._closed = True
                if self._on_send_failure is not None:
                    self._on_send_failure()
                logger.debug(
                    "[SEND_FAIL] conn=%s reason=%s ws_client_state=%s ws_application_state=%s",
                    self.connection_id,
                    repr(exc),
                    getattr(self.websocket, "client_state", None),
                    getattr(self.websocket, "application_state", None),
                )
                return

    async def close(self) -> None:
        self._closed = True
        self._signal_stop()

        close_task = self._close_task
        self._close_task = None
        if close_task is not None:
            try:
                await close_task
            except asyncio.CancelledError:
                pass

        writer = self._writer
        self._writer = None
        if writer is not None:
            try:
                await writer
            except asyncio.CancelledError:
                pass


class RelayRuntime:
    def __init__(
        self,
        app_settings: Settings | None = None,
        *,
        registry: RoomRegistry | None = None,
    ) -> None:
        config = app_settings or default_settings
        self.settings = config
        self.registry = registry or RoomRegistry(
            max_rooms=config.room_max_rooms,
            max_members=config.room_max_users,
            history_limit=config.message_history_limit,
            cleanup_delay_ms=config.room_cleanup_delay_ms,
            username_max_length=config.username_max_length,
        )
        self.message_limiter = RateLimiter(
            config.rate_limit_max,
            config.rate_limit_window_ms,
            name="messages",
        )
        self.event_limiter = RateLimiter(
            config.event_rate_limit,
            config.event_rate_window_ms,
            name="events",
        )
        self.validator = MessageValidator(config.message_max_length, config.message_min_length)
        self.gateway = ConnectionGateway(config.max_connections_per_ip)
        self.router = SessionEventRouter(
            self.registry,
            message_limiter=self.message_limiter,
            event_limiter=self.event_limiter,
            validator=self.validator,
        )
        self._ws_stats: dict[str, int] = {
            "connectAttempts": 0,
            "connectSuccess": 0,
            "connectRejected": 0,
            "rejectTooManyConnections": 0,
            "disconnects": 0,
            "sendFailures": 0,
            "slowConsumerClosed": 0,
            "messageReceived": 0,
            "invalidFrames": 0,
            "activeConnections": 0,
            "peakConnections": 0,
        }

    @property
    def active_rooms_count(self) -> int:
        return self.registry.active_rooms_count

    def _increment_stat(self, key: str, amount: int = 1) -> None:
        self._ws_stats[key] = int(self._ws_stats.get(key, 0)) + amount

    def _on_connect(self) -> None:
        self._increment_stat("connectSuccess")
        active_connections = int(self._ws_stats.get("activeConnections", 0)) + 1
        self._ws_stats["activeConnections"] = active_connections
        if active_connections > int(self._ws_stats.get("peakConnections", 0)):
            self._ws_stats["peakConnections"] = active_connections

    def _on_disconnect(self) -> None:
        self._increment_stat("disconnects")
        active_connections = max(0, int(self._ws_stats.get("activeConnections", 0)) - 1)
        self._ws_stats["activeConnections"] = active_connections

    def _on_slow_consumer(self) -> None:
        self._increment_stat("slowConsumerClosed")

    def _on_send_failure(self) -> None:
        self._increment_stat("sendFailures")

    def _log_ws_event(self, event: str, level: int = logging.INFO, **fields: object) -> None:
        logger.log(
            level,
            "ws.%s %s",
            event,
            json.dumps(fields, ensure_ascii=False, separators=(",", ":")),
        )

    async def startup(self) -> None:
        self.message_limiter.start()
        self.event_limiter.start()

    async def shutdown(self) -> None:
        await self.message_limiter.stop()
        await self.event_limiter.stop()
        await self.registry.shutdown()
        self._ws_stats["activeConnections"] = 0

    async def get_ws_stats(self) -> dict[str, Any]:
        return {
            "generatedAt": now_ms(),
            "activeRooms": self.active_rooms_count,
            "stats": dict(self._ws_stats),
            "gateway": self.gateway.get_stats(),
            "rooms": self.registry.get_stats(),
            "rateLimiter": {
                "messages": self.message_limiter.get_stats(),
                "events": self.event_limiter.get_stats(),
            },
        }

    def _parse_frame(self, raw: str) -> ClientFrame | None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict):
            return None
        try:
            return ClientFrame.model_validate(data)
        except ValidationError:
            return None

    async def handle_websocket(self, websocket: WebSocket) -> None:
        await websocket.accept()

        peer_host = websocket.client.host if websocket.client else None
        address = client_address(websocket.headers, peer_host)
        self._increment_stat("connectAttempts")

        if not self.gateway.admit(address):
            self._increment_stat("connectRejected")
            self._increment_stat("rejectTooManyConnections")
            try:
                await websocket.send_json(
                    {
                        "event": EVENT_ERROR,
                        "data": {
                            "code": ERROR_TOO_MANY_CONNECTIONS,
                            "message": "Too many connections from your address",
                        },
                    }
                )
                await websocket.close(code=WS_POLICY_VIOLATION)
            except Exception as exc:
                logger.debug("[SEND_FAIL] rejected address=%s reason=%s", address, repr(exc))
            self._log_ws_event(
                "connect_rejected",
                level=logging.WARNING,
                address=address,
                code=ERROR_TOO_MANY_CONNECTIONS,
            )
            return

        connection = WebSocketConnection(
            websocket,
            random_id(),
            address,
            on_send_failure=self._on_send_failure,
            max_queue=self.settings.outbound_queue_limit,
            on_overflow=self._on_slow_consumer,
        )
        connection.start()
        self._on_connect()
        self.router.handle_connect(connection)
        self._log_ws_event("connected", connId=connection.connection_id, address=address)

        disconnect_code: int | None = None
        disconnect_reason = "unknown"

        try:
            while True:
                raw = await websocket.receive_text()
                frame = self._parse_frame(raw)
                if frame is None:
                    self._increment_stat("invalidFrames")
                    logger.debug("ignoring malformed frame from %s", connection.connection_id)
                    continue
                self._increment_stat("messageReceived")

                result = self.router.dispatch(connection, frame.event, frame.data)
                if frame.ack is not None:
                    connection.send_frame({"event": EVENT_ACK, "ack": frame.ack, "data": result})
        except WebSocketDisconnect as exc:
            disconnect_code = exc.code
            disconnect_reason = "client_disconnect"
        except Exception:
            disconnect_reason = "server_error"
            logger.exception("Unexpected websocket error for connection %s", connection.connection_id)
        finally:
            self.router.handle_disconnect(connection, disconnect_reason)
            self.gateway.release(address)
            self._on_disconnect()
            await connection.close()
            self._log_ws_event(
                "disconnected",
                connId=connection.connection_id,
                reason=disconnect_reason,
                closeCode=disconnect_code,
            )
