from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from shared.protocol import DEFAULT_UI_PORT

from .config import CallSettings
from .errors import DeviceUnavailable, SignalingUnavailable
from .media import MediaProvisioner
from .session import SessionStateMachine
from .signaling_client import SignalingClient

logger = logging.getLogger(__name__)


class WebSocketHub:
    """Fans call events out to every connected UI socket.

    A socket that is no longer connected, or whose send fails, is dropped.
    """

    def __init__(self) -> None:
        self._sockets: List[WebSocket] = []
        self._lock = asyncio.Lock()

    @property
    def size(self) -> int:
        return len(self._sockets)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        async with self._lock:
            self._sockets.append(ws)

    async def disconnect(self, ws: WebSocket) -> None:
        async with self._lock:
            if ws in self._sockets:
                self._sockets.remove(ws)

    async def broadcast(self, message: Dict[str, object]) -> None:
        async with self._lock:
            stale: List[WebSocket] = []
            for ws in self._sockets:
                if ws.application_state != WebSocketState.CONNECTED:
                    stale.append(ws)
                    continue
                try:
                    await ws.send_json(message)
                except Exception as exc:
                    logger.warning("Dropping UI socket after failed %s send: %s", message.get("type"), exc)
                    stale.append(ws)
            for ws in stale:
                self._sockets.remove(ws)


class ClientApp:
    """Call client runtime exposing join/cancel and call state to a local UI."""

    def __init__(
        self,
        settings: CallSettings,
        *,
        signaling: Optional[SignalingClient] = None,
        media: Optional[MediaProvisioner] = None,
        auto_join_room: Optional[str] = None,
    ) -> None:
        self._settings = settings
        self._signaling = signaling or SignalingClient(settings.signaling_url, socketio_path=settings.socketio_path)
        self._session = SessionStateMachine(settings, self._signaling, media=media)
        self._session.add_listener(self._on_session_event)
        self._ws_hub = WebSocketHub()
        self._auto_join_room = auto_join_room
        self._auto_join_task: Optional[asyncio.Task[None]] = None
        self._uvicorn_server = None
        self._app = FastAPI()
        self._configure_routes()

    @property
    def app(self) -> FastAPI:
        return self._app

    @property
    def session(self) -> SessionStateMachine:
        return self._session

    def _configure_routes(self) -> None:
        @self._app.get("/api/config")
        async def config() -> Dict[str, object]:
            return {
                "signaling_url": self._settings.signaling_url,
                "max_call_seconds": self._settings.max_call_seconds,
                "ice_servers": [server.to_dict() for server in self._settings.ice_servers],
                "require_connectivity": self._settings.require_connectivity,
            }

        @self._app.get("/api/state")
        async def state() -> Dict[str, object]:
            return self._session.snapshot()

        @self._app.post("/api/join")
        async def join(payload: dict = Body(...)) -> Dict[str, object]:
            room_id = str(payload.get("room_id") or "")
            try:
                await self._session.join(room_id)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            except RuntimeError as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            except SignalingUnavailable as exc:
                raise HTTPException(status_code=412, detail=str(exc)) from exc
            except DeviceUnavailable as exc:
                raise HTTPException(status_code=424, detail=str(exc)) from exc
            return self._session.snapshot()

        @self._app.post("/api/cancel")
        async def cancel() -> Dict[str, object]:
            await self._session.cancel()
            return self._session.snapshot()

        @self._app.websocket("/ws/control")
        async def ws_control(websocket: WebSocket) -> None:
            await self._ws_hub.connect(websocket)
            try:
                await websocket.send_json(
                    {
                        "type": "session_status",
                        "payload": {
                            "state": self._session.phase.value,
                            "self_id": self._signaling.self_id,
                        },
                    }
                )
                await websocket.send_json(
                    {
                        "type": "state_snapshot",
                        "payload": self._session.snapshot(),
                    }
                )
                while True:
                    data = await websocket.receive_json()
                    await self._handle_ui_message(data)
            except WebSocketDisconnect:
                pass
            finally:
                await self._ws_hub.disconnect(websocket)

    async def _on_session_event(self, event_type: str, payload: Dict[str, object]) -> None:
        await self._ws_hub.broadcast({"type": event_type, "payload": payload})

    async def _broadcast_session_status(self, state: str, **payload: object) -> None:
        await self._ws_hub.broadcast(
            {
                "type": "session_status",
                "payload": {
                    "state": state,
                    **payload,
                },
            }
        )

    async def _handle_ui_message(self, data: Dict[str, object]) -> None:
        """Handle messages coming from the web UI via WebSocket."""

        kind = data.get("type")
        payload = data.get("payload") or {}
        if kind == "join":
            room_id = str(payload.get("room_id") or "") if isinstance(payload, dict) else ""
            try:
                await self._session.join(room_id)
            except (ValueError, RuntimeError, SignalingUnavailable, DeviceUnavailable) as exc:
                await self._broadcast_session_status("error", message=str(exc), phase=self._session.phase.value)
            except Exception:
                logger.exception("Failed to start call")
        elif kind == "cancel":
            await self._session.cancel()
        elif kind == "heartbeat":
            # keepalive only
            return
        else:
            logger.warning("Unhandled UI message: %s", data)

    async def _auto_join(self, room_id: str) -> None:
        try:
            await self._session.join(room_id)
        except (ValueError, RuntimeError, SignalingUnavailable, DeviceUnavailable) as exc:
            logger.error("Auto-join of room %s failed: %s", room_id, exc)
            await self._broadcast_session_status("error", message=str(exc), phase=self._session.phase.value)

    async def run(self, host: str = "127.0.0.1", port: int = DEFAULT_UI_PORT) -> None:
        import uvicorn

        config = uvicorn.Config(self._app, host=host, port=port, log_level="info")
        server = uvicorn.Server(config)
        self._uvicorn_server = server
        if self._auto_join_room:
            self._auto_join_task = asyncio.create_task(self._auto_join(self._auto_join_room))
        try:
            await server.serve()
        finally:
            self._uvicorn_server = None
            if self._auto_join_task is not None and not self._auto_join_task.done():
                self._auto_join_task.cancel()
            await self._session.close()
