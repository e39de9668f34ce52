from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

import socketio
from socketio import exceptions as sio_exceptions

from shared.protocol import DEFAULT_SOCKETIO_PATH, INBOUND_EVENTS, SignalEvent

from .errors import SignalingUnavailable

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[None] | None]
DisconnectCallback = Callable[[Optional[str]], Awaitable[None] | None]


class SignalingClient:
    """Socket.IO connection to the room relay.

    Inbound events are queued and handed to their handler one at a time, in
    arrival order, so a handler always runs to completion (including its own
    awaits) before the next signaling event is looked at.
    """

    def __init__(
        self,
        url: str,
        *,
        socketio_path: str = DEFAULT_SOCKETIO_PATH,
        connect_timeout: float = 10.0,
        on_disconnect: Optional[DisconnectCallback] = None,
        sio: Optional[Any] = None,
    ) -> None:
        self._url = url
        self._socketio_path = socketio_path
        self._connect_timeout = connect_timeout
        self._on_disconnect = on_disconnect
        self._sio = sio if sio is not None else socketio.AsyncClient(reconnection=False, logger=False)
        self._handlers: Dict[SignalEvent, EventHandler] = {}
        self._inbox: "asyncio.Queue[Tuple[SignalEvent, Any]]" = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task[None]] = None
        self._closing = False
        for event in INBOUND_EVENTS:
            self._sio.on(event.value, handler=partial(self._enqueue, event))
        self._sio.on("disconnect", handler=self._handle_disconnect)

    @property
    def connected(self) -> bool:
        return bool(self._sio.connected)

    @property
    def self_id(self) -> Optional[str]:
        if not self.connected:
            return None
        return self._sio.get_sid()

    def set_disconnect_callback(self, callback: Optional[DisconnectCallback]) -> None:
        self._on_disconnect = callback

    def on(self, event: Union[SignalEvent, str], handler: EventHandler) -> None:
        event = SignalEvent(event)
        if event not in INBOUND_EVENTS:
            raise ValueError(f"{event.value} is not delivered by the relay")
        if event in self._handlers:
            raise ValueError(f"A handler for {event.value} is already registered")
        self._handlers[event] = handler

    def off(self, event: Union[SignalEvent, str]) -> None:
        self._handlers.pop(SignalEvent(event), None)

    def clear_handlers(self) -> None:
        self._handlers.clear()

    async def connect(self) -> None:
        if self.connected:
            return
        logger.info("Connecting to signaling relay %s", self._url)
        self._closing = False
        try:
            await self._sio.connect(
                self._url,
                socketio_path=self._socketio_path,
                wait_timeout=self._connect_timeout,
            )
        except sio_exceptions.ConnectionError as exc:
            raise SignalingUnavailable(f"Unable to reach signaling relay {self._url}: {exc}") from exc
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info("Connected to signaling relay as %s", self.self_id)

    async def close(self) -> None:
        self._closing = True
        self.clear_handlers()
        task = self._dispatch_task
        self._dispatch_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.connected:
            try:
                await self._sio.disconnect()
            except Exception:
                logger.exception("Error while disconnecting from signaling relay")

    async def emit(self, event: Union[SignalEvent, str], payload: Optional[Dict[str, Any] | str] = None) -> None:
        event = SignalEvent(event)
        if not self.connected:
            raise SignalingUnavailable(f"Cannot send {event.value}: relay connection is down")
        logger.debug("Emitting %s %s", event.value, payload)
        try:
            await self._sio.emit(event.value, payload)
        except sio_exceptions.SocketIOError as exc:
            raise SignalingUnavailable(f"Failed to send {event.value}: {exc}") from exc

    async def wait_idle(self) -> None:
        """Block until every queued inbound event has been handled."""

        await self._inbox.join()

    def _enqueue(self, event: SignalEvent, *args: Any) -> None:
        if self._closing:
            return
        payload = args[0] if args else None
        self._inbox.put_nowait((event, payload))

    async def _dispatch_loop(self) -> None:
        while True:
            event, payload = await self._inbox.get()
            try:
                handler = self._handlers.get(event)
                if handler is None:
                    logger.debug("No handler for signaling event %s", event.value)
                    continue
                result = handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Error while handling signaling event %s", event.value)
            finally:
                self._inbox.task_done()

    async def _handle_disconnect(self, *args: Any) -> None:
        reason = str(args[0]) if args else None
        if self._closing:
            logger.debug("Signaling relay connection closed")
            return
        logger.warning("Signaling relay connection lost: %s", reason or "unknown")
        if self._on_disconnect is None:
            return
        try:
            result = self._on_disconnect(reason)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Disconnect callback failed")
