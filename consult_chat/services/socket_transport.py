"""
Socket.IO binding for the realtime chat channel.
"""
import inspect
from typing import Any, Callable, Dict, List, Optional

import socketio
from socketio import exceptions as sio_exceptions

from consult_chat.constants import ChatEvent
from consult_chat.exceptions import ChatConnectionError
from consult_chat.utils.logger import get_logger

logger = get_logger("transport")

Handler = Callable[..., Any]


class EventDispatcher:
    """Fan-out of one transport event to many listeners.

    A socket.io client keeps a single handler per event; the chat session,
    the presence registry and the notification suppressor all need the same
    events, so handlers are registered here instead.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Handler]] = {}

    def add_listener(self, event: str, handler: Handler) -> None:
        handlers = self._listeners.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)
            self._on_first_listener(event)

    def remove_listener(self, event: str, handler: Handler) -> None:
        handlers = self._listeners.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    async def dispatch(self, event: str, *args: Any) -> None:
        """Run every listener of `event`; a failing listener never stops the others."""
        for handler in list(self._listeners.get(event, ())):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Listener for '{event}' failed: {e}", exc_info=True)

    def _on_first_listener(self, event: str) -> None:
        """Hook for transports that must bind the event lazily."""


class SocketTransport(EventDispatcher):
    """Realtime transport over a python-socketio AsyncClient."""

    def __init__(self, client: Optional[socketio.AsyncClient] = None) -> None:
        super().__init__()
        self.sio = client or socketio.AsyncClient(reconnection=True, logger=False, engineio_logger=False)
        self._bound: set = set()
        self._bind(ChatEvent.CONNECT)
        self._bind(ChatEvent.DISCONNECT)

    @property
    def connected(self) -> bool:
        return bool(self.sio.connected)

    async def connect(self, url: str, auth: Optional[dict] = None) -> None:
        try:
            await self.sio.connect(url, auth=auth, transports=["websocket"])
        except sio_exceptions.ConnectionError as exc:
            logger.error(f"Realtime connection to {url} failed: {exc}")
            raise ChatConnectionError(str(exc)) from exc
        logger.info("Connected to realtime server %s (sid=%s)", url, self.sio.sid)

    async def disconnect(self) -> None:
        if self.sio.connected:
            await self.sio.disconnect()

    async def emit(self, event: str, data: Any) -> None:
        if not self.connected:
            raise ChatConnectionError(f"Cannot emit '{event}': not connected")
        try:
            await self.sio.emit(event, data)
        except sio_exceptions.BadNamespaceError as exc:
            raise ChatConnectionError(str(exc)) from exc

    def _on_first_listener(self, event: str) -> None:
        self._bind(event)

    def _bind(self, event: str) -> None:
        if event in self._bound:
            return

        async def _handler(*args: Any) -> None:
            await self.dispatch(event, *args)

        self.sio.on(event, _handler)
        self._bound.add(event)
