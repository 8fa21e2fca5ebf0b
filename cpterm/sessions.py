"""Page sessions: one page's duplex channel into the relay.

A session is identified by the object itself. Outbound messages (page to
native host) go through :meth:`Relay.relay`; inbound ones arrive through
:meth:`Session.send`, which reports whether the page can still receive.
"""

import abc
import asyncio
import logging
from typing import Awaitable, Callable

from fastapi import WebSocket, WebSocketDisconnect

from .errors import MessageFormatError
from .messages import LogEntry, Message, dump_message, parse_message

logger = logging.getLogger(__name__)


class Session(abc.ABC):
    def __init__(self, name: str = ""):
        self.name = name
        self.connected = True
        self._disconnect_listeners: list[Callable[["Session"], None]] = []

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name or hex(id(self))}>"

    def add_disconnect_listener(self, listener: Callable[["Session"], None]) -> None:
        self._disconnect_listeners.append(listener)

    def disconnect(self) -> None:
        """Mark the page gone and notify listeners exactly once."""
        if not self.connected:
            return
        self.connected = False
        for listener in list(self._disconnect_listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Disconnect listener failed for %r", self)

    @abc.abstractmethod
    async def send(self, message: Message) -> bool:
        """Deliver *message* to the page; False once it can no longer receive."""


class LocalSession(Session):
    """In-process channel to a tab driven by our own browser.

    Inbound messages are queued and handed to the attached handler one at
    a time, in arrival order.
    """

    def __init__(self, relay, name: str = ""):
        super().__init__(name)
        self.relay = relay
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pump_task: asyncio.Task | None = None

    def attach(self, handler: Callable[[Message], Awaitable[None]]) -> None:
        self._pump_task = asyncio.ensure_future(self._pump(handler))

    async def post(self, message: Message) -> None:
        if not self.connected:
            logger.debug("%r is closed; dropping outbound %s", self, message.type)
            return
        await self.relay.relay(self, message)

    async def send(self, message: Message) -> bool:
        if not self.connected:
            return False
        self._inbox.put_nowait(message)
        return True

    async def _pump(self, handler) -> None:
        while True:
            message = await self._inbox.get()
            try:
                await handler(message)
            except Exception:
                logger.exception("Handling %s failed in %r", message.type, self)

    def disconnect(self) -> None:
        super().disconnect()
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()


class WebSocketSession(Session):
    """A page in the user's own browser, connected over ``/ws/page``."""

    def __init__(self, websocket: WebSocket, relay, name: str = ""):
        super().__init__(name)
        self.ws = websocket
        self.relay = relay

    async def send(self, message: Message) -> bool:
        """Send JSON to the page, return False if disconnected."""
        if not self.connected:
            return False
        try:
            await self.ws.send_json(dump_message(message))
            return True
        except (WebSocketDisconnect, RuntimeError):
            self.disconnect()
            return False

    async def run(self) -> None:
        """Relay every frame the page sends until it goes away."""
        try:
            while True:
                data = await self.ws.receive_text()
                try:
                    message = parse_message(data)
                except MessageFormatError as e:
                    logger.warning("Malformed message from page: %s", e)
                    await self.send(LogEntry.error("Invalid message format."))
                    continue
                await self.relay.relay(self, message)
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            self.disconnect()
