"""Relay between page sessions and the single native host connection.

Any number of sessions (browser tabs, WebSocket pages) share one native
host process. The relay opens the connection on demand, broadcasts
everything the host says to every live session, and shuts the host down
once the last session has been gone for ``IDLE_SHUTDOWN_SECONDS``.
A ``keepAlive`` command that arrives while that countdown is running
cancels it and is not forwarded.
"""

import asyncio
import logging

from .config import HANDSHAKE_TIMEOUT, HOST_COMMAND, HOST_VERSION, IDLE_SHUTDOWN_SECONDS
from .errors import HostConnectionError, VersionMismatchError
from .messages import LogEntry, Message, SetPrefs, is_keep_alive
from .native_host import NativeHostConnection
from .prefs import PreferenceStore

logger = logging.getLogger(__name__)


def _background_task_done(task: asyncio.Task):
    """Log exceptions from background tasks instead of silently swallowing."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Relay background task failed: %s", exc, exc_info=exc)


class Relay:
    def __init__(
        self,
        prefs: PreferenceStore | None = None,
        *,
        host_command: list[str] | None = None,
        host_version: str = HOST_VERSION,
        idle_seconds: float = IDLE_SHUTDOWN_SECONDS,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        connect=NativeHostConnection.open,
    ):
        self.prefs = prefs
        self.host_command = list(host_command) if host_command is not None else list(HOST_COMMAND)
        self.host_version = host_version
        self.idle_seconds = idle_seconds
        self.handshake_timeout = handshake_timeout
        self._connect = connect

        self._sessions: set = set()
        self._session_locks: dict = {}
        self._connection = None
        self._idle_task: asyncio.Task | None = None
        self._open_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

        if prefs is not None:
            prefs.on_change(self.update_prefs)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def idle_shutdown_armed(self) -> bool:
        return self._idle_task is not None

    @property
    def sessions(self) -> frozenset:
        return frozenset(self._sessions)

    def status(self) -> dict:
        return {
            "sessions": len(self._sessions),
            "connected": self.connected,
            "idle_shutdown_armed": self.idle_shutdown_armed,
            "host_version": getattr(self._connection, "host_version", None),
        }

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_background_task_done)
        return task

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def register_session(self, session) -> None:
        """Start tracking *session*; real traffic always cancels a pending shutdown."""
        if not getattr(session, "connected", True):
            # its disconnect hook already fired; it would never be removed
            return
        self.disarm_idle_shutdown()
        if session in self._sessions:
            return
        self._sessions.add(session)
        session.add_disconnect_listener(self.unregister_session)
        logger.info("Session registered (%d live)", len(self._sessions))

    def unregister_session(self, session) -> None:
        if session not in self._sessions:
            return
        self._sessions.discard(session)
        self._session_locks.pop(session, None)
        logger.info("Session disconnected (%d live)", len(self._sessions))
        if not self._sessions and (self._connection is not None or self._open_lock.locked()):
            self.arm_idle_shutdown()

    async def relay(self, session, message: Message) -> None:
        """Forward *message* from *session* to the native host.

        Messages from one session reach the host in the order this method
        was called for that session. A failure to reach the host is
        broadcast to every session as an error ``logEntry``.
        """
        if not getattr(session, "connected", True):
            logger.debug("Dropping %s from a disconnected session", message.type)
            return
        was_armed = self.disarm_idle_shutdown()
        self.register_session(session)
        if was_armed and is_keep_alive(message):
            logger.debug("keepAlive cancelled the pending host shutdown")
            return

        lock = self._session_locks.setdefault(session, asyncio.Lock())
        async with lock:
            try:
                connection = await self._ensure_connection()
            except (VersionMismatchError, HostConnectionError) as exc:
                logger.error("Could not open native host connection: %s", exc)
                await self.broadcast(LogEntry.error(str(exc)))
                return
            try:
                await connection.send(message)
            except HostConnectionError as exc:
                logger.error("Write to native host failed: %s", exc)
                self._drop_connection(connection)
                await self.broadcast(LogEntry.error(str(exc)))

    async def broadcast(self, message: Message) -> None:
        """Deliver a host message to every live session."""
        for session in list(self._sessions):
            await self._send_to(session, message)

    async def _send_to(self, session, message: Message) -> None:
        try:
            delivered = await session.send(message)
        except Exception:
            logger.exception("Sending %s to a session failed", message.type)
            delivered = False
        if not delivered:
            logger.info("Dropping session that can no longer receive messages")
            self.unregister_session(session)

    # ------------------------------------------------------------------
    # Native host connection
    # ------------------------------------------------------------------

    async def _ensure_connection(self):
        async with self._open_lock:
            if self._connection is not None:
                return self._connection
            connection = await self._connect(
                self.host_command,
                expected_version=self.host_version,
                on_message=self.broadcast,
                on_exit=self._on_host_exit,
                handshake_timeout=self.handshake_timeout,
            )
            if self.prefs is not None:
                snapshot = await self.prefs.get_all()
                if snapshot:
                    try:
                        await connection.send(SetPrefs(prefs=snapshot))
                    except HostConnectionError:
                        self._spawn(connection.close())
                        raise
            self._connection = connection
            if not self._sessions and self._idle_task is None:
                # every session left while the host was starting
                self.arm_idle_shutdown()
            return connection

    def _drop_connection(self, connection) -> None:
        if self._connection is connection:
            self._connection = None
            self.disarm_idle_shutdown()
            self._spawn(connection.close())

    async def _on_host_exit(self, connection, reason: str) -> None:
        if self._connection is connection:
            self._connection = None
            self.disarm_idle_shutdown()
        await self.broadcast(LogEntry.error(reason))

    async def update_prefs(self, changes: dict[str, dict]) -> None:
        """Forward a preference delta to the host, if one is running."""
        connection = self._connection
        if connection is None:
            logger.debug("No native host running; preference change will be read on next start")
            return
        prefs = {key: (change or {}).get("newValue") or "" for key, change in changes.items()}
        try:
            await connection.send(SetPrefs(prefs=prefs))
        except HostConnectionError as exc:
            logger.warning("Could not forward preferences: %s", exc)

    # ------------------------------------------------------------------
    # Idle shutdown
    # ------------------------------------------------------------------

    def arm_idle_shutdown(self) -> None:
        if self._idle_task is not None:
            return
        logger.info("No live sessions; native host stops in %.0fs", self.idle_seconds)
        self._idle_task = asyncio.ensure_future(self._idle_countdown())
        self._idle_task.add_done_callback(_background_task_done)

    def disarm_idle_shutdown(self) -> bool:
        """Cancel a pending shutdown; returns True if one was armed."""
        task = self._idle_task
        if task is None:
            return False
        self._idle_task = None
        task.cancel()
        logger.debug("Idle shutdown disarmed")
        return True

    async def _idle_countdown(self) -> None:
        await asyncio.sleep(self.idle_seconds)
        self._idle_task = None
        connection, self._connection = self._connection, None
        if connection is not None:
            logger.info("Idle timeout reached, stopping native host")
            await connection.close()

    async def shutdown(self) -> None:
        """Tear down the connection at process exit."""
        self.disarm_idle_shutdown()
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
        for task in list(self._background):
            task.cancel()
        self._sessions.clear()
        self._session_locks.clear()
