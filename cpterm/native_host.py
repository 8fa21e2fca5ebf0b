"""Connection to the native host process.

The host is spawned as a child process and spoken to over its stdin/stdout
with native-messaging framing: a 4-byte little-endian length followed by
that many bytes of UTF-8 JSON. The first frame the host writes must be a
``version`` announcement; anything else aborts the connection.
"""

import asyncio
import logging
import os
import signal
import struct
from typing import Awaitable, Callable

from .config import HANDSHAKE_TIMEOUT, HOST_QUIT_GRACE
from .errors import HostConnectionError, MessageFormatError, VersionMismatchError
from .messages import Command, Message, Version, encode_message, parse_message
from .msg_constants import CMD_QUIT

logger = logging.getLogger(__name__)

FRAME_HEADER = struct.Struct("<I")

# Frames larger than this are treated as a corrupt stream (64 MB)
MAX_MESSAGE_SIZE = 64 * 1024 * 1024

# Timeout (seconds) to wait for a killed process to be reaped
_KILL_WAIT_TIMEOUT = 3

MessageHandler = Callable[[Message], Awaitable[None]]
ExitHandler = Callable[["NativeHostConnection", str], Awaitable[None]]


def encode_frame(message: Message) -> bytes:
    body = encode_message(message)
    if len(body) > MAX_MESSAGE_SIZE:
        raise MessageFormatError(f"Message of {len(body)} bytes exceeds the {MAX_MESSAGE_SIZE} byte limit")
    return FRAME_HEADER.pack(len(body)) + body


async def read_frame(reader: asyncio.StreamReader) -> bytes | None:
    """Read one frame body, or return None on a clean end of stream."""
    try:
        header = await reader.readexactly(FRAME_HEADER.size)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise HostConnectionError("Native host closed the stream mid-header") from exc
    (length,) = FRAME_HEADER.unpack(header)
    if length > MAX_MESSAGE_SIZE:
        raise HostConnectionError(f"Native host sent an oversized frame ({length} bytes)")
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise HostConnectionError("Native host closed the stream mid-message") from exc


async def _wait_for_killed_process(proc):
    """Wait briefly for a killed process to be reaped, preventing zombies."""
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_TIMEOUT)
    except (asyncio.TimeoutError, ProcessLookupError, OSError):
        pass


def _kill_process_group(proc):
    """Kill the host's whole process group; hosts commonly fork editors and viewers."""
    if proc.returncode is not None:
        return  # Already exited; avoid killing a reused PID
    try:
        os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
    except (OSError, ProcessLookupError):
        pass
    try:
        proc.kill()
    except (OSError, ProcessLookupError):
        pass


class NativeHostConnection:
    """One running native host process and the reader task draining it."""

    def __init__(self, proc, on_message: MessageHandler, on_exit: ExitHandler, quit_grace: float = HOST_QUIT_GRACE):
        self._proc = proc
        self._on_message = on_message
        self._on_exit = on_exit
        self._quit_grace = quit_grace
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._closing = False
        self.host_version: str | None = None

    @classmethod
    async def open(
        cls,
        command: list[str],
        *,
        expected_version: str,
        on_message: MessageHandler,
        on_exit: ExitHandler,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ) -> "NativeHostConnection":
        """Start the host, check its version announcement and begin reading."""
        if not command:
            raise HostConnectionError("No native host command configured")
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise HostConnectionError(f"Could not start native host {command[0]!r}: {exc}") from exc

        connection = cls(proc, on_message, on_exit)
        try:
            await connection._handshake(expected_version, handshake_timeout)
        except BaseException:
            _kill_process_group(proc)
            await _wait_for_killed_process(proc)
            raise
        connection._reader_task = asyncio.ensure_future(connection._read_loop())
        logger.info("Native host started (pid %s, version %s)", proc.pid, connection.host_version)
        return connection

    @property
    def closed(self) -> bool:
        return self._closing or self._proc.returncode is not None

    async def _handshake(self, expected_version: str, timeout: float) -> None:
        try:
            raw = await asyncio.wait_for(read_frame(self._proc.stdout), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise HostConnectionError(f"Native host did not announce its version within {timeout:g}s") from exc
        if raw is None:
            raise HostConnectionError("Native host exited before announcing its version")
        try:
            message = parse_message(raw)
        except MessageFormatError as exc:
            raise VersionMismatchError(f"Native host sent an unreadable version announcement: {exc}") from exc
        if not isinstance(message, Version):
            raise VersionMismatchError(f"Native host sent '{message.type}' instead of a version announcement")
        if message.host_version != expected_version:
            raise VersionMismatchError(
                f"Native host version {message.host_version or '(none)'} does not match "
                f"the expected version {expected_version}; reinstall the host"
            )
        self.host_version = message.host_version

    async def send(self, message: Message) -> None:
        if self.closed:
            raise HostConnectionError("Native host connection is closed")
        frame = encode_frame(message)
        async with self._write_lock:
            try:
                self._proc.stdin.write(frame)
                await self._proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise HostConnectionError(f"Lost the pipe to the native host: {exc}") from exc
        logger.debug("-> host: %s", message.type)

    async def _read_loop(self) -> None:
        failure: str | None = None
        try:
            while True:
                raw = await read_frame(self._proc.stdout)
                if raw is None:
                    break
                try:
                    message = parse_message(raw)
                except MessageFormatError:
                    logger.warning("Dropping malformed frame from native host")
                    continue
                logger.debug("<- host: %s", message.type)
                try:
                    await self._on_message(message)
                except Exception:
                    logger.exception("Handler failed for host message type=%s", message.type)
        except HostConnectionError as exc:
            failure = str(exc)

        if self._closing:
            return
        returncode = await self._proc.wait()
        reason = failure or f"Native host exited unexpectedly (exit code {returncode})"
        logger.warning("%s", reason)
        await self._on_exit(self, reason)

    async def close(self) -> None:
        """Ask the host to quit, then make sure it is gone."""
        if self._closing:
            return
        self._closing = True
        if self._proc.returncode is None:
            try:
                async with self._write_lock:
                    self._proc.stdin.write(encode_frame(Command(command=CMD_QUIT)))
                    await self._proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            try:
                self._proc.stdin.close()
            except (BrokenPipeError, ConnectionResetError, RuntimeError):
                pass
            try:
                await asyncio.wait_for(self._proc.wait(), timeout=self._quit_grace)
            except asyncio.TimeoutError:
                logger.warning("Native host ignored quit for %.1fs, killing it", self._quit_grace)
                _kill_process_group(self._proc)
                await _wait_for_killed_process(self._proc)
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        logger.info("Native host stopped (exit code %s)", self._proc.returncode)
