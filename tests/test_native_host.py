"""Tests for cpterm.native_host -- framing and the host process lifecycle.

The process tests run tests/echo_host.py as a real child process.
"""

import asyncio
import struct
import sys

import pytest

from cpterm.errors import HostConnectionError, MessageFormatError, VersionMismatchError
from cpterm.messages import Command, SetCode
from cpterm.native_host import FRAME_HEADER, MAX_MESSAGE_SIZE, NativeHostConnection, encode_frame, read_frame
from tests.conftest import ECHO_HOST


def host_command(version="1.0", mode="echo"):
    return [sys.executable, str(ECHO_HOST), version, mode]


def reader_with(data: bytes, eof=True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class Recorder:
    def __init__(self):
        self.messages = []
        self.exits = []
        self.got_message = asyncio.Event()
        self.exited = asyncio.Event()

    async def on_message(self, message):
        self.messages.append(message)
        self.got_message.set()

    async def on_exit(self, connection, reason):
        self.exits.append(reason)
        self.exited.set()


async def open_host(recorder, version="1.0", mode="echo", expected="1.0", timeout=10):
    return await NativeHostConnection.open(
        host_command(version, mode),
        expected_version=expected,
        on_message=recorder.on_message,
        on_exit=recorder.on_exit,
        handshake_timeout=timeout,
    )


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

class TestFraming:

    def test_frame_is_little_endian_length_prefixed(self):
        frame = encode_frame(Command(command="run"))
        body = b'{"type":"command","command":"run"}'
        assert frame == struct.pack("<I", len(body)) + body

    @pytest.mark.asyncio
    async def test_read_frame(self):
        frame = encode_frame(SetCode(code="print('ü')"))
        reader = reader_with(frame + frame)

        first = await read_frame(reader)
        second = await read_frame(reader)

        assert first == second == frame[FRAME_HEADER.size:]
        assert await read_frame(reader) is None

    @pytest.mark.asyncio
    async def test_clean_eof_returns_none(self):
        assert await read_frame(reader_with(b"")) is None

    @pytest.mark.asyncio
    async def test_partial_header_raises(self):
        with pytest.raises(HostConnectionError):
            await read_frame(reader_with(b"\x05\x00"))

    @pytest.mark.asyncio
    async def test_truncated_body_raises(self):
        with pytest.raises(HostConnectionError):
            await read_frame(reader_with(struct.pack("<I", 10) + b"{}"))

    @pytest.mark.asyncio
    async def test_oversized_length_raises(self):
        with pytest.raises(HostConnectionError):
            await read_frame(reader_with(struct.pack("<I", MAX_MESSAGE_SIZE + 1), eof=False))

    def test_oversized_message_cannot_be_encoded(self, monkeypatch):
        monkeypatch.setattr("cpterm.native_host.MAX_MESSAGE_SIZE", 16)
        with pytest.raises(MessageFormatError):
            encode_frame(SetCode(code="x" * 32))


# ---------------------------------------------------------------------------
# Process lifecycle
# ---------------------------------------------------------------------------

class TestNativeHostConnection:

    @pytest.mark.asyncio
    async def test_echo_round_trip(self):
        recorder = Recorder()
        connection = await open_host(recorder)
        try:
            assert connection.host_version == "1.0"
            await connection.send(SetCode(code="print('hi')"))
            await asyncio.wait_for(recorder.got_message.wait(), timeout=5)
            assert recorder.messages == [SetCode(code="print('hi')")]
        finally:
            await connection.close()
        assert recorder.exits == []
        assert connection.closed

    @pytest.mark.asyncio
    async def test_version_mismatch(self):
        with pytest.raises(VersionMismatchError, match="0.9"):
            await open_host(Recorder(), version="0.9", expected="1.0")

    @pytest.mark.asyncio
    async def test_non_version_first_frame(self):
        with pytest.raises(VersionMismatchError, match="logEntry"):
            await open_host(Recorder(), mode="wrong")

    @pytest.mark.asyncio
    async def test_silent_host_times_out(self):
        with pytest.raises(HostConnectionError, match="did not announce"):
            await open_host(Recorder(), mode="silent", timeout=0.5)

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        with pytest.raises(HostConnectionError, match="Could not start"):
            await NativeHostConnection.open(
                [str(tmp_path / "no-such-host")],
                expected_version="1.0",
                on_message=Recorder().on_message,
                on_exit=Recorder().on_exit,
            )

    @pytest.mark.asyncio
    async def test_empty_command(self):
        with pytest.raises(HostConnectionError):
            await NativeHostConnection.open(
                [], expected_version="1.0", on_message=Recorder().on_message, on_exit=Recorder().on_exit,
            )

    @pytest.mark.asyncio
    async def test_unexpected_exit_is_reported(self):
        recorder = Recorder()
        connection = await open_host(recorder, mode="exit")

        await asyncio.wait_for(recorder.exited.wait(), timeout=5)

        assert len(recorder.exits) == 1
        assert "exit code 3" in recorder.exits[0]
        assert connection.closed
        with pytest.raises(HostConnectionError):
            await connection.send(Command(command="run"))

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_silent(self):
        recorder = Recorder()
        connection = await open_host(recorder)

        await connection.close()
        await connection.close()

        assert recorder.exits == []

    @pytest.mark.asyncio
    async def test_host_ignoring_quit_is_killed(self):
        recorder = Recorder()
        connection = await open_host(recorder, mode="stubborn")
        connection._quit_grace = 0.2

        await asyncio.wait_for(connection.close(), timeout=5)

        assert connection._proc.returncode is not None
        assert recorder.exits == []
