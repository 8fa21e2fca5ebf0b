"""Shared fixtures for the CPTerm test suite."""

import asyncio
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure the project root is on sys.path so the 'cpterm' package resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cpterm.errors import HostConnectionError  # noqa: E402
from cpterm.sessions import Session  # noqa: E402

ECHO_HOST = Path(__file__).resolve().parent / "echo_host.py"


# ---------------------------------------------------------------------------
# Native host stand-ins
# ---------------------------------------------------------------------------

class FakeConnection:
    """In-memory NativeHostConnection: records writes, optionally echoes them."""

    def __init__(self, on_message, on_exit, host_version="1.0", echo=False):
        self.on_message = on_message
        self.on_exit = on_exit
        self.host_version = host_version
        self.echo = echo
        self.sent = []
        self.closed = False

    async def send(self, message):
        if self.closed:
            raise HostConnectionError("Native host connection is closed")
        self.sent.append(message)
        if self.echo:
            await self.on_message(message)

    async def close(self):
        self.closed = True

    async def emit(self, message):
        """Pretend the host wrote *message*."""
        await self.on_message(message)

    async def crash(self, reason="Native host exited unexpectedly (exit code 1)"):
        self.closed = True
        await self.on_exit(self, reason)


class FakeConnector:
    """Drop-in for NativeHostConnection.open handing out FakeConnections."""

    def __init__(self, *, fail=None, delay=0.0, echo=False):
        self.fail = fail
        self.delay = delay
        self.echo = echo
        self.connections: list[FakeConnection] = []
        self.commands = []

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]

    async def __call__(self, command, *, expected_version, on_message, on_exit, handshake_timeout):
        self.commands.append(list(command))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        connection = FakeConnection(on_message, on_exit, expected_version, echo=self.echo)
        self.connections.append(connection)
        return connection


class FakeSession(Session):
    """Session that records what the relay delivers to it."""

    def __init__(self, name=""):
        super().__init__(name)
        self.received = []
        self.accepting = True

    async def send(self, message):
        if not self.connected or not self.accepting:
            return False
        self.received.append(message)
        return True


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def make_relay(connector):
    """Build a Relay wired to the fake connector with short timers."""
    from cpterm.relay import Relay

    def _make(prefs=None, idle_seconds=0.05, connect=None):
        return Relay(
            prefs,
            host_command=["fake-host"],
            host_version="1.0",
            idle_seconds=idle_seconds,
            handshake_timeout=1,
            connect=connect or connector,
        )

    return _make


# ---------------------------------------------------------------------------
# HTTP app
# ---------------------------------------------------------------------------

@pytest.fixture
def echo_connector():
    return FakeConnector(echo=True)


@pytest.fixture
def app(tmp_path, echo_connector):
    """The FastAPI app with a fresh relay and preference store per test."""
    from cpterm.prefs import PreferenceStore
    from cpterm.relay import Relay

    store = PreferenceStore(tmp_path / "prefs.json")
    relay = Relay(store, host_command=["fake-host"], idle_seconds=0.05, connect=echo_connector)
    with patch("cpterm.server.prefs_store", store), \
         patch("cpterm.server.relay", relay), \
         patch("cpterm.server.LAUNCH_BROWSER", False):
        from cpterm.server import app as fastapi_app
        yield fastapi_app


@pytest.fixture
async def client(app):
    """Async HTTP client for testing REST endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
