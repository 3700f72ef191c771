"""
GrantDesk Backend: Test Configuration (conftest.py)
====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Inventory (all function-scoped):
    ├── token_service:     JwtTokenService with a fixed test secret
    ├── issue_token:       mint a token for (identifier, role)
    ├── relay:             RelayService over a fresh InMemoryMessageLog
    ├── fake_connection:   factory for relay-level connection doubles
    ├── transport:         FakeTransport standing in for a WebSocket
    ├── make_session:      factory for ConnectionSession over a FakeTransport
    ├── app / ws_client:   FastAPI app with injected relay + TestClient
    └── test_client:       HTTPX AsyncClient for HTTP endpoints
"""

import asyncio
import json
import os
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

# Override settings for testing BEFORE any grantdesk imports
os.environ["JWT_SECRET"] = "test-secret-not-real"
os.environ["MESSAGE_STORE"] = "memory"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["WS_AUTH_TIMEOUT"] = "5"

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import AsyncClient, ASGITransport

from grantdesk.schemas.chat import Participant, ParticipantRole
from grantdesk.services.auth_service import JwtTokenService
from grantdesk.services.connection_service import ConnectionSession
from grantdesk.services.message_log import InMemoryMessageLog
from grantdesk.services.relay_service import RelayService

TEST_SECRET = "test-secret-not-real"


# ══════════════════════════════════════════════════════════════════════════
# Transport Doubles
# ══════════════════════════════════════════════════════════════════════════


class FakeTransport:
    """
    In-memory stand-in for a Starlette WebSocket.

    Inbound frames are queued with feed()/feed_raw(); everything the server
    writes lands in `sent` and can be awaited with next_frame(). close()
    queues a disconnect message, the way an ASGI server reports the close
    back to the application.
    """

    def __init__(self) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.close_code: Optional[int] = None

    async def receive(self) -> Dict[str, Any]:
        return await self.inbox.get()

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.closed:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(data)
        self.outbox.put_nowait(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    def feed(self, frame: Dict[str, Any]) -> None:
        self.feed_raw(json.dumps(frame))

    def feed_raw(self, text: str) -> None:
        self.inbox.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self, code: int = 1000) -> None:
        self.inbox.put_nowait({"type": "websocket.disconnect", "code": code})

    async def next_frame(self, timeout: float = 1.0) -> Dict[str, Any]:
        return await asyncio.wait_for(self.outbox.get(), timeout)

    def frames_of_type(self, frame_type: str) -> List[Dict[str, Any]]:
        return [f for f in self.sent if f.get("type") == frame_type]


# ══════════════════════════════════════════════════════════════════════════
# Function-Scoped Fixtures
# ══════════════════════════════════════════════════════════════════════════


@pytest.fixture
def token_service():
    return JwtTokenService(secret=TEST_SECRET)


@pytest.fixture
def issue_token(token_service):
    """
    Mint a valid token.

    Usage:
        token = issue_token("u1")              # role=user
        token = issue_token("a1", "admin")
    """

    def _issue(identifier: str, role: str = "user") -> str:
        participant = Participant(identifier=identifier, role=ParticipantRole(role))
        return token_service.issue(participant)

    return _issue


@pytest.fixture
def relay():
    return RelayService(InMemoryMessageLog())


@pytest.fixture
def fake_connection():
    """
    Factory for relay-level connection doubles.

    Each double records delivered frames in `.frames` and has AsyncMock
    `deliver` and `close` methods.
    """

    def _make(name: str = "conn", deliver_ok: bool = True):
        conn = MagicMock(name=name)
        conn.frames = []

        async def _deliver(frame):
            conn.frames.append(frame)
            return deliver_ok

        conn.deliver = AsyncMock(side_effect=_deliver)
        conn.close = AsyncMock()
        return conn

    return _make


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_session(relay, token_service):
    """Build a ConnectionSession over a fresh FakeTransport."""

    def _make(auth_timeout: Optional[float] = None) -> ConnectionSession:
        return ConnectionSession(
            transport=FakeTransport(),
            relay=relay,
            verifier=token_service,
            auth_timeout=auth_timeout,
        )

    return _make


@pytest.fixture
def app(relay, token_service):
    from grantdesk.main import create_app

    return create_app(relay=relay, token_verifier=token_service)


@pytest.fixture
def ws_client(app):
    """
    Synchronous TestClient for WebSocket scenarios.

    Entering the context runs the application lifespan; every
    websocket_connect() shares its event loop, so several sockets can talk
    to the same relay within one test.
    """
    with TestClient(app) as client:
        yield client


@pytest_asyncio.fixture
async def test_client(app):
    """
    HTTPX AsyncClient for HTTP endpoint testing.

    ASGITransport does not run the lifespan; the relay is injected through
    create_app() instead.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
