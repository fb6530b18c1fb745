import asyncio
import json
import time

import pytest
from fastapi.testclient import TestClient

from speech_relay.auth.supabase_auth import Principal
from speech_relay.config import Settings
from speech_relay.errors import AuthProviderError, Unauthorized, UpstreamClosed
from speech_relay.main import create_app
from speech_relay.providers.soniox_relay import (
    UpstreamEnded,
    UpstreamFrame,
    UpstreamOpened,
    build_soniox_config,
)

SONIOX_KEY = "soniox-server-secret"
GOOD_TOKEN = "good-token"
ACK_FRAME = '{"tokens": [], "final_audio_proc_ms": 0}'

BASE_ENV = {
    "SONIOX_API_KEY": SONIOX_KEY,
    "OPENAI_API_KEY": "openai-server-secret",
    "DEEPGRAM_API_KEY": "deepgram-server-secret",
    "SUPABASE_URL": "https://example.supabase.co",
    "SUPABASE_ANON_KEY": "anon-key",
}


def make_settings(**overrides) -> Settings:
    env = dict(BASE_ENV)
    env.update({k: str(v) for k, v in overrides.items()})
    return Settings(environ=env)


def wait_until(predicate, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeVerifier:
    """Accepts GOOD_TOKEN, fails infrastructure-style on "boom", rejects the rest."""

    def __init__(self):
        self.tokens = []

    async def verify(self, token):
        self.tokens.append(token)
        if token == GOOD_TOKEN:
            return Principal(user_id="user-1", email="alice@example.com")
        if token == "boom":
            raise AuthProviderError("identity provider unreachable")
        raise Unauthorized("Unauthorized: Invalid token")


class FakeUpstream:
    """Stands in for SonioxProviderSession.

    ``ack`` mode opens and answers with one frame, ``silent`` opens without
    answering. Forwarded JSON is echoed back, except
    ``{"type": "hangup"}`` which makes the provider close the socket.
    """

    def __init__(self, connection_id, on_event, mode="ack"):
        self.connection_id = connection_id
        self.on_event = on_event
        self.mode = mode
        self.client_config = None
        self.config = None
        self.audio = []
        self.sent = []
        self.closed = False
        self._open = False
        self._task = None

    @property
    def is_open(self):
        return self._open and not self.closed

    def start(self, client_config):
        self.client_config = client_config
        self._task = asyncio.create_task(self._run())
        return self._task

    async def _run(self):
        self.config = build_soniox_config(self.client_config, api_key=SONIOX_KEY)
        self._open = True
        await self.on_event(UpstreamOpened(self))
        if self.mode == "ack":
            await self.on_event(UpstreamFrame(self, ACK_FRAME, is_binary=False))

    async def send_audio_chunk(self, chunk):
        self.audio.append(chunk)

    async def send_json(self, message):
        self.sent.append(message)
        if isinstance(message, dict) and message.get("type") == "hangup":
            self._open = False
            closed = UpstreamClosed("Soniox connection closed: bye", code=1000)
            await self.on_event(UpstreamEnded(self, closed, reason="bye"))
        else:
            await self.on_event(UpstreamFrame(self, json.dumps({"echo": message}), is_binary=False))

    async def close(self):
        self.closed = True
        self._open = False
        if self._task is not None and not self._task.done():
            self._task.cancel()


class UpstreamFactory:
    def __init__(self, mode="ack"):
        self.mode = mode
        self.sessions = []
        self.live_at_creation = []

    def __call__(self, connection_id, on_event):
        self.live_at_creation.append(sum(1 for s in self.sessions if not s.closed))
        session = FakeUpstream(connection_id, on_event, mode=self.mode)
        self.sessions.append(session)
        return session


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def upstreams():
    return UpstreamFactory()


@pytest.fixture
def client(settings, verifier, upstreams):
    app = create_app(settings=settings, verifier=verifier, session_factory=upstreams)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def registry(client):
    return client.app.state.registry
