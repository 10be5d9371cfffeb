"""Shared fixtures: fake Gemini clients, microphone and Live channel."""

import asyncio
import json
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from audio_capture import MicrophoneUnavailableError
from health_log import MedicationCatalog


def gemini_response(payload) -> MagicMock:
    """A generate_content response whose .text is the JSON payload"""
    response = MagicMock()
    response.text = payload if isinstance(payload, str) else json.dumps(payload)
    return response


def make_genai_client(*payloads) -> MagicMock:
    """Client whose generate_content returns the payloads in order"""
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(side_effect=[gemini_response(p) for p in payloads])
    return client


def transcription(text: str):
    return SimpleNamespace(server_content=SimpleNamespace(input_transcription=SimpleNamespace(text=text)))


class FakeMicrophone:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.on_frame = None
        self.open_calls = 0
        self.start_calls = 0
        self.close_calls = 0

    def open(self, on_frame):
        self.open_calls += 1
        if self.fail:
            raise MicrophoneUnavailableError("Permission denied")
        self.on_frame = on_frame

    def start(self):
        self.start_calls += 1

    def emit(self, pcm: bytes):
        self.on_frame(pcm)

    def close(self):
        self.close_calls += 1


class FakeLiveSession:
    """Stands in for the Live API session; one endless turn per receive() call"""

    def __init__(self, send_error: Exception = None):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.send_error = send_error

    async def send_realtime_input(self, *, audio):
        if self.send_error:
            raise self.send_error
        self.sent.append(audio)

    async def receive(self):
        while True:
            message = await self.incoming.get()
            if message is None:
                return
            yield message


class FakeConnection:
    def __init__(self, live: FakeLiveSession, fail: Exception = None):
        self.live = live
        self.fail = fail
        self.enter_calls = 0
        self.exit_calls = 0

    async def __aenter__(self):
        self.enter_calls += 1
        if self.fail:
            raise self.fail
        return self.live

    async def __aexit__(self, *exc):
        self.exit_calls += 1


class FakeLiveClient:
    def __init__(self, connection: FakeConnection):
        self.connection = connection
        self.connect_calls = []
        self.aio = SimpleNamespace(live=SimpleNamespace(connect=self._connect))

    def _connect(self, model, config):
        self.connect_calls.append({"model": model, "config": config})
        return self.connection


async def settle(rounds: int = 20):
    """Let queued callbacks and tasks run"""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def catalog() -> MedicationCatalog:
    ids = iter(["um1", "um2", "um3", "um4"])
    catalog = MedicationCatalog(id_factory=lambda: next(ids))
    catalog.upsert("Metformin", 500, "mg")
    catalog.upsert("Insulin Aspart (NovoRapid)", 1, "units")
    catalog.upsert("Gliclazide", 80, "mg")
    return catalog


@pytest.fixture
def microphone() -> FakeMicrophone:
    return FakeMicrophone()


@pytest.fixture
def live() -> FakeLiveSession:
    return FakeLiveSession()


@pytest.fixture
def connection(live) -> FakeConnection:
    return FakeConnection(live)


@pytest.fixture
def live_client(connection) -> FakeLiveClient:
    return FakeLiveClient(connection)


class FakeInputStream:
    """Minimal stand-in for sounddevice.InputStream"""

    start_error = None

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.started = False
        self.closed = False

    def start(self):
        if self.start_error:
            raise self.start_error
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True


@pytest.fixture
def fake_sounddevice(monkeypatch):
    """Installs a sounddevice module whose streams never touch real hardware"""
    streams = []

    class RecordingInputStream(FakeInputStream):
        def __init__(self, **kwargs):
            super().__init__(**kwargs)
            streams.append(self)

    module = SimpleNamespace(InputStream=RecordingInputStream, streams=streams)
    monkeypatch.setitem(sys.modules, "sounddevice", module)
    return module
