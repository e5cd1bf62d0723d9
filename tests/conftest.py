"""Test configuration and fixtures for certops tests."""

import pytest
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import httpx

from certops.core.config import Settings
from certops.engine import Engine
from certops.models.certificate import Certificate, KeyType
from certops.services.crypto_service import CryptoService


class FrozenClock:
    """Controllable clock; call it for the current time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def crypto(clock) -> CryptoService:
    return CryptoService(clock=clock)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in the test's temporary directory."""
    return Settings(
        config_dir=str(tmp_path / "config"),
        certs_dir=str(tmp_path / "certs"),
        enable_file_watch=False,
        log_level="DEBUG",
    )


@pytest.fixture
def transport_handler():
    """
    Handler for the engine's HTTP mock transport.

    Tests replace .handler to script responses; requests are collected.
    """

    class Recorder:
        def __init__(self):
            self.requests = []
            self.handler = None

        def __call__(self, request):
            self.requests.append(request)
            if self.handler is None:
                return httpx.Response(200, json={"ok": True})
            return self.handler(request)

    return Recorder()


@pytest.fixture
async def engine(settings, clock, transport_handler) -> AsyncGenerator[Engine, None]:
    """Started engine with a frozen clock and a mock HTTP transport."""
    engine = Engine(settings, clock=clock, http_transport=httpx.MockTransport(transport_handler))
    await engine.start()
    yield engine
    await engine.stop()


@pytest.fixture
async def root_ca(engine) -> Certificate:
    """EC root CA "Test Root"."""
    return await engine.create_root_ca(
        "CN=Test Root,O=Acme",
        days=3650,
        key_algorithm=KeyType.EC,
        key_size=256,
    )


@pytest.fixture
async def leaf(engine, root_ca) -> Certificate:
    """90-day leaf for api.example.com signed by the root."""
    return await engine.issue_certificate(
        root_ca.fingerprint,
        "api.example.com",
        ips=["10.0.0.5"],
        days=90,
        key_algorithm=KeyType.EC,
    )
