from __future__ import annotations

import asyncio
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.models.notification import DeviceToken, NotificationRequest
from src.notifications.cleanup import InvalidTokenCollector
from src.notifications.platforms import Platform
from src.notifications.providers import BaseNotificationProvider, BatchResult
from src.notifications.service import PushDispatcher
from src.notifications.telemetry import PushStats, TelemetryEmitter
from src.storage.repository import TokenRepository


class ScriptedProvider(BaseNotificationProvider):
    """Provider double: records every batch and answers from a script."""

    def __init__(
        self,
        platform: Platform,
        script: Callable[[list[DeviceToken], int], BatchResult] | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(client=object())
        self.platform = platform
        self.name = platform.value
        self.script = script
        self.delay = delay
        self.calls: list[tuple[list[DeviceToken], NotificationRequest, bool]] = []

    async def _send(self, tokens, notification, silent) -> BatchResult:
        self.calls.append((list(tokens), notification, silent))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.script is None:
            return BatchResult(sent=len(tokens))
        return self.script(list(tokens), len(self.calls))


@pytest.fixture
def session_local(tmp_path):
    from src.models.db import Base
    from src.models import tables  # noqa: F401

    db_file = tmp_path / "push.db"
    engine = create_engine(f"sqlite:///{db_file}", connect_args={"check_same_thread": False}, future=True)
    TestingSessionLocal = sessionmaker(
        bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False
    )
    Base.metadata.create_all(bind=engine)
    yield TestingSessionLocal
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def repository(session_local) -> TokenRepository:
    return TokenRepository(session_local)


@pytest.fixture
def providers() -> dict[Platform, ScriptedProvider]:
    return {platform: ScriptedProvider(platform) for platform in Platform}


@pytest.fixture
def collector(repository) -> Generator[InvalidTokenCollector, None, None]:
    collector = InvalidTokenCollector(repository, max_pending=100)
    collector.start()
    yield collector
    collector.stop()


@pytest.fixture
def telemetry() -> TelemetryEmitter:
    return TelemetryEmitter(PushStats())


@pytest.fixture
def dispatcher(repository, providers, collector, telemetry) -> PushDispatcher:
    return PushDispatcher(
        repository=repository,
        providers=providers,
        collector=collector,
        telemetry=telemetry,
        batch_delay_ms=0,
        timeout_seconds=2.0,
    )


@pytest.fixture
def test_ctx(monkeypatch, session_local, dispatcher) -> Generator[dict, None, None]:
    import src.models.db as db_module

    monkeypatch.setattr(db_module, "engine", session_local.kw["bind"], raising=False)
    monkeypatch.setattr(db_module, "SessionLocal", session_local, raising=False)

    from src.app import app

    app.state.dispatcher = dispatcher
    with TestClient(app) as client:
        yield {
            "client": client,
            "session_local": session_local,
            "dispatcher": dispatcher,
        }
    app.state.dispatcher = None
