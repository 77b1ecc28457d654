"""Fixtures for API tests through FastAPI's TestClient"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from storyloom.api.app import create_app
from storyloom.governance.rate_limit import build_limiters
from storyloom.governance.usage import UsageRecorder, UsageRepository
from storyloom.storage.graph import SQLiteGraphStore

USER_HEADERS = {"X-User-Id": "user-1"}


class FrozenClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def make_client(db_path, fake_invoker):
    """
    Build a TestClient around a fully wired app.

    Defaults: no job queue (inline generation), quotas off, real rate limiters
    on a frozen clock. Keyword arguments go to create_app.
    """
    clients = []

    def _make(headers=USER_HEADERS, limits=None, **overrides):
        overrides.setdefault("store", SQLiteGraphStore())
        overrides.setdefault("invoker", fake_invoker)
        overrides.setdefault("job_queue_factory", lambda: None)
        overrides.setdefault("usage_recorder", UsageRecorder(UsageRepository()))
        overrides.setdefault("quota_enabled", False)
        overrides.setdefault("limiters", build_limiters(limits, clock=FrozenClock()))
        app = create_app(**overrides)
        client = TestClient(app, headers=headers)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()
